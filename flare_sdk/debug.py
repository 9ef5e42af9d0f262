import sys
import logging

from flare_sdk import utils
from flare_sdk.client import _client_init_debug
from flare_sdk.hub import Hub
from flare_sdk.utils import logger

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from logging import LogRecord


class _HubBasedClientFilter(logging.Filter):
    def filter(self, record: "LogRecord") -> bool:
        if _client_init_debug.get(False):
            return True
        hub = Hub.current
        if hub is not None and hub.client is not None:
            return hub.client.options["debug"]
        return False


def init_debug_support() -> None:
    if not logger.handlers:
        configure_logger()
    configure_debug_hub()


def configure_logger() -> None:
    _handler = logging.StreamHandler(sys.stderr)
    _handler.setFormatter(logging.Formatter(" [flare] %(levelname)s: %(message)s"))
    logger.addHandler(_handler)
    logger.setLevel(logging.DEBUG)
    logger.addFilter(_HubBasedClientFilter())


def configure_debug_hub() -> None:
    def _get_debug_hub() -> "Hub":
        return Hub.current

    utils._get_debug_hub = _get_debug_hub
