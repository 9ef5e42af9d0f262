from flare_sdk.hub import Hub, init
from flare_sdk.scope import Scope
from flare_sdk.transport import Transport, HttpTransport
from flare_sdk.client import Client
from flare_sdk.envelope import Envelope, Item, PayloadRef

from flare_sdk.api import *  # noqa

from flare_sdk.consts import VERSION  # noqa

from flare_sdk import logger  # noqa
from flare_sdk import metrics  # noqa
from flare_sdk.crons import capture_checkin  # noqa

__all__ = [  # noqa
    "Hub",
    "Scope",
    "Client",
    "Transport",
    "HttpTransport",
    "Envelope",
    "Item",
    "PayloadRef",
    "init",
    "integrations",
    "logger",
    "metrics",
    "capture_checkin",
    # From flare_sdk.api
    "add_breadcrumb",
    "capture_event",
    "capture_exception",
    "capture_message",
    "configure_scope",
    "end_session",
    "flush",
    "last_event_id",
    "push_scope",
    "run",
    "set_context",
    "set_extra",
    "set_tag",
    "set_user",
    "start_session",
    "with_scope",
]

# Initialize the debug support after everything is loaded
from flare_sdk.debug import init_debug_support

init_debug_support()
del init_debug_support
