import itertools
from typing import TYPE_CHECKING

DEFAULT_MAX_BREADCRUMBS = 100
DEFAULT_QUEUE_SIZE = 30
DEFAULT_SHUTDOWN_TIMEOUT = 2.0
DEFAULT_ENVIRONMENT = "production"

if TYPE_CHECKING:
    import flare_sdk

    from typing import Optional
    from typing import Callable
    from typing import Union
    from typing import Type
    from typing import Any
    from typing import Sequence

    from flare_sdk._types import (
        BreadcrumbProcessor,
        EventProcessor,
        Hint,
        Log,
        SessionMode,
    )


class ClientConstructor:

    def __init__(
        self,
        endpoint=None,  # type: Optional[str]
        *,
        auth_token=None,  # type: Optional[str]
        max_breadcrumbs=DEFAULT_MAX_BREADCRUMBS,  # type: int
        release=None,  # type: Optional[str]
        environment=None,  # type: Optional[str]
        server_name=None,  # type: Optional[str]
        dist=None,  # type: Optional[str]
        shutdown_timeout=DEFAULT_SHUTDOWN_TIMEOUT,  # type: float
        integrations=[],  # type: Sequence[flare_sdk.integrations.Integration]  # noqa: B006
        default_integrations=True,  # type: bool
        transport=None,  # type: Optional[Union[flare_sdk.transport.Transport, Type[flare_sdk.transport.Transport], Callable[[flare_sdk.envelope.Envelope], None]]]
        transport_queue_size=DEFAULT_QUEUE_SIZE,  # type: int
        sample_rate=1.0,  # type: float
        http_proxy=None,  # type: Optional[str]
        ca_certs=None,  # type: Optional[str]
        before_send=None,  # type: Optional[EventProcessor]
        before_breadcrumb=None,  # type: Optional[BreadcrumbProcessor]
        debug=None,  # type: Optional[bool]
        session_mode="application",  # type: SessionMode
        enable_metrics=True,  # type: bool
        enable_logs=False,  # type: bool
        before_send_log=None,  # type: Optional[Callable[[Log, Hint], Optional[Log]]]
    ):
        # type: (...) -> None
        """Initialize the Flare SDK with the given parameters. All parameters described here can be used in a call to `flare_sdk.init()`.

        :param endpoint: The URL envelopes are posted to. Without an endpoint
            (and without an explicit `transport`) the SDK does not send
            anything.

        :param auth_token: Opaque token sent verbatim in the `X-Flare-Auth`
            request header.

        :param max_breadcrumbs: The maximum number of breadcrumbs kept on a
            scope. Older breadcrumbs are dropped first.

        :param release: The release of the application. Falls back to the
            `FLARE_RELEASE` environment variable.

        :param environment: The environment of the application. Falls back
            to the `FLARE_ENVIRONMENT` environment variable, then to
            `production`.

        :param sample_rate: A number between `0` and `1` controlling the
            fraction of error events that are sent.

        :param before_send: Called with every event and its hint right before
            it is sent. Returning `None` drops the event.

        :param before_breadcrumb: Called with every breadcrumb and its hint
            before it is added to the scope. Returning `None` drops it.

        :param transport: A `Transport` instance or subclass, or a callable
            that receives every `Envelope`.

        :param transport_queue_size: Capacity of the transport's send queue.
            Envelopes submitted to a full queue are dropped.

        :param session_mode: `application` sends every session update,
            `request` aggregates closed sessions per minute.

        :param enable_metrics: Whether `flare_sdk.metrics` calls are
            aggregated and sent.

        :param enable_logs: Whether structured logs from `flare_sdk.logger`
            and the logging integration are batched and sent. Off by default.

        :param before_send_log: Called with every structured log and a hint
            before it is buffered. Returning `None` drops the log.

        :param debug: Turns debug logging of the SDK on.
        """
        pass


def _get_default_options():
    # type: () -> dict[str, Any]
    import inspect

    a = inspect.getfullargspec(ClientConstructor.__init__)
    defaults = a.defaults or ()
    kwonlydefaults = a.kwonlydefaults or {}

    return dict(
        itertools.chain(
            zip(a.args[-len(defaults) :], defaults),
            kwonlydefaults.items(),
        )
    )


DEFAULT_OPTIONS = _get_default_options()
del _get_default_options


VERSION = "0.4.0"

SDK_INFO = {
    "name": "flare.python",
    "version": VERSION,
    "packages": [{"name": "pypi:flare-sdk", "version": VERSION}],
}
