import os
import random
import uuid
from contextvars import ContextVar

from flare_sdk._log_batcher import LogBatcher
from flare_sdk.consts import (
    DEFAULT_ENVIRONMENT,
    DEFAULT_OPTIONS,
    SDK_INFO,
    ClientConstructor,
)
from flare_sdk.envelope import Envelope
from flare_sdk.integrations import setup_integrations
from flare_sdk.metrics import MetricsAggregator
from flare_sdk.sessions import SessionFlusher
from flare_sdk.transport import make_transport
from flare_sdk.utils import (
    capture_internal_exceptions,
    datetime_utcnow,
    logger,
)

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from datetime import datetime
    from typing import Any
    from typing import Callable
    from typing import Dict
    from typing import Optional
    from typing import Union

    from flare_sdk._types import (
        Event,
        Hint,
        Log,
        MetricTags,
        MetricType,
        MetricValue,
    )
    from flare_sdk.scope import Scope
    from flare_sdk.session import Session


_client_init_debug: "ContextVar[bool]" = ContextVar("client_init_debug")


def _get_options(*args: "Optional[str]", **kwargs: "Any") -> "Dict[str, Any]":
    if args and (isinstance(args[0], str) or args[0] is None):
        endpoint: "Optional[str]" = args[0]
        args = args[1:]
    else:
        endpoint = None

    if len(args) > 1:
        raise TypeError("Only single positional argument is expected")

    rv = dict(DEFAULT_OPTIONS)
    options = dict(*args, **kwargs)
    if endpoint is not None and options.get("endpoint") is None:
        options["endpoint"] = endpoint

    for key, value in options.items():
        if key not in rv:
            raise TypeError("Unknown option %r" % (key,))
        rv[key] = value

    if rv["release"] is None:
        rv["release"] = os.environ.get("FLARE_RELEASE")

    if rv["environment"] is None:
        rv["environment"] = os.environ.get("FLARE_ENVIRONMENT") or DEFAULT_ENVIRONMENT

    if rv["debug"] is None:
        rv["debug"] = False

    return rv


class _Client:
    """The client is internally responsible for capturing the events and
    forwarding them to the configured transport.  It takes the client
    options as keyword arguments and optionally the endpoint as first
    argument.
    """

    def __init__(self, *args: "Any", **kwargs: "Any") -> None:
        old_debug = _client_init_debug.get(False)
        try:
            self.options = options = get_options(*args, **kwargs)
            _client_init_debug.set(options["debug"])
            self.transport = make_transport(options)

            self.session_flusher = SessionFlusher(capture_func=self._capture_envelope)

            self.metrics_aggregator: "Optional[MetricsAggregator]" = None
            if options["enable_metrics"]:
                self.metrics_aggregator = MetricsAggregator(
                    capture_func=self._capture_envelope,
                    default_tags={
                        k: options[k]
                        for k in ("release", "environment")
                        if options[k] is not None
                    },
                )

            self.log_batcher: "Optional[LogBatcher]" = None
            if options["enable_logs"]:
                self.log_batcher = LogBatcher(capture_func=self._capture_envelope)

            self.integrations = setup_integrations(
                options["integrations"], with_defaults=options["default_integrations"]
            )
        finally:
            _client_init_debug.set(old_debug)

    @property
    def endpoint(self) -> "Optional[str]":
        """Returns the configured endpoint."""
        return self.options["endpoint"]

    def _capture_envelope(self, envelope: "Envelope") -> None:
        if self.transport is not None:
            self.transport.send_envelope(envelope)

    def _should_sample(self) -> bool:
        sample_rate = self.options["sample_rate"]
        if sample_rate >= 1.0:
            return True
        return random.random() <= sample_rate

    def _prepare_event(
        self,
        event: "Event",
        hint: "Hint",
        scope: "Optional[Scope]",
    ) -> "Optional[Event]":
        if event.get("event_id") is None:
            event["event_id"] = uuid.uuid4().hex
        if event.get("timestamp") is None:
            event["timestamp"] = datetime_utcnow()

        if scope is not None:
            scope.update_session_from_event(event)
            event_ = scope.apply_to_event(event, hint)
            if event_ is None:
                return None
            event = event_

        for key in "release", "environment", "server_name", "dist":
            if event.get(key) is None and self.options[key] is not None:
                event[key] = str(self.options[key]).strip()
        if event.get("sdk") is None:
            sdk_info = dict(SDK_INFO)
            sdk_info["integrations"] = sorted(self.integrations.keys())
            event["sdk"] = sdk_info

        if event.get("platform") is None:
            event["platform"] = "python"

        before_send = self.options["before_send"]
        if before_send is not None:
            new_event = None
            with capture_internal_exceptions():
                new_event = before_send(event, hint)
            if new_event is None:
                logger.debug("before send dropped event (%s)", event.get("event_id"))
            event = new_event

        return event

    def capture_event(
        self,
        event: "Event",
        hint: "Optional[Hint]" = None,
        scope: "Optional[Scope]" = None,
    ) -> "Optional[str]":
        """Captures an event.

        This takes the ready made event and an optional hint and scope.  The
        hint is internally used to further customize the representation of the
        error.  When provided it's a dictionary of optional information such
        as exception info.

        If the transport is not set nothing happens, otherwise the return
        value of this function will be the ID of the captured event.
        """
        transport = self.transport
        if transport is None:
            return None

        ty = event.get("type")
        is_checkin = ty == "check_in"

        if not is_checkin and not self._should_sample():
            logger.debug("Discarded event because of sample rate")
            return None

        hint = dict(hint or ())
        event_opt = self._prepare_event(event, hint, scope)
        if event_opt is None:
            return None

        event_id = event_opt["event_id"]
        envelope = Envelope(headers={"event_id": event_id})
        if is_checkin:
            envelope.add_checkin(event_opt)
            transport.send_envelope(envelope)
            return event_id
        elif ty == "transaction":
            envelope.add_transaction(event_opt)
        else:
            envelope.add_event(event_opt)

        session = scope.session if scope is not None else None
        if session is not None and session.session_mode == "application":
            item = session.create_item()
            if item is not None:
                envelope.add_item(item)

        for attachment in hint.get("attachments") or ():
            envelope.add_item(attachment.to_envelope_item())

        transport.send_envelope(envelope)
        return event_id

    def capture_envelope(self, envelope: "Envelope") -> None:
        """Sends a ready made envelope through the transport."""
        self._capture_envelope(envelope)

    def capture_session(self, session: "Session") -> None:
        self.session_flusher.add_session(session)

    def capture_log(self, log: "Log", scope: "Optional[Scope]" = None) -> None:
        """Buffers a structured log. Dropped unless `enable_logs` is set."""
        if self.log_batcher is None or self.transport is None:
            return

        attrs = log.setdefault("attributes", {})
        if self.options["release"] is not None:
            attrs.setdefault("flare.release", self.options["release"])
        if self.options["environment"] is not None:
            attrs.setdefault("flare.environment", self.options["environment"])
        if self.options["server_name"] is not None:
            attrs.setdefault("server.address", self.options["server_name"])
        attrs.setdefault("flare.sdk.name", SDK_INFO["name"])
        attrs.setdefault("flare.sdk.version", SDK_INFO["version"])

        span = scope.span if scope is not None else None
        if log.get("trace_id") is None and span is not None:
            with capture_internal_exceptions():
                log["trace_id"] = span.get_trace_context().get("trace_id")

        before_send_log = self.options["before_send_log"]
        if before_send_log is not None:
            new_log = None
            with capture_internal_exceptions():
                new_log = before_send_log(log, {})
            if new_log is None:
                logger.debug("before send log dropped log (%s)", log.get("body"))
                return
            log = new_log

        self.log_batcher.add(log)

    def add_metric(
        self,
        ty: "MetricType",
        key: str,
        value: "MetricValue",
        unit: str = "none",
        tags: "Optional[MetricTags]" = None,
        timestamp: "Optional[Union[float, datetime]]" = None,
    ) -> None:
        if self.metrics_aggregator is not None:
            self.metrics_aggregator.add(ty, key, value, unit, tags, timestamp)

    def close(
        self,
        timeout: "Optional[float]" = None,
        callback: "Optional[Callable[[int, float], None]]" = None,
    ) -> bool:
        """
        Close the client and shut down the transport. Arguments have the same
        semantics as `self.flush()`.
        """
        if self.transport is None:
            return True
        if timeout is None:
            timeout = self.options["shutdown_timeout"]

        self.session_flusher.kill()
        if self.log_batcher is not None:
            self.log_batcher.kill()
        if self.metrics_aggregator is not None:
            self.metrics_aggregator.kill()

        transport = self.transport
        self.transport = None
        return transport.shutdown(timeout, callback)

    def flush(
        self,
        timeout: "Optional[float]" = None,
        callback: "Optional[Callable[[int, float], None]]" = None,
    ) -> bool:
        """
        Wait `timeout` seconds for the current events to be sent. If no
        `timeout` is provided, the `shutdown_timeout` option value is used.

        The `callback` is invoked with two arguments: the number of pending
        events and the configured timeout.
        """
        if self.transport is None:
            return True
        if timeout is None:
            timeout = self.options["shutdown_timeout"]

        self.session_flusher.flush()
        if self.log_batcher is not None:
            self.log_batcher.flush()
        if self.metrics_aggregator is not None:
            self.metrics_aggregator.flush()
        return self.transport.flush(timeout=timeout, callback=callback)

    def __enter__(self) -> "_Client":
        return self

    def __exit__(self, exc_type: "Any", exc_value: "Any", tb: "Any") -> None:
        self.close()


if TYPE_CHECKING:
    # Make mypy, PyCharm and other static analyzers think `get_options` is a
    # type to have nicer autocompletion for params.

    class get_options(ClientConstructor, Dict[str, Any]):  # noqa: N801
        pass

    class Client(ClientConstructor, _Client):
        pass

else:
    # Alias `get_options` for actual usage. Go through the lambda indirection
    # to throw PyCharm off of the weakly typed signature.
    get_options = (lambda: _get_options)()
    Client = (lambda: _Client)()
