import logging
from datetime import datetime, timezone

from flare_sdk.hub import Hub
from flare_sdk.logger import log_level_to_otel
from flare_sdk.utils import (
    capture_internal_exceptions,
    event_from_exception,
    safe_repr,
    safe_str,
)
from flare_sdk.integrations import Integration

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from logging import LogRecord
    from typing import Any
    from typing import Dict
    from typing import Optional

    from flare_sdk._types import Event, Hint

DEFAULT_LEVEL = logging.INFO
DEFAULT_EVENT_LEVEL = logging.ERROR
DEFAULT_LOGS_LEVEL = logging.INFO

SEVERITY_TO_OTEL_SEVERITY = {
    logging.CRITICAL: 21,  # fatal
    logging.ERROR: 17,  # error
    logging.WARNING: 13,  # warn
    logging.INFO: 9,  # info
    logging.DEBUG: 5,  # debug
}

_IGNORED_LOGGERS = {"flare_sdk"}


def ignore_logger(name: str) -> None:
    """This disables recording (both in breadcrumbs and as events) calls to
    a logger of a specific name.  Child loggers are ignored as well.
    """
    _IGNORED_LOGGERS.add(name)


class LoggingIntegration(Integration):
    identifier = "logging"

    def __init__(
        self,
        level: "Optional[int]" = DEFAULT_LEVEL,
        event_level: "Optional[int]" = DEFAULT_EVENT_LEVEL,
        logs_level: "Optional[int]" = DEFAULT_LOGS_LEVEL,
    ) -> None:
        self._handler: "Optional[EventHandler]" = None
        self._breadcrumb_handler: "Optional[BreadcrumbHandler]" = None
        self._logs_handler: "Optional[LogsHandler]" = None

        if logs_level is not None:
            self._logs_handler = LogsHandler(level=logs_level)

        if level is not None:
            self._breadcrumb_handler = BreadcrumbHandler(level=level)

        if event_level is not None:
            self._handler = EventHandler(level=event_level)

    def _handle_record(self, record: "LogRecord") -> None:
        if self._handler is not None and record.levelno >= self._handler.level:
            self._handler.handle(record)

        if (
            self._breadcrumb_handler is not None
            and record.levelno >= self._breadcrumb_handler.level
        ):
            self._breadcrumb_handler.handle(record)

        if (
            self._logs_handler is not None
            and record.levelno >= self._logs_handler.level
        ):
            self._logs_handler.handle(record)

    @staticmethod
    def setup_once() -> None:
        old_callhandlers = logging.Logger.callHandlers

        def flare_patched_callhandlers(self: "Any", record: "LogRecord") -> "Any":
            try:
                return old_callhandlers(self, record)
            finally:
                # Checked here already so the SDK's own log calls never reach
                # the hub.
                if _can_record(record):

                    def _handle(hub: "Hub") -> None:
                        integration = hub.get_integration(LoggingIntegration)
                        if integration is not None:
                            integration._handle_record(record)

                    Hub.current.with_active(_handle)

        logging.Logger.callHandlers = flare_patched_callhandlers  # type: ignore


def _can_record(record: "LogRecord") -> bool:
    for name in _IGNORED_LOGGERS:
        if record.name == name or record.name.startswith(name + "."):
            return False
    return True


def _logging_to_event_level(levelname: str) -> str:
    return {"critical": "fatal"}.get(levelname.lower(), levelname.lower())


COMMON_RECORD_ATTRS = frozenset(
    (
        "args",
        "created",
        "exc_info",
        "exc_text",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "message",
        "module",
        "msecs",
        "msg",
        "name",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack",
        "stack_info",
        "taskName",
        "thread",
        "threadName",
    )
)


def _extra_from_record(record: "LogRecord") -> "Dict[str, Any]":
    return {
        k: v
        for k, v in vars(record).items()
        if k not in COMMON_RECORD_ATTRS and not k.startswith("_")
    }


def _breadcrumb_from_record(record: "LogRecord") -> "Dict[str, Any]":
    return {
        "type": "log",
        "level": _logging_to_event_level(record.levelname),
        "category": record.name,
        "message": record.message,
        "timestamp": datetime.fromtimestamp(record.created, timezone.utc),
        "data": _extra_from_record(record),
    }


class EventHandler(logging.Handler):
    """A logging handler that emits events for records.

    Can be attached to a logger directly when the integration is not used.
    """

    def emit(self, record: "LogRecord") -> "Any":
        with capture_internal_exceptions():
            self.format(record)
            return self._emit(record)

    def _emit(self, record: "LogRecord") -> None:
        if not _can_record(record):
            return
        Hub.current.with_active(lambda hub: self._capture(hub, record))

    def _capture(self, hub: "Hub", record: "LogRecord") -> None:
        event: "Event" = {}
        hint: "Optional[Hint]" = None

        # exc_info might be None or (None, None, None)
        if record.exc_info is not None and record.exc_info[0] is not None:
            event, hint = event_from_exception(
                record.exc_info,  # type: ignore
                mechanism={"type": "logging", "handled": True},
            )

        event["level"] = _logging_to_event_level(record.levelname)
        event["logger"] = record.name
        event["logentry"] = {"message": safe_str(record.msg), "params": record.args}
        event["extra"] = _extra_from_record(record)

        hub.capture_event(event, hint=hint)


class BreadcrumbHandler(logging.Handler):
    """A logging handler that records breadcrumbs for each log record."""

    def emit(self, record: "LogRecord") -> "Any":
        with capture_internal_exceptions():
            self.format(record)
            return self._emit(record)

    def _emit(self, record: "LogRecord") -> None:
        if not _can_record(record):
            return
        Hub.current.with_active(
            lambda hub: hub.add_breadcrumb(
                _breadcrumb_from_record(record), hint={"log_record": record}
            )
        )


def _log_attribute(value: "Any") -> "Any":
    if isinstance(value, (str, bool, float, int)):
        return value
    return safe_repr(value)


class LogsHandler(logging.Handler):
    """A logging handler that turns records into structured logs.

    Records are only forwarded while the bound client has `enable_logs` set.
    """

    def emit(self, record: "LogRecord") -> "Any":
        with capture_internal_exceptions():
            self.format(record)
            if not _can_record(record):
                return
            Hub.current.with_active(lambda hub: self._capture_log(hub, record))

    def _capture_log(self, hub: "Hub", record: "LogRecord") -> None:
        client = hub.client
        if client is None or not client.options["enable_logs"]:
            return

        severity_number, severity_text = log_level_to_otel(
            record.levelno, SEVERITY_TO_OTEL_SEVERITY
        )
        attrs: "Dict[str, Any]" = {"flare.origin": "auto.logger.log"}
        if isinstance(record.msg, str) and record.args:
            attrs["flare.message.template"] = record.msg
            if isinstance(record.args, tuple):
                for i, arg in enumerate(record.args):
                    attrs["flare.message.parameter.%d" % i] = _log_attribute(arg)
            elif isinstance(record.args, dict):
                for key, arg in record.args.items():
                    attrs["flare.message.parameter.%s" % key] = _log_attribute(arg)

        attrs["logger.name"] = record.name
        attrs["code.file.path"] = record.pathname
        attrs["code.line.number"] = record.lineno
        attrs["code.function.name"] = record.funcName
        if record.thread is not None:
            attrs["thread.id"] = record.thread
        if record.threadName is not None:
            attrs["thread.name"] = record.threadName
        if record.process is not None:
            attrs["process.pid"] = record.process
        for key, value in _extra_from_record(record).items():
            attrs[key] = _log_attribute(value)

        hub.capture_log(
            {
                "severity_text": severity_text,
                "severity_number": severity_number,
                "body": record.message,
                "attributes": attrs,
                "time_unix_nano": int(record.created * 1e9),
                "trace_id": None,
            }
        )
