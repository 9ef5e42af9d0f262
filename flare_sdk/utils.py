import json
import linecache
import logging
import os
import sys
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from types import FrameType, TracebackType
    from typing import Any
    from typing import Dict
    from typing import Iterator
    from typing import List
    from typing import Optional
    from typing import Set
    from typing import Tuple
    from typing import Union

    import flare_sdk

    from flare_sdk._types import ExcInfo, Event, Hint


# The logger is created here but initialized in the debug support module
logger = logging.getLogger("flare_sdk.errors")

MAX_STRING_LENGTH = 512


def _get_debug_hub() -> "Optional[flare_sdk.Hub]":
    # This function is replaced by debug.py
    pass


@contextmanager
def capture_internal_exceptions() -> "Iterator[None]":
    try:
        yield
    except Exception:
        hub = _get_debug_hub()
        if hub is not None:
            hub._capture_internal_exception(sys.exc_info())


def datetime_utcnow() -> "datetime":
    return datetime.now(timezone.utc)


def format_timestamp(value: "datetime") -> str:
    """Formats a timestamp in RFC 3339 format, always in UTC."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _json_default(value: "Any") -> "Any":
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    return safe_repr(value)


def json_dumps(data: "Any") -> bytes:
    """Serialize data into a compact JSON representation encoded as UTF-8."""
    return json.dumps(
        data, separators=(",", ":"), ensure_ascii=False, default=_json_default
    ).encode("utf-8")


def get_type_name(cls: "Optional[type]") -> "Optional[str]":
    return getattr(cls, "__qualname__", None) or getattr(cls, "__name__", None)


def get_type_module(cls: "Optional[type]") -> "Optional[str]":
    mod = getattr(cls, "__module__", None)
    if mod not in (None, "builtins", "__builtins__"):
        return mod
    return None


def safe_str(value: "Any") -> str:
    try:
        return str(value)
    except Exception:
        return safe_repr(value)


def safe_repr(value: "Any") -> str:
    try:
        return repr(value)
    except Exception:
        return "<broken repr>"


def slim_string(value: str, length: int = MAX_STRING_LENGTH) -> str:
    if not value:
        return value
    if len(value) > length:
        return value[: length - 3] + "..."
    return value[:length]


def should_hide_frame(frame: "FrameType") -> bool:
    try:
        mod = frame.f_globals["__name__"]
        if mod.startswith("flare_sdk."):
            return True
    except (AttributeError, KeyError):
        pass

    for flag_name in "__traceback_hide__", "__tracebackhide__":
        try:
            if frame.f_locals[flag_name]:
                return True
        except Exception:
            pass

    return False


def iter_stacks(tb: "Optional[TracebackType]") -> "Iterator[TracebackType]":
    tb_: "Optional[TracebackType]" = tb
    while tb_ is not None:
        if not should_hide_frame(tb_.tb_frame):
            yield tb_
        tb_ = tb_.tb_next


def serialize_frame(
    frame: "FrameType", tb_lineno: "Optional[int]" = None
) -> "Dict[str, Any]":
    abs_path = frame.f_code.co_filename
    function = frame.f_code.co_name
    module = frame.f_globals.get("__name__")

    if tb_lineno is None:
        tb_lineno = frame.f_lineno

    rv: "Dict[str, Any]" = {
        "filename": os.path.basename(abs_path) if abs_path else None,
        "abs_path": os.path.abspath(abs_path) if abs_path else None,
        "function": function or "<unknown>",
        "module": module,
        "lineno": tb_lineno,
    }
    line = linecache.getline(abs_path, tb_lineno).strip("\r\n")
    if line:
        rv["context_line"] = slim_string(line)
    return rv


def stacktrace_from_traceback(
    tb: "Optional[TracebackType]" = None,
) -> "Dict[str, List[Dict[str, Any]]]":
    return {
        "frames": [
            serialize_frame(tb.tb_frame, tb_lineno=tb.tb_lineno)
            for tb in iter_stacks(tb)
        ]
    }


def single_exception_from_error_tuple(
    exc_type: "Optional[type]",
    exc_value: "Optional[BaseException]",
    tb: "Optional[TracebackType]",
    mechanism: "Optional[Dict[str, Any]]" = None,
) -> "Dict[str, Any]":
    rv: "Dict[str, Any]" = {
        "module": get_type_module(exc_type),
        "type": get_type_name(exc_type),
        "value": safe_str(exc_value),
        "stacktrace": stacktrace_from_traceback(tb),
    }
    if mechanism is not None:
        rv["mechanism"] = mechanism
    return rv


def walk_exception_chain(exc_info: "ExcInfo") -> "Iterator[ExcInfo]":
    exc_type, exc_value, tb = exc_info

    seen_exceptions = []
    seen_exception_ids: "Set[int]" = set()

    while (
        exc_type is not None
        and exc_value is not None
        and id(exc_value) not in seen_exception_ids
    ):
        yield exc_type, exc_value, tb

        # Keep a reference so that the `id` is not reused for another object.
        seen_exceptions.append(exc_value)
        seen_exception_ids.add(id(exc_value))

        if exc_value.__suppress_context__:
            cause = exc_value.__cause__
        else:
            cause = exc_value.__context__
        if cause is None:
            break
        exc_type = type(cause)
        exc_value = cause
        tb = getattr(cause, "__traceback__", None)


def exceptions_from_error_tuple(
    exc_info: "ExcInfo",
    mechanism: "Optional[Dict[str, Any]]" = None,
) -> "List[Dict[str, Any]]":
    rv = []
    for exc_type, exc_value, tb in walk_exception_chain(exc_info):
        rv.append(single_exception_from_error_tuple(exc_type, exc_value, tb, mechanism))

    rv.reverse()

    return rv


def exc_info_from_error(error: "Union[BaseException, ExcInfo]") -> "ExcInfo":
    if isinstance(error, tuple) and len(error) == 3:
        exc_type, exc_value, tb = error
    elif isinstance(error, BaseException):
        tb = getattr(error, "__traceback__", None)
        if tb is not None:
            exc_type = type(error)
            exc_value = error
        else:
            exc_type, exc_value, tb = sys.exc_info()
            if exc_value is not error:
                tb = None
                exc_value = error
                exc_type = type(error)
    else:
        raise ValueError("Expected an exception or an exc_info tuple, got %r" % (error,))

    return exc_type, exc_value, tb


def event_hint_with_exc_info(
    exc_info: "Optional[ExcInfo]" = None,
) -> "Dict[str, Optional[ExcInfo]]":
    """Creates a hint with the exc info filled in."""
    if exc_info is None:
        exc_info = sys.exc_info()
    else:
        exc_info = exc_info_from_error(exc_info)
    if exc_info[0] is None:
        exc_info = None
    return {"exc_info": exc_info}


def event_from_exception(
    exc_info: "Union[BaseException, ExcInfo]",
    mechanism: "Optional[Dict[str, Any]]" = None,
) -> "Tuple[Event, Hint]":
    exc_info = exc_info_from_error(exc_info)
    hint = event_hint_with_exc_info(exc_info)
    return (
        {
            "level": "error",
            "exception": {"values": exceptions_from_error_tuple(exc_info, mechanism)},
        },
        hint,
    )
