# NOTE: this is the structured logger exposed to users, not the SDK's own
# debug logger (that one lives in `flare_sdk.utils`).
import functools
import time

import flare_sdk
from flare_sdk.utils import capture_internal_exceptions, safe_repr

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Any
    from typing import Dict
    from typing import Tuple

    from flare_sdk._types import LogAttributeValue

OTEL_RANGES = [
    # ((severity level range), severity text)
    ((1, 4), "trace"),
    ((5, 8), "debug"),
    ((9, 12), "info"),
    ((13, 16), "warn"),
    ((17, 20), "error"),
    ((21, 24), "fatal"),
]


class _dict_default_key(dict):  # type: ignore[type-arg]
    """dict that returns the key if missing."""

    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def _capture_log(
    severity_text: str, severity_number: int, template: str, **kwargs: "Any"
) -> None:
    body = template
    attrs: "Dict[str, LogAttributeValue]" = {}
    if "attributes" in kwargs:
        attrs.update(kwargs.pop("attributes"))
    for k, v in kwargs.items():
        attrs["flare.message.parameter.%s" % k] = v
    if kwargs:
        # only attach the template if there are parameters
        attrs["flare.message.template"] = template

        with capture_internal_exceptions():
            body = template.format_map(_dict_default_key(kwargs))

    attrs = {
        k: v if isinstance(v, (str, bool, float, int)) else safe_repr(v)
        for k, v in attrs.items()
    }

    flare_sdk.Hub.current.capture_log(
        {
            "severity_text": severity_text,
            "severity_number": severity_number,
            "attributes": attrs,
            "body": body,
            "time_unix_nano": time.time_ns(),
            "trace_id": None,
        }
    )


trace = functools.partial(_capture_log, "trace", 1)
debug = functools.partial(_capture_log, "debug", 5)
info = functools.partial(_capture_log, "info", 9)
warning = functools.partial(_capture_log, "warn", 13)
error = functools.partial(_capture_log, "error", 17)
fatal = functools.partial(_capture_log, "fatal", 21)


def otel_severity_text(otel_severity_number: int) -> str:
    for (lower, upper), severity in OTEL_RANGES:
        if lower <= otel_severity_number <= upper:
            return severity

    return "default"


def log_level_to_otel(level: int, mapping: "Dict[Any, int]") -> "Tuple[int, str]":
    for py_level, otel_severity_number in sorted(mapping.items(), reverse=True):
        if level >= py_level:
            return otel_severity_number, otel_severity_text(otel_severity_number)

    return 0, "default"
