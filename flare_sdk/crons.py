import uuid

import flare_sdk
from flare_sdk.utils import logger

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Optional

    from flare_sdk._types import Event, MonitorStatus


CHECKIN_STATUSES = ("in_progress", "ok", "error")


def _create_check_in_event(
    monitor_slug: "Optional[str]" = None,
    check_in_id: "Optional[str]" = None,
    status: "Optional[MonitorStatus]" = None,
    duration_s: "Optional[float]" = None,
) -> "Event":
    client = flare_sdk.Hub.current.client
    options = client.options if client is not None else {}
    check_in_id = check_in_id or uuid.uuid4().hex

    if status is not None and status not in CHECKIN_STATUSES:
        raise ValueError("Invalid check-in status %r" % (status,))

    check_in: "Event" = {
        "type": "check_in",
        "monitor_slug": monitor_slug,
        "check_in_id": check_in_id,
        "status": status,
        "duration": duration_s,
        "environment": options.get("environment", None),
        "release": options.get("release", None),
    }

    return check_in


def capture_checkin(
    monitor_slug: "Optional[str]" = None,
    check_in_id: "Optional[str]" = None,
    status: "Optional[MonitorStatus]" = None,
    duration: "Optional[float]" = None,
) -> str:
    """Reports the state of a scheduled job. Returns the check-in id, which
    is reused to report the end of a job started with ``in_progress``."""
    check_in_event = _create_check_in_event(
        monitor_slug=monitor_slug,
        check_in_id=check_in_id,
        status=status,
        duration_s=duration,
    )

    flare_sdk.Hub.current.capture_event(check_in_event)

    logger.debug(
        "[Crons] Captured check-in (%s): %s -> %s",
        check_in_event.get("check_in_id"),
        check_in_event.get("monitor_slug"),
        check_in_event.get("status"),
    )

    return check_in_event["check_in_id"]
