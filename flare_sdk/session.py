import uuid
from datetime import datetime

from flare_sdk.envelope import Item, PayloadRef
from flare_sdk.utils import datetime_utcnow, format_timestamp

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Optional
    from typing import Union
    from typing import Any
    from typing import Dict

    from flare_sdk._types import Event, SessionStatus


def _minute_trunc(ts: "datetime") -> "datetime":
    return ts.replace(second=0, microsecond=0)


def _make_uuid(
    val: "Union[str, uuid.UUID]",
) -> "uuid.UUID":
    if isinstance(val, uuid.UUID):
        return val
    return uuid.UUID(val)


def _is_crash(event: "Event") -> bool:
    exceptions = (event.get("exception") or {}).get("values") or ()
    for exception in exceptions:
        mechanism = exception.get("mechanism") or {}
        if mechanism.get("handled") is False:
            return True
    return False


def _is_error(event: "Event") -> bool:
    if event.get("level") in ("error", "fatal"):
        return True
    return bool((event.get("exception") or {}).get("values"))


class Session:
    """A release health session.

    Status moves from ``ok`` to one of ``exited``, ``crashed`` or
    ``abnormal`` exactly once. Every change marks the session dirty; an
    update is only emitted for a dirty session. The first emitted update
    carries ``init: true``.
    """

    def __init__(
        self,
        sid: "Optional[Union[str, uuid.UUID]]" = None,
        did: "Optional[str]" = None,
        timestamp: "Optional[datetime]" = None,
        started: "Optional[datetime]" = None,
        duration: "Optional[float]" = None,
        status: "Optional[SessionStatus]" = None,
        release: "Optional[str]" = None,
        environment: "Optional[str]" = None,
        user_agent: "Optional[str]" = None,
        ip_address: "Optional[str]" = None,
        errors: "Optional[int]" = None,
        user: "Optional[Any]" = None,
        session_mode: str = "application",
    ) -> None:
        if sid is None:
            sid = uuid.uuid4()
        if started is None:
            started = datetime_utcnow()
        if status is None:
            status = "ok"
        self.status = status
        self.did: "Optional[str]" = None
        self.started = started
        self.release: "Optional[str]" = None
        self.environment: "Optional[str]" = None
        self.duration: "Optional[float]" = None
        self.user_agent: "Optional[str]" = None
        self.ip_address: "Optional[str]" = None
        self.session_mode: str = session_mode
        self.errors = 0
        self.init = True
        self.dirty = True

        self.update(
            sid=sid,
            did=did,
            timestamp=timestamp,
            duration=duration,
            release=release,
            environment=environment,
            user_agent=user_agent,
            ip_address=ip_address,
            errors=errors,
            user=user,
        )

    @property
    def truncated_started(self) -> "datetime":
        return _minute_trunc(self.started)

    def update(
        self,
        sid: "Optional[Union[str, uuid.UUID]]" = None,
        did: "Optional[str]" = None,
        timestamp: "Optional[datetime]" = None,
        started: "Optional[datetime]" = None,
        duration: "Optional[float]" = None,
        status: "Optional[SessionStatus]" = None,
        release: "Optional[str]" = None,
        environment: "Optional[str]" = None,
        user_agent: "Optional[str]" = None,
        ip_address: "Optional[str]" = None,
        errors: "Optional[int]" = None,
        user: "Optional[Any]" = None,
    ) -> None:
        # If a user is supplied we pull some data form it
        if user:
            if ip_address is None:
                ip_address = user.get("ip_address")
            if did is None:
                did = user.get("id") or user.get("email") or user.get("username")

        if sid is not None:
            self.sid = _make_uuid(sid)
        if did is not None:
            self.did = str(did)
        if timestamp is None:
            timestamp = datetime_utcnow()
        self.timestamp = timestamp
        if started is not None:
            self.started = started
        if duration is not None:
            self.duration = duration
        if release is not None:
            self.release = release
        if environment is not None:
            self.environment = environment
        if ip_address is not None:
            self.ip_address = ip_address
        if user_agent is not None:
            self.user_agent = user_agent
        if errors is not None:
            self.errors = errors

        if status is not None:
            self.status = status

        self.dirty = True

    def update_from_event(self, event: "Event") -> None:
        """Counts an error event against the session. Unhandled exceptions
        crash it. Sessions that already ended are left alone."""
        if self.status != "ok":
            return

        if _is_crash(event):
            self.update(status="crashed", errors=self.errors + 1)
        elif _is_error(event):
            self.update(errors=self.errors + 1)

    def close(
        self,
        status: "Optional[SessionStatus]" = None,
    ) -> None:
        if self.status != "ok":
            return
        if status is None or status == "ok":
            status = "exited"
        now = datetime_utcnow()
        self.update(
            status=status,
            timestamp=now,
            duration=(now - self.started).total_seconds(),
        )

    def create_item(self) -> "Optional[Item]":
        """Returns a ``session`` envelope item if the session changed since
        the last one, and marks it as sent."""
        if not self.dirty:
            return None
        payload = self.to_json()
        self.init = False
        self.dirty = False
        return Item(payload=PayloadRef(json=payload), type="session")

    def get_json_attrs(
        self,
        with_user_info: "Optional[bool]" = True,
    ) -> "Any":
        attrs = {}
        if self.release is not None:
            attrs["release"] = self.release
        if self.environment is not None:
            attrs["environment"] = self.environment
        if with_user_info:
            if self.ip_address is not None:
                attrs["ip_address"] = self.ip_address
            if self.user_agent is not None:
                attrs["user_agent"] = self.user_agent
        return attrs

    def to_json(self) -> "Any":
        rv: "Dict[str, Any]" = {
            "sid": str(self.sid),
            "init": self.init,
            "started": format_timestamp(self.started),
            "timestamp": format_timestamp(self.timestamp),
            "status": self.status,
            "errors": self.errors,
        }
        if self.did is not None:
            rv["did"] = self.did
        if self.duration is not None:
            rv["duration"] = self.duration
        attrs = self.get_json_attrs()
        if attrs:
            rv["attrs"] = attrs
        return rv
