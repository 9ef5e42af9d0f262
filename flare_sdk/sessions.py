from contextlib import contextmanager

import flare_sdk
from flare_sdk._batcher import Batcher
from flare_sdk.envelope import Item, PayloadRef
from flare_sdk.utils import format_timestamp

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Any
    from typing import Callable
    from typing import Dict
    from typing import Generator
    from typing import List
    from typing import Optional
    from typing import Tuple

    from flare_sdk._types import SessionMode
    from flare_sdk.envelope import Envelope
    from flare_sdk.session import Session


TERMINAL_SESSION_STATES = ("exited", "abnormal", "crashed")


@contextmanager
def auto_session_tracking(
    hub: "Optional[flare_sdk.Hub]" = None,
    session_mode: "Optional[SessionMode]" = None,
) -> "Generator[None, None, None]":
    """Starts and stops a session automatically around a block."""
    if hub is None:
        hub = flare_sdk.Hub.current
    hub.start_session(session_mode=session_mode)
    try:
        yield
    finally:
        hub.end_session()


def make_aggregate_envelope(
    aggregate_states: "Dict[Any, Dict[str, Any]]", attrs: "Any"
) -> "Dict[str, Any]":
    return {"attrs": dict(attrs), "aggregates": list(aggregate_states.values())}


class SessionFlusher(Batcher[Item]):
    """Sends session updates.

    Updates of application mode sessions each become a ``session`` item.
    Closed request mode sessions are counted per started minute and
    distinct id, and each flush sends the counts as ``sessions`` items.
    """

    def __init__(
        self,
        capture_func: "Callable[[Envelope], None]",
    ) -> None:
        Batcher.__init__(self, capture_func)
        self.pending_aggregates: "Dict[Tuple[Any, ...], Dict[Any, Dict[str, Any]]]" = {}

    def add_session(self, session: "Session") -> None:
        if session.session_mode == "request":
            self.aggregate_session(session)
            return

        item = session.create_item()
        if item is not None:
            self.add(item)

    def aggregate_session(self, session: "Session") -> None:
        if session.status not in TERMINAL_SESSION_STATES:
            return
        if not self._ensure_thread():
            return

        with self._lock:
            attrs = session.get_json_attrs(with_user_info=False)
            primary_key = tuple(sorted(attrs.items()))
            secondary_key = (session.truncated_started, session.did)
            states = self.pending_aggregates.setdefault(primary_key, {})
            state = states.setdefault(secondary_key, {})

            if "started" not in state:
                state["started"] = format_timestamp(session.truncated_started)
            if session.did is not None:
                state["did"] = session.did

            if session.status == "exited" and session.errors > 0:
                status = "errored"
            else:
                status = session.status
            state[status] = state.get(status, 0) + 1

        session.dirty = False

    def _take_buffer(self) -> "List[Item]":
        items = Batcher._take_buffer(self)
        pending_aggregates = self.pending_aggregates
        self.pending_aggregates = {}
        for attrs, states in pending_aggregates.items():
            items.append(
                Item(
                    payload=PayloadRef(json=make_aggregate_envelope(states, attrs)),
                    type="sessions",
                )
            )
        return items

    def _add_to_envelope(self, envelope: "Envelope", items: "List[Item]") -> None:
        for item in items:
            envelope.add_item(item)
