from collections import deque
from copy import copy
from functools import wraps

from flare_sdk.attachments import Attachment
from flare_sdk.utils import logger, capture_internal_exceptions

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Any
    from typing import Callable
    from typing import Deque
    from typing import Dict
    from typing import List
    from typing import Optional
    from typing import TypeVar

    from flare_sdk._types import (
        Breadcrumb,
        Event,
        EventProcessor,
        Hint,
    )
    from flare_sdk.session import Session

    F = TypeVar("F", bound=Callable[..., Any])


def _attr_setter(fn: "Any") -> "Any":
    return property(fset=fn, doc=fn.__doc__)


def _merge(
    base: "Dict[str, Any]", override: "Optional[Dict[str, Any]]"
) -> "Dict[str, Any]":
    rv = dict(base)
    if override:
        rv.update(override)
    return rv


def _disable_capture(fn: "F") -> "F":
    @wraps(fn)
    def wrapper(self: "Any", *args: "Any", **kwargs: "Any") -> "Any":
        if not self._should_capture:
            return
        try:
            self._should_capture = False
            return fn(self, *args, **kwargs)
        finally:
            self._should_capture = True

    return wrapper  # type: ignore


class Scope:
    """The scope holds extra information that should be sent with all
    events that belong to it.

    Scopes live on the hub's stack. Pushing a scope copies the current one,
    and a copy never shares a mutable container with its original, so
    changes made inside a pushed scope disappear when it is popped.
    """

    __slots__ = (
        "_level",
        "_fingerprint",
        "_transaction",
        "_user",
        "_tags",
        "_contexts",
        "_extras",
        "_breadcrumbs",
        "_event_processors",
        "_attachments",
        "_should_capture",
        "_span",
        "_session",
    )

    def __init__(self) -> None:
        self._event_processors: "List[EventProcessor]" = []
        self.clear()

    def clear(self) -> None:
        """Clears the entire scope."""
        self._level: "Optional[str]" = None
        self._fingerprint: "Optional[List[str]]" = None
        self._transaction: "Optional[str]" = None
        self._user: "Optional[Dict[str, Any]]" = None

        self._tags: "Dict[str, Any]" = {}
        self._contexts: "Dict[str, Dict[str, Any]]" = {}
        self._extras: "Dict[str, Any]" = {}
        self._attachments: "List[Attachment]" = []

        self.clear_breadcrumbs()
        self._should_capture = True

        self._span: "Optional[Any]" = None
        self._session: "Optional[Session]" = None

    def __copy__(self) -> "Scope":
        """
        Returns a copy of this scope.
        This also creates a copy of all referenced data structures.
        """
        rv: "Scope" = object.__new__(self.__class__)

        rv._level = self._level
        rv._fingerprint = self._fingerprint
        rv._transaction = self._transaction
        rv._user = copy(self._user)

        rv._tags = self._tags.copy()
        rv._contexts = {k: dict(v) for k, v in self._contexts.items()}
        rv._extras = self._extras.copy()

        rv._breadcrumbs = copy(self._breadcrumbs)
        rv._event_processors = self._event_processors.copy()
        rv._attachments = self._attachments.copy()

        rv._should_capture = self._should_capture
        rv._span = self._span
        rv._session = self._session

        return rv

    @_attr_setter
    def level(self, value: "Optional[str]") -> None:
        """When set this is used as the level of events without one."""
        self._level = value

    def set_level(self, value: "Optional[str]") -> None:
        """Sets the level for the scope."""
        self._level = value

    @_attr_setter
    def fingerprint(self, value: "Optional[List[str]]") -> None:
        """When set this is used as the fingerprint of events without one."""
        self._fingerprint = value

    @property
    def transaction(self) -> "Optional[str]":
        """The name of the transaction events on this scope belong to."""
        return self._transaction

    @transaction.setter
    def transaction(self, value: "Optional[str]") -> None:
        self._transaction = value

    @_attr_setter
    def user(self, value: "Optional[Dict[str, Any]]") -> None:
        """When set a specific user is bound to the scope."""
        self.set_user(value)

    def set_user(self, value: "Optional[Dict[str, Any]]") -> None:
        """Sets a user for the scope. The running session picks it up too."""
        self._user = value
        session = self._session
        if session is not None and value:
            session.update(user=value)

    @property
    def span(self) -> "Optional[Any]":
        """The active span. Anything with a `get_trace_context()` method."""
        return self._span

    @span.setter
    def span(self, span: "Optional[Any]") -> None:
        self._span = span

    @property
    def session(self) -> "Optional[Session]":
        return self._session

    @session.setter
    def session(self, session: "Optional[Session]") -> None:
        self._session = session

    def set_tag(self, key: str, value: "Any") -> None:
        """Sets a tag for a key to a specific value."""
        self._tags[key] = value

    def set_tags(self, tags: "Dict[str, Any]") -> None:
        """Sets multiple tags at once."""
        self._tags.update(tags)

    def remove_tag(self, key: str) -> None:
        """Removes a specific tag."""
        self._tags.pop(key, None)

    def set_context(self, key: str, value: "Dict[str, Any]") -> None:
        """Binds a context at a certain key to a specific value."""
        self._contexts[key] = value

    def remove_context(self, key: str) -> None:
        """Removes a context."""
        self._contexts.pop(key, None)

    def set_extra(self, key: str, value: "Any") -> None:
        """Sets an extra key to a specific value."""
        self._extras[key] = value

    def remove_extra(self, key: str) -> None:
        """Removes a specific extra key."""
        self._extras.pop(key, None)

    def clear_breadcrumbs(self) -> None:
        """Clears breadcrumb buffer."""
        self._breadcrumbs: "Deque[Breadcrumb]" = deque()

    def add_breadcrumb(self, crumb: "Breadcrumb", max_breadcrumbs: int) -> None:
        """Appends a finished breadcrumb and drops the oldest ones beyond
        `max_breadcrumbs`. Hooks are run by the hub, not here."""
        self._breadcrumbs.append(crumb)
        while len(self._breadcrumbs) > max(max_breadcrumbs, 0):
            self._breadcrumbs.popleft()

    def add_attachment(
        self,
        bytes: "Optional[bytes]" = None,
        filename: "Optional[str]" = None,
        path: "Optional[str]" = None,
        content_type: "Optional[str]" = None,
    ) -> None:
        """Adds an attachment to future events sent from this scope."""
        self._attachments.append(
            Attachment(
                bytes=bytes,
                path=path,
                filename=filename,
                content_type=content_type,
            )
        )

    def clear_attachments(self) -> None:
        self._attachments = []

    def add_event_processor(
        self,
        func: "EventProcessor",
    ) -> None:
        """Register a scope local event processor on the scope.

        :param func: This function behaves like `before_send.`
        """
        if len(self._event_processors) > 20:
            logger.warning(
                "Too many event processors on scope! Clearing list to free up some memory: %r",
                self._event_processors,
            )
            del self._event_processors[:]

        self._event_processors.append(func)

    def _apply_level_to_event(self, event: "Event") -> None:
        if event.get("level") is None and self._level is not None:
            event["level"] = self._level

    def _apply_breadcrumbs_to_event(self, event: "Event") -> None:
        if not self._breadcrumbs:
            return
        crumbs = event.get("breadcrumbs")
        if isinstance(crumbs, dict):
            own = list(crumbs.get("values") or ())
        else:
            own = list(crumbs or ())
        event["breadcrumbs"] = {"values": list(self._breadcrumbs) + own}

    def _apply_user_to_event(self, event: "Event") -> None:
        if event.get("user") is None and self._user is not None:
            event["user"] = self._user

    def _apply_transaction_name_to_event(self, event: "Event") -> None:
        if event.get("transaction") is None and self._transaction is not None:
            event["transaction"] = self._transaction

    def _apply_fingerprint_to_event(self, event: "Event") -> None:
        if event.get("fingerprint") is None and self._fingerprint is not None:
            event["fingerprint"] = self._fingerprint

    def _apply_extra_to_event(self, event: "Event") -> None:
        if self._extras:
            event["extra"] = _merge(self._extras, event.get("extra"))

    def _apply_tags_to_event(self, event: "Event") -> None:
        if self._tags:
            event["tags"] = _merge(self._tags, event.get("tags"))

    def _apply_contexts_to_event(self, event: "Event") -> None:
        if self._contexts:
            event["contexts"] = _merge(self._contexts, event.get("contexts"))

        # Add "trace" context
        span = self._span
        if span is not None and hasattr(span, "get_trace_context"):
            contexts = event.setdefault("contexts", {})
            if contexts.get("trace") is None:
                with capture_internal_exceptions():
                    contexts["trace"] = span.get_trace_context()

    def _drop(self, cause: "Any", ty: str) -> "Optional[Any]":
        logger.debug("%s (%s) dropped event", ty, cause)
        return None

    def run_event_processors(self, event: "Event", hint: "Hint") -> "Optional[Event]":
        """
        Runs the event processors on the event in registration order and
        returns the modified event, or `None` once one of them drops it.
        """
        for event_processor in self._event_processors:
            new_event = event
            with capture_internal_exceptions():
                new_event = event_processor(event, hint)
            if new_event is None:
                return self._drop(event_processor, "event processor")
            event = new_event

        return event

    @_disable_capture
    def apply_to_event(
        self,
        event: "Event",
        hint: "Hint",
    ) -> "Optional[Event]":
        """Applies the information contained on the scope to the given event.

        Scope values only fill in what the event does not set itself. Tags,
        extra and contexts are merged key by key with the event's own values
        taking precedence, and the scope's breadcrumbs go in front of the
        event's own.
        """
        # put all attachments into the hint. This lets callbacks play around
        # with attachments. We also later pull this out of the hint when we
        # create the envelope.
        attachments_to_send = hint.get("attachments") or []
        attachments_to_send.extend(self._attachments)
        hint["attachments"] = attachments_to_send

        self._apply_level_to_event(event)
        self._apply_fingerprint_to_event(event)
        self._apply_user_to_event(event)
        self._apply_transaction_name_to_event(event)
        self._apply_tags_to_event(event)
        self._apply_extra_to_event(event)
        self._apply_contexts_to_event(event)

        if event.get("type") != "transaction":
            self._apply_breadcrumbs_to_event(event)

        return self.run_event_processors(event, hint)

    def update_session_from_event(self, event: "Event") -> None:
        session = self._session
        if session is not None:
            session.update_from_event(event)

    def __repr__(self) -> str:
        return "<%s id=%s>" % (
            self.__class__.__name__,
            hex(id(self)),
        )
