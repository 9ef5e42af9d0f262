import sys
from contextlib import contextmanager
from contextvars import ContextVar, Token
from copy import copy

from flare_sdk._rwlock import RWLock
from flare_sdk.client import Client
from flare_sdk.scope import Scope
from flare_sdk.session import Session
from flare_sdk.stack import Stack
from flare_sdk.utils import (
    capture_internal_exceptions,
    datetime_utcnow,
    event_from_exception,
    exc_info_from_error,
    logger,
)

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Any
    from typing import Callable
    from typing import Dict
    from typing import Generator
    from typing import List
    from typing import Optional
    from typing import Tuple
    from typing import Type
    from typing import TypeVar
    from typing import Union

    from flare_sdk._types import (
        Breadcrumb,
        BreadcrumbHint,
        BreadcrumbSource,
        Event,
        ExcInfo,
        Hint,
        Log,
        SessionMode,
    )
    from flare_sdk.consts import ClientConstructor
    from flare_sdk.integrations import Integration

    T = TypeVar("T")


_local: "ContextVar[Optional[Hub]]" = ContextVar("flare_current_hub")
# Tokens of the hubs entered with `with hub:` in the current context.
_entered: "ContextVar[Tuple[Token[Optional[Hub]], ...]]" = ContextVar(
    "flare_entered_hubs", default=()
)


class ScopeStackError(AssertionError):
    """Raised when pushed scopes are released out of order."""


class _InitGuard:
    def __init__(self, client: "Client") -> None:
        self._client = client

    def __enter__(self) -> "_InitGuard":
        return self

    def __exit__(self, exc_type: "Any", exc_value: "Any", tb: "Any") -> None:
        c = self._client
        if c is not None:
            c.close()


def _init(*args: "Optional[str]", **kwargs: "Any") -> "_InitGuard":
    """Initializes the SDK and optionally integrations.

    This takes the same arguments as the client constructor.
    """
    client = Client(*args, **kwargs)
    Hub.current.bind_client(client)
    return _InitGuard(client)


if TYPE_CHECKING:
    # Make mypy, PyCharm and other static analyzers think `init` is a type to
    # have nicer autocompletion for params.

    class init(ClientConstructor, _InitGuard):  # noqa: N801
        pass

else:
    # Alias `init` for actual usage. Go through the lambda indirection to throw
    # PyCharm off of the weakly typed signature.
    init = (lambda: _init)()


class HubMeta(type):
    @property
    def current(cls) -> "Hub":
        """Returns the current instance of the hub."""
        rv = _local.get(None)
        if rv is None:
            rv = Hub(GLOBAL_HUB)
            _local.set(rv)
        return rv

    @property
    def main(cls) -> "Hub":
        """Returns the main instance of the hub."""
        return GLOBAL_HUB


class ScopeGuard:
    """Releases a pushed scope.

    Leaving the ``with`` block (or calling `pop`) removes the layer again.
    Layers must be released in the reverse order of pushing; releasing a
    guard twice does nothing.
    """

    def __init__(self, hub: "Hub", depth: int, scope: "Scope") -> None:
        self._hub = hub
        self._depth = depth
        self._scope = scope
        self._released = False

    def __enter__(self) -> "Scope":
        return self._scope

    def __exit__(self, exc_type: "Any", exc_value: "Any", tb: "Any") -> None:
        self.pop()

    def pop(self) -> None:
        if self._released:
            return
        self._released = True
        self._hub._pop_scope(self._depth)


def _iter_breadcrumbs(
    crumb: "Optional[BreadcrumbSource]", kwargs: "Dict[str, Any]"
) -> "List[Breadcrumb]":
    if callable(crumb):
        crumb = crumb()
    if crumb is None or isinstance(crumb, dict):
        crumbs = [dict(crumb or (), **kwargs)]
    else:
        crumbs = [dict(c) for c in crumb]
    return [c for c in crumbs if c]


class Hub(metaclass=HubMeta):
    """The hub wraps the concurrency management of the SDK.  Each thread has
    its own hub but the hub might transfer with the flow of execution if
    context vars are available.

    If the hub is used with a with statement it's temporarily activated.
    """

    if TYPE_CHECKING:
        # Mypy doesn't pick up on the metaclass.
        current: "Hub" = None  # type: ignore
        main: "Hub" = None  # type: ignore

    def __init__(
        self,
        client_or_hub: "Optional[Union[Hub, Client]]" = None,
        scope: "Optional[Scope]" = None,
    ) -> None:
        if isinstance(client_or_hub, Hub):
            hub = client_or_hub
            with hub._lock.read():
                client, other_scope = hub._stack.top
            if scope is None:
                scope = copy(other_scope)
        else:
            client = client_or_hub
        if scope is None:
            scope = Scope()

        self._stack = Stack(client, scope)
        self._lock = RWLock()
        self._last_event_id: "Optional[str]" = None

    def __enter__(self) -> "Hub":
        token = _local.set(self)
        _entered.set(_entered.get() + (token,))
        return self

    def __exit__(
        self,
        exc_type: "Optional[type]",
        exc_value: "Optional[BaseException]",
        tb: "Optional[Any]",
    ) -> None:
        tokens = _entered.get()
        _entered.set(tokens[:-1])
        _local.reset(tokens[-1])

    def run(self, callback: "Callable[[], T]") -> "T":
        """Runs a callback in the context of the hub.  Alternatively the
        with statement can be used on the hub directly.
        """
        return run(self, callback)

    def with_active(self, f: "Callable[[Hub], T]") -> "Optional[T]":
        """Calls ``f(hub)`` if a client is bound and the stack is not being
        modified right now. Used by code that can be reached from inside the
        SDK itself, such as logging handlers."""
        with self._lock.try_read() as acquired:
            client = self._stack.top.client if acquired else None
        if client is None:
            return None
        return f(self)

    def get_integration(
        self, name_or_class: "Union[str, Type[Integration]]"
    ) -> "Any":
        """Returns the integration for this hub by name or class.  If there
        is no client bound or the client does not have that integration
        then `None` is returned.
        """
        if isinstance(name_or_class, str):
            integration_name = name_or_class
        elif name_or_class.identifier is not None:
            integration_name = name_or_class.identifier
        else:
            raise ValueError("Integration has no name")

        client = self.client
        if client is not None:
            return client.integrations.get(integration_name)
        return None

    @property
    def client(self) -> "Optional[Client]":
        """Returns the current client on the hub."""
        with self._lock.read():
            return self._stack.top.client

    @property
    def scope(self) -> "Scope":
        """Returns the current scope on the hub."""
        with self._lock.read():
            return self._stack.top.scope

    def last_event_id(self) -> "Optional[str]":
        """Returns the last event ID."""
        return self._last_event_id

    def bind_client(self, new: "Optional[Client]") -> None:
        """Binds a new client to the hub."""
        with self._lock.write():
            self._stack.set_top(new, self._stack.top.scope)

    def capture_event(
        self, event: "Event", hint: "Optional[Hint]" = None
    ) -> "Optional[str]":
        """Captures an event.  The return value is the ID of the event.

        Optionally an event hint dict can be passed that is used by
        processors to extract additional information from it. Typically the
        event hint object would contain exception information.
        """
        with self._lock.read():
            client, scope = self._stack.top
            if client is None:
                return None
            scope = copy(scope)

        rv = None
        with capture_internal_exceptions():
            rv = client.capture_event(event, hint, scope)
        if rv is not None:
            self._last_event_id = rv
        return rv

    def capture_message(
        self, message: str, level: "Optional[str]" = None
    ) -> "Optional[str]":
        """Captures a message.  The message is just a string.  If no level
        is provided the default level is `info`.
        """
        if self.client is None:
            return None
        if level is None:
            level = "info"
        return self.capture_event({"message": message, "level": level})

    def capture_exception(
        self, error: "Optional[Union[BaseException, ExcInfo]]" = None
    ) -> "Optional[str]":
        """Captures an exception.

        The argument passed can be `None` in which case the last exception
        will be reported, otherwise an exception object or an `exc_info`
        tuple.
        """
        if self.client is None:
            return None
        if error is None:
            exc_info = sys.exc_info()
        else:
            exc_info = exc_info_from_error(error)
        if exc_info[0] is None:
            return None

        event, hint = event_from_exception(exc_info)
        try:
            return self.capture_event(event, hint=hint)
        except Exception:
            self._capture_internal_exception(sys.exc_info())

        return None

    def capture_log(self, log: "Log") -> None:
        """Hands a structured log to the client's log batcher."""
        with self._lock.read():
            client, scope = self._stack.top
        if client is None:
            return
        with capture_internal_exceptions():
            client.capture_log(log, scope)

    def _capture_internal_exception(self, exc_info: "Any") -> "Any":
        """Capture an exception that is likely caused by a bug in the SDK
        itself."""
        logger.error("Internal error in flare_sdk", exc_info=exc_info)

    def add_breadcrumb(
        self,
        crumb: "Optional[BreadcrumbSource]" = None,
        hint: "Optional[BreadcrumbHint]" = None,
        **kwargs: "Any"
    ) -> None:
        """Adds a breadcrumb.

        `crumb` is a dictionary, an iterable of dictionaries or a callable
        returning either; keyword arguments are merged into a single crumb.
        `hint` is handed to `before_breadcrumb` alongside each crumb.
        """
        client = self.client
        if client is None:
            logger.info("Dropped breadcrumb because no client bound")
            return

        crumbs: "List[Breadcrumb]" = []
        with capture_internal_exceptions():
            crumbs = _iter_breadcrumbs(crumb, kwargs)
        if not crumbs:
            return

        hint = dict(hint or ())
        before_breadcrumb = client.options["before_breadcrumb"]
        max_breadcrumbs = client.options["max_breadcrumbs"]

        with self._lock.write():
            scope = self._stack.top.scope
            for crumb in crumbs:
                if crumb.get("timestamp") is None:
                    crumb["timestamp"] = datetime_utcnow()
                if crumb.get("type") is None:
                    crumb["type"] = "default"

                if before_breadcrumb is not None:
                    new_crumb = None
                    with capture_internal_exceptions():
                        new_crumb = before_breadcrumb(crumb, hint)
                else:
                    new_crumb = crumb

                if new_crumb is not None:
                    scope.add_breadcrumb(new_crumb, max_breadcrumbs)
                else:
                    logger.info("before breadcrumb dropped breadcrumb (%s)", crumb)

    def push_scope(
        self, callback: "Optional[Callable[[Scope], None]]" = None
    ) -> "Optional[ScopeGuard]":
        """Pushes a new layer on the scope stack. Returns a guard that
        should be used to pop the scope again.  Alternatively a callback
        can be provided that is executed in the context of the scope.
        """
        if callback is not None:
            with self.push_scope() as scope:  # type: ignore
                callback(scope)
            return None

        with self._lock.write():
            self._stack.push()
            depth = self._stack.depth
            scope = self._stack.top.scope
        return ScopeGuard(self, depth, scope)

    def _pop_scope(self, depth: int) -> None:
        with self._lock.write():
            current = self._stack.depth
            self._stack.pop()
        if current != depth:
            raise ScopeStackError(
                "Popped scope out of order: expected depth %d, found %d"
                % (depth, current)
            )

    def with_scope(
        self,
        configure: "Callable[[Scope], None]",
        body: "Callable[[], T]",
    ) -> "T":
        """Runs `body` in a temporary scope prepared by `configure`."""
        with self.push_scope() as scope:  # type: ignore
            configure(scope)
            return body()

    def configure_scope(
        self, callback: "Optional[Callable[[Scope], T]]" = None
    ) -> "Any":
        """Reconfigures the scope.

        The callback (or the ``with`` block) works on a copy of the current
        scope which then replaces it, so events captured concurrently never
        observe a half configured scope. Nothing is configured while no
        client is bound.
        """
        with self._lock.read():
            client, scope = self._stack.top

        if callback is not None:
            if client is None:
                return None
            new_scope = copy(scope)
            rv = callback(new_scope)
            self._replace_scope(new_scope)
            return rv

        @contextmanager
        def inner() -> "Generator[Scope, None, None]":
            if client is None:
                yield Scope()
                return
            new_scope = copy(scope)
            yield new_scope
            self._replace_scope(new_scope)

        return inner()

    def _replace_scope(self, scope: "Scope") -> None:
        with self._lock.write():
            self._stack.set_top(self._stack.top.client, scope)

    def start_session(self, session_mode: "Optional[SessionMode]" = None) -> None:
        """Starts a new session, ending the running one first.

        Sessions are tied to a release; without a client or a configured
        release no session is started. `session_mode` defaults to the
        client's option.
        """
        self.end_session()
        with self._lock.write():
            client, scope = self._stack.top
            if client is None or not client.options["release"]:
                logger.debug("Not starting session: no client or release")
                return
            scope.session = Session(
                release=client.options["release"],
                environment=client.options["environment"],
                user=scope._user,
                session_mode=session_mode or client.options["session_mode"],
            )

    def end_session(self) -> None:
        """Ends the current session if there is one."""
        with self._lock.write():
            client, scope = self._stack.top
            session = scope.session
            scope.session = None

        if session is not None:
            session.close()
            if client is not None:
                client.capture_session(session)

    def flush(
        self,
        timeout: "Optional[float]" = None,
        callback: "Optional[Callable[[int, float], None]]" = None,
    ) -> bool:
        """
        Alias for :py:meth:`flare_sdk.Client.flush`
        """
        client = self.client
        if client is not None:
            return client.flush(timeout=timeout, callback=callback)
        return True

    def __repr__(self) -> str:
        return "<Hub id=%s depth=%d>" % (hex(id(self)), self._stack.depth)


def run(hub: "Hub", f: "Callable[[], T]") -> "T":
    """Runs `f` with `hub` installed as the current hub and restores the
    previous one afterwards."""
    if _local.get(None) is hub:
        return f()
    token = _local.set(hub)
    try:
        return f()
    finally:
        _local.reset(token)


GLOBAL_HUB = Hub()
_local.set(GLOBAL_HUB)
