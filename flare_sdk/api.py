import inspect

from flare_sdk.hub import Hub, init, run as _run
from flare_sdk.scope import Scope

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Any
    from typing import Callable
    from typing import Dict
    from typing import Optional
    from typing import TypeVar
    from typing import Union

    from flare_sdk._types import (
        BreadcrumbHint,
        BreadcrumbSource,
        Event,
        ExcInfo,
        Hint,
        SessionMode,
    )
    from flare_sdk.hub import ScopeGuard

    T = TypeVar("T")
    F = TypeVar("F", bound=Callable[..., Any])


# When changing this, update __all__ in __init__.py too
__all__ = [
    "init",
    "add_breadcrumb",
    "capture_event",
    "capture_exception",
    "capture_message",
    "configure_scope",
    "end_session",
    "flush",
    "last_event_id",
    "push_scope",
    "run",
    "set_context",
    "set_extra",
    "set_tag",
    "set_user",
    "start_session",
    "with_scope",
]


def hubmethod(f: "F") -> "F":
    f.__doc__ = "%s\n\n%s" % (
        "Alias for :py:meth:`flare_sdk.Hub.%s`" % f.__name__,
        inspect.getdoc(getattr(Hub, f.__name__)),
    )
    return f


def scopemethod(f: "F") -> "F":
    f.__doc__ = "%s\n\n%s" % (
        "Alias for :py:meth:`flare_sdk.Scope.%s`" % f.__name__,
        inspect.getdoc(getattr(Scope, f.__name__)),
    )
    return f


@hubmethod
def capture_event(event: "Event", hint: "Optional[Hint]" = None) -> "Optional[str]":
    return Hub.current.capture_event(event, hint)


@hubmethod
def capture_message(message: str, level: "Optional[str]" = None) -> "Optional[str]":
    return Hub.current.capture_message(message, level)


@hubmethod
def capture_exception(
    error: "Optional[Union[BaseException, ExcInfo]]" = None,
) -> "Optional[str]":
    return Hub.current.capture_exception(error)


@hubmethod
def add_breadcrumb(
    crumb: "Optional[BreadcrumbSource]" = None,
    hint: "Optional[BreadcrumbHint]" = None,
    **kwargs: "Any"
) -> None:
    return Hub.current.add_breadcrumb(crumb, hint, **kwargs)


@hubmethod
def configure_scope(callback: "Optional[Callable[[Scope], T]]" = None) -> "Any":
    return Hub.current.configure_scope(callback)


@hubmethod
def push_scope(
    callback: "Optional[Callable[[Scope], None]]" = None,
) -> "Optional[ScopeGuard]":
    return Hub.current.push_scope(callback)


@hubmethod
def with_scope(configure: "Callable[[Scope], None]", body: "Callable[[], T]") -> "T":
    return Hub.current.with_scope(configure, body)


@scopemethod
def set_tag(key: str, value: "Any") -> None:
    Hub.current.configure_scope(lambda scope: scope.set_tag(key, value))


@scopemethod
def set_context(key: str, value: "Dict[str, Any]") -> None:
    Hub.current.configure_scope(lambda scope: scope.set_context(key, value))


@scopemethod
def set_extra(key: str, value: "Any") -> None:
    Hub.current.configure_scope(lambda scope: scope.set_extra(key, value))


@scopemethod
def set_user(value: "Optional[Dict[str, Any]]") -> None:
    Hub.current.configure_scope(lambda scope: scope.set_user(value))


@hubmethod
def flush(
    timeout: "Optional[float]" = None,
    callback: "Optional[Callable[[int, float], None]]" = None,
) -> bool:
    return Hub.current.flush(timeout=timeout, callback=callback)


@hubmethod
def last_event_id() -> "Optional[str]":
    return Hub.current.last_event_id()


@hubmethod
def start_session(session_mode: "Optional[SessionMode]" = None) -> None:
    return Hub.current.start_session(session_mode=session_mode)


@hubmethod
def end_session() -> None:
    return Hub.current.end_session()


def run(hub: "Hub", f: "Callable[[], T]") -> "T":
    """Runs `f` with `hub` as the current hub."""
    return _run(hub, f)
