from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from types import TracebackType
    from typing import Any
    from typing import Callable
    from typing import Dict
    from typing import Iterable
    from typing import Optional
    from typing import Tuple
    from typing import Type
    from typing import Union
    from typing import Literal

    Event = Dict[str, Any]
    Hint = Dict[str, Any]

    Breadcrumb = Dict[str, Any]
    BreadcrumbHint = Dict[str, Any]

    ExcInfo = Union[
        Tuple[Type[BaseException], BaseException, Optional[TracebackType]],
        Tuple[None, None, None],
    ]

    EventProcessor = Callable[[Event, Hint], Optional[Event]]
    BreadcrumbProcessor = Callable[[Breadcrumb, BreadcrumbHint], Optional[Breadcrumb]]

    # A breadcrumb source: one crumb, an iterable of crumbs, or a callable
    # producing either.
    BreadcrumbSource = Union[Breadcrumb, Iterable[Breadcrumb], Callable[[], Any]]

    EventDataCategory = Literal[
        "default",
        "error",
        "transaction",
        "attachment",
        "session",
        "monitor",
        "metric_bucket",
        "log_item",
    ]
    SessionStatus = Literal["ok", "exited", "crashed", "abnormal"]
    SessionMode = Literal["application", "request"]

    MetricType = Literal["c", "d", "s", "g"]
    MetricValue = Union[int, float, str]
    MetricTags = Dict[str, str]

    MonitorStatus = Literal["in_progress", "ok", "error"]

    # A structured log record: `severity_text`, `severity_number`, `body`,
    # `attributes`, `time_unix_nano` and `trace_id`.
    Log = Dict[str, Any]
    LogAttributeValue = Union[str, bool, float, int]
