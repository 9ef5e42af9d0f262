import math
import os
import re
import threading
import time
import zlib
from contextlib import contextmanager
from datetime import datetime, timedelta
from functools import partial

import flare_sdk
from flare_sdk.envelope import Envelope, Item
from flare_sdk.utils import capture_internal_exceptions, logger

from typing import TYPE_CHECKING, NamedTuple

if TYPE_CHECKING:
    from typing import Any
    from typing import Callable
    from typing import Dict
    from typing import Generator
    from typing import Iterable
    from typing import List
    from typing import Optional
    from typing import Set
    from typing import Tuple
    from typing import Union

    from flare_sdk._types import MetricTags, MetricType, MetricValue

    MetricTagsInternal = Tuple[Tuple[str, str], ...]


BUCKET_INTERVAL = 10
FLUSH_INTERVAL = 5.0
MAX_WEIGHT = 100_000
GAUGE_WEIGHT = 5

MAX_TAG_KEY_LENGTH = 32
MAX_TAG_VALUE_LENGTH = 200

_sanitize_name = partial(re.compile(r"[^a-zA-Z0-9_\-.]").sub, "_")
_sanitize_unit = partial(re.compile(r"[^a-zA-Z0-9_]").sub, "")
_sanitize_tag_key = partial(re.compile(r"[^a-zA-Z0-9_\-./]").sub, "")
_TAG_VALUE_ESCAPES = str.maketrans(
    {
        "\\": "\\\\",
        "\n": "\\n",
        "\r": "\\r",
        "\t": "\\t",
        "|": "\\u{7c}",
        ",": "\\u{2c}",
    }
)


def normalize_name(name: str) -> str:
    return _sanitize_name(name)


def normalize_unit(unit: "Optional[str]") -> str:
    return _sanitize_unit(unit or "") or "none"


def normalize_tag_key(key: str) -> str:
    return _sanitize_tag_key(key[:MAX_TAG_KEY_LENGTH])


def normalize_tag_value(value: "Any") -> str:
    return str(value)[:MAX_TAG_VALUE_LENGTH].translate(_TAG_VALUE_ESCAPES)


def normalize_tags(tags: "Optional[MetricTags]") -> "Dict[str, str]":
    """Sanitizes tag keys and values. Pairs that end up with an empty key or
    value are dropped."""
    rv = {}
    for key, value in (tags or {}).items():
        key = normalize_tag_key(str(key))
        value = normalize_tag_value(value)
        if key and value:
            rv[key] = value
    return rv


def _format_value(value: float) -> str:
    if math.isfinite(value) and value == int(value) and abs(value) < 1e16:
        return str(int(value))
    return repr(value)


def _hash_set_member(value: "MetricValue") -> int:
    if isinstance(value, int):
        return value
    return zlib.crc32(str(value).encode("utf-8")) & 0xFFFFFFFF


class Metric:
    __slots__ = ()

    @property
    def weight(self) -> int:
        raise NotImplementedError()

    def add(self, value: "MetricValue") -> int:
        """Merges a value in and returns the weight that was added."""
        raise NotImplementedError()

    def serialize_value(self) -> "Iterable[str]":
        raise NotImplementedError()


class CounterMetric(Metric):
    __slots__ = ("value",)

    def __init__(self, first: "MetricValue") -> None:
        self.value = float(first)

    @property
    def weight(self) -> int:
        return 1

    def add(self, value: "MetricValue") -> int:
        self.value += float(value)
        return 0

    def serialize_value(self) -> "Iterable[str]":
        return (_format_value(self.value),)


class GaugeMetric(Metric):
    __slots__ = ("last", "min", "max", "sum", "count")

    def __init__(self, first: "MetricValue") -> None:
        first = float(first)
        self.last = first
        self.min = first
        self.max = first
        self.sum = first
        self.count = 1

    @property
    def weight(self) -> int:
        # Number of elements.
        return GAUGE_WEIGHT

    def add(self, value: "MetricValue") -> int:
        value = float(value)
        self.last = value
        self.min = min(self.min, value)
        self.max = max(self.max, value)
        self.sum += value
        self.count += 1
        return 0

    def serialize_value(self) -> "Iterable[str]":
        return (
            _format_value(self.last),
            _format_value(self.min),
            _format_value(self.max),
            _format_value(self.sum),
            str(self.count),
        )


class DistributionMetric(Metric):
    __slots__ = ("value",)

    def __init__(self, first: "MetricValue") -> None:
        self.value: "List[float]" = [float(first)]

    @property
    def weight(self) -> int:
        return len(self.value)

    def add(self, value: "MetricValue") -> int:
        self.value.append(float(value))
        return 1

    def serialize_value(self) -> "Iterable[str]":
        return [_format_value(x) for x in self.value]


class SetMetric(Metric):
    __slots__ = ("value",)

    def __init__(self, first: "MetricValue") -> None:
        self.value: "Set[int]" = {_hash_set_member(first)}

    @property
    def weight(self) -> int:
        return len(self.value)

    def add(self, value: "MetricValue") -> int:
        member = _hash_set_member(value)
        if member in self.value:
            return 0
        self.value.add(member)
        return 1

    def serialize_value(self) -> "Iterable[str]":
        return [str(x) for x in sorted(self.value)]


METRIC_TYPES = {
    "c": CounterMetric,
    "g": GaugeMetric,
    "d": DistributionMetric,
    "s": SetMetric,
}


class BucketKey(NamedTuple):
    timestamp: int
    ty: "MetricType"
    name: str
    unit: str
    tags: "MetricTagsInternal"


def _bucket_timestamp(timestamp: "Optional[Union[float, datetime]]") -> int:
    if timestamp is None:
        timestamp = time.time()
    elif isinstance(timestamp, datetime):
        timestamp = timestamp.timestamp()
    return int(timestamp // BUCKET_INTERVAL) * BUCKET_INTERVAL


def serialize_metrics(
    buckets: "Iterable[Tuple[BucketKey, Metric]]",
    default_tags: "Optional[MetricTags]" = None,
) -> bytes:
    """Renders buckets in the statsd line format, one bucket per line:
    ``name@unit:v1:v2|type|#k1:v1,k2:v2|Ttimestamp``."""
    defaults = normalize_tags(default_tags)
    out = []
    for key, metric in buckets:
        # buckets that fail to render are left out
        with capture_internal_exceptions():
            tags = dict(defaults)
            tags.update(key.tags)
            line = "%s@%s:%s|%s" % (
                key.name,
                key.unit,
                ":".join(metric.serialize_value()),
                key.ty,
            )
            if tags:
                line += "|#" + ",".join(sorted("%s:%s" % kv for kv in tags.items()))
            line += "|T%d\n" % key.timestamp
            out.append(line)
    return "".join(out).encode("utf-8")


class MetricsAggregator:
    """Aggregates metric samples into time buckets and sends closed buckets
    periodically.

    Samples with equal name, unit, type, tags and bucket window are merged.
    Every merge reports a weight; once the total weight passes `MAX_WEIGHT`
    the flusher is woken right away and sends everything. On `kill` all
    buckets, including the open ones, are sent.
    """

    def __init__(
        self,
        capture_func: "Callable[[Envelope], None]",
        default_tags: "Optional[MetricTags]" = None,
    ) -> None:
        self.buckets: "Dict[int, Dict[BucketKey, Metric]]" = {}
        self._buckets_total_weight = 0
        self._capture_func = capture_func
        self._default_tags = default_tags or {}
        self._running = True
        self._force_flush = False
        self._lock = threading.Lock()
        self._wakeup = threading.Condition(self._lock)

        self._flusher: "Optional[threading.Thread]" = None
        self._flusher_pid: "Optional[int]" = None

    def _ensure_thread(self) -> bool:
        """For forking processes we might need to restart this thread.
        This ensures that our process actually has that thread running.
        """
        if not self._running:
            return False

        pid = os.getpid()
        if self._flusher_pid == pid:
            return True

        with self._lock:
            if self._flusher_pid == pid:
                return True

            self._flusher_pid = pid

            self._flusher = threading.Thread(
                target=self._flush_loop, name="flare-sdk.MetricsAggregator"
            )
            self._flusher.daemon = True

            try:
                self._flusher.start()
            except RuntimeError:
                self._running = False
                return False

        return True

    def _flush_loop(self) -> None:
        while True:
            with self._wakeup:
                if not self._running:
                    return
                if not self._force_flush:
                    self._wakeup.wait(FLUSH_INTERVAL)
                if not self._running:
                    return
            self._flush()

    @property
    def weight(self) -> int:
        return self._buckets_total_weight

    def add(
        self,
        ty: "MetricType",
        key: str,
        value: "MetricValue",
        unit: "Optional[str]" = "none",
        tags: "Optional[MetricTags]" = None,
        timestamp: "Optional[Union[float, datetime]]" = None,
    ) -> None:
        if ty not in METRIC_TYPES:
            logger.debug("Dropped metric %r of unknown type %r", key, ty)
            return None
        if ty != "s":
            try:
                value = float(value)
            except (TypeError, ValueError):
                value = math.nan
            if not math.isfinite(value):
                logger.debug("Dropped non-finite value for metric %r", key)
                return None

        if not self._ensure_thread():
            return None

        bucket_timestamp = _bucket_timestamp(timestamp)
        bucket_key = BucketKey(
            bucket_timestamp,
            ty,
            normalize_name(key),
            normalize_unit(unit),
            tuple(sorted(normalize_tags(tags).items())),
        )

        with self._lock:
            local_buckets = self.buckets.setdefault(bucket_timestamp, {})
            metric = local_buckets.get(bucket_key)
            if metric is not None:
                added = metric.add(value)
            else:
                metric = local_buckets[bucket_key] = METRIC_TYPES[ty](value)
                added = metric.weight
            self._buckets_total_weight += added

            if self._buckets_total_weight > MAX_WEIGHT and not self._force_flush:
                logger.debug("Metric weight ceiling reached, forcing a flush")
                self._force_flush = True
                self._wakeup.notify_all()

    def take_buckets(
        self, force: bool = False, now: "Optional[float]" = None
    ) -> "List[Tuple[BucketKey, Metric]]":
        """Removes and returns the buckets that are ready to be sent.

        Forced (or while shutting down) that is everything, otherwise only
        windows that closed more than one interval ago.
        """
        with self._lock:
            if force or self._force_flush or not self._running:
                flushable = self.buckets
                self.buckets = {}
                self._buckets_total_weight = 0
                self._force_flush = False
            else:
                if now is None:
                    now = time.time()
                cutoff = now - BUCKET_INTERVAL
                flushable = {}
                for bucket_timestamp in list(self.buckets):
                    if bucket_timestamp < cutoff:
                        flushable[bucket_timestamp] = self.buckets.pop(bucket_timestamp)
                for local_buckets in flushable.values():
                    for metric in local_buckets.values():
                        self._buckets_total_weight -= metric.weight

        rv = []
        for bucket_timestamp in sorted(flushable):
            rv.extend(sorted(flushable[bucket_timestamp].items()))
        return rv

    def _flush(self, force: bool = False) -> "Optional[Envelope]":
        buckets = self.take_buckets(force=force)
        if not buckets:
            return None

        envelope = Envelope()
        with capture_internal_exceptions():
            envelope.add_item(
                Item(
                    payload=serialize_metrics(buckets, self._default_tags),
                    type="statsd",
                )
            )
            self._capture_func(envelope)
        return envelope

    def flush(self) -> None:
        self._flush(force=True)

    def kill(self) -> None:
        with self._wakeup:
            was_running = self._running
            self._running = False
            self._wakeup.notify_all()

        flusher = self._flusher
        self._flusher = None
        if (
            was_running
            and flusher is not None
            and flusher is not threading.current_thread()
        ):
            flusher.join()

        self._flush(force=True)


def _get_aggregator() -> "Optional[MetricsAggregator]":
    client = flare_sdk.Hub.current.client
    if client is None:
        return None
    return client.metrics_aggregator


def incr(
    key: str,
    value: float = 1.0,
    unit: str = "none",
    tags: "Optional[MetricTags]" = None,
    timestamp: "Optional[Union[float, datetime]]" = None,
) -> None:
    """Increments a counter."""
    aggregator = _get_aggregator()
    if aggregator is not None:
        aggregator.add("c", key, value, unit, tags, timestamp)


def distribution(
    key: str,
    value: float,
    unit: str = "none",
    tags: "Optional[MetricTags]" = None,
    timestamp: "Optional[Union[float, datetime]]" = None,
) -> None:
    """Emits a distribution."""
    aggregator = _get_aggregator()
    if aggregator is not None:
        aggregator.add("d", key, value, unit, tags, timestamp)


def set(
    key: str,
    value: "MetricValue",
    unit: str = "none",
    tags: "Optional[MetricTags]" = None,
    timestamp: "Optional[Union[float, datetime]]" = None,
) -> None:
    """Emits a set."""
    aggregator = _get_aggregator()
    if aggregator is not None:
        aggregator.add("s", key, value, unit, tags, timestamp)


def gauge(
    key: str,
    value: float,
    unit: str = "none",
    tags: "Optional[MetricTags]" = None,
    timestamp: "Optional[Union[float, datetime]]" = None,
) -> None:
    """Emits a gauge."""
    aggregator = _get_aggregator()
    if aggregator is not None:
        aggregator.add("g", key, value, unit, tags, timestamp)


@contextmanager
def _timed(
    key: str, unit: str, tags: "Optional[MetricTags]"
) -> "Generator[None, None, None]":
    start = time.perf_counter()
    try:
        yield
    finally:
        distribution(key, time.perf_counter() - start, unit, tags)


def timing(
    key: str,
    value: "Optional[Union[float, timedelta]]" = None,
    unit: str = "second",
    tags: "Optional[MetricTags]" = None,
    timestamp: "Optional[Union[float, datetime]]" = None,
) -> "Any":
    """Emits a distribution of durations in seconds.

    Without a value this returns a context manager that measures the
    duration of its block::

        with metrics.timing("db.query"):
            run_query()
    """
    if value is None:
        return _timed(key, unit, tags)
    if isinstance(value, timedelta):
        value = value.total_seconds()
    distribution(key, value, unit, tags, timestamp)
    return None
