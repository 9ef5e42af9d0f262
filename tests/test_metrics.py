from datetime import datetime, timedelta, timezone
from unittest import mock

import pytest

from flare_sdk import Hub, metrics
from flare_sdk.metrics import (
    BucketKey,
    CounterMetric,
    MetricsAggregator,
    normalize_name,
    normalize_tag_value,
    normalize_tags,
    normalize_unit,
    serialize_metrics,
)


def parse_metrics(payload):
    rv = []
    for line in payload.decode("utf-8").splitlines():
        name_value, ty, *rest = line.split("|")
        name, values = name_value.split(":", 1)
        tags = {}
        timestamp = None
        for piece in rest:
            if piece.startswith("#"):
                tags = dict(tag.split(":", 1) for tag in piece[1:].split(","))
            elif piece.startswith("T"):
                timestamp = int(piece[1:])
        rv.append((timestamp, name, ty, values.split(":"), tags))
    return rv


def statsd_payloads(envelopes):
    return [
        item.get_bytes()
        for envelope in envelopes
        for item in envelope
        if item.type == "statsd"
    ]


@pytest.fixture
def aggregator():
    envelopes = []
    rv = MetricsAggregator(capture_func=envelopes.append)
    rv.envelopes = envelopes
    # no background flusher, flushes happen when the test asks for them
    with mock.patch.object(rv, "_ensure_thread", return_value=True):
        yield rv
    rv.kill()


def test_counters_merge(aggregator):
    ts = 1_700_000_003
    aggregator.add("c", "requests", 1, tags={"route": "/a"}, timestamp=ts)
    aggregator.add("c", "requests", 2, tags={"route": "/a"}, timestamp=ts + 1)
    aggregator.add("c", "requests", 1, tags={"route": "/b"}, timestamp=ts)
    aggregator.flush()

    (payload,) = statsd_payloads(aggregator.envelopes)
    assert parse_metrics(payload) == [
        (1_700_000_000, "requests@none", "c", ["3"], {"route": "/a"}),
        (1_700_000_000, "requests@none", "c", ["1"], {"route": "/b"}),
    ]


def test_bucket_windows(aggregator):
    aggregator.add("c", "requests", 1, timestamp=1_700_000_009)
    aggregator.add("c", "requests", 1, timestamp=1_700_000_010)
    aggregator.flush()

    (payload,) = statsd_payloads(aggregator.envelopes)
    assert [m[0] for m in parse_metrics(payload)] == [1_700_000_000, 1_700_000_010]


def test_gauge_summary(aggregator):
    for value in (5, 2, 9, 4):
        aggregator.add("g", "queue.size", value, timestamp=1_700_000_000)
    aggregator.flush()

    (payload,) = statsd_payloads(aggregator.envelopes)
    ((_, name, ty, values, _),) = parse_metrics(payload)
    assert (name, ty) == ("queue.size@none", "g")
    # last, min, max, sum, count
    assert values == ["4", "2", "9", "20", "4"]


def test_distribution_keeps_every_value(aggregator):
    for value in (1.5, 2, 1.5):
        aggregator.add("d", "latency", value, unit="second", timestamp=1_700_000_000)
    aggregator.flush()

    (payload,) = statsd_payloads(aggregator.envelopes)
    ((_, name, ty, values, _),) = parse_metrics(payload)
    assert name == "latency@second"
    assert values == ["1.5", "2", "1.5"]


def test_sets_count_unique_members(aggregator):
    for value in ("alice", "bob", "alice", 17, 17):
        aggregator.add("s", "users", value, timestamp=1_700_000_000)
    assert aggregator.weight == 3
    aggregator.flush()

    (payload,) = statsd_payloads(aggregator.envelopes)
    ((_, _, ty, values, _),) = parse_metrics(payload)
    assert ty == "s"
    assert len(values) == 3
    assert "17" in values


def test_weight_tracking(aggregator):
    aggregator.add("c", "a", 1, timestamp=1_700_000_000)
    aggregator.add("c", "a", 1, timestamp=1_700_000_000)
    assert aggregator.weight == 1

    aggregator.add("g", "b", 1, timestamp=1_700_000_000)
    aggregator.add("g", "b", 2, timestamp=1_700_000_000)
    assert aggregator.weight == 6

    aggregator.add("d", "c", 1, timestamp=1_700_000_000)
    aggregator.add("d", "c", 1, timestamp=1_700_000_000)
    assert aggregator.weight == 8

    aggregator.flush()
    assert aggregator.weight == 0


def test_take_buckets_only_returns_closed_windows(aggregator):
    aggregator.add("c", "old", 1, timestamp=1_700_000_000)
    aggregator.add("c", "new", 1, timestamp=1_700_000_020)

    taken = aggregator.take_buckets(now=1_700_000_025)
    assert [key.name for key, _ in taken] == ["old"]
    assert aggregator.weight == 1

    assert aggregator.take_buckets(now=1_700_000_025) == []
    taken = aggregator.take_buckets(force=True)
    assert [key.name for key, _ in taken] == ["new"]


def test_exceeding_the_weight_forces_a_flush(aggregator):
    with mock.patch("flare_sdk.metrics.MAX_WEIGHT", 3):
        for i in range(4):
            aggregator.add("d", "x", i, timestamp=1_700_000_000)

        assert aggregator._force_flush
        # a forced flush ignores the window cutoff
        taken = aggregator.take_buckets(now=1_700_000_000)

    assert len(taken) == 1
    assert not aggregator._force_flush
    assert aggregator.weight == 0


def test_kill_sends_open_buckets():
    envelopes = []
    aggregator = MetricsAggregator(capture_func=envelopes.append)

    aggregator.add("c", "requests", 1)
    aggregator.kill()

    assert len(statsd_payloads(envelopes)) == 1

    aggregator.add("c", "requests", 1)
    aggregator.kill()
    assert len(envelopes) == 1


def test_empty_flush_sends_nothing(aggregator):
    aggregator.flush()
    assert aggregator.envelopes == []


def test_unusable_values_are_dropped(aggregator):
    ts = 1_700_000_000
    aggregator.add("c", "requests", 3, timestamp=ts)
    aggregator.add("d", "latency", float("inf"), timestamp=ts)
    aggregator.add("g", "temperature", float("nan"), timestamp=ts)
    aggregator.add("c", "requests", "many", timestamp=ts)
    aggregator.add("x", "unknown", 1, timestamp=ts)
    aggregator.flush()

    (payload,) = statsd_payloads(aggregator.envelopes)
    assert parse_metrics(payload) == [(ts, "requests@none", "c", ["3"], {})]


def test_counter_overflow_is_rendered():
    metric = CounterMetric(1e308)
    metric.add(1e308)

    assert list(metric.serialize_value()) == ["inf"]


def test_broken_bucket_does_not_lose_the_rest(internal_exceptions):
    good = BucketKey(1_700_000_000, "c", "requests", "none", ())
    bad = BucketKey(1_700_000_000, "c", "broken", "none", ())
    broken = mock.Mock()
    broken.serialize_value.side_effect = ValueError("cannot render")

    payload = serialize_metrics([(bad, broken), (good, CounterMetric(2))])

    assert parse_metrics(payload) == [
        (1_700_000_000, "requests@none", "c", ["2"], {})
    ]
    (exc_info,) = internal_exceptions
    assert exc_info[0] is ValueError
    del internal_exceptions[:]


def test_default_tags():
    key = BucketKey(
        1_700_000_000, "c", "requests", "none", (("environment", "custom"),)
    )
    payload = serialize_metrics(
        [(key, CounterMetric(1))],
        {"release": "1.0", "environment": "production"},
    )

    assert payload == (
        b"requests@none:1|c|#environment:custom,release:1.0|T1700000000\n"
    )


@pytest.mark.parametrize(
    "name, expected",
    [
        ("valid.name-1_x", "valid.name-1_x"),
        ("with space", "with_space"),
        ("ünïcode", "_n_code"),
        ("a/b|c", "a_b_c"),
    ],
)
def test_normalize_name(name, expected):
    assert normalize_name(name) == expected


def test_normalize_unit():
    assert normalize_unit("milli second") == "millisecond"
    assert normalize_unit("") == "none"
    assert normalize_unit(None) == "none"
    assert normalize_unit("%") == "none"


def test_normalize_tags():
    assert normalize_tags(
        {
            "route path": "/users",
            "a" * 40: "long key",
            "empty": "",
            "!!!": "only invalid chars",
            "n": 42,
        }
    ) == {
        "routepath": "/users",
        "a" * 32: "long key",
        "n": "42",
    }


def test_normalize_tag_value():
    assert normalize_tag_value("a|b,c") == "a\\u{7c}b\\u{2c}c"
    assert normalize_tag_value("line\nbreak\ttab\\") == "line\\nbreak\\ttab\\\\"
    assert normalize_tag_value("x" * 300) == "x" * 200


def test_module_functions(flare_init, capture_envelopes):
    flare_init(release="1.0", environment="staging")
    envelopes = capture_envelopes()
    ts = datetime(2023, 11, 14, 22, 13, 21, tzinfo=timezone.utc)

    metrics.incr("jobs.done", tags={"queue": "default"}, timestamp=ts)
    metrics.distribution("job.size", 12, unit="byte", timestamp=ts)
    metrics.set("job.owner", "alice", timestamp=ts)
    metrics.gauge("queue.depth", 3, timestamp=ts)
    metrics.timing("job.duration", timedelta(milliseconds=250), timestamp=ts)
    Hub.current.flush()

    (payload,) = statsd_payloads(envelopes)
    parsed = {m[1]: m for m in parse_metrics(payload)}
    assert sorted(parsed) == [
        "job.duration@second",
        "job.owner@none",
        "job.size@byte",
        "jobs.done@none",
        "queue.depth@none",
    ]
    assert parsed["jobs.done@none"][4] == {
        "queue": "default",
        "release": "1.0",
        "environment": "staging",
    }
    assert parsed["job.duration@second"][3] == ["0.25"]
    assert all(m[0] == 1_700_000_000 for m in parsed.values())


def test_timing_context_manager(flare_init):
    client = flare_init()

    with mock.patch("flare_sdk.metrics.time.perf_counter", side_effect=[10.0, 10.5]):
        with metrics.timing("block", tags={"kind": "test"}):
            pass

    ((key, metric),) = client.metrics_aggregator.take_buckets(force=True)
    assert (key.ty, key.name, key.unit) == ("d", "block", "second")
    assert key.tags == (("kind", "test"),)
    assert metric.value == [0.5]


def test_metrics_without_client():
    metrics.incr("nothing")
    metrics.timing("nothing", 1.0)
