import time
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime

import pytest

from flare_sdk.envelope import Envelope, Item
from flare_sdk.ratelimit import RateLimiter


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(clock):
    return RateLimiter(clock=clock)


def make_envelope(*types):
    envelope = Envelope()
    for ty in types:
        if ty == "event":
            envelope.add_event({"event_id": "a" * 32})
        else:
            envelope.add_item(Item(payload=b"{}", type=ty))
    return envelope


def test_nothing_disabled_by_default(limiter):
    assert limiter.is_disabled() is None
    assert limiter.is_disabled("error") is None


def test_retry_after_seconds(limiter, clock):
    limiter.update_from_retry_after("30")

    remaining = limiter.is_disabled("error")
    assert remaining is not None
    assert timedelta(0) < remaining <= timedelta(seconds=30)

    clock.advance(29)
    assert limiter.is_disabled("session") is not None

    clock.advance(1)
    assert limiter.is_disabled("error") is None
    assert limiter.is_disabled() is None


def test_retry_after_fraction_is_rounded_up(limiter, clock):
    limiter.update_from_retry_after("1.2")

    clock.advance(1.5)
    assert limiter.is_disabled() is not None

    clock.advance(0.5)
    assert limiter.is_disabled() is None


def test_retry_after_http_date():
    limiter = RateLimiter()
    deadline = datetime.now(timezone.utc) + timedelta(seconds=120)

    limiter.update_from_retry_after(format_datetime(deadline, usegmt=True))

    remaining = limiter.is_disabled()
    assert remaining is not None
    assert timedelta(seconds=60) < remaining <= timedelta(seconds=122)


@pytest.mark.parametrize("header", [None, "", "garbage"])
def test_retry_after_defaults_to_60_seconds(limiter, clock, header):
    limiter.update_from_retry_after(header)

    clock.advance(59)
    assert limiter.is_disabled() is not None
    clock.advance(1)
    assert limiter.is_disabled() is None


def test_rate_limit_header_categories(limiter, clock):
    limiter.update_from_rate_limit_header(
        "120:error;session:organization:quota, 10:transaction:project"
    )

    assert limiter.is_disabled("error") == timedelta(seconds=120)
    assert limiter.is_disabled("session") == timedelta(seconds=120)
    assert limiter.is_disabled("transaction") == timedelta(seconds=10)
    assert limiter.is_disabled("attachment") is None
    assert limiter.is_disabled() is None

    clock.advance(10)
    assert limiter.is_disabled("transaction") is None
    assert limiter.is_disabled("error") is not None


def test_rate_limit_header_without_categories_disables_everything(limiter):
    limiter.update_from_rate_limit_header("60::organization")

    assert limiter.is_disabled() == timedelta(seconds=60)
    assert limiter.is_disabled("monitor") == timedelta(seconds=60)


def test_rate_limit_header_skips_malformed_groups(limiter):
    limiter.update_from_rate_limit_header("nope:error, 30:session, junk")

    assert limiter.is_disabled("error") is None
    assert limiter.is_disabled("session") == timedelta(seconds=30)


def test_longer_deadline_wins(limiter):
    limiter.update_from_rate_limit_header("100:error")
    limiter.update_from_rate_limit_header("10:error")

    assert limiter.is_disabled("error") == timedelta(seconds=100)


def test_update_from_429(limiter):
    limiter.update_from_429()

    assert limiter.is_disabled("error") == timedelta(seconds=60)


def test_update_from_response_prefers_rate_limit_header(limiter):
    limiter.update_from_response(
        429, {"x-flare-rate-limits": "5:error", "retry-after": "100"}
    )

    assert limiter.is_disabled("error") == timedelta(seconds=5)
    assert limiter.is_disabled("session") is None


def test_update_from_response_retry_after_on_any_status(limiter):
    limiter.update_from_response(200, {"retry-after": "100"})
    assert limiter.is_disabled() == timedelta(seconds=100)


def test_update_from_response_bare_429(limiter):
    limiter.update_from_response(200, {})
    assert limiter.is_disabled() is None

    limiter.update_from_response(429, {})
    assert limiter.is_disabled() == timedelta(seconds=60)


def test_filter_envelope_drops_disabled_categories(limiter):
    limiter.update_from_rate_limit_header("60:session")

    envelope = limiter.filter_envelope(make_envelope("event", "session"))

    assert [item.type for item in envelope] == ["event"]


def test_filter_envelope_drops_orphaned_attachments(limiter):
    limiter.update_from_rate_limit_header("60:error")

    assert limiter.filter_envelope(make_envelope("event", "attachment")) is None

    envelope = limiter.filter_envelope(make_envelope("event", "attachment", "session"))
    assert [item.type for item in envelope] == ["session"]


def test_filter_envelope_keeps_everything_when_usable(limiter):
    envelope = make_envelope("event", "attachment", "statsd")

    assert limiter.filter_envelope(envelope) is envelope
    assert len(envelope) == 3


def test_filter_raw_envelope(limiter):
    envelope = Envelope.from_raw(b"raw")
    limiter.update_from_rate_limit_header("60:error")
    assert limiter.filter_envelope(envelope) is envelope

    limiter.update_from_429()
    assert limiter.filter_envelope(envelope) is None


def test_default_clock_is_wall_time():
    limiter = RateLimiter()
    limiter.update_from_retry_after("1")

    assert limiter.is_disabled() is not None
    assert limiter._clock is time.time
