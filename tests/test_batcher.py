import threading
from unittest import mock

import pytest

from flare_sdk._batcher import Batcher
from flare_sdk.envelope import Item


class LineBatcher(Batcher):
    def _add_to_envelope(self, envelope, items):
        for item in items:
            envelope.add_item(Item(payload=item, type="line"))


@pytest.fixture
def batcher():
    envelopes = []
    rv = LineBatcher(capture_func=envelopes.append)
    rv.envelopes = envelopes
    # keep the periodic flusher out of the way
    with mock.patch.object(LineBatcher, "FLUSH_WAIT_TIME", 60.0):
        yield rv
        rv.kill()


def lines(envelope):
    return [item.get_bytes().decode("utf-8") for item in envelope]


def test_full_batch_is_sent_inline(batcher):
    for i in range(100):
        batcher.add(str(i))

    (envelope,) = batcher.envelopes
    assert len(envelope) == 100
    assert lines(envelope)[:3] == ["0", "1", "2"]
    assert "sent_at" in envelope.headers


def test_remainder_is_sent_on_flush(batcher):
    for i in range(105):
        batcher.add(str(i))

    assert len(batcher.envelopes) == 1
    batcher.flush()

    first, second = batcher.envelopes
    assert len(first) == 100
    assert lines(second) == ["100", "101", "102", "103", "104"]


def test_concurrent_producers_never_exceed_a_batch(batcher):
    start = threading.Barrier(8)

    def produce(n):
        start.wait()
        for i in range(250):
            batcher.add("%d-%d" % (n, i))

    threads = [threading.Thread(target=produce, args=(n,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    batcher.flush()

    sizes = [len(envelope) for envelope in batcher.envelopes]
    assert max(sizes) <= 100
    assert sum(sizes) == 2000


def test_empty_flush_sends_nothing(batcher):
    batcher.flush()
    batcher.flush()

    assert batcher.envelopes == []


def test_kill_flushes_and_stops(batcher):
    batcher.add("last")
    batcher.kill()

    (envelope,) = batcher.envelopes
    assert lines(envelope) == ["last"]

    batcher.add("dropped")
    batcher.flush()
    assert len(batcher.envelopes) == 1


def test_flusher_thread_is_started_lazily(batcher):
    assert batcher._flusher is None

    batcher.add("x")

    assert isinstance(batcher._flusher, threading.Thread)
    assert batcher._flusher.daemon


def test_periodic_flush():
    envelopes = []
    sent = threading.Event()

    def capture(envelope):
        envelopes.append(envelope)
        sent.set()

    batcher = LineBatcher(capture_func=capture)
    try:
        with mock.patch.object(LineBatcher, "FLUSH_WAIT_TIME", 0.01):
            batcher.add("tick")
            assert sent.wait(5)
    finally:
        batcher.kill()

    assert lines(envelopes[0]) == ["tick"]
