import pytest

import flare_sdk
from flare_sdk import Hub, Scope
from flare_sdk.envelope import Envelope
from flare_sdk.transport import Transport


@pytest.fixture(autouse=True)
def internal_exceptions(request, monkeypatch):
    errors = []
    if "tests_internal_exceptions" in request.keywords:
        return

    def _capture_internal_exception(self, exc_info):
        errors.append(exc_info)

    @request.addfinalizer
    def _():
        # reraise the errors so that this just acts as a pass-through (that
        # happens to keep track of the errors which pass through it)
        for _exc_type, exc_value, tb in errors:
            raise exc_value.with_traceback(tb)

    monkeypatch.setattr(Hub, "_capture_internal_exception", _capture_internal_exception)

    return errors


@pytest.fixture(autouse=True)
def clean_scope():
    """Resets the scope of the current hub so tests don't leak data."""
    Hub.current._replace_scope(Scope())
    yield
    Hub.current._replace_scope(Scope())


@pytest.fixture
def flare_init(request):
    clients = []

    def inner(*a, **kw):
        kw.setdefault("transport", TestTransport())
        client = flare_sdk.Client(*a, **kw)
        Hub.current.bind_client(client)
        clients.append(client)
        return client

    old_client = Hub.current.client
    try:
        Hub.current.bind_client(None)
        yield inner
    finally:
        Hub.current.bind_client(old_client)
        for client in clients:
            client.close(timeout=0.1)


class TestTransport(Transport):
    def __init__(self):
        Transport.__init__(self)

    def send_envelope(self, _: Envelope) -> None:
        """No-op send_envelope for tests"""
        pass


@pytest.fixture
def capture_events(monkeypatch):
    def inner():
        events = []
        test_client = Hub.current.client
        old_send_envelope = test_client.transport.send_envelope

        def append_event(envelope):
            for item in envelope:
                if item.headers.get("type") in ("event", "transaction"):
                    events.append(item.payload.json)
            return old_send_envelope(envelope)

        monkeypatch.setattr(test_client.transport, "send_envelope", append_event)

        return events

    return inner


@pytest.fixture
def capture_envelopes(monkeypatch):
    def inner():
        envelopes = []
        test_client = Hub.current.client
        old_send_envelope = test_client.transport.send_envelope

        def append_envelope(envelope):
            envelopes.append(envelope)
            return old_send_envelope(envelope)

        monkeypatch.setattr(test_client.transport, "send_envelope", append_envelope)

        return envelopes

    return inner


def pytest_configure(config):
    config.addinivalue_line(
        "markers",
        "tests_internal_exceptions: let internal SDK errors be logged instead of re-raised",
    )
