import logging

import pytest

from flare_sdk import Hub
from flare_sdk.integrations import logging as logging_integration
from flare_sdk.integrations.logging import (
    BreadcrumbHandler,
    EventHandler,
    LoggingIntegration,
    ignore_logger,
)

other_logger = logging.getLogger("testfoo")
logger = logging.getLogger(__name__)


@pytest.fixture(autouse=True)
def reset_level():
    other_logger.setLevel(logging.DEBUG)
    logger.setLevel(logging.DEBUG)


@pytest.fixture(autouse=True)
def restore_ignored_loggers(monkeypatch):
    monkeypatch.setattr(
        logging_integration,
        "_IGNORED_LOGGERS",
        set(logging_integration._IGNORED_LOGGERS),
    )


def crumb_messages(event):
    return [crumb["message"] for crumb in event.get("breadcrumbs", {}).get("values", ())]


def test_logging_basic(flare_init, capture_events):
    flare_init()
    events = capture_events()

    logger.debug("too quiet")
    logger.info("bread")
    logger.error("error")
    logger.critical("LOL")

    error_event, critical_event = events

    assert error_event["level"] == "error"
    assert error_event["logger"] == __name__
    assert crumb_messages(error_event) == ["bread"]

    assert critical_event["level"] == "fatal"
    assert crumb_messages(critical_event) == ["bread", "error"]
    assert critical_event["logentry"] == {"message": "LOL", "params": ()}


@pytest.mark.parametrize("log", [logger, other_logger])
def test_logging_works_with_many_loggers(flare_init, capture_events, log):
    flare_init()
    events = capture_events()

    log.info("bread")
    log.critical("LOL %s", "arg")

    (event,) = events
    assert event["logger"] == log.name
    assert event["logentry"] == {"message": "LOL %s", "params": ("arg",)}
    (crumb,) = event["breadcrumbs"]["values"]
    assert crumb["type"] == "log"
    assert crumb["level"] == "info"
    assert crumb["category"] == log.name
    assert crumb["message"] == "bread"


def test_logging_extra_data(flare_init, capture_events):
    flare_init()
    events = capture_events()

    logger.info("bread", extra={"foo": 42})
    logger.error("error", extra={"bar": "baz"})

    (event,) = events
    assert event["extra"] == {"bar": "baz"}
    (crumb,) = event["breadcrumbs"]["values"]
    assert crumb["data"] == {"foo": 42}


def test_logging_exception(flare_init, capture_events):
    flare_init()
    events = capture_events()

    try:
        raise ValueError("broken")
    except ValueError:
        logger.exception("failed to do the thing")

    (event,) = events
    (exception,) = event["exception"]["values"]
    assert exception["type"] == "ValueError"
    assert exception["value"] == "broken"
    assert exception["mechanism"] == {"type": "logging", "handled": True}
    assert event["logentry"]["message"] == "failed to do the thing"
    assert event["level"] == "error"


def test_handled_log_errors_do_not_crash_the_session(flare_init, capture_envelopes):
    flare_init(release="1.0")
    envelopes = capture_envelopes()
    Hub.current.start_session()

    try:
        raise ValueError()
    except ValueError:
        logger.exception("handled")

    assert Hub.current.scope.session.status == "ok"
    assert Hub.current.scope.session.errors == 1
    assert len(envelopes) == 1


def test_custom_levels(flare_init, capture_events):
    flare_init(
        integrations=[LoggingIntegration(level=logging.WARNING, event_level=None)]
    )
    events = capture_events()

    logger.info("quiet")
    logger.warning("loud")
    logger.critical("no event")

    assert events == []
    assert [c["message"] for c in Hub.current.scope._breadcrumbs] == [
        "loud",
        "no event",
    ]


def test_ignore_logger(flare_init, capture_events):
    flare_init()
    events = capture_events()

    ignore_logger("testfoo.ignored")

    logging.getLogger("testfoo.ignored").error("nope")
    logging.getLogger("testfoo.ignored.child").error("nope")
    logging.getLogger("testfoo.ignoredsibling").error("yes")

    (event,) = events
    assert event["logger"] == "testfoo.ignoredsibling"


def test_sdk_loggers_are_ignored(flare_init, capture_events):
    flare_init(debug=True)
    events = capture_events()

    logging.getLogger("flare_sdk.errors").error("internal")
    logging.getLogger("flare_sdk.something").error("internal")
    logger.error("outside")

    (event,) = events
    assert event["logger"] == __name__
    assert crumb_messages(event) == []


def test_logging_while_the_hub_is_locked(flare_init):
    def before_breadcrumb(crumb, hint):
        other_logger.warning("from before_breadcrumb")
        return crumb

    flare_init(before_breadcrumb=before_breadcrumb)

    logger.info("bread")

    assert [c["message"] for c in Hub.current.scope._breadcrumbs] == ["bread"]


def test_logging_without_client():
    logger.error("nobody listens")

    assert not Hub.current.scope._breadcrumbs


def test_handlers_can_be_used_directly(flare_init, capture_events):
    flare_init(default_integrations=False)
    events = capture_events()

    standalone = logging.getLogger("testfoo.standalone")
    standalone.propagate = False
    event_handler = EventHandler(level=logging.ERROR)
    breadcrumb_handler = BreadcrumbHandler(level=logging.INFO)
    standalone.addHandler(event_handler)
    standalone.addHandler(breadcrumb_handler)
    try:
        standalone.info("crumb")
        standalone.error("event")
    finally:
        standalone.removeHandler(event_handler)
        standalone.removeHandler(breadcrumb_handler)
        standalone.propagate = True

    (event,) = events
    assert event["logger"] == "testfoo.standalone"
    assert crumb_messages(event) == ["crumb"]
