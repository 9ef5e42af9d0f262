import uuid

import pytest

import flare_sdk
from flare_sdk.crons import capture_checkin


def checkin_items(envelopes):
    return [
        item.payload.json
        for envelope in envelopes
        for item in envelope
        if item.type == "check_in"
    ]


def test_capture_checkin_simple(flare_init, capture_envelopes):
    flare_init(release="1.0", environment="cron-env")
    envelopes = capture_envelopes()

    check_in_id = capture_checkin(
        monitor_slug="nightly-backup",
        check_in_id="112233",
        status="ok",
        duration=12.5,
    )

    assert check_in_id == "112233"
    (check_in,) = checkin_items(envelopes)
    assert check_in["type"] == "check_in"
    assert check_in["monitor_slug"] == "nightly-backup"
    assert check_in["check_in_id"] == "112233"
    assert check_in["status"] == "ok"
    assert check_in["duration"] == 12.5
    assert check_in["release"] == "1.0"
    assert check_in["environment"] == "cron-env"


def test_in_progress_then_ok(flare_init, capture_envelopes):
    flare_init()
    envelopes = capture_envelopes()

    check_in_id = capture_checkin(monitor_slug="job", status="in_progress")
    assert uuid.UUID(check_in_id).hex == check_in_id
    capture_checkin(monitor_slug="job", check_in_id=check_in_id, status="ok")

    first, second = checkin_items(envelopes)
    assert first["status"] == "in_progress"
    assert second["status"] == "ok"
    assert first["check_in_id"] == second["check_in_id"] == check_in_id


def test_checkin_envelope_has_only_the_checkin(flare_init, capture_envelopes):
    flare_init(release="1.0")
    envelopes = capture_envelopes()
    flare_sdk.start_session()

    capture_checkin(monitor_slug="job", status="error")

    (envelope,) = envelopes
    assert [item.type for item in envelope] == ["check_in"]
    assert flare_sdk.Hub.current.scope.session.errors == 0


def test_invalid_status(flare_init):
    flare_init()

    with pytest.raises(ValueError):
        capture_checkin(monitor_slug="job", status="sideways")


def test_checkin_without_client():
    check_in_id = capture_checkin(monitor_slug="job", status="ok")

    assert len(check_in_id) == 32
