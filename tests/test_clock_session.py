"""End-to-end clock flows through ClockSession, in-process and over HTTP."""

import json
import uuid
from datetime import datetime, timezone

import httpx
import pytest

from fieldclock.client.backends import HttpClockBackend, LocalClockBackend
from fieldclock.client.runner import ClockSession
from fieldclock.config import settings
from fieldclock.client.state_machine import (
    AccuracyWarning,
    Blocked,
    ClockedIn,
    Idle,
    OverridePrompt,
    SubmitValidation,
)
from fieldclock.exceptions import BackendUnavailableError, LocationError, OverrideRejectedError
from fieldclock.models.enums import ClockEventStatus, ClockEventType
from fieldclock.models.models import ClockEvent, TimeEntry
from fieldclock.services.geofence import LocationSample
from fieldclock.services.overrides import OverrideRequest

from conftest import JOB_LAT, JOB_LNG, point_north_of


class FakeLocations:
    """Hands out queued fixes (or raises queued errors) in order."""

    def __init__(self, *items):
        self.items = list(items)
        self.calls = 0

    def get_location(self):
        self.calls += 1
        item = self.items.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def fix_at(meters, accuracy=8.0):
    lat, lng = point_north_of(JOB_LAT, JOB_LNG, meters)
    return LocationSample(
        latitude=lat, longitude=lng, accuracy_meters=accuracy, captured_at=datetime.now(timezone.utc)
    )


@pytest.fixture
def local_backend(session_factory, worker):
    return LocalClockBackend(session_factory, worker.id)


def make_session(backend, *fixes):
    return ClockSession(backend, FakeLocations(*fixes), accuracy_threshold=50, max_fix_age=120)


class TestLocalSession:
    def test_clock_in_and_out(self, local_backend, db_session, job):
        session = make_session(local_backend, fix_at(20), fix_at(30))

        state = session.clock_in(job.id)
        assert isinstance(state, ClockedIn)
        assert session.last_result.status == ClockEventStatus.granted

        state = session.clock_out()
        assert isinstance(state, Idle)
        entry = db_session.query(TimeEntry).one()
        assert entry.clock_out is not None
        assert entry.clock_out_event_id is not None

    def test_business_accuracy_threshold_applies(self, local_backend, db_session, business, job):
        business.gps_accuracy_warning_m = 100
        db_session.commit()
        session = ClockSession(local_backend, FakeLocations(fix_at(20, accuracy=80)), max_fix_age=120)

        state = session.clock_in(job.id)
        assert isinstance(state, ClockedIn)
        assert db_session.query(ClockEvent).one().accuracy_meters == 80

    def test_stricter_business_threshold_warns(self, local_backend, db_session, business, job):
        business.gps_accuracy_warning_m = 30
        db_session.commit()
        session = ClockSession(local_backend, FakeLocations(fix_at(20, accuracy=40)), max_fix_age=120)

        state = session.clock_in(job.id)
        assert isinstance(state, AccuracyWarning)
        assert state.threshold_meters == 30.0

    def test_low_accuracy_warning_then_proceed_records_accuracy(self, local_backend, db_session, job):
        session = make_session(local_backend, fix_at(20, accuracy=80))

        state = session.clock_in(job.id)
        assert isinstance(state, AccuracyWarning)
        assert db_session.query(ClockEvent).count() == 0

        state = session.proceed_anyway()
        assert isinstance(state, ClockedIn)
        event = db_session.query(ClockEvent).one()
        assert event.accuracy_meters == 80

    def test_cancel_at_accuracy_warning_writes_nothing(self, local_backend, db_session, job):
        session = make_session(local_backend, fix_at(20, accuracy=120))
        session.clock_in(job.id)
        state = session.cancel()
        assert isinstance(state, Idle)
        assert db_session.query(ClockEvent).count() == 0

    def test_blocked_then_override(self, local_backend, db_session, job):
        session = make_session(local_backend, fix_at(200))

        state = session.clock_in(job.id)
        assert isinstance(state, Blocked)
        assert state.result.override_requires_reason

        assert isinstance(session.begin_override(), OverridePrompt)
        state = session.submit_override(reason="parking restricted")
        assert isinstance(state, ClockedIn)

        blocked = db_session.query(ClockEvent).filter(ClockEvent.status == "blocked").one()
        override = db_session.query(ClockEvent).filter(ClockEvent.status == "override").one()
        assert override.supersedes_event_id == blocked.id
        assert override.override_reason == "parking restricted"
        assert db_session.query(TimeEntry).one().clock_in_event_id == override.id

    def test_empty_reason_stays_in_prompt(self, local_backend, db_session, job):
        session = make_session(local_backend, fix_at(200))
        session.clock_in(job.id)
        session.begin_override()
        state = session.submit_override(reason="  ")
        assert isinstance(state, OverridePrompt)
        assert state.error
        assert db_session.query(ClockEvent).count() == 1

    def test_location_permission_denied(self, local_backend, db_session, job):
        denied = LocationError("Location permission denied", code="permission_denied")
        session = make_session(local_backend, denied)
        state = session.clock_in(job.id)
        assert isinstance(state, Idle)
        assert state.message
        assert db_session.query(ClockEvent).count() == 0

    def test_resume_open_shift(self, local_backend, session_factory, job):
        make_session(local_backend, fix_at(10)).clock_in(job.id)

        resumed = make_session(LocalClockBackend(session_factory, local_backend.user_id))
        state = resumed.resume()
        assert isinstance(state, ClockedIn)
        assert state.job_id == str(job.id)

    def test_server_rejects_second_clock_in(self, local_backend, db_session, job):
        make_session(local_backend, fix_at(10)).clock_in(job.id)

        stale_view = make_session(local_backend, fix_at(10))
        state = stale_view.clock_in(job.id)
        assert isinstance(state, ClockedIn)
        assert db_session.query(ClockEvent).count() == 1


def _response_body(status="granted", event_type="clock_in", **kwargs):
    body = {
        "allowed": status != "blocked",
        "status": status,
        "event_type": event_type,
        "within_geofence": status == "granted",
        "distance_meters": 20.0,
        "distance_feet": 66,
        "geofence_radius_meters": 150.0,
        "geofence_expanded": False,
        "enforcement_mode": "strict",
        "can_override": False,
        "override_requires_reason": False,
        "override_requires_photo": False,
        "no_job_location": False,
        "message": "You are at the job site",
        "clock_event_id": str(uuid.uuid4()),
        "time_entry_id": str(uuid.uuid4()),
        "alert_id": None,
    }
    body.update(kwargs)
    return body


def _command(override=None):
    return SubmitValidation(
        job_id=str(uuid.uuid4()),
        event_type=ClockEventType.clock_in,
        location=fix_at(20),
        override=override,
    )


class TestHttpBackend:
    def test_accuracy_threshold_read_from_business_settings(self):
        def handler(request):
            assert request.url.path == "/settings/geofence"
            return httpx.Response(200, json={"gps_accuracy_warning_m": 100, "geofence_allow_override": True})

        backend = HttpClockBackend("tok", base_url="http://clock.test", transport=httpx.MockTransport(handler))
        session = ClockSession(backend, FakeLocations(), max_fix_age=120)
        assert backend.accuracy_threshold() == 100.0
        assert session.accuracy_threshold == 100.0

    def test_accuracy_threshold_falls_back_when_settings_unreachable(self):
        backend = HttpClockBackend(
            "tok", base_url="http://clock.test", transport=httpx.MockTransport(lambda r: httpx.Response(503))
        )
        session = ClockSession(backend, FakeLocations(), max_fix_age=120)
        assert session.accuracy_threshold == settings.gps_accuracy_warning_m

    def test_validate_posts_location_with_token(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=_response_body())

        backend = HttpClockBackend("tok", base_url="http://clock.test", transport=httpx.MockTransport(handler))
        result = backend.submit(_command())

        assert result.status == ClockEventStatus.granted
        assert seen["path"] == "/clock/validate"
        assert seen["auth"] == "Bearer tok"
        assert seen["body"]["event_type"] == "clock_in"
        assert seen["body"]["location"]["accuracy_meters"] == 8.0

    def test_override_goes_to_override_endpoint(self):
        seen = {}
        blocked_id = str(uuid.uuid4())

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=_response_body(status="override"))

        backend = HttpClockBackend("tok", base_url="http://clock.test", transport=httpx.MockTransport(handler))
        override = OverrideRequest(reason="parking restricted", blocked_event_id=blocked_id)
        result = backend.submit(_command(override))

        assert result.status == ClockEventStatus.override
        assert seen["path"] == "/clock/override"
        assert seen["body"]["reason"] == "parking restricted"
        assert seen["body"]["blocked_event_id"] == blocked_id

    def test_rejected_override_carries_blocked_event(self):
        event_id = str(uuid.uuid4())

        def handler(request):
            detail = {"code": "photo_required", "message": "A photo is required", "clock_event_id": event_id}
            return httpx.Response(400, json={"detail": detail})

        backend = HttpClockBackend("tok", base_url="http://clock.test", transport=httpx.MockTransport(handler))
        with pytest.raises(OverrideRejectedError) as exc:
            backend.submit(_command(OverrideRequest(reason="x")))
        assert exc.value.code == "photo_required"
        assert exc.value.clock_event_id == event_id

    def test_server_error_is_backend_unavailable(self):
        backend = HttpClockBackend(
            "tok", base_url="http://clock.test", transport=httpx.MockTransport(lambda r: httpx.Response(503))
        )
        with pytest.raises(BackendUnavailableError):
            backend.submit(_command())

    def test_network_error_is_backend_unavailable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        backend = HttpClockBackend("tok", base_url="http://clock.test", transport=httpx.MockTransport(handler))
        with pytest.raises(BackendUnavailableError):
            backend.submit(_command())

    def test_session_returns_to_idle_when_backend_is_down(self, job):
        backend = HttpClockBackend(
            "tok", base_url="http://clock.test", transport=httpx.MockTransport(lambda r: httpx.Response(502))
        )
        state = make_session(backend, fix_at(10)).clock_in(job.id)
        assert isinstance(state, Idle)
        assert state.message

    def test_open_shift_reads_status(self):
        entry_id = str(uuid.uuid4())
        job_id = str(uuid.uuid4())

        def handler(request):
            assert request.url.path == "/clock/status"
            return httpx.Response(200, json={"clocked_in": True, "open_entries": [{"id": entry_id, "job_id": job_id}]})

        backend = HttpClockBackend("tok", base_url="http://clock.test", transport=httpx.MockTransport(handler))
        assert backend.open_shift() == {"job_id": job_id, "time_entry_id": entry_id}
