"""Tests for the transactional clock service, ledger and time entries."""

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from fieldclock.exceptions import (
    AlreadyClockedInError,
    ClockError,
    JobNotFoundError,
    LedgerImmutableError,
    NoOpenTimeEntryError,
    OverrideRejectedError,
)
from fieldclock.models.enums import ClockEventStatus, ClockEventType
from fieldclock.models.models import AuditLog, ClockEvent, GeofenceAlert, TimeEntry
from fieldclock.services.alerts import acknowledge_alert, pending_alert_count
from fieldclock.services.geofence import LocationSample
from fieldclock.services.ledger import ClockEventLedger
from fieldclock.services.overrides import OverrideRequest, approve_override
from fieldclock.services.time_clock import ClockRequest, record_clock_attempt
from fieldclock.services.time_entries import compute_duration_minutes, correct_entry, create_manual_entry
from fieldclock.services.time_rules import ensure_utc

from conftest import JOB_LAT, JOB_LNG, point_north_of


def _sample(meters, now, accuracy=10.0):
    lat, lng = point_north_of(JOB_LAT, JOB_LNG, meters)
    return LocationSample(latitude=lat, longitude=lng, accuracy_meters=accuracy, captured_at=now)


def _attempt(db, business, user, job, event_type, meters, now, override=None, accuracy=10.0):
    return record_clock_attempt(
        db,
        business=business,
        user=user,
        request=ClockRequest(
            job_id=job.id,
            event_type=event_type,
            location=_sample(meters, now, accuracy),
            override=override,
        ),
        now=now,
    )


def _count(db, model):
    return db.query(model).count()


class TestScenarios:
    def test_strict_override_disabled_blocks_without_time_entry(self, db_session, business, worker, job, now):
        business.geofence_allow_override = False
        db_session.commit()

        outcome = _attempt(db_session, business, worker, job, ClockEventType.clock_in, 200, now)

        assert outcome.status == ClockEventStatus.blocked
        assert not outcome.allowed
        assert outcome.time_entry is None
        assert outcome.verdict.can_override is False
        assert _count(db_session, TimeEntry) == 0
        events = db_session.query(ClockEvent).all()
        assert len(events) == 1
        assert events[0].status == ClockEventStatus.blocked.value
        assert events[0].geofence_radius_meters == 150

    def test_strict_override_with_reason_opens_entry(self, db_session, business, worker, job, now):
        blocked = _attempt(db_session, business, worker, job, ClockEventType.clock_in, 200, now)
        assert blocked.status == ClockEventStatus.blocked
        assert blocked.verdict.can_override and blocked.verdict.override_requires_reason

        outcome = _attempt(
            db_session, business, worker, job, ClockEventType.clock_in, 200, now,
            override=OverrideRequest(reason="parking restricted", blocked_event_id=blocked.event.id),
        )

        assert outcome.status == ClockEventStatus.override
        assert outcome.event.override_reason == "parking restricted"
        assert outcome.event.supersedes_event_id == blocked.event.id
        assert outcome.time_entry is not None
        assert outcome.time_entry.clock_in_event_id == outcome.event.id
        # The blocked row is left exactly as written
        db_session.refresh(blocked.event)
        assert blocked.event.status == ClockEventStatus.blocked.value
        assert blocked.event.override_reason is None

    def test_warn_mode_outside_records_warned(self, db_session, business, worker, job, now):
        job.geofence_enforcement = "warn"
        db_session.commit()
        outcome = _attempt(db_session, business, worker, job, ClockEventType.clock_in, 400, now)
        assert outcome.status == ClockEventStatus.warned
        assert outcome.time_entry is not None
        assert outcome.event.within_geofence is False

    def test_off_mode_outside_granted(self, db_session, business, worker, job, now):
        job.geofence_enforcement = "off"
        db_session.commit()
        outcome = _attempt(db_session, business, worker, job, ClockEventType.clock_in, 5_000, now)
        assert outcome.status == ClockEventStatus.granted
        assert outcome.event.within_geofence is False

    def test_low_accuracy_recorded_unmodified(self, db_session, business, worker, job, now):
        outcome = _attempt(db_session, business, worker, job, ClockEventType.clock_in, 20, now, accuracy=80)
        db_session.expire_all()
        event = db_session.query(ClockEvent).filter(ClockEvent.id == outcome.event.id).one()
        assert event.accuracy_meters == 80

    def test_job_without_coordinates_never_blocks(self, db_session, business, worker, ungeocoded_job, now):
        outcome = _attempt(db_session, business, worker, ungeocoded_job, ClockEventType.clock_in, 10_000, now)
        assert outcome.status == ClockEventStatus.granted
        assert outcome.event.no_job_location
        assert outcome.event.distance_from_job_meters is None
        assert outcome.time_entry is not None
        assert outcome.alert is None

    def test_active_expansion_admits_worker(self, db_session, business, worker, job, now):
        job.geofence_radius_meters = 100
        job.geofence_expanded_radius_meters = 500
        job.geofence_expanded_until = now + timedelta(hours=1)
        db_session.commit()
        outcome = _attempt(db_session, business, worker, job, ClockEventType.clock_in, 300, now)
        assert outcome.status == ClockEventStatus.granted
        assert outcome.event.geofence_radius_meters == 500
        assert outcome.event.geofence_expanded

    def test_expired_expansion_blocks_worker(self, db_session, business, worker, job, now):
        job.geofence_radius_meters = 100
        job.geofence_expanded_radius_meters = 500
        job.geofence_expanded_until = now - timedelta(seconds=1)
        db_session.commit()
        outcome = _attempt(db_session, business, worker, job, ClockEventType.clock_in, 300, now)
        assert outcome.status == ClockEventStatus.blocked
        assert outcome.event.geofence_radius_meters == 100


class TestLedgerInvariant:
    def test_every_validation_writes_exactly_one_row(self, db_session, business, worker, job, now):
        steps = [
            (ClockEventType.clock_in, 200),
            (ClockEventType.clock_in, 10),
            (ClockEventType.clock_out, 300),
            (ClockEventType.clock_out, 10),
        ]
        for event_type, meters in steps:
            before = _count(db_session, ClockEvent)
            _attempt(db_session, business, worker, job, event_type, meters, now)
            assert _count(db_session, ClockEvent) == before + 1

    def test_rejected_override_still_records_blocked_attempt(self, db_session, business, worker, job, now):
        business.geofence_override_requires_photo = True
        db_session.commit()

        with pytest.raises(OverrideRejectedError) as exc:
            _attempt(
                db_session, business, worker, job, ClockEventType.clock_in, 200, now,
                override=OverrideRequest(reason="no photo"),
            )
        assert exc.value.code == "photo_required"
        assert exc.value.clock_event_id is not None
        event = db_session.query(ClockEvent).one()
        assert event.id == exc.value.clock_event_id
        assert event.status == ClockEventStatus.blocked.value
        assert event.override_reason is None
        assert _count(db_session, TimeEntry) == 0

    def test_preconditions_write_nothing(self, db_session, business, worker, job, now):
        with pytest.raises(JobNotFoundError):
            record_clock_attempt(
                db_session, business=business, user=worker,
                request=ClockRequest(job_id=uuid.uuid4(), event_type=ClockEventType.clock_in,
                                     location=_sample(0, now)),
                now=now,
            )
        with pytest.raises(ClockError) as exc:
            stale = LocationSample(latitude=JOB_LAT, longitude=JOB_LNG, accuracy_meters=5,
                                   captured_at=now - timedelta(minutes=10))
            record_clock_attempt(
                db_session, business=business, user=worker,
                request=ClockRequest(job_id=job.id, event_type=ClockEventType.clock_in, location=stale),
                now=now,
            )
        assert exc.value.code == "stale_location"
        with pytest.raises(NoOpenTimeEntryError):
            _attempt(db_session, business, worker, job, ClockEventType.clock_out, 0, now)
        assert _count(db_session, ClockEvent) == 0

    @pytest.mark.parametrize("ahead", [timedelta(minutes=5), timedelta(days=2)])
    def test_future_dated_fix_writes_nothing(self, db_session, business, worker, job, now, ahead):
        with pytest.raises(ClockError) as exc:
            record_clock_attempt(
                db_session, business=business, user=worker,
                request=ClockRequest(job_id=job.id, event_type=ClockEventType.clock_in,
                                     location=_sample(0, now + ahead)),
                now=now,
            )
        assert exc.value.code == "stale_location"
        assert _count(db_session, ClockEvent) == 0
        assert _count(db_session, TimeEntry) == 0

    def test_small_clock_skew_is_tolerated(self, db_session, business, worker, job, now):
        outcome = record_clock_attempt(
            db_session, business=business, user=worker,
            request=ClockRequest(job_id=job.id, event_type=ClockEventType.clock_in,
                                 location=_sample(0, now + timedelta(seconds=10))),
            now=now,
        )
        assert outcome.event.status == ClockEventStatus.granted.value

    def test_ledger_rows_cannot_be_modified(self, db_session, business, worker, job, now):
        outcome = _attempt(db_session, business, worker, job, ClockEventType.clock_in, 200, now)
        outcome.event.within_geofence = True
        with pytest.raises(LedgerImmutableError):
            db_session.commit()
        db_session.rollback()

    def test_ledger_rows_cannot_be_deleted(self, db_session, business, worker, job, now):
        outcome = _attempt(db_session, business, worker, job, ClockEventType.clock_in, 10, now)
        db_session.delete(outcome.event)
        with pytest.raises(LedgerImmutableError):
            db_session.flush()
        db_session.rollback()


class TestTimeEntries:
    def test_no_double_clock_in(self, db_session, business, worker, job, now):
        _attempt(db_session, business, worker, job, ClockEventType.clock_in, 10, now)
        before = _count(db_session, ClockEvent)
        with pytest.raises(AlreadyClockedInError):
            _attempt(db_session, business, worker, job, ClockEventType.clock_in, 10, now + timedelta(minutes=1))
        assert _count(db_session, ClockEvent) == before
        assert db_session.query(TimeEntry).filter(TimeEntry.clock_out.is_(None)).count() == 1

    def test_other_worker_can_clock_in_same_job(self, db_session, business, worker, other_worker, job, now):
        _attempt(db_session, business, worker, job, ClockEventType.clock_in, 10, now)
        outcome = _attempt(db_session, business, other_worker, job, ClockEventType.clock_in, 10, now)
        assert outcome.time_entry is not None

    def test_clock_out_closes_entry_with_exact_duration(self, db_session, business, worker, job, now):
        start = now
        end = now + timedelta(hours=7, minutes=31, seconds=15)
        opened = _attempt(db_session, business, worker, job, ClockEventType.clock_in, 10, start)
        closed = _attempt(db_session, business, worker, job, ClockEventType.clock_out, 10, end)

        entry = closed.time_entry
        assert entry.id == opened.time_entry.id
        assert entry.duration_minutes == 451.25
        assert entry.clock_out_event_id == closed.event.id
        assert ensure_utc(entry.clock_out) == end

    def test_blocked_clock_out_leaves_entry_open(self, db_session, business, worker, job, now):
        _attempt(db_session, business, worker, job, ClockEventType.clock_in, 10, now)
        outcome = _attempt(db_session, business, worker, job, ClockEventType.clock_out, 300, now + timedelta(hours=2))
        assert outcome.status == ClockEventStatus.blocked
        assert outcome.time_entry is None
        assert db_session.query(TimeEntry).filter(TimeEntry.clock_out.is_(None)).count() == 1

    def test_clock_out_override_closes_entry(self, db_session, business, worker, job, now):
        _attempt(db_session, business, worker, job, ClockEventType.clock_in, 10, now)
        outcome = _attempt(
            db_session, business, worker, job, ClockEventType.clock_out, 300, now + timedelta(hours=2),
            override=OverrideRequest(reason="left for supplies run"),
        )
        assert outcome.status == ClockEventStatus.override
        assert outcome.time_entry.clock_out is not None

    @pytest.mark.parametrize("seconds", [1, 59, 3600, 86_399])
    def test_duration_is_exact_minutes(self, seconds):
        start = datetime(2026, 1, 1, 8, 0, tzinfo=timezone.utc)
        assert compute_duration_minutes(start, start + timedelta(seconds=seconds)) == seconds / 60

    def test_manual_entry_and_correction_are_audited(self, db_session, business, worker, supervisor, job, now):
        entry = create_manual_entry(
            db_session,
            business_id=business.id, job_id=job.id, user_id=worker.id,
            clock_in=now - timedelta(hours=3), clock_out=now - timedelta(hours=1),
            actor=supervisor, notes="Forgot to clock in",
        )
        assert entry.entry_type == "manual"
        assert entry.duration_minutes == 120

        correct_entry(db_session, entry, actor=supervisor, clock_out=now)
        assert entry.duration_minutes == 180
        actions = {a.action for a in db_session.query(AuditLog).all()}
        assert {"MANUAL_ENTRY", "CORRECT_ENTRY"} <= actions
        assert _count(db_session, ClockEvent) == 0

    def test_manual_entry_rejects_inverted_range(self, db_session, business, worker, supervisor, job, now):
        with pytest.raises(ClockError):
            create_manual_entry(
                db_session,
                business_id=business.id, job_id=job.id, user_id=worker.id,
                clock_in=now, clock_out=now - timedelta(minutes=5), actor=supervisor,
            )


class TestAggregatesAndApproval:
    def test_violation_and_override_counts(self, db_session, business, worker, job, now):
        _attempt(db_session, business, worker, job, ClockEventType.clock_in, 200, now)  # blocked
        _attempt(
            db_session, business, worker, job, ClockEventType.clock_in, 200, now,
            override=OverrideRequest(reason="parking restricted"),
        )
        _attempt(db_session, business, worker, job, ClockEventType.clock_out, 10, now + timedelta(hours=1))

        summary = ClockEventLedger(db_session).summary(business_id=business.id, job_id=job.id)
        assert summary.total_events == 3
        assert summary.violation_count == 2
        assert summary.override_count == 1
        assert summary.blocked_count == 1

    def test_events_for_job_are_chronological(self, db_session, business, worker, job, now):
        _attempt(db_session, business, worker, job, ClockEventType.clock_in, 10, now)
        _attempt(db_session, business, worker, job, ClockEventType.clock_out, 10, now + timedelta(hours=1))
        events = ClockEventLedger(db_session).events_for_job(job.id)
        assert [e.event_type for e in events] == ["clock_in", "clock_out"]

    def test_alerts_raised_for_outside_events(self, db_session, business, worker, supervisor, job, now):
        blocked = _attempt(db_session, business, worker, job, ClockEventType.clock_in, 200, now)
        assert blocked.alert.alert_type == "clock_in_outside"
        assert blocked.alert.severity == "error"
        overridden = _attempt(
            db_session, business, worker, job, ClockEventType.clock_in, 200, now,
            override=OverrideRequest(reason="parking restricted"),
        )
        assert overridden.alert.alert_type == "override_requested"
        assert pending_alert_count(db_session, business.id) == 2

        acknowledge_alert(db_session, blocked.alert.id, business_id=business.id, user=supervisor, notes="Checked")
        assert pending_alert_count(db_session, business.id) == 1
        assert _count(db_session, GeofenceAlert) == 2

    def test_override_approval_is_write_once(self, db_session, business, worker, supervisor, job, now):
        outcome = _attempt(
            db_session, business, worker, job, ClockEventType.clock_in, 200, now,
            override=OverrideRequest(reason="parking restricted"),
        )
        assert len(ClockEventLedger(db_session).pending_override_approvals(business.id)) == 1

        event = approve_override(db_session, outcome.event.id, business_id=business.id, approver=supervisor)
        assert event.override_approved_by == supervisor.id
        assert ClockEventLedger(db_session).pending_override_approvals(business.id) == []

        with pytest.raises(OverrideRejectedError):
            approve_override(db_session, outcome.event.id, business_id=business.id, approver=supervisor)

    def test_only_override_rows_can_be_approved(self, db_session, business, worker, supervisor, job, now):
        outcome = _attempt(db_session, business, worker, job, ClockEventType.clock_in, 10, now)
        with pytest.raises(OverrideRejectedError):
            approve_override(db_session, outcome.event.id, business_id=business.id, approver=supervisor)
