"""
Server side of a clock attempt.
Verdict, ledger row, time entry transition and alert are written in one
transaction: either all of them land or none do.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..exceptions import (
    AlreadyClockedInError,
    BackendUnavailableError,
    ClockConsistencyError,
    ClockError,
    JobNotFoundError,
    OverrideRejectedError,
)
from ..models.enums import ClockEventStatus, ClockEventType
from ..models.models import Business, ClockEvent, GeofenceAlert, Job, TimeEntry, User
from .alerts import raise_alert_for_event
from .enforcement import resolve_geofence_config
from .geofence import LocationSample, ValidationVerdict, validate
from .ledger import ClockEventLedger
from .overrides import OverrideRequest, check_override_request
from .time_entries import TimeEntryAccumulator
from .time_rules import age_seconds, ensure_utc, fix_is_stale, utc_now

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ClockRequest:
    job_id: uuid.UUID
    event_type: ClockEventType
    location: LocationSample
    override: Optional[OverrideRequest] = None


@dataclass
class ClockOutcome:
    event: ClockEvent
    verdict: ValidationVerdict
    time_entry: Optional[TimeEntry] = None
    alert: Optional[GeofenceAlert] = None

    @property
    def status(self) -> ClockEventStatus:
        return ClockEventStatus(self.event.status)

    @property
    def allowed(self) -> bool:
        return self.status != ClockEventStatus.blocked

    def message(self) -> str:
        action = "Clock in" if self.event.event_type == ClockEventType.clock_in.value else "Clock out"
        if self.status == ClockEventStatus.override:
            return f"{action} recorded with override"
        if self.status == ClockEventStatus.blocked:
            return f"{self.verdict.message()}. {action} is blocked outside the geofence"
        return self.verdict.message()

    def to_response(self) -> dict:
        verdict = self.verdict
        return {
            "allowed": self.allowed,
            "status": self.status.value,
            "event_type": self.event.event_type,
            "within_geofence": verdict.within_geofence,
            "distance_meters": verdict.distance_meters,
            "distance_feet": verdict.distance_feet,
            "geofence_radius_meters": verdict.effective_radius_meters,
            "geofence_expanded": verdict.geofence_expanded,
            "enforcement_mode": verdict.enforcement_mode.value,
            "can_override": verdict.can_override,
            "override_requires_reason": verdict.override_requires_reason,
            "override_requires_photo": verdict.override_requires_photo,
            "no_job_location": verdict.no_job_location,
            "message": self.message(),
            "clock_event_id": str(self.event.id),
            "time_entry_id": str(self.time_entry.id) if self.time_entry else None,
            "alert_id": str(self.alert.id) if self.alert else None,
        }


def _check_fix_freshness(location: LocationSample, now: datetime) -> None:
    if not fix_is_stale(
        location.captured_at, now, settings.location_fix_max_age_s, settings.location_fix_max_skew_s
    ):
        return
    age = age_seconds(location.captured_at, now)
    logger.info("stale_location_fix", age_s=round(age, 1), max_age_s=settings.location_fix_max_age_s)
    if age < 0:
        raise ClockError("Location fix is dated in the future, please re-acquire your location", code="stale_location")
    raise ClockError("Location fix is too old, please re-acquire your location", code="stale_location")


def record_clock_attempt(
    db: Session,
    *,
    business: Business,
    user: User,
    request: ClockRequest,
    now: Optional[datetime] = None,
) -> ClockOutcome:
    """
    Validate a clock-in/clock-out and record it.

    Preconditions (job exists, fix is fresh, open-entry state matches the
    event type) are checked first and write nothing. Once a verdict is
    computed exactly one ledger row is written, whatever the outcome. A
    rejected override still records the blocked attempt before the
    rejection is raised.
    """
    now = ensure_utc(now or utc_now())
    event_type = ClockEventType(request.event_type)
    log = logger.bind(job_id=str(request.job_id), user_id=str(user.id), event_type=event_type.value)

    job = db.query(Job).filter(Job.id == request.job_id, Job.business_id == business.id).first()
    if job is None:
        raise JobNotFoundError("Job not found")

    _check_fix_freshness(request.location, now)

    accumulator = TimeEntryAccumulator(db)
    if event_type == ClockEventType.clock_in:
        accumulator.ensure_can_clock_in(user.id, job.id)
    else:
        accumulator.ensure_can_clock_out(user.id, job.id)

    config = resolve_geofence_config(job, business)
    verdict = validate(request.location, config, now)
    ledger = ClockEventLedger(db)

    status = verdict.status
    override = None
    rejection: Optional[OverrideRejectedError] = None
    if request.override is not None:
        if verdict.status == ClockEventStatus.blocked:
            try:
                override = check_override_request(
                    config.override, request.override.reason, request.override.photo_url
                )
                status = ClockEventStatus.override
            except OverrideRejectedError as e:
                rejection = e
        else:
            log.info("override_not_needed", verdict_status=verdict.status.value)

    supersedes_event_id = None
    if override is not None and request.override.blocked_event_id is not None:
        blocked = ledger.get(request.override.blocked_event_id)
        if (
            blocked is not None
            and blocked.user_id == user.id
            and blocked.job_id == job.id
            and blocked.status == ClockEventStatus.blocked.value
        ):
            supersedes_event_id = blocked.id
        else:
            log.warning("override_blocked_event_mismatch", blocked_event_id=str(request.override.blocked_event_id))

    try:
        event = ledger.append(
            business_id=business.id,
            job_id=job.id,
            user_id=user.id,
            event_type=event_type,
            location=request.location,
            config=config,
            verdict=verdict,
            status=status,
            override_reason=override.reason if override else None,
            override_photo_url=override.photo_url if override else None,
            supersedes_event_id=supersedes_event_id,
            recorded_at=now,
        )
        time_entry = accumulator.apply(event)
        alert = raise_alert_for_event(db, event)
        db.commit()
    except ClockError:
        db.rollback()
        raise
    except IntegrityError as e:
        db.rollback()
        log.warning("clock_attempt_conflict", error=str(e.orig))
        if event_type == ClockEventType.clock_in:
            raise AlreadyClockedInError("You are already clocked in on this job")
        raise ClockConsistencyError("Clock state changed while recording, please retry")
    except SQLAlchemyError as e:
        db.rollback()
        log.error("clock_attempt_write_failed", error=str(e))
        raise BackendUnavailableError("Cannot clock in right now, please try again")

    log.info(
        "clock_attempt_recorded",
        clock_event_id=str(event.id),
        status=event.status,
        within_geofence=verdict.within_geofence,
        no_job_location=verdict.no_job_location,
    )

    if rejection is not None:
        rejection.clock_event_id = event.id
        raise rejection

    return ClockOutcome(event=event, verdict=verdict, time_entry=time_entry, alert=alert)
