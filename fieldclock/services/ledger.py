"""
Clock event ledger.
Append-only record of every clock attempt; the audit source of truth that
time entries are derived from. Rows are never updated or deleted (the ORM
guards in models.py enforce this), except for the one-time override approval.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

import structlog
from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from ..exceptions import LedgerImmutableError
from ..models.enums import ClockEventStatus, ClockEventType
from ..models.models import ClockEvent
from .geofence import GeofenceConfig, LocationSample, ValidationVerdict
from .time_rules import ensure_utc, utc_now

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class LedgerSummary:
    total_events: int
    violation_count: int
    override_count: int
    blocked_count: int


class ClockEventLedger:
    def __init__(self, db: Session):
        self.db = db

    def append(
        self,
        *,
        business_id: uuid.UUID,
        job_id: uuid.UUID,
        user_id: uuid.UUID,
        event_type: ClockEventType,
        location: LocationSample,
        config: GeofenceConfig,
        verdict: ValidationVerdict,
        status: Optional[ClockEventStatus] = None,
        override_reason: Optional[str] = None,
        override_photo_url: Optional[str] = None,
        supersedes_event_id: Optional[uuid.UUID] = None,
        recorded_at: Optional[datetime] = None,
    ) -> ClockEvent:
        """
        Write one ledger row inside the caller's transaction.

        The radius stored is the one the verdict actually applied; it is
        never recomputed afterwards.
        """
        status = status or verdict.status
        event = ClockEvent(
            id=uuid.uuid4(),
            business_id=business_id,
            job_id=job_id,
            user_id=user_id,
            event_type=ClockEventType(event_type).value,
            status=ClockEventStatus(status).value,
            recorded_at=ensure_utc(recorded_at or utc_now()),
            latitude=location.latitude,
            longitude=location.longitude,
            accuracy_meters=location.accuracy_meters,
            location_source=location.source,
            location_captured_at=ensure_utc(location.captured_at),
            job_latitude=config.center_latitude,
            job_longitude=config.center_longitude,
            distance_from_job_meters=verdict.distance_meters,
            geofence_radius_meters=verdict.effective_radius_meters,
            geofence_expanded=verdict.geofence_expanded,
            enforcement_mode=verdict.enforcement_mode.value,
            within_geofence=verdict.within_geofence,
            no_job_location=verdict.no_job_location,
            override_reason=override_reason,
            override_photo_url=override_photo_url,
            supersedes_event_id=supersedes_event_id,
        )
        self.db.add(event)
        self.db.flush()
        logger.info(
            "clock_event_recorded",
            clock_event_id=str(event.id),
            job_id=str(job_id),
            user_id=str(user_id),
            event_type=event.event_type,
            status=event.status,
            within_geofence=event.within_geofence,
            distance_m=event.distance_from_job_meters,
            radius_m=event.geofence_radius_meters,
            accuracy_m=event.accuracy_meters,
        )
        return event

    def get(self, event_id: uuid.UUID) -> Optional[ClockEvent]:
        return self.db.query(ClockEvent).filter(ClockEvent.id == event_id).first()

    def events_for_job(self, job_id: uuid.UUID, limit: Optional[int] = None) -> List[ClockEvent]:
        query = (
            self.db.query(ClockEvent)
            .filter(ClockEvent.job_id == job_id)
            .order_by(ClockEvent.recorded_at.asc(), ClockEvent.created_at.asc())
        )
        if limit:
            query = query.limit(limit)
        return query.all()

    def events_for_user(
        self,
        user_id: uuid.UUID,
        job_id: Optional[uuid.UUID] = None,
        limit: int = 100,
    ) -> List[ClockEvent]:
        query = self.db.query(ClockEvent).filter(ClockEvent.user_id == user_id)
        if job_id:
            query = query.filter(ClockEvent.job_id == job_id)
        return query.order_by(ClockEvent.recorded_at.desc()).limit(limit).all()

    def pending_override_approvals(self, business_id: uuid.UUID, limit: int = 100) -> List[ClockEvent]:
        return (
            self.db.query(ClockEvent)
            .filter(
                ClockEvent.business_id == business_id,
                ClockEvent.status == ClockEventStatus.override.value,
                ClockEvent.override_approved_at.is_(None),
            )
            .order_by(ClockEvent.recorded_at.asc())
            .limit(limit)
            .all()
        )

    def _scoped(self, business_id=None, job_id=None, user_id=None):
        query = self.db.query(func.count(ClockEvent.id))
        if business_id:
            query = query.filter(ClockEvent.business_id == business_id)
        if job_id:
            query = query.filter(ClockEvent.job_id == job_id)
        if user_id:
            query = query.filter(ClockEvent.user_id == user_id)
        return query

    def violation_count(self, business_id=None, job_id=None, user_id=None) -> int:
        query = self._scoped(business_id, job_id, user_id).filter(ClockEvent.within_geofence.is_(False))
        return int(query.scalar() or 0)

    def override_count(self, business_id=None, job_id=None, user_id=None) -> int:
        query = self._scoped(business_id, job_id, user_id).filter(
            or_(ClockEvent.override_reason.isnot(None), ClockEvent.override_photo_url.isnot(None))
        )
        return int(query.scalar() or 0)

    def summary(self, business_id=None, job_id=None, user_id=None) -> LedgerSummary:
        total = int(self._scoped(business_id, job_id, user_id).scalar() or 0)
        blocked = int(
            self._scoped(business_id, job_id, user_id)
            .filter(ClockEvent.status == ClockEventStatus.blocked.value)
            .scalar() or 0
        )
        return LedgerSummary(
            total_events=total,
            violation_count=self.violation_count(business_id, job_id, user_id),
            override_count=self.override_count(business_id, job_id, user_id),
            blocked_count=blocked,
        )

    def record_override_approval(
        self,
        event: ClockEvent,
        approver_id: uuid.UUID,
        approved_at: Optional[datetime] = None,
    ) -> ClockEvent:
        """Set the approval fields once. Everything else on the row stays as written."""
        if event.status != ClockEventStatus.override.value:
            raise LedgerImmutableError("Only override events can be approved")
        if event.override_approved_at is not None:
            raise LedgerImmutableError("Override was already approved")
        event.override_approved_by = approver_id
        event.override_approved_at = ensure_utc(approved_at or utc_now())
        self.db.flush()
        return event
