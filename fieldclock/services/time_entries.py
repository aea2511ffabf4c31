"""
Time entry accumulation.
Opens an entry on an admitted clock-in and closes it on the matching clock-out.
Entries are a projection of the ledger: corrections are audit-logged and never
touch the clock events they were derived from.
"""
import uuid
from datetime import datetime
from typing import List, Optional

import structlog
from sqlalchemy.orm import Session

from ..exceptions import AlreadyClockedInError, ClockError, NoOpenTimeEntryError
from ..models.enums import ClockEventStatus, ClockEventType, TimeEntryType
from ..models.models import ClockEvent, TimeEntry, User
from .audit import compute_diff, create_audit_log
from .time_rules import ensure_utc, minutes_between, utc_now

logger = structlog.get_logger(__name__)

ADMITTED_STATUSES = frozenset({
    ClockEventStatus.granted.value,
    ClockEventStatus.warned.value,
    ClockEventStatus.override.value,
})


def compute_duration_minutes(clock_in: datetime, clock_out: datetime) -> float:
    return minutes_between(clock_in, clock_out)


class TimeEntryAccumulator:
    def __init__(self, db: Session):
        self.db = db

    def open_entry_for(self, user_id: uuid.UUID, job_id: uuid.UUID) -> Optional[TimeEntry]:
        return (
            self.db.query(TimeEntry)
            .filter(
                TimeEntry.user_id == user_id,
                TimeEntry.job_id == job_id,
                TimeEntry.clock_out.is_(None),
            )
            .order_by(TimeEntry.clock_in.desc())
            .first()
        )

    def open_entries_for_user(self, user_id: uuid.UUID) -> List[TimeEntry]:
        return (
            self.db.query(TimeEntry)
            .filter(TimeEntry.user_id == user_id, TimeEntry.clock_out.is_(None))
            .order_by(TimeEntry.clock_in.desc())
            .all()
        )

    def ensure_can_clock_in(self, user_id: uuid.UUID, job_id: uuid.UUID) -> None:
        if self.open_entry_for(user_id, job_id) is not None:
            raise AlreadyClockedInError("You are already clocked in on this job")

    def ensure_can_clock_out(self, user_id: uuid.UUID, job_id: uuid.UUID) -> TimeEntry:
        entry = self.open_entry_for(user_id, job_id)
        if entry is None:
            logger.warning("time_entry_open_missing", user_id=str(user_id), job_id=str(job_id))
            raise NoOpenTimeEntryError("You are not clocked in on this job")
        return entry

    def apply(self, event: ClockEvent) -> Optional[TimeEntry]:
        """Project one ledger row onto the time entries. Blocked rows change nothing."""
        if event.status not in ADMITTED_STATUSES:
            return None
        if event.event_type == ClockEventType.clock_in.value:
            return self.open(event)
        return self.close(event)

    def open(self, event: ClockEvent) -> TimeEntry:
        self.ensure_can_clock_in(event.user_id, event.job_id)
        entry = TimeEntry(
            id=uuid.uuid4(),
            business_id=event.business_id,
            job_id=event.job_id,
            user_id=event.user_id,
            entry_type=TimeEntryType.work.value,
            clock_in=ensure_utc(event.recorded_at),
            clock_in_event_id=event.id,
            clock_in_latitude=event.latitude,
            clock_in_longitude=event.longitude,
            location_accuracy=event.accuracy_meters,
            created_by=event.user_id,
        )
        self.db.add(entry)
        self.db.flush()
        logger.info("time_entry_opened", time_entry_id=str(entry.id), clock_event_id=str(event.id))
        return entry

    def close(self, event: ClockEvent) -> TimeEntry:
        entry = self.ensure_can_clock_out(event.user_id, event.job_id)
        clock_out = ensure_utc(event.recorded_at)
        entry.clock_out = clock_out
        entry.duration_minutes = compute_duration_minutes(entry.clock_in, clock_out)
        entry.clock_out_event_id = event.id
        entry.clock_out_latitude = event.latitude
        entry.clock_out_longitude = event.longitude
        entry.updated_at = utc_now()
        self.db.flush()
        logger.info(
            "time_entry_closed",
            time_entry_id=str(entry.id),
            clock_event_id=str(event.id),
            duration_minutes=entry.duration_minutes,
        )
        return entry

    def list_entries(
        self,
        business_id: uuid.UUID,
        user_id: Optional[uuid.UUID] = None,
        job_id: Optional[uuid.UUID] = None,
        open_only: bool = False,
        limit: int = 200,
    ) -> List[TimeEntry]:
        query = self.db.query(TimeEntry).filter(TimeEntry.business_id == business_id)
        if user_id:
            query = query.filter(TimeEntry.user_id == user_id)
        if job_id:
            query = query.filter(TimeEntry.job_id == job_id)
        if open_only:
            query = query.filter(TimeEntry.clock_out.is_(None))
        return query.order_by(TimeEntry.clock_in.desc()).limit(limit).all()


def _entry_state(entry: TimeEntry) -> dict:
    return {
        "clock_in": ensure_utc(entry.clock_in).isoformat() if entry.clock_in else None,
        "clock_out": ensure_utc(entry.clock_out).isoformat() if entry.clock_out else None,
        "duration_minutes": entry.duration_minutes,
        "notes": entry.notes,
    }


def create_manual_entry(
    db: Session,
    *,
    business_id: uuid.UUID,
    job_id: uuid.UUID,
    user_id: uuid.UUID,
    clock_in: datetime,
    clock_out: datetime,
    actor: User,
    actor_role: Optional[str] = None,
    notes: Optional[str] = None,
    corrects_entry_id: Optional[uuid.UUID] = None,
) -> TimeEntry:
    """
    Administrative time entry, always closed.
    May reference the entry it corrects; the ledger rows stay untouched.
    """
    clock_in = ensure_utc(clock_in)
    clock_out = ensure_utc(clock_out)
    if clock_out <= clock_in:
        raise ClockError("clock_out must be after clock_in", code="invalid_time_range")

    if corrects_entry_id is not None:
        original = db.query(TimeEntry).filter(
            TimeEntry.id == corrects_entry_id,
            TimeEntry.business_id == business_id,
        ).first()
        if original is None:
            raise ClockError("Corrected time entry not found", code="time_entry_not_found")

    entry = TimeEntry(
        id=uuid.uuid4(),
        business_id=business_id,
        job_id=job_id,
        user_id=user_id,
        entry_type=TimeEntryType.manual.value,
        clock_in=clock_in,
        clock_out=clock_out,
        duration_minutes=compute_duration_minutes(clock_in, clock_out),
        corrects_entry_id=corrects_entry_id,
        notes=notes,
        created_by=actor.id,
    )
    db.add(entry)
    db.flush()
    create_audit_log(
        db,
        entity_type="time_entry",
        entity_id=entry.id,
        action="MANUAL_ENTRY",
        actor_id=actor.id,
        actor_role=actor_role,
        source="api",
        changes_json={"after": _entry_state(entry)},
        context={
            "job_id": str(job_id),
            "worker_id": str(user_id),
            "corrects_entry_id": str(corrects_entry_id) if corrects_entry_id else None,
        },
    )
    db.commit()
    db.refresh(entry)
    logger.info("time_entry_manual_created", time_entry_id=str(entry.id), actor_id=str(actor.id))
    return entry


def correct_entry(
    db: Session,
    entry: TimeEntry,
    *,
    actor: User,
    actor_role: Optional[str] = None,
    clock_in: Optional[datetime] = None,
    clock_out: Optional[datetime] = None,
    notes: Optional[str] = None,
) -> TimeEntry:
    """Administrative edit of a time entry; duration is recomputed and the diff audit-logged."""
    before = _entry_state(entry)

    new_in = ensure_utc(clock_in) if clock_in is not None else ensure_utc(entry.clock_in)
    new_out = ensure_utc(clock_out) if clock_out is not None else ensure_utc(entry.clock_out)
    if new_out is not None and new_out <= new_in:
        raise ClockError("clock_out must be after clock_in", code="invalid_time_range")

    entry.clock_in = new_in
    entry.clock_out = new_out
    entry.duration_minutes = compute_duration_minutes(new_in, new_out) if new_out is not None else None
    if notes is not None:
        entry.notes = notes
    entry.updated_at = utc_now()

    diff = compute_diff(before, _entry_state(entry))
    create_audit_log(
        db,
        entity_type="time_entry",
        entity_id=entry.id,
        action="CORRECT_ENTRY",
        actor_id=actor.id,
        actor_role=actor_role,
        source="api",
        changes_json=diff,
        context={"job_id": str(entry.job_id), "worker_id": str(entry.user_id)},
    )
    db.commit()
    db.refresh(entry)
    logger.info("time_entry_corrected", time_entry_id=str(entry.id), fields=sorted(diff.keys()))
    return entry
