"""
Time clock API routes.
Geofence-validated clock-in/out, overrides, the clock event ledger and time entries.
"""
import uuid
from dataclasses import asdict
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..auth.security import get_current_business, get_current_user
from ..db import get_db
from ..exceptions import ClockError
from ..models.models import Business, Job, TimeEntry, User
from ..schemas.clock import (
    ClockAttemptResponse,
    ClockEventResponse,
    ClockOverrideRequest,
    ClockStatusResponse,
    ClockValidateRequest,
    LedgerSummaryResponse,
    ManualTimeEntryCreate,
    TimeEntryCorrection,
    TimeEntryResponse,
)
from ..services.geofence import LocationSample
from ..services.ledger import ClockEventLedger
from ..services.overrides import OverrideRequest, approve_override
from ..services.permissions import can_supervise, can_view_user_events, get_user_role
from ..services.time_clock import ClockRequest, record_clock_attempt
from ..services.time_entries import TimeEntryAccumulator, correct_entry, create_manual_entry
from .errors import clock_http_error

router = APIRouter(prefix="/clock", tags=["time-clock"])


def _location(payload) -> LocationSample:
    loc = payload.location
    return LocationSample(
        latitude=loc.latitude,
        longitude=loc.longitude,
        accuracy_meters=loc.accuracy_meters,
        captured_at=loc.captured_at,
        source=loc.source.value,
    )


def _require_supervisor(user: User) -> None:
    if not can_supervise(user):
        raise HTTPException(status_code=403, detail="Supervisor or admin role required")


def _job_in_business(db: Session, job_id: uuid.UUID, business: Business) -> Job:
    job = db.query(Job).filter(Job.id == job_id, Job.business_id == business.id).first()
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


def _user_in_business(db: Session, user_id: uuid.UUID, business: Business) -> User:
    target = db.query(User).filter(User.id == user_id, User.business_id == business.id).first()
    if not target:
        raise HTTPException(status_code=404, detail="User not found")
    return target


# Clock attempts

@router.post("/validate", response_model=ClockAttemptResponse)
def validate_clock_event(
    payload: ClockValidateRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    business: Business = Depends(get_current_business),
):
    """
    Validate a clock-in/out against the job geofence and record it.
    A blocked attempt is still recorded and returned with allowed=false.
    """
    request = ClockRequest(job_id=payload.job_id, event_type=payload.event_type, location=_location(payload))
    try:
        outcome = record_clock_attempt(db, business=business, user=user, request=request)
    except ClockError as e:
        raise clock_http_error(e)
    return outcome.to_response()


@router.post("/override", response_model=ClockAttemptResponse)
def clock_with_override(
    payload: ClockOverrideRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    business: Business = Depends(get_current_business),
):
    """
    Re-submit a blocked clock-in/out with a justification.
    The location is validated again; the override only applies if it is still blocked.
    """
    request = ClockRequest(
        job_id=payload.job_id,
        event_type=payload.event_type,
        location=_location(payload),
        override=OverrideRequest(
            reason=payload.reason,
            photo_url=payload.photo_url,
            blocked_event_id=payload.blocked_event_id,
        ),
    )
    try:
        outcome = record_clock_attempt(db, business=business, user=user, request=request)
    except ClockError as e:
        raise clock_http_error(e)
    return outcome.to_response()


@router.get("/status", response_model=ClockStatusResponse)
def clock_status(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    entries = TimeEntryAccumulator(db).open_entries_for_user(user.id)
    return {"clocked_in": bool(entries), "open_entries": entries}


# Ledger reads

@router.get("/jobs/{job_id}/events", response_model=List[ClockEventResponse])
def job_events(
    job_id: uuid.UUID,
    limit: Optional[int] = Query(default=None, ge=1, le=1000),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    business: Business = Depends(get_current_business),
):
    """All clock attempts on a job, oldest first. Workers only see their own."""
    _job_in_business(db, job_id, business)
    events = ClockEventLedger(db).events_for_job(job_id, limit=limit)
    if not can_supervise(user):
        events = [e for e in events if e.user_id == user.id]
    return events


@router.get("/users/{user_id}/events", response_model=List[ClockEventResponse])
def user_events(
    user_id: uuid.UUID,
    job_id: Optional[uuid.UUID] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    business: Business = Depends(get_current_business),
):
    if not can_view_user_events(user, str(user_id)):
        raise HTTPException(status_code=403, detail="Access denied")
    _user_in_business(db, user_id, business)
    return ClockEventLedger(db).events_for_user(user_id, job_id=job_id, limit=limit)


@router.get("/summary", response_model=LedgerSummaryResponse)
def ledger_summary(
    job_id: Optional[uuid.UUID] = None,
    user_id: Optional[uuid.UUID] = None,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    business: Business = Depends(get_current_business),
):
    """Violation and override counts for dashboards."""
    if not can_supervise(user):
        if user_id is not None and user_id != user.id:
            raise HTTPException(status_code=403, detail="Access denied")
        user_id = user.id
    summary = ClockEventLedger(db).summary(business_id=business.id, job_id=job_id, user_id=user_id)
    return asdict(summary)


@router.get("/overrides/pending", response_model=List[ClockEventResponse])
def pending_overrides(
    limit: int = Query(default=100, ge=1, le=1000),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    business: Business = Depends(get_current_business),
):
    _require_supervisor(user)
    return ClockEventLedger(db).pending_override_approvals(business.id, limit=limit)


@router.post("/events/{event_id}/approve-override", response_model=ClockEventResponse)
def approve_override_event(
    event_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    business: Business = Depends(get_current_business),
):
    _require_supervisor(user)
    try:
        return approve_override(
            db, event_id,
            business_id=business.id,
            approver=user,
            approver_role=get_user_role(user),
        )
    except ClockError as e:
        db.rollback()
        raise clock_http_error(e)


# Time entries

@router.get("/time-entries", response_model=List[TimeEntryResponse])
def list_time_entries(
    user_id: Optional[uuid.UUID] = None,
    job_id: Optional[uuid.UUID] = None,
    open_only: bool = False,
    limit: int = Query(default=200, ge=1, le=1000),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    business: Business = Depends(get_current_business),
):
    if not can_supervise(user):
        if user_id is not None and user_id != user.id:
            raise HTTPException(status_code=403, detail="Access denied")
        user_id = user.id
    return TimeEntryAccumulator(db).list_entries(
        business.id, user_id=user_id, job_id=job_id, open_only=open_only, limit=limit,
    )


@router.post("/time-entries/manual", response_model=TimeEntryResponse)
def create_manual_time_entry(
    payload: ManualTimeEntryCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    business: Business = Depends(get_current_business),
):
    """Administrative time entry. Never touches the clock event ledger."""
    _require_supervisor(user)
    _job_in_business(db, payload.job_id, business)
    _user_in_business(db, payload.user_id, business)
    try:
        return create_manual_entry(
            db,
            business_id=business.id,
            job_id=payload.job_id,
            user_id=payload.user_id,
            clock_in=payload.clock_in,
            clock_out=payload.clock_out,
            actor=user,
            actor_role=get_user_role(user),
            notes=payload.notes,
            corrects_entry_id=payload.corrects_entry_id,
        )
    except ClockError as e:
        db.rollback()
        raise clock_http_error(e)


@router.patch("/time-entries/{entry_id}", response_model=TimeEntryResponse)
def correct_time_entry(
    entry_id: uuid.UUID,
    payload: TimeEntryCorrection,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    business: Business = Depends(get_current_business),
):
    _require_supervisor(user)
    entry = db.query(TimeEntry).filter(TimeEntry.id == entry_id, TimeEntry.business_id == business.id).first()
    if not entry:
        raise HTTPException(status_code=404, detail="Time entry not found")
    try:
        return correct_entry(
            db, entry,
            actor=user,
            actor_role=get_user_role(user),
            clock_in=payload.clock_in,
            clock_out=payload.clock_out,
            notes=payload.notes,
        )
    except ClockError as e:
        db.rollback()
        raise clock_http_error(e)
