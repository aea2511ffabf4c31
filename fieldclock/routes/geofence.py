"""
Geofence configuration routes.
Per-job radius and enforcement, temporary expansions, and business-wide defaults.
"""
import uuid

import structlog
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..auth.security import get_current_business, get_current_user, require_roles
from ..db import get_db
from ..exceptions import ClockError
from ..models.models import Business, Job, User
from ..schemas.clock import (
    BusinessGeofenceSettings,
    BusinessGeofenceSettingsUpdate,
    GeofenceExpansionRequest,
    JobGeofenceResponse,
    JobGeofenceUpdate,
)
from ..services.audit import compute_diff, create_audit_log
from ..services.enforcement import (
    describe_geofence,
    end_geofence_expansion,
    expand_geofence,
    resolve_accuracy_threshold,
)
from ..services.permissions import can_supervise, get_user_role
from .errors import clock_http_error


logger = structlog.get_logger(__name__)

router = APIRouter(tags=["geofence"])


def _get_job(db: Session, job_id: uuid.UUID, business: Business) -> Job:
    job = db.query(Job).filter(Job.id == job_id, Job.business_id == business.id).first()
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


def _job_geofence(job: Job, business: Business) -> dict:
    snapshot = describe_geofence(job, business)
    return {
        "job_id": job.id,
        "has_location": snapshot.has_location,
        "latitude": job.latitude,
        "longitude": job.longitude,
        "geofence_radius_meters": job.geofence_radius_meters,
        "effective_radius_meters": snapshot.effective_radius_meters,
        "base_radius_meters": snapshot.base_radius_meters,
        "enforcement_mode": snapshot.enforcement_mode.value,
        "is_expanded": snapshot.is_expanded,
        "expanded_until": snapshot.expanded_until,
        "expanded_radius_meters": job.geofence_expanded_radius_meters if snapshot.is_expanded else None,
        "expansion_reason": job.geofence_expansion_reason if snapshot.is_expanded else None,
    }


def _business_settings(business: Business) -> dict:
    return {
        "default_geofence_radius_meters": business.default_geofence_radius_meters,
        "geofence_enforcement_mode": business.geofence_enforcement_mode,
        "geofence_allow_override": bool(business.geofence_allow_override),
        "geofence_override_requires_reason": bool(business.geofence_override_requires_reason),
        "geofence_override_requires_photo": bool(business.geofence_override_requires_photo),
        "gps_accuracy_warning_m": resolve_accuracy_threshold(business),
    }


# Job geofence

@router.get("/jobs/{job_id}/geofence", response_model=JobGeofenceResponse)
def get_job_geofence(
    job_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    business: Business = Depends(get_current_business),
):
    """Geofence in effect right now, including any active expansion."""
    return _job_geofence(_get_job(db, job_id, business), business)


@router.patch("/jobs/{job_id}/geofence", response_model=JobGeofenceResponse)
def update_job_geofence(
    job_id: uuid.UUID,
    payload: JobGeofenceUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    business: Business = Depends(get_current_business),
):
    if not can_supervise(user):
        raise HTTPException(status_code=403, detail="Supervisor or admin role required")
    job = _get_job(db, job_id, business)
    before = {"geofence_radius_meters": job.geofence_radius_meters, "geofence_enforcement": job.geofence_enforcement}

    if payload.geofence_radius_meters is not None:
        job.geofence_radius_meters = payload.geofence_radius_meters
    if payload.clear_enforcement:
        job.geofence_enforcement = None
    elif payload.geofence_enforcement is not None:
        job.geofence_enforcement = payload.geofence_enforcement.value

    after = {"geofence_radius_meters": job.geofence_radius_meters, "geofence_enforcement": job.geofence_enforcement}
    diff = compute_diff(before, after)
    if diff:
        create_audit_log(
            db,
            entity_type="job",
            entity_id=job.id,
            action="UPDATE_GEOFENCE",
            actor_id=user.id,
            actor_role=get_user_role(user),
            source="api",
            changes_json=diff,
        )
    db.commit()
    db.refresh(job)
    return _job_geofence(job, business)


@router.post("/jobs/{job_id}/geofence/expansion", response_model=JobGeofenceResponse)
def create_geofence_expansion(
    job_id: uuid.UUID,
    payload: GeofenceExpansionRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    business: Business = Depends(get_current_business),
):
    """Temporarily widen the job geofence (e.g. large site, parking far away)."""
    if not can_supervise(user):
        raise HTTPException(status_code=403, detail="Supervisor or admin role required")
    job = _get_job(db, job_id, business)
    try:
        job = expand_geofence(
            db, job, business,
            radius_meters=payload.radius_meters,
            duration=payload.duration,
            actor=user,
            actor_role=get_user_role(user),
            reason=payload.reason,
        )
    except ClockError as e:
        db.rollback()
        raise clock_http_error(e)
    return _job_geofence(job, business)


@router.delete("/jobs/{job_id}/geofence/expansion", response_model=JobGeofenceResponse)
def clear_geofence_expansion(
    job_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    business: Business = Depends(get_current_business),
):
    if not can_supervise(user):
        raise HTTPException(status_code=403, detail="Supervisor or admin role required")
    job = _get_job(db, job_id, business)
    try:
        job = end_geofence_expansion(db, job, actor=user, actor_role=get_user_role(user))
    except ClockError as e:
        db.rollback()
        raise clock_http_error(e)
    return _job_geofence(job, business)


# Business settings

@router.get("/settings/geofence", response_model=BusinessGeofenceSettings)
def get_geofence_settings(
    user: User = Depends(get_current_user),
    business: Business = Depends(get_current_business),
):
    return _business_settings(business)


@router.patch("/settings/geofence", response_model=BusinessGeofenceSettings)
def update_geofence_settings(
    payload: BusinessGeofenceSettingsUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles("admin")),
    business: Business = Depends(get_current_business),
):
    before = _business_settings(business)
    updates = payload.model_dump(exclude_unset=True, exclude_none=True)
    for key, value in updates.items():
        if key == "geofence_enforcement_mode":
            value = value.value if hasattr(value, "value") else value
        setattr(business, key, value)

    diff = compute_diff(before, _business_settings(business))
    if diff:
        create_audit_log(
            db,
            entity_type="business",
            entity_id=business.id,
            action="UPDATE_GEOFENCE_SETTINGS",
            actor_id=user.id,
            actor_role=get_user_role(user),
            source="api",
            changes_json=diff,
        )
        logger.info("geofence_settings_updated", business_id=str(business.id), fields=sorted(diff.keys()))
    db.commit()
    db.refresh(business)
    return _business_settings(business)
