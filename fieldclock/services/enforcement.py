"""
Enforcement policy resolution.
Merges job-level geofence settings with business defaults and owns the
administrative temporary radius expansion.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Union

import structlog
from sqlalchemy.orm import Session

from ..config import settings
from ..exceptions import GeofenceExpansionError
from ..models.enums import EnforcementMode
from ..models.models import Business, Job, User
from .audit import create_audit_log
from .geofence import GeofenceConfig, OverrideRules, effective_radius, expansion_active
from .time_rules import end_of_day_utc, ensure_utc, utc_now

logger = structlog.get_logger(__name__)

# Presets offered to office staff; any whole number of hours up to the configured maximum also works
EXPANSION_DURATION_PRESETS = {"1h": 1, "2h": 2, "4h": 4, "eod": None}


def parse_enforcement_mode(value: Optional[str]) -> Optional[EnforcementMode]:
    if value is None or value == "":
        return None
    try:
        return EnforcementMode(str(value).lower())
    except ValueError:
        logger.warning("unknown_enforcement_mode", value=value)
        return None


def resolve_enforcement_mode(job: Optional[Job], business: Optional[Business]) -> EnforcementMode:
    """Job setting wins, then the business default, then warn."""
    for candidate in (
        getattr(job, "geofence_enforcement", None),
        getattr(business, "geofence_enforcement_mode", None),
    ):
        mode = parse_enforcement_mode(candidate)
        if mode is not None:
            return mode
    return EnforcementMode.warn


def resolve_override_rules(business: Optional[Business]) -> OverrideRules:
    if business is None:
        return OverrideRules()
    return OverrideRules(
        allowed=bool(business.geofence_allow_override),
        requires_reason=bool(business.geofence_override_requires_reason),
        requires_photo=bool(business.geofence_override_requires_photo),
    )


def resolve_geofence_config(job: Job, business: Optional[Business]) -> GeofenceConfig:
    business_default = getattr(business, "default_geofence_radius_meters", None)
    if business_default is None:
        business_default = settings.geo_radius_m_default
    return GeofenceConfig(
        center_latitude=job.latitude,
        center_longitude=job.longitude,
        base_radius_meters=job.geofence_radius_meters,
        enforcement_mode=resolve_enforcement_mode(job, business),
        expanded_radius_meters=job.geofence_expanded_radius_meters,
        expanded_until=ensure_utc(job.geofence_expanded_until),
        business_default_radius_meters=business_default,
        override=resolve_override_rules(business),
    )


def resolve_accuracy_threshold(business: Optional[Business]) -> float:
    value = getattr(business, "gps_accuracy_warning_m", None)
    if value is not None and value > 0:
        return float(value)
    return float(settings.gps_accuracy_warning_m)


@dataclass(frozen=True)
class GeofenceSnapshot:
    """What the geofence looks like at one instant, for display."""

    has_location: bool
    effective_radius_meters: float
    base_radius_meters: float
    enforcement_mode: EnforcementMode
    is_expanded: bool
    expanded_until: Optional[datetime]
    override: OverrideRules


def describe_geofence(job: Job, business: Optional[Business], now: Optional[datetime] = None) -> GeofenceSnapshot:
    now = ensure_utc(now or utc_now())
    config = resolve_geofence_config(job, business)
    radius, is_expanded = effective_radius(config, now)
    base = GeofenceConfig(
        center_latitude=config.center_latitude,
        center_longitude=config.center_longitude,
        base_radius_meters=config.base_radius_meters,
        business_default_radius_meters=config.business_default_radius_meters,
    )
    base_radius, _ = effective_radius(base, now)
    return GeofenceSnapshot(
        has_location=config.has_location,
        effective_radius_meters=radius,
        base_radius_meters=base_radius,
        enforcement_mode=config.enforcement_mode,
        is_expanded=is_expanded,
        expanded_until=config.expanded_until if is_expanded else None,
        override=config.override,
    )


def compute_expansion_until(
    duration: Union[str, int],
    now: datetime,
    timezone_str: Optional[str],
) -> datetime:
    """
    Expiry for an expansion requested at `now`.

    Args:
        duration: A preset key ("1h", "2h", "4h", "eod") or a whole number of hours
        now: Request time
        timezone_str: Business timezone, used for "eod"
    """
    now = ensure_utc(now)
    if isinstance(duration, str) and duration in EXPANSION_DURATION_PRESETS:
        hours = EXPANSION_DURATION_PRESETS[duration]
        if hours is None:
            return end_of_day_utc(now, timezone_str)
    else:
        try:
            hours = int(duration)
        except (TypeError, ValueError):
            raise GeofenceExpansionError(f"Unknown expansion duration: {duration}")
    if hours <= 0 or hours > settings.geofence_expansion_max_hours:
        raise GeofenceExpansionError(
            f"Expansion must last between 1 and {settings.geofence_expansion_max_hours} hours"
        )
    return now + timedelta(hours=hours)


def expand_geofence(
    db: Session,
    job: Job,
    business: Optional[Business],
    *,
    radius_meters: float,
    duration: Union[str, int],
    actor: User,
    actor_role: Optional[str] = None,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Job:
    """Temporarily widen a job's geofence. The expansion always carries an expiry."""
    now = ensure_utc(now or utc_now())
    try:
        radius = float(radius_meters)
    except (TypeError, ValueError):
        raise GeofenceExpansionError("Expansion radius must be a number")
    if radius <= 0:
        raise GeofenceExpansionError("Expansion radius must be positive")
    if radius > settings.geofence_expansion_max_radius_m:
        raise GeofenceExpansionError(
            f"Expansion radius cannot exceed {settings.geofence_expansion_max_radius_m}m"
        )

    until = compute_expansion_until(duration, now, getattr(business, "timezone", None))
    if until <= now:
        raise GeofenceExpansionError("Expansion would already be expired")

    before = {
        "geofence_expanded_radius_meters": job.geofence_expanded_radius_meters,
        "geofence_expanded_until": _iso(job.geofence_expanded_until),
    }
    job.geofence_expanded_radius_meters = int(round(radius))
    job.geofence_expanded_until = until
    job.geofence_expanded_by = actor.id
    job.geofence_expansion_reason = (reason or "").strip() or None

    create_audit_log(
        db,
        entity_type="job",
        entity_id=job.id,
        action="EXPAND_GEOFENCE",
        actor_id=actor.id,
        actor_role=actor_role,
        source="api",
        changes_json={
            "before": before,
            "after": {
                "geofence_expanded_radius_meters": job.geofence_expanded_radius_meters,
                "geofence_expanded_until": _iso(until),
            },
        },
        context={"reason": job.geofence_expansion_reason, "duration": str(duration)},
    )
    db.commit()
    db.refresh(job)
    logger.info(
        "geofence_expanded",
        job_id=str(job.id),
        radius_m=job.geofence_expanded_radius_meters,
        until=_iso(until),
        actor_id=str(actor.id),
    )
    return job


def end_geofence_expansion(
    db: Session,
    job: Job,
    *,
    actor: User,
    actor_role: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Job:
    """End an active expansion early by moving its expiry to `now`."""
    now = ensure_utc(now or utc_now())
    config = GeofenceConfig(
        center_latitude=job.latitude,
        center_longitude=job.longitude,
        base_radius_meters=job.geofence_radius_meters,
        expanded_radius_meters=job.geofence_expanded_radius_meters,
        expanded_until=ensure_utc(job.geofence_expanded_until),
    )
    if not expansion_active(config, now):
        raise GeofenceExpansionError("Job has no active geofence expansion")

    previous_until = _iso(job.geofence_expanded_until)
    job.geofence_expanded_until = now
    create_audit_log(
        db,
        entity_type="job",
        entity_id=job.id,
        action="END_GEOFENCE_EXPANSION",
        actor_id=actor.id,
        actor_role=actor_role,
        source="api",
        changes_json={"geofence_expanded_until": {"before": previous_until, "after": _iso(now)}},
    )
    db.commit()
    db.refresh(job)
    logger.info("geofence_expansion_ended", job_id=str(job.id), actor_id=str(actor.id))
    return job


def _iso(value: Optional[datetime]) -> Optional[str]:
    value = ensure_utc(value)
    return value.isoformat() if value else None
