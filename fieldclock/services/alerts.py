"""
Geofence alerts for supervisors.
"""
import uuid
from datetime import datetime
from typing import List, Optional

import structlog
from sqlalchemy import func
from sqlalchemy.orm import Session

from ..exceptions import ClockError
from ..models.enums import AlertSeverity, AlertStatus, AlertType, ClockEventStatus, ClockEventType, EnforcementMode
from ..models.models import ClockEvent, GeofenceAlert, User
from .time_rules import ensure_utc, utc_now

logger = structlog.get_logger(__name__)


def alert_kind_for(event: ClockEvent) -> Optional[tuple]:
    """(alert_type, severity) for a ledger row, or None when no alert is due."""
    if event.no_job_location or event.within_geofence:
        return None
    if event.status == ClockEventStatus.override.value:
        return AlertType.override_requested.value, AlertSeverity.info.value
    alert_type = (
        AlertType.clock_in_outside.value
        if event.event_type == ClockEventType.clock_in.value
        else AlertType.clock_out_outside.value
    )
    severity = (
        AlertSeverity.error.value
        if event.enforcement_mode == EnforcementMode.strict.value
        else AlertSeverity.warning.value
    )
    return alert_type, severity


def raise_alert_for_event(db: Session, event: ClockEvent) -> Optional[GeofenceAlert]:
    """Add an alert for an out-of-geofence event to the current transaction."""
    kind = alert_kind_for(event)
    if kind is None:
        return None
    alert_type, severity = kind
    alert = GeofenceAlert(
        id=uuid.uuid4(),
        business_id=event.business_id,
        clock_event_id=event.id,
        job_id=event.job_id,
        user_id=event.user_id,
        alert_type=alert_type,
        severity=severity,
        distance_meters=event.distance_from_job_meters,
        status=AlertStatus.pending.value,
    )
    db.add(alert)
    db.flush()
    logger.info(
        "geofence_alert_created",
        alert_id=str(alert.id),
        alert_type=alert_type,
        severity=severity,
        distance_m=event.distance_from_job_meters,
    )
    return alert


def list_alerts(
    db: Session,
    business_id: uuid.UUID,
    status: Optional[str] = AlertStatus.pending.value,
    limit: int = 100,
) -> List[GeofenceAlert]:
    query = db.query(GeofenceAlert).filter(GeofenceAlert.business_id == business_id)
    if status and status != "all":
        query = query.filter(GeofenceAlert.status == status)
    return query.order_by(GeofenceAlert.created_at.desc()).limit(limit).all()


def pending_alert_count(db: Session, business_id: uuid.UUID) -> int:
    return int(
        db.query(func.count(GeofenceAlert.id))
        .filter(
            GeofenceAlert.business_id == business_id,
            GeofenceAlert.status == AlertStatus.pending.value,
        )
        .scalar() or 0
    )


def acknowledge_alert(
    db: Session,
    alert_id: uuid.UUID,
    *,
    business_id: uuid.UUID,
    user: User,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> GeofenceAlert:
    alert = db.query(GeofenceAlert).filter(
        GeofenceAlert.id == alert_id,
        GeofenceAlert.business_id == business_id,
    ).first()
    if alert is None:
        raise ClockError("Alert not found", code="alert_not_found")
    if alert.status == AlertStatus.acknowledged.value:
        raise ClockError("Alert was already acknowledged", code="already_acknowledged")

    alert.status = AlertStatus.acknowledged.value
    alert.acknowledged_by = user.id
    alert.acknowledged_at = ensure_utc(now or utc_now())
    alert.resolution_notes = (notes or "").strip() or None
    db.commit()
    db.refresh(alert)
    logger.info("geofence_alert_acknowledged", alert_id=str(alert.id), user_id=str(user.id))
    return alert
