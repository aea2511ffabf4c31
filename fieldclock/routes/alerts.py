import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..auth.security import get_current_business, get_current_user
from ..db import get_db
from ..exceptions import ClockError
from ..models.models import Business, User
from ..schemas.clock import AlertAcknowledgeRequest, GeofenceAlertResponse
from ..services.alerts import acknowledge_alert, list_alerts, pending_alert_count
from ..services.permissions import can_supervise
from .errors import clock_http_error

router = APIRouter(prefix="/geofence-alerts", tags=["geofence-alerts"])


def _require_supervisor(user: User) -> None:
    if not can_supervise(user):
        raise HTTPException(status_code=403, detail="Supervisor or admin role required")


@router.get("", response_model=List[GeofenceAlertResponse])
def get_alerts(
    status: Optional[str] = Query(default="pending", pattern="^(pending|acknowledged|all)$"),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    business: Business = Depends(get_current_business),
):
    _require_supervisor(user)
    return list_alerts(db, business.id, status=status, limit=limit)


@router.get("/count")
def get_pending_alert_count(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    business: Business = Depends(get_current_business),
):
    _require_supervisor(user)
    return {"pending": pending_alert_count(db, business.id)}


@router.post("/{alert_id}/acknowledge", response_model=GeofenceAlertResponse)
def acknowledge(
    alert_id: uuid.UUID,
    payload: Optional[AlertAcknowledgeRequest] = None,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    business: Business = Depends(get_current_business),
):
    _require_supervisor(user)
    try:
        return acknowledge_alert(
            db, alert_id,
            business_id=business.id,
            user=user,
            notes=payload.notes if payload else None,
        )
    except ClockError as e:
        raise clock_http_error(e)
