"""
Override workflow.
A worker blocked by strict enforcement may justify the clock event with a
reason and/or photo. The same checks run on the device and on the server;
the server is authoritative.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy.orm import Session

from ..config import settings
from ..exceptions import ClockError, OverrideRejectedError
from ..models.enums import ClockEventStatus
from ..models.models import ClockEvent, User
from .audit import create_audit_log
from .geofence import OverrideRules
from .ledger import ClockEventLedger
from .time_rules import ensure_utc, utc_now

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class OverrideRequest:
    reason: Optional[str] = None
    photo_url: Optional[str] = None
    blocked_event_id: Optional[uuid.UUID] = None


def check_override_request(
    rules: OverrideRules,
    reason: Optional[str],
    photo_url: Optional[str],
    min_reason_chars: Optional[int] = None,
) -> OverrideRequest:
    """
    Validate an override submission against the business rules.

    Returns the normalized request (reason stripped, blanks dropped) or
    raises OverrideRejectedError with code override_not_allowed,
    reason_required or photo_required.
    """
    if not rules.allowed:
        raise OverrideRejectedError(
            "Override is not allowed for this business", code="override_not_allowed"
        )

    reason = (reason or "").strip() or None
    photo_url = (photo_url or "").strip() or None
    if min_reason_chars is None:
        min_reason_chars = settings.override_reason_min_chars

    if rules.requires_reason and (reason is None or len(reason) < max(min_reason_chars, 1)):
        raise OverrideRejectedError("A reason is required for override", code="reason_required")
    if rules.requires_photo and photo_url is None:
        raise OverrideRejectedError("A photo is required for override", code="photo_required")
    if reason is None and photo_url is None:
        # An override with no justification at all would be indistinguishable from a bypass
        raise OverrideRejectedError("A reason or photo is required for override", code="reason_required")

    return OverrideRequest(reason=reason, photo_url=photo_url)


def approve_override(
    db: Session,
    event_id: uuid.UUID,
    *,
    business_id: uuid.UUID,
    approver: User,
    approver_role: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ClockEvent:
    """
    Supervisor sign-off on a self-service override, after the fact.
    Does not affect the worker's time entry.
    """
    now = ensure_utc(now or utc_now())
    ledger = ClockEventLedger(db)
    event = ledger.get(event_id)
    if event is None or event.business_id != business_id:
        raise ClockError("Clock event not found", code="clock_event_not_found")
    if event.status != ClockEventStatus.override.value:
        raise OverrideRejectedError("Clock event is not an override", code="not_an_override")
    if event.override_approved_at is not None:
        raise OverrideRejectedError("Override was already approved", code="already_approved")

    ledger.record_override_approval(event, approver.id, now)
    create_audit_log(
        db,
        entity_type="clock_event",
        entity_id=event.id,
        action="APPROVE_OVERRIDE",
        actor_id=approver.id,
        actor_role=approver_role,
        source="api",
        changes_json={"override_approved_by": str(approver.id), "override_approved_at": now.isoformat()},
        context={"job_id": str(event.job_id), "worker_id": str(event.user_id)},
    )
    db.commit()
    db.refresh(event)
    logger.info("override_approved", clock_event_id=str(event.id), approver_id=str(approver.id))
    return event
