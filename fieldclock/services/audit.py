"""
Administrative audit trail.
Covers override approvals, geofence changes, manual time entries and
corrections. Rows are tamper-evident: each stores a SHA-256 over its canonical
JSON plus a server secret, so an edited row no longer verifies.
"""
import hashlib
import hmac
import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import AuditLog
from .time_rules import ensure_utc, utc_now

logger = structlog.get_logger(__name__)


def _secret(explicit: Optional[str] = None) -> str:
    return explicit or settings.audit_integrity_secret or settings.jwt_secret


def _canonical_payload(
    entity_type: str,
    entity_id: Any,
    action: str,
    actor_id: Optional[Any],
    actor_role: Optional[str],
    source: Optional[str],
    timestamp_utc: datetime,
    changes: Optional[Dict],
    context: Optional[Dict],
) -> Dict[str, Any]:
    payload = {
        "entity_type": entity_type,
        "entity_id": str(entity_id),
        "action": action,
        "actor_id": str(actor_id) if actor_id else None,
        "actor_role": actor_role,
        "source": source,
        "timestamp_utc": ensure_utc(timestamp_utc).isoformat(),
        "changes": changes,
        "context": context,
    }
    return {k: v for k, v in payload.items() if v is not None}


def compute_integrity_hash(payload: Dict[str, Any], secret: str) -> str:
    canonical_json = json.dumps(payload, sort_keys=True, default=str)
    return hashlib.sha256(f"{canonical_json}:{secret}".encode()).hexdigest()


def create_audit_log(
    db: Session,
    entity_type: str,
    entity_id: uuid.UUID,
    action: str,
    actor_id: Optional[uuid.UUID] = None,
    actor_role: Optional[str] = None,
    source: Optional[str] = None,
    changes_json: Optional[Dict] = None,
    context: Optional[Dict] = None,
    integrity_secret: Optional[str] = None,
) -> AuditLog:
    """
    Add an audit row to the caller's transaction.

    The caller commits, so the row lands together with the change it
    describes or not at all.

    Args:
        entity_type: clock_event | time_entry | job | business
        action: APPROVE_OVERRIDE, EXPAND_GEOFENCE, END_GEOFENCE_EXPANSION,
            UPDATE_GEOFENCE, UPDATE_GEOFENCE_SETTINGS, MANUAL_ENTRY, CORRECT_ENTRY
        actor_role: admin | supervisor | worker | system
        changes_json: field -> {"before", "after"} diff, or a plain snapshot
        context: job/worker ids the row should be findable by
    """
    source = source or "system"
    timestamp_utc = utc_now()
    payload = _canonical_payload(
        entity_type, entity_id, action, actor_id, actor_role, source, timestamp_utc, changes_json, context
    )
    audit_log = AuditLog(
        id=uuid.uuid4(),
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        actor_id=actor_id,
        actor_role=actor_role,
        source=source,
        changes_json=changes_json,
        timestamp_utc=timestamp_utc,
        context=context,
        integrity_hash=compute_integrity_hash(payload, _secret(integrity_secret)),
    )
    db.add(audit_log)
    db.flush()
    logger.info("audit_log_written", entity_type=entity_type, entity_id=str(entity_id), action=action)
    return audit_log


def verify_audit_log(audit_log: AuditLog, integrity_secret: Optional[str] = None) -> bool:
    """True when the stored hash still matches the row's content."""
    if not audit_log.integrity_hash:
        return False
    payload = _canonical_payload(
        audit_log.entity_type,
        audit_log.entity_id,
        audit_log.action,
        audit_log.actor_id,
        audit_log.actor_role,
        audit_log.source,
        audit_log.timestamp_utc,
        audit_log.changes_json,
        audit_log.context,
    )
    expected = compute_integrity_hash(payload, _secret(integrity_secret))
    return hmac.compare_digest(expected, audit_log.integrity_hash)


def audit_trail(
    db: Session,
    entity_type: Optional[str] = None,
    entity_id: Optional[uuid.UUID] = None,
    limit: int = 100,
) -> List[AuditLog]:
    """Newest first."""
    query = db.query(AuditLog)
    if entity_type:
        query = query.filter(AuditLog.entity_type == entity_type)
    if entity_id:
        query = query.filter(AuditLog.entity_id == entity_id)
    return query.order_by(AuditLog.timestamp_utc.desc()).limit(limit).all()


def compute_diff(before: Dict, after: Dict) -> Dict:
    """{field: {"before": ..., "after": ...}} for every field whose value changed."""
    return {
        key: {"before": before.get(key), "after": after.get(key)}
        for key in sorted(set(before) | set(after))
        if before.get(key) != after.get(key)
    }
