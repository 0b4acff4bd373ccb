"""
Audit logging service.
Append-only audit log with integrity hashing. Entries are added to the
caller's session and committed together with the transition they describe.
"""
import hashlib
import json
import uuid
from datetime import datetime
from typing import Optional, Dict, Any, List

from sqlalchemy.orm import Session

from ..models.models import AuditLog
from ..config import settings


def integrity_hash_for(
    entity_type: str,
    entity_id,
    action: str,
    actor_id,
    actor_role: Optional[str],
    timestamp_utc: datetime,
    changes_json: Optional[Dict],
    context: Optional[Dict],
    secret: str,
) -> str:
    canonical_data = {
        "entity_type": entity_type,
        "entity_id": str(entity_id),
        "action": action,
        "actor_id": str(actor_id) if actor_id else None,
        "actor_role": actor_role,
        "timestamp_utc": timestamp_utc.isoformat(),
        "changes": changes_json,
        "context": context,
    }
    # Drop None values and sort keys for a stable form
    canonical_data = {k: v for k, v in canonical_data.items() if v is not None}
    canonical_json = json.dumps(canonical_data, sort_keys=True, default=str)
    return hashlib.sha256(f"{canonical_json}:{secret}".encode()).hexdigest()


def record_audit(
    db: Session,
    entity_type: str,
    entity_id: uuid.UUID,
    action: str,
    actor_id: Optional[uuid.UUID] = None,
    actor_role: Optional[str] = None,
    changes_json: Optional[Dict] = None,
    context: Optional[Dict] = None,
) -> AuditLog:
    """
    Stage an append-only audit log entry.

    Args:
        db: Database session (the caller commits)
        entity_type: project|change_request|work_order|signature|document_share
        entity_id: Entity ID
        action: CREATE|UPDATE|APPROVE|REJECT|DELETE|SHARE|REVOKE|SIGN
        actor_id: User ID who performed the action
        actor_role: Role of the actor
        changes_json: Before/after diff
        context: Additional context (signer ip, client id, etc.)

    Returns:
        The pending AuditLog object
    """
    timestamp_utc = datetime.utcnow().replace(tzinfo=None)
    integrity_hash = integrity_hash_for(
        entity_type, entity_id, action, actor_id, actor_role,
        timestamp_utc, changes_json, context, settings.session_secret,
    )
    entry = AuditLog(
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        actor_id=actor_id,
        actor_role=actor_role,
        changes_json=changes_json,
        context=context,
        timestamp_utc=timestamp_utc,
        integrity_hash=integrity_hash,
    )
    db.add(entry)
    return entry


def get_audit_logs(
    db: Session,
    entity_type: Optional[str] = None,
    entity_id: Optional[uuid.UUID] = None,
    limit: int = 100,
) -> List[AuditLog]:
    query = db.query(AuditLog)
    if entity_type:
        query = query.filter(AuditLog.entity_type == entity_type)
    if entity_id:
        query = query.filter(AuditLog.entity_id == entity_id)
    return query.order_by(AuditLog.timestamp_utc.desc()).limit(limit).all()


def verify_audit_log(entry: AuditLog) -> bool:
    ts = entry.timestamp_utc.replace(tzinfo=None) if entry.timestamp_utc else None
    if ts is None or not entry.integrity_hash:
        return False
    expected = integrity_hash_for(
        entry.entity_type, entry.entity_id, entry.action, entry.actor_id, entry.actor_role,
        ts, entry.changes_json, entry.context, settings.session_secret,
    )
    return expected == entry.integrity_hash


def compute_diff(before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Any]:
    """
    Compute a diff between two dictionaries.

    Returns:
        Dict with before/after values for changed fields
    """
    diff = {}
    for key in set(before.keys()) | set(after.keys()):
        before_val = before.get(key)
        after_val = after.get(key)
        if before_val != after_val:
            diff[key] = {"before": before_val, "after": after_val}
    return diff
