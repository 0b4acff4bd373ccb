from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth.security import get_identity, parse_body_id
from ..db import get_db
from ..models.models import AuditLog
from ..services.access import Action, enforce
from ..services.audit import get_audit_logs, verify_audit_log
from ..services.identity import Identity


router = APIRouter(prefix="/audit-logs", tags=["audit"])


def _serialize(entry: AuditLog) -> dict:
    return {
        "id": str(entry.id),
        "entity_type": entry.entity_type,
        "entity_id": str(entry.entity_id),
        "action": entry.action,
        "actor_id": str(entry.actor_id) if entry.actor_id else None,
        "actor_role": entry.actor_role,
        "changes": entry.changes_json,
        "context": entry.context,
        "timestamp_utc": entry.timestamp_utc.isoformat() if entry.timestamp_utc else None,
        "verified": verify_audit_log(entry),
    }


@router.get("")
def list_audit_logs(
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    limit: int = 100,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_identity),
):
    enforce(identity, Action.AUDIT_VIEW)
    eid = parse_body_id(entity_id, "entity_id") if entity_id else None
    entries = get_audit_logs(db, entity_type=entity_type, entity_id=eid, limit=max(1, min(limit, 500)))
    return {"auditLogs": [_serialize(e) for e in entries]}
