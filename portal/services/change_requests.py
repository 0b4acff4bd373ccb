"""
Change request engine.

pending -> approved | rejected. Both outcomes are terminal; a reviewed
request only ever changes again through its audit trail.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List, Tuple

from sqlalchemy.orm import Session

from ..errors import InvalidInput, Conflict
from ..models.models import ProjectChangeRequest, Project
from .audit import record_audit
from .identity import Identity
from .notifications import NotificationEvent


REVIEW_ACTIONS = {"approve": "approved", "reject": "rejected"}


def _iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def serialize_change_request(cr: ProjectChangeRequest) -> Dict[str, Any]:
    return {
        "id": str(cr.id),
        "project_id": str(cr.project_id),
        "requested_by": str(cr.requested_by),
        "requester_name": cr.requester.full_name if cr.requester else None,
        "requester_email": cr.requester.email if cr.requester else None,
        "status": cr.status,
        "message": cr.message,
        "requested_sections": list(cr.requested_sections or []),
        "approved_sections": list(cr.approved_sections) if cr.approved_sections is not None else None,
        "admin_notes": cr.admin_notes,
        "reviewed_by": str(cr.reviewed_by) if cr.reviewed_by else None,
        "reviewer_name": cr.reviewer.full_name if cr.reviewer else None,
        "reviewed_at": _iso(cr.reviewed_at),
        "created_at": _iso(cr.created_at),
        "updated_at": _iso(cr.updated_at),
    }


def _text(value) -> Optional[str]:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def _sections(value, field: str) -> List[str]:
    if not isinstance(value, list):
        raise InvalidInput(f"{field} must be a list")
    out = []
    for s in value:
        if not isinstance(s, str) or not s.strip():
            raise InvalidInput(f"{field} must contain section names")
        out.append(s.strip())
    return out


def list_change_requests(db: Session, identity: Identity, project_id: uuid.UUID) -> List[ProjectChangeRequest]:
    q = db.query(ProjectChangeRequest).filter(ProjectChangeRequest.project_id == project_id)
    if identity.is_client:
        q = q.filter(ProjectChangeRequest.requested_by == identity.user_id)
    return q.order_by(ProjectChangeRequest.created_at.desc()).all()


def get_change_request(db: Session, project_id: uuid.UUID, change_request_id: uuid.UUID) -> Optional[ProjectChangeRequest]:
    return (
        db.query(ProjectChangeRequest)
        .filter(ProjectChangeRequest.id == change_request_id, ProjectChangeRequest.project_id == project_id)
        .first()
    )


def create_change_request(
    db: Session,
    identity: Identity,
    project: Project,
    sections,
    message: Optional[str] = None,
) -> Tuple[ProjectChangeRequest, List[NotificationEvent]]:
    """
    File a change request on behalf of the calling client.

    Args:
        db: Database session
        identity: Requesting client
        project: Project the request targets
        sections: Non-empty list of section names
        message: Optional free text

    Returns:
        The created request and the admin notification
    """
    if not sections:
        raise InvalidInput("At least one section must be selected")
    requested = _sections(sections, "sections")
    now = datetime.now(timezone.utc)
    cr = ProjectChangeRequest(
        project_id=project.id,
        requested_by=identity.user_id,
        status="pending",
        message=_text(message),
        requested_sections=requested,
        created_at=now,
        updated_at=now,
    )
    db.add(cr)
    db.flush()
    record_audit(db, "change_request", cr.id, "CREATE", identity.user_id, identity.role.value,
                 changes_json={"requested_sections": requested})
    db.commit()
    db.refresh(cr)
    event = NotificationEvent(
        template_key="change_request.created",
        payload={
            "project_id": str(project.id),
            "project_name": project.name,
            "requester_name": identity.user.full_name,
            "requester_email": identity.user.email,
            "sections": ", ".join(requested),
            "message": cr.message or "",
            "link": f"/projects/{project.id}",
        },
        to_admins=True,
    )
    return cr, [event]


def review_change_request(
    db: Session,
    identity: Identity,
    project: Project,
    cr: ProjectChangeRequest,
    action,
    approved_sections=None,
    admin_notes: Optional[str] = None,
) -> Tuple[ProjectChangeRequest, List[NotificationEvent]]:
    """
    Approve or reject a pending change request.

    Approval records approved_sections exactly as supplied (an omitted list is
    recorded as empty). Rejection always stores no approved sections.

    Raises:
        InvalidInput: action is not approve/reject, or sections are malformed
        Conflict: the request was already reviewed
    """
    if action not in REVIEW_ACTIONS:
        raise InvalidInput("Valid action (approve/reject) is required")
    if cr.status != "pending":
        raise Conflict("Change request has already been reviewed")
    new_status = REVIEW_ACTIONS[action]
    if new_status == "approved":
        approved = _sections(approved_sections, "approvedSections") if approved_sections is not None else []
    else:
        approved = None
    now = datetime.now(timezone.utc)
    cr.status = new_status
    cr.approved_sections = approved
    cr.admin_notes = _text(admin_notes)
    cr.reviewed_by = identity.user_id
    cr.reviewed_at = now
    cr.updated_at = now
    record_audit(
        db, "change_request", cr.id, "APPROVE" if new_status == "approved" else "REJECT",
        identity.user_id, identity.role.value,
        changes_json={"status": {"before": "pending", "after": new_status}, "approved_sections": approved},
    )
    db.commit()
    db.refresh(cr)
    event = NotificationEvent(
        template_key="change_request.reviewed",
        payload={
            "project_id": str(project.id),
            "project_name": project.name,
            "status": new_status,
            "approved_sections": ", ".join(approved or []),
            "admin_notes": cr.admin_notes or "",
            "reviewer_name": identity.user.full_name,
            "link": f"/projects/{project.id}",
        },
        user_ids=[cr.requested_by],
    )
    return cr, [event]
