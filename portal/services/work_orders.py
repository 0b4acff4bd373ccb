"""
Work order engine.
Numbering, CRUD and search, completion tracking, materials, signatures and
customer invitations.
"""
import re
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, List, Tuple

from sqlalchemy import func, case, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import InvalidInput, Conflict, NotFound
from ..logging import structlog
from ..models.models import (
    WorkOrder,
    WorkOrderMaterial,
    WorkOrderSignature,
    WorkOrderInvitation,
    Project,
    User,
)
from .access import AccessContext
from .audit import record_audit, compute_diff
from .identity import Identity
from .notifications import NotificationEvent


log = structlog.get_logger(__name__)

PRIORITIES = ("emergency", "high", "normal", "low")
SERVICE_TYPES = ("maintenance", "repair", "replace", "inspection", "preventive", "cleaning", "other")
COMPLETION_STATUSES = ("pending", "in_progress", "completed", "cancelled")
SIGNER_TYPES = ("tl_corp_rep", "building_rep")
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

TEXT_FIELDS = (
    "date",
    "time_received",
    "phone",
    "email",
    "company",
    "department",
    "location",
    "unit",
    "area",
    "access_needed",
    "preferred_entry_time",
    "scheduled_date",
    "scheduled_time",
    "time_in",
    "time_out",
    "completed_date",
    "completed_time",
    "work_summary",
)
AUDITED_FIELDS = TEXT_FIELDS + (
    "priority", "service_type", "description", "assigned_to", "project_id", "total_labor_hours", "work_completed",
)


def _utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return _utc(dt).isoformat() if dt else None


def _clean(value) -> Optional[str]:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def _choice(value, allowed, field: str) -> str:
    s = str(value).strip().lower()
    if s not in allowed:
        raise InvalidInput(f"Invalid {field}")
    return s


def _float(value, field: str) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise InvalidInput(f"Invalid {field}")


def _uuid(value, field: str) -> Optional[uuid.UUID]:
    if value is None or value == "":
        return None
    try:
        return uuid.UUID(str(value))
    except (ValueError, TypeError):
        raise InvalidInput(f"Invalid {field}")


# ---------- Serialization ----------

def serialize_work_order(wo: WorkOrder) -> Dict[str, Any]:
    data = {f: getattr(wo, f) for f in TEXT_FIELDS}
    data.update({
        "id": str(wo.id),
        "work_order_number": wo.work_order_number,
        "priority": wo.priority,
        "service_type": wo.service_type,
        "description": wo.description,
        "assigned_to": str(wo.assigned_to) if wo.assigned_to else None,
        "assigned_user_name": wo.assignee.full_name if wo.assignee else None,
        "total_labor_hours": wo.total_labor_hours,
        "work_completed": wo.work_completed,
        "project_id": str(wo.project_id) if wo.project_id else None,
        "project_name": wo.project.name if wo.project else None,
        "created_by": str(wo.created_by) if wo.created_by else None,
        "creator_name": wo.creator.full_name if wo.creator else None,
        "created_at": _iso(wo.created_at),
        "updated_at": _iso(wo.updated_at),
    })
    return data


def _snapshot(wo: WorkOrder) -> Dict[str, Any]:
    snap = {}
    for f in AUDITED_FIELDS:
        v = getattr(wo, f)
        snap[f] = str(v) if isinstance(v, uuid.UUID) else v
    return snap


def serialize_material(m: WorkOrderMaterial) -> Dict[str, Any]:
    return {
        "id": str(m.id),
        "work_order_id": str(m.work_order_id),
        "material_name": m.material_name,
        "quantity": m.quantity,
        "unit": m.unit,
        "unit_cost": m.unit_cost,
        "total_cost": m.total_cost,
        "notes": m.notes,
        "created_at": _iso(m.created_at),
    }


def serialize_signature(s: WorkOrderSignature) -> Dict[str, Any]:
    return {
        "id": str(s.id),
        "work_order_id": str(s.work_order_id),
        "signer_type": s.signer_type,
        "signer_name": s.signer_name,
        "signer_title": s.signer_title,
        "signature_data": s.signature_data,
        "signed_at": _iso(s.signed_at),
        "ip_address": s.ip_address,
        "created_at": _iso(s.created_at),
    }


def serialize_invitation(inv: WorkOrderInvitation) -> Dict[str, Any]:
    return {
        "id": str(inv.id),
        "work_order_id": str(inv.work_order_id),
        "customer_name": inv.customer_name,
        "email": inv.email,
        "token": inv.token,
        "invited_by": str(inv.invited_by) if inv.invited_by else None,
        "status": inv.status,
        "expires_at": _iso(inv.expires_at),
        "created_at": _iso(inv.created_at),
        "accepted_at": _iso(inv.accepted_at),
    }


# ---------- Numbering ----------

def generate_work_order_number(db: Session, now: Optional[datetime] = None) -> str:
    """
    Next number for the current UTC day, e.g. WO-20240115-007.

    The sequence restarts at 001 each day and continues after the highest
    number already issued for that day. Suffixes are compared as integers,
    so 1000 follows 999.
    """
    now = _utc(now) or datetime.now(timezone.utc)
    prefix = f"{settings.work_order_prefix}-{now.strftime('%Y%m%d')}-"
    issued = (
        db.query(WorkOrder.work_order_number)
        .filter(WorkOrder.work_order_number.like(f"{prefix}%"))
        .all()
    )
    tails = [row[0][len(prefix):] for row in issued]
    highest = max((int(t) for t in tails if t.isdigit()), default=0)
    return f"{prefix}{highest + 1:03d}"


# ---------- Work orders ----------

def work_order_context(identity: Identity, wo: Optional[WorkOrder]) -> AccessContext:
    return AccessContext(assigned=bool(wo is not None and wo.assigned_to == identity.user_id))


def get_work_order(db: Session, work_order_id: uuid.UUID) -> Optional[WorkOrder]:
    return db.query(WorkOrder).filter(WorkOrder.id == work_order_id).first()


def search_work_orders(db: Session, identity: Identity, filters: Dict[str, Any]) -> List[WorkOrder]:
    """
    List work orders matching the given filters.

    Non-admin callers only ever see orders assigned to themselves, whatever
    assigned_to filter they pass.
    """
    q = db.query(WorkOrder)
    if filters.get("status"):
        q = q.filter(WorkOrder.work_completed == filters["status"])
    if filters.get("priority"):
        q = q.filter(WorkOrder.priority == filters["priority"])
    if filters.get("service_type"):
        q = q.filter(WorkOrder.service_type == filters["service_type"])
    if not identity.is_admin:
        q = q.filter(WorkOrder.assigned_to == identity.user_id)
    elif filters.get("assigned_to"):
        q = q.filter(WorkOrder.assigned_to == _uuid(filters["assigned_to"], "assigned_to"))
    if filters.get("project_id"):
        q = q.filter(WorkOrder.project_id == _uuid(filters["project_id"], "project_id"))
    if filters.get("date_from"):
        q = q.filter(WorkOrder.date >= filters["date_from"])
    if filters.get("date_to"):
        q = q.filter(WorkOrder.date <= filters["date_to"])
    if filters.get("search"):
        term = f"%{filters['search']}%"
        q = q.filter(or_(
            WorkOrder.work_order_number.ilike(term),
            WorkOrder.company.ilike(term),
            WorkOrder.location.ilike(term),
            WorkOrder.description.ilike(term),
        ))
    return q.order_by(WorkOrder.created_at.desc()).all()


def work_order_stats(db: Session) -> Dict[str, int]:
    row = db.query(
        func.count(WorkOrder.id),
        func.sum(case((WorkOrder.work_completed == "pending", 1), else_=0)),
        func.sum(case((WorkOrder.work_completed == "in_progress", 1), else_=0)),
        func.sum(case((WorkOrder.work_completed == "completed", 1), else_=0)),
        func.sum(case((WorkOrder.work_completed == "cancelled", 1), else_=0)),
        func.sum(case(
            ((WorkOrder.priority == "emergency") & WorkOrder.work_completed.notin_(("completed", "cancelled")), 1),
            else_=0,
        )),
    ).one()
    keys = ("total", "pending", "in_progress", "completed", "cancelled", "emergency")
    return {k: int(v or 0) for k, v in zip(keys, row)}


def _check_assignee(db: Session, user_id: Optional[uuid.UUID]) -> None:
    if user_id is None:
        return
    u = db.query(User).filter(User.id == user_id).first()
    if not u:
        raise NotFound("Assigned user not found")
    if u.role == "client":
        raise InvalidInput("Work orders cannot be assigned to clients")


def _check_project(db: Session, project_id: Optional[uuid.UUID]) -> None:
    if project_id is not None and not db.query(Project.id).filter(Project.id == project_id).first():
        raise NotFound("Project not found")


def _event(key: str, wo: WorkOrder, identity: Identity, **extra) -> NotificationEvent:
    payload = {
        "work_order_id": str(wo.id),
        "work_order_number": wo.work_order_number,
        "description": wo.description,
        "company": wo.company or "",
        "location": wo.location or "",
        "performed_by": identity.user.full_name,
        "link": f"/work-orders/{wo.id}",
    }
    payload.update(extra)
    recipients = [wo.assigned_to] if wo.assigned_to else []
    return NotificationEvent(
        template_key=key,
        payload=payload,
        user_ids=recipients,
        to_admins=True,
        exclude_user_id=identity.user_id,
    )


def resolve_creation_assignee(identity: Identity, data: Dict[str, Any]) -> Optional[uuid.UUID]:
    """Admins may assign anyone or no one; other callers default to themselves."""
    assigned = _uuid(data.get("assigned_to"), "assigned_to")
    if assigned is None and not identity.is_admin:
        return identity.user_id
    return assigned


def create_work_order(
    db: Session,
    identity: Identity,
    data: Dict[str, Any],
    assigned_to: Optional[uuid.UUID] = None,
) -> Tuple[WorkOrder, List[NotificationEvent]]:
    description = _clean(data.get("description"))
    if not description:
        raise InvalidInput("Description is required")
    project_id = _uuid(data.get("project_id"), "project_id")
    _check_assignee(db, assigned_to)
    _check_project(db, project_id)

    number = _clean(data.get("work_order_number"))
    if number and db.query(WorkOrder.id).filter(WorkOrder.work_order_number == number).first():
        raise Conflict("Work order number already exists")

    fields = {f: _clean(data.get(f)) for f in TEXT_FIELDS}
    if not fields["date"]:
        fields["date"] = datetime.now(timezone.utc).strftime("%Y-%m-%d")
    now = datetime.now(timezone.utc)
    wo = WorkOrder(
        work_order_number=number or generate_work_order_number(db),
        priority=_choice(data.get("priority") or "normal", PRIORITIES, "priority"),
        service_type=_choice(data.get("service_type") or "maintenance", SERVICE_TYPES, "service_type"),
        description=description,
        assigned_to=assigned_to,
        project_id=project_id,
        total_labor_hours=_float(data.get("total_labor_hours"), "total_labor_hours"),
        work_completed=_choice(data.get("work_completed") or "pending", COMPLETION_STATUSES, "work_completed"),
        created_by=identity.user_id,
        created_at=now,
        updated_at=now,
        **fields,
    )
    db.add(wo)
    try:
        db.flush()
    except IntegrityError:
        # Another writer took the generated number; retry once with the next one
        db.rollback()
        if number:
            raise Conflict("Work order number already exists")
        wo.work_order_number = generate_work_order_number(db)
        db.add(wo)
        db.flush()
    record_audit(db, "work_order", wo.id, "CREATE", identity.user_id, identity.role.value,
                 changes_json={"after": _snapshot(wo)})
    db.commit()
    db.refresh(wo)
    log.info("work_order_created", work_order_id=str(wo.id), number=wo.work_order_number)
    return wo, [_event("work_order.created", wo, identity)]


def update_work_order(db: Session, identity: Identity, wo: WorkOrder, data: Dict[str, Any]) -> Tuple[WorkOrder, List[NotificationEvent]]:
    """
    Apply a partial update and work out which notifications it triggers.

    A completed notification fires only on the edge into completed. Any other
    change of work_completed fires a status_changed notification; resaving the
    same value fires nothing.
    """
    before = _snapshot(wo)
    previous_status = wo.work_completed

    for f in TEXT_FIELDS:
        if f in data:
            setattr(wo, f, _clean(data.get(f)))
    if "description" in data:
        description = _clean(data.get("description"))
        if not description:
            raise InvalidInput("Description is required")
        wo.description = description
    if data.get("priority") is not None:
        wo.priority = _choice(data["priority"], PRIORITIES, "priority")
    if data.get("service_type") is not None:
        wo.service_type = _choice(data["service_type"], SERVICE_TYPES, "service_type")
    if "total_labor_hours" in data:
        wo.total_labor_hours = _float(data.get("total_labor_hours"), "total_labor_hours")
    if "assigned_to" in data:
        assigned = _uuid(data.get("assigned_to"), "assigned_to")
        _check_assignee(db, assigned)
        wo.assigned_to = assigned
    if "project_id" in data:
        project_id = _uuid(data.get("project_id"), "project_id")
        _check_project(db, project_id)
        wo.project_id = project_id
    new_status = None
    if data.get("work_completed") is not None:
        new_status = _choice(data["work_completed"], COMPLETION_STATUSES, "work_completed")
        wo.work_completed = new_status
    wo.updated_at = datetime.now(timezone.utc)

    diff = compute_diff(before, _snapshot(wo))
    if diff:
        record_audit(db, "work_order", wo.id, "UPDATE", identity.user_id, identity.role.value, changes_json=diff)
    db.commit()
    db.refresh(wo)

    events: List[NotificationEvent] = []
    if new_status == "completed" and previous_status != "completed":
        events.append(_event("work_order.completed", wo, identity))
    elif new_status is not None and new_status != previous_status:
        events.append(_event("work_order.status_changed", wo, identity,
                             previous_status=previous_status, new_status=new_status))
    return wo, events


def delete_work_order(db: Session, identity: Identity, wo: WorkOrder) -> None:
    record_audit(db, "work_order", wo.id, "DELETE", identity.user_id, identity.role.value,
                 changes_json={"before": _snapshot(wo)})
    db.delete(wo)
    db.commit()


# ---------- Materials ----------

def list_materials(db: Session, work_order_id: uuid.UUID) -> List[WorkOrderMaterial]:
    return (
        db.query(WorkOrderMaterial)
        .filter(WorkOrderMaterial.work_order_id == work_order_id)
        .order_by(WorkOrderMaterial.created_at.asc())
        .all()
    )


def materials_total_cost(materials: List[WorkOrderMaterial]) -> float:
    return float(sum(m.total_cost or 0 for m in materials))


def add_material(db: Session, wo: WorkOrder, data: Dict[str, Any]) -> WorkOrderMaterial:
    name = _clean(data.get("material_name"))
    if not name:
        raise InvalidInput("Material name is required")
    quantity = _float(data.get("quantity"), "quantity")
    if quantity is None:
        quantity = 1.0
    unit_cost = _float(data.get("unit_cost"), "unit_cost")
    m = WorkOrderMaterial(
        work_order_id=wo.id,
        material_name=name,
        quantity=quantity,
        unit=_clean(data.get("unit")),
        unit_cost=unit_cost,
        total_cost=quantity * unit_cost if unit_cost is not None else None,
        notes=_clean(data.get("notes")),
    )
    db.add(m)
    db.commit()
    db.refresh(m)
    return m


def delete_material(db: Session, wo: WorkOrder, material_id: uuid.UUID) -> bool:
    count = (
        db.query(WorkOrderMaterial)
        .filter(WorkOrderMaterial.id == material_id, WorkOrderMaterial.work_order_id == wo.id)
        .delete()
    )
    db.commit()
    return bool(count)


# ---------- Signatures ----------

def list_signatures(db: Session, work_order_id: uuid.UUID) -> List[WorkOrderSignature]:
    return (
        db.query(WorkOrderSignature)
        .filter(WorkOrderSignature.work_order_id == work_order_id)
        .order_by(WorkOrderSignature.created_at.asc())
        .all()
    )


def add_signature(
    db: Session,
    identity: Identity,
    wo: WorkOrder,
    data: Dict[str, Any],
    ip_address: Optional[str] = None,
) -> Tuple[WorkOrderSignature, List[NotificationEvent]]:
    """
    Append a signature to the work order's ledger.

    Args:
        db: Database session
        identity: Caller capturing the signature
        wo: Work order being signed
        data: signer_type, signer_name, signature_data and optional signer_title
        ip_address: Best-effort source address of the request

    Returns:
        The stored signature and the alert notification
    """
    signer_name = _clean(data.get("signer_name"))
    signature_data = data.get("signature_data")
    if not data.get("signer_type") or not signer_name or not signature_data:
        raise InvalidInput("Signer type, name, and signature data are required")
    signer_type = str(data["signer_type"]).strip()
    if signer_type not in SIGNER_TYPES:
        raise InvalidInput("Invalid signer type")
    now = datetime.now(timezone.utc)
    sig = WorkOrderSignature(
        work_order_id=wo.id,
        signer_type=signer_type,
        signer_name=signer_name,
        signer_title=_clean(data.get("signer_title")),
        signature_data=str(signature_data),
        signed_at=now,
        ip_address=ip_address,
        created_at=now,
    )
    db.add(sig)
    db.flush()
    record_audit(db, "signature", sig.id, "SIGN", identity.user_id, identity.role.value,
                 context={"work_order_id": str(wo.id), "signer_type": signer_type, "ip_address": ip_address})
    db.commit()
    db.refresh(sig)
    return sig, [_event("signature.added", wo, identity, signer_type=signer_type, signer_name=signer_name)]


# ---------- Customer invitations ----------

def list_invitations(db: Session, work_order_id: uuid.UUID) -> List[WorkOrderInvitation]:
    return (
        db.query(WorkOrderInvitation)
        .filter(WorkOrderInvitation.work_order_id == work_order_id)
        .order_by(WorkOrderInvitation.created_at.desc())
        .all()
    )


def create_invitation(db: Session, identity: Identity, wo: WorkOrder, data: Dict[str, Any]) -> Tuple[WorkOrderInvitation, List[NotificationEvent]]:
    customer_name = _clean(data.get("customer_name"))
    if not customer_name:
        raise InvalidInput("Customer name is required")
    email = data.get("email")
    if not email or not isinstance(email, str):
        raise InvalidInput("Email is required")
    email = email.strip().lower()
    if not EMAIL_RE.match(email):
        raise InvalidInput("Invalid email format")
    now = datetime.now(timezone.utc)
    inv = WorkOrderInvitation(
        work_order_id=wo.id,
        customer_name=customer_name,
        email=email,
        token=secrets.token_urlsafe(24),
        invited_by=identity.user_id,
        status="pending",
        created_at=now,
        expires_at=now + timedelta(days=settings.invitation_ttl_days),
    )
    db.add(inv)
    db.commit()
    db.refresh(inv)
    event = NotificationEvent(
        template_key="work_order.invitation",
        payload={
            "customer_name": customer_name,
            "inviter_name": identity.user.full_name,
            "work_order_number": wo.work_order_number,
            "company": wo.company or "",
            "location": wo.location or "",
            "description": wo.description,
            "link": f"/register?invite={inv.token}",
        },
        emails=[email],
    )
    return inv, [event]


def delete_invitation(db: Session, wo: WorkOrder, invitation_id: uuid.UUID) -> bool:
    count = (
        db.query(WorkOrderInvitation)
        .filter(WorkOrderInvitation.id == invitation_id, WorkOrderInvitation.work_order_id == wo.id)
        .delete()
    )
    db.commit()
    return bool(count)
