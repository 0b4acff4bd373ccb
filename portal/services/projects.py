"""
Project lifecycle engine.
Projects, assignments, team, tasks, progress updates, invitations,
estimate line items and image records.
"""
import re
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, List, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import InvalidInput, NotFound
from ..models.models import (
    Project,
    ProjectAssignment,
    ProjectTask,
    ProjectUpdate,
    ProjectInvitation,
    ProjectEstimateItem,
    ProjectImage,
    User,
)
from .access import AccessContext
from .audit import record_audit, compute_diff
from .documents import file_type_for
from .identity import Identity, is_assigned
from .notifications import NotificationEvent


PROJECT_STATUSES = ("planning", "active", "in_progress", "on_hold", "completed")
UPDATABLE_FIELDS = (
    "name",
    "description",
    "status",
    "address",
    "start_date",
    "end_date",
    "budget_amount",
    "is_funded",
    "funding_notes",
    "on_hold_reason",
    "expected_resume_date",
)
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


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


def serialize_project(p: Project) -> Dict[str, Any]:
    return {
        "id": str(p.id),
        "name": p.name,
        "description": p.description,
        "status": p.status,
        "address": p.address,
        "start_date": p.start_date,
        "end_date": p.end_date,
        "budget_amount": p.budget_amount,
        "is_funded": bool(p.is_funded),
        "funding_notes": p.funding_notes,
        "on_hold_reason": p.on_hold_reason,
        "expected_resume_date": p.expected_resume_date,
        "created_at": _iso(p.created_at),
        "updated_at": _iso(p.updated_at),
    }


def _snapshot(p: Project) -> Dict[str, Any]:
    return {f: getattr(p, f) for f in UPDATABLE_FIELDS}


# ---------- Projects ----------

def project_context(db: Session, identity: Identity, project_id: uuid.UUID) -> AccessContext:
    return AccessContext(assigned=is_assigned(db, project_id, identity.user_id))


def get_project(db: Session, project_id: uuid.UUID) -> Optional[Project]:
    return db.query(Project).filter(Project.id == project_id).first()


def list_projects(db: Session, identity: Identity) -> List[Project]:
    q = db.query(Project)
    if not identity.is_admin:
        q = q.join(ProjectAssignment, ProjectAssignment.project_id == Project.id).filter(
            ProjectAssignment.user_id == identity.user_id
        )
    return q.order_by(Project.created_at.desc()).all()


def _validate_status(status) -> str:
    s = str(status or "").strip().lower()
    if s not in PROJECT_STATUSES:
        raise InvalidInput("Invalid status")
    return s


def create_project(db: Session, identity: Identity, data: Dict[str, Any]) -> Project:
    name = _clean(data.get("name"))
    if not name:
        raise InvalidInput("Project name is required")
    status = _validate_status(data.get("status") or "planning")
    reason = _clean(data.get("on_hold_reason"))
    if status == "on_hold" and not reason:
        raise InvalidInput("On hold reason is required")
    p = Project(
        name=name,
        description=_clean(data.get("description")),
        status=status,
        address=_clean(data.get("address")),
        start_date=_clean(data.get("start_date")),
        end_date=_clean(data.get("end_date")),
        budget_amount=_number(data.get("budget_amount"), "budget_amount"),
        is_funded=_flag(data.get("is_funded"), "is_funded") or False,
        funding_notes=_clean(data.get("funding_notes")),
        on_hold_reason=reason if status == "on_hold" else None,
        expected_resume_date=_clean(data.get("expected_resume_date")) if status == "on_hold" else None,
    )
    db.add(p)
    db.flush()
    record_audit(db, "project", p.id, "CREATE", identity.user_id, identity.role.value,
                 changes_json={"after": {"name": p.name, "status": p.status}})
    db.commit()
    db.refresh(p)
    return p


def _number(value, field: str) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise InvalidInput(f"Invalid {field}")


def _flag(value, field: str) -> Optional[bool]:
    # JSON booleans only; "false" is a string, not a falsy flag
    if value is None:
        return None
    if not isinstance(value, bool):
        raise InvalidInput(f"Invalid {field}")
    return value


def update_project(db: Session, identity: Identity, project: Project, data: Dict[str, Any]) -> Project:
    """
    Apply a partial update to a project.

    Entering on_hold needs a non-empty on_hold_reason in the same update.
    Any update that leaves the project outside on_hold clears the reason and
    the expected resume date.

    Raises:
        InvalidInput: unknown status or missing hold reason
    """
    before = _snapshot(project)
    previous_status = project.status
    new_status = _validate_status(data["status"]) if "status" in data and data["status"] is not None else previous_status

    if "name" in data:
        name = _clean(data.get("name"))
        if not name:
            raise InvalidInput("Project name is required")
        project.name = name
    for f in ("description", "address", "start_date", "end_date", "funding_notes"):
        if f in data:
            setattr(project, f, _clean(data.get(f)))
    if "budget_amount" in data:
        project.budget_amount = _number(data.get("budget_amount"), "budget_amount")
    if "is_funded" in data:
        project.is_funded = _flag(data.get("is_funded"), "is_funded") or False

    if new_status == "on_hold":
        if "on_hold_reason" in data:
            reason = _clean(data.get("on_hold_reason"))
        elif previous_status == "on_hold":
            reason = project.on_hold_reason
        else:
            reason = None
        if not reason:
            raise InvalidInput("On hold reason is required")
        project.on_hold_reason = reason
        if "expected_resume_date" in data:
            project.expected_resume_date = _clean(data.get("expected_resume_date"))
    else:
        project.on_hold_reason = None
        project.expected_resume_date = None
    project.status = new_status
    project.updated_at = datetime.now(timezone.utc)

    diff = compute_diff(before, _snapshot(project))
    if diff:
        record_audit(db, "project", project.id, "UPDATE", identity.user_id, identity.role.value, changes_json=diff)
    db.commit()
    db.refresh(project)
    return project


def delete_project(db: Session, identity: Identity, project: Project) -> List[str]:
    """
    Delete a project. Child rows go with it through ON DELETE CASCADE; work
    orders and documents that referenced it are kept with project_id cleared.

    Returns:
        Storage keys of the project's uploaded images, for the caller to remove
    """
    keys = [
        k for (k,) in db.query(ProjectImage.storage_key)
        .filter(ProjectImage.project_id == project.id, ProjectImage.storage_key.isnot(None))
        .all()
    ]
    record_audit(db, "project", project.id, "DELETE", identity.user_id, identity.role.value,
                 changes_json={"before": {"name": project.name, "status": project.status}})
    db.delete(project)
    db.commit()
    return keys


# ---------- Assignments / team ----------

def serialize_member(u: User) -> Dict[str, Any]:
    return {
        "user_id": str(u.id),
        "email": u.email,
        "first_name": u.first_name,
        "last_name": u.last_name,
        "role": u.role,
    }


def list_assignments(db: Session, project_id: uuid.UUID) -> List[User]:
    return (
        db.query(User)
        .join(ProjectAssignment, ProjectAssignment.user_id == User.id)
        .filter(ProjectAssignment.project_id == project_id)
        .order_by(User.last_name.asc(), User.first_name.asc())
        .all()
    )


def assign_user(db: Session, project: Project, user_id: uuid.UUID) -> bool:
    """Assign a user to a project. Returns False if the pair already existed."""
    if not db.query(User.id).filter(User.id == user_id).first():
        raise NotFound("User not found")
    if is_assigned(db, project.id, user_id):
        return False
    db.add(ProjectAssignment(project_id=project.id, user_id=user_id))
    db.commit()
    return True


def unassign_user(db: Session, project: Project, user_id: uuid.UUID) -> bool:
    count = (
        db.query(ProjectAssignment)
        .filter(ProjectAssignment.project_id == project.id, ProjectAssignment.user_id == user_id)
        .delete()
    )
    db.commit()
    return bool(count)


def project_team(db: Session, identity: Identity, project_id: uuid.UUID) -> List[Dict[str, Any]]:
    members = list_assignments(db, project_id)
    if not identity.is_admin:
        members = [m for m in members if m.role != "admin"]
    return [
        {"user_id": str(m.id), "first_name": m.first_name, "last_name": m.last_name, "role": m.role}
        for m in members
    ]


# ---------- Tasks ----------

def serialize_task(t: ProjectTask) -> Dict[str, Any]:
    return {
        "id": str(t.id),
        "project_id": str(t.project_id),
        "title": t.title,
        "description": t.description,
        "is_completed": bool(t.is_completed),
        "sort_order": t.sort_order,
        "created_by": str(t.created_by) if t.created_by else None,
        "completed_by": str(t.completed_by) if t.completed_by else None,
        "completed_at": _iso(t.completed_at),
        "created_at": _iso(t.created_at),
        "updated_at": _iso(t.updated_at),
    }


def list_tasks(db: Session, project_id: uuid.UUID) -> List[ProjectTask]:
    return (
        db.query(ProjectTask)
        .filter(ProjectTask.project_id == project_id)
        .order_by(ProjectTask.sort_order.asc(), ProjectTask.created_at.asc())
        .all()
    )


def task_stats(db: Session, project_id: uuid.UUID) -> Dict[str, int]:
    total = db.query(func.count(ProjectTask.id)).filter(ProjectTask.project_id == project_id).scalar() or 0
    completed = (
        db.query(func.count(ProjectTask.id))
        .filter(ProjectTask.project_id == project_id, ProjectTask.is_completed.is_(True))
        .scalar()
        or 0
    )
    return {"total": int(total), "completed": int(completed)}


def _task_event(key: str, project: Project, task: ProjectTask, identity: Identity) -> NotificationEvent:
    return NotificationEvent(
        template_key=key,
        payload={
            "project_id": str(project.id),
            "project_name": project.name,
            "task_title": task.title,
            "performed_by": identity.user.full_name,
            "link": f"/projects/{project.id}",
        },
        to_admins=True,
        exclude_user_id=identity.user_id,
    )


def create_task(db: Session, identity: Identity, project: Project, data: Dict[str, Any]) -> Tuple[ProjectTask, List[NotificationEvent]]:
    title = _clean(data.get("title"))
    if not title:
        raise InvalidInput("Task title is required")
    max_order = db.query(func.max(ProjectTask.sort_order)).filter(ProjectTask.project_id == project.id).scalar()
    task = ProjectTask(
        project_id=project.id,
        title=title,
        description=_clean(data.get("description")),
        sort_order=(max_order if max_order is not None else -1) + 1,
        created_by=identity.user_id,
    )
    db.add(task)
    db.commit()
    db.refresh(task)
    return task, [_task_event("task.created", project, task, identity)]


def get_task(db: Session, project_id: uuid.UUID, task_id: uuid.UUID) -> Optional[ProjectTask]:
    return db.query(ProjectTask).filter(ProjectTask.id == task_id, ProjectTask.project_id == project_id).first()


def update_task(db: Session, identity: Identity, project: Project, task: ProjectTask, data: Dict[str, Any]) -> Tuple[ProjectTask, List[NotificationEvent]]:
    events: List[NotificationEvent] = []
    if "title" in data:
        title = _clean(data.get("title"))
        if not title:
            raise InvalidInput("Task title is required")
        task.title = title
    if "description" in data:
        task.description = _clean(data.get("description"))
    if "sort_order" in data and data["sort_order"] is not None:
        try:
            task.sort_order = int(data["sort_order"])
        except (TypeError, ValueError):
            raise InvalidInput("Invalid sort_order")
    if "is_completed" in data and data["is_completed"] is not None:
        done = _flag(data["is_completed"], "is_completed")
        if done and not task.is_completed:
            task.completed_at = datetime.now(timezone.utc)
            task.completed_by = identity.user_id
            events.append(_task_event("task.completed", project, task, identity))
        elif not done:
            task.completed_at = None
            task.completed_by = None
        task.is_completed = done
    task.updated_at = datetime.now(timezone.utc)
    db.commit()
    db.refresh(task)
    return task, events


def delete_task(db: Session, identity: Identity, project: Project, task: ProjectTask) -> List[NotificationEvent]:
    event = _task_event("task.deleted", project, task, identity)
    db.delete(task)
    db.commit()
    return [event]


# ---------- Progress updates ----------

def serialize_update(u: ProjectUpdate) -> Dict[str, Any]:
    return {
        "id": str(u.id),
        "project_id": str(u.project_id),
        "user_id": str(u.user_id) if u.user_id else None,
        "user_name": u.author.full_name if u.author else None,
        "title": u.title,
        "content": u.content,
        "created_at": _iso(u.created_at),
    }


def list_updates(db: Session, project_id: uuid.UUID) -> List[ProjectUpdate]:
    return (
        db.query(ProjectUpdate)
        .filter(ProjectUpdate.project_id == project_id)
        .order_by(ProjectUpdate.created_at.desc())
        .all()
    )


def add_update(db: Session, identity: Identity, project: Project, data: Dict[str, Any]) -> ProjectUpdate:
    title = _clean(data.get("title"))
    if not title:
        raise InvalidInput("Title is required")
    upd = ProjectUpdate(project_id=project.id, user_id=identity.user_id, title=title, content=_clean(data.get("content")))
    db.add(upd)
    db.commit()
    db.refresh(upd)
    return upd


# ---------- Invitations ----------

def serialize_invitation(inv: ProjectInvitation) -> Dict[str, Any]:
    return {
        "id": str(inv.id),
        "project_id": str(inv.project_id),
        "email": inv.email,
        "token": inv.token,
        "invited_by": str(inv.invited_by) if inv.invited_by else None,
        "inviter_name": inv.inviter.full_name if inv.inviter else None,
        "status": inv.status,
        "expires_at": _iso(inv.expires_at),
        "created_at": _iso(inv.created_at),
        "accepted_at": _iso(inv.accepted_at),
    }


def list_invitations(db: Session, project_id: uuid.UUID) -> List[ProjectInvitation]:
    return (
        db.query(ProjectInvitation)
        .filter(ProjectInvitation.project_id == project_id)
        .order_by(ProjectInvitation.created_at.desc())
        .all()
    )


def create_invitation(db: Session, identity: Identity, project: Project, email) -> Tuple[ProjectInvitation, List[NotificationEvent]]:
    if not email or not isinstance(email, str):
        raise InvalidInput("Email is required")
    email = email.strip().lower()
    if not EMAIL_RE.match(email):
        raise InvalidInput("Invalid email format")
    now = datetime.now(timezone.utc)
    inv = ProjectInvitation(
        project_id=project.id,
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
        template_key="project.invitation",
        payload={
            "project_name": project.name,
            "inviter_name": identity.user.full_name,
            "link": f"/register?invite={inv.token}",
        },
        emails=[email],
    )
    return inv, [event]


def _accept(db: Session, inv: ProjectInvitation, user_id: uuid.UUID, now: datetime) -> bool:
    if _utc(inv.expires_at) < now:
        inv.status = "expired"
        return False
    inv.status = "accepted"
    inv.accepted_at = now
    if not is_assigned(db, inv.project_id, user_id):
        db.add(ProjectAssignment(project_id=inv.project_id, user_id=user_id))
    return True


def accept_invitation(db: Session, token: str, user: User) -> Optional[ProjectInvitation]:
    """
    Accept a pending project invitation for a signed-in user.

    Returns:
        The invitation when it was accepted; None if the token is unknown,
        already used, or expired (expired invitations are marked as such)
    """
    inv = db.query(ProjectInvitation).filter(ProjectInvitation.token == token).first()
    if not inv or inv.status != "pending":
        return None
    accepted = _accept(db, inv, user.id, datetime.now(timezone.utc))
    db.commit()
    return inv if accepted else None


def process_pending_invitations(db: Session, email: str, user_id: uuid.UUID) -> int:
    """Accept every unexpired pending invitation for an email; returns how many were accepted."""
    now = datetime.now(timezone.utc)
    pending = (
        db.query(ProjectInvitation)
        .filter(ProjectInvitation.email == email.lower(), ProjectInvitation.status == "pending")
        .all()
    )
    processed = 0
    for inv in pending:
        if _accept(db, inv, user_id, now):
            processed += 1
        # Flush so a second invitation to the same project sees the assignment
        db.flush()
    db.commit()
    return processed


# ---------- Estimate ----------

def serialize_estimate_item(item: ProjectEstimateItem) -> Dict[str, Any]:
    return {
        "id": str(item.id),
        "project_id": str(item.project_id),
        "category": item.category,
        "custom_category_name": item.custom_category_name,
        "description": item.description,
        "price_rate": item.price_rate,
        "quantity": item.quantity,
        "total": item.total,
        "sort_order": item.sort_order,
        "created_at": _iso(item.created_at),
        "updated_at": _iso(item.updated_at),
    }


def list_estimate_items(db: Session, project_id: uuid.UUID) -> List[ProjectEstimateItem]:
    return (
        db.query(ProjectEstimateItem)
        .filter(ProjectEstimateItem.project_id == project_id)
        .order_by(ProjectEstimateItem.sort_order.asc(), ProjectEstimateItem.created_at.asc())
        .all()
    )


def estimate_total(db: Session, project_id: uuid.UUID) -> float:
    total = (
        db.query(func.coalesce(func.sum(ProjectEstimateItem.total), 0))
        .filter(ProjectEstimateItem.project_id == project_id)
        .scalar()
    )
    return float(total or 0)


def get_estimate_item(db: Session, project_id: uuid.UUID, item_id: uuid.UUID) -> Optional[ProjectEstimateItem]:
    return (
        db.query(ProjectEstimateItem)
        .filter(ProjectEstimateItem.id == item_id, ProjectEstimateItem.project_id == project_id)
        .first()
    )


def add_estimate_item(db: Session, project: Project, data: Dict[str, Any]) -> ProjectEstimateItem:
    category = _clean(data.get("category"))
    if not category:
        raise InvalidInput("Category is required")
    price_rate = _number(data.get("price_rate"), "price_rate")
    if price_rate is None:
        price_rate = 0.0
    quantity = _number(data.get("quantity"), "quantity")
    if quantity is None:
        quantity = 1.0
    max_order = (
        db.query(func.max(ProjectEstimateItem.sort_order))
        .filter(ProjectEstimateItem.project_id == project.id)
        .scalar()
    )
    item = ProjectEstimateItem(
        project_id=project.id,
        category=category,
        custom_category_name=_clean(data.get("custom_category_name")),
        description=_clean(data.get("description")),
        price_rate=price_rate,
        quantity=quantity,
        total=price_rate * quantity,
        sort_order=(max_order if max_order is not None else -1) + 1,
    )
    db.add(item)
    db.commit()
    db.refresh(item)
    return item


def update_estimate_item(db: Session, item: ProjectEstimateItem, data: Dict[str, Any]) -> ProjectEstimateItem:
    """Apply a partial update; the line total is recomputed from the resulting rate and quantity."""
    if "category" in data:
        category = _clean(data.get("category"))
        if not category:
            raise InvalidInput("Category is required")
        item.category = category
    for f in ("custom_category_name", "description"):
        if f in data:
            setattr(item, f, _clean(data.get(f)))
    if data.get("price_rate") is not None:
        item.price_rate = _number(data["price_rate"], "price_rate") or 0.0
    if data.get("quantity") is not None:
        quantity = _number(data["quantity"], "quantity")
        item.quantity = quantity if quantity is not None else 1.0
    if data.get("sort_order") is not None:
        try:
            item.sort_order = int(data["sort_order"])
        except (TypeError, ValueError):
            raise InvalidInput("Invalid sort_order")
    item.total = (item.price_rate or 0) * (item.quantity or 0)
    item.updated_at = datetime.now(timezone.utc)
    db.commit()
    db.refresh(item)
    return item


def delete_estimate_item(db: Session, item: ProjectEstimateItem) -> None:
    db.delete(item)
    db.commit()


# ---------- Images ----------

def image_url(image: ProjectImage) -> Optional[str]:
    if image.storage_url:
        return image.storage_url
    if image.storage_key:
        return f"{settings.public_base_url}/projects/{image.project_id}/images/{image.id}/content"
    return None


def serialize_image(image: ProjectImage) -> Dict[str, Any]:
    return {
        "id": str(image.id),
        "project_id": str(image.project_id),
        "filename": image.filename,
        "caption": image.caption,
        "content_type": image.content_type,
        "file_size": image.file_size,
        "url": image_url(image),
        "uploaded_by": str(image.uploaded_by) if image.uploaded_by else None,
        "uploader_name": image.uploader.full_name if image.uploader else None,
        "created_at": _iso(image.created_at),
    }


def list_images(db: Session, project_id: uuid.UUID) -> List[ProjectImage]:
    return (
        db.query(ProjectImage)
        .filter(ProjectImage.project_id == project_id)
        .order_by(ProjectImage.created_at.desc())
        .all()
    )


def get_image(db: Session, project_id: uuid.UUID, image_id: uuid.UUID) -> Optional[ProjectImage]:
    return db.query(ProjectImage).filter(ProjectImage.id == image_id, ProjectImage.project_id == project_id).first()


def add_image(
    db: Session,
    identity: Identity,
    project: Project,
    data: Dict[str, Any],
    storage_key: Optional[str] = None,
    image_id: Optional[uuid.UUID] = None,
) -> ProjectImage:
    """
    Record an image for a project.

    With storage_key the bytes are already in the storage provider; without
    it the record is metadata only and may carry an external storage_url.

    Raises:
        InvalidInput: missing filename, or a file that is not an image
    """
    filename = _clean(data.get("filename"))
    if not filename:
        raise InvalidInput("Filename is required")
    content_type = _clean(data.get("content_type"))
    if file_type_for(filename) != "image" and not (content_type or "").startswith("image/"):
        raise InvalidInput("Only image files can be added")
    image = ProjectImage(
        id=image_id or uuid.uuid4(),
        project_id=project.id,
        filename=filename,
        storage_key=storage_key,
        storage_url=_clean(data.get("storage_url")),
        content_type=content_type,
        file_size=data.get("file_size"),
        caption=_clean(data.get("caption")),
        uploaded_by=identity.user_id,
    )
    db.add(image)
    db.commit()
    db.refresh(image)
    return image


def update_image(db: Session, image: ProjectImage, data: Dict[str, Any]) -> ProjectImage:
    if "caption" in data:
        image.caption = _clean(data.get("caption"))
    db.commit()
    db.refresh(image)
    return image


def delete_image(db: Session, image: ProjectImage) -> Optional[str]:
    """Delete the record; returns the storage key to remove, if any."""
    key = image.storage_key
    db.delete(image)
    db.commit()
    return key
