import mimetypes
import uuid
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, BackgroundTasks, Body, File, Form, UploadFile
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from ..auth.security import get_identity, parse_path_id, parse_body_id
from ..db import get_db
from ..errors import NotFound, InvalidInput
from ..logging import structlog
from ..models.models import Project, ProjectEstimateItem, ProjectImage
from ..schemas.resources import AssignmentRequest, ChangeRequestCreate, ChangeRequestReview, InvitationRequest
from ..services import projects as svc
from ..services import change_requests as cr_svc
from ..services.access import Action, AccessContext, enforce
from ..services.identity import Identity, is_assigned
from ..services.notifications import dispatch_events
from ..storage.local_provider import get_storage, project_image_key
from ..storage.provider import StorageProvider, iter_file


router = APIRouter(prefix="/projects", tags=["projects"])
log = structlog.get_logger(__name__)


def _project_for(db: Session, identity: Identity, project_id: str, action: Action) -> Project:
    # Access is decided before existence is revealed
    pid = parse_path_id(project_id)
    enforce(identity, action, svc.project_context(db, identity, pid))
    project = svc.get_project(db, pid)
    if not project:
        raise NotFound("Project not found")
    return project


def _dispatch(background: BackgroundTasks, events) -> None:
    if events:
        background.add_task(dispatch_events, events)


def _body_id(payload: Optional[dict], *keys: str):
    payload = payload or {}
    for k in keys:
        if payload.get(k):
            return parse_body_id(payload[k], keys[0])
    raise InvalidInput(f"{keys[0]} is required")


@router.get("")
def list_projects(db: Session = Depends(get_db), identity: Identity = Depends(get_identity)):
    enforce(identity, Action.PROJECT_LIST)
    return {"projects": [svc.serialize_project(p) for p in svc.list_projects(db, identity)]}


@router.post("")
def create_project(payload: dict, db: Session = Depends(get_db), identity: Identity = Depends(get_identity)):
    enforce(identity, Action.PROJECT_CREATE)
    project = svc.create_project(db, identity, payload)
    return {"project": svc.serialize_project(project)}


@router.post("/invitations/{token}/accept")
def accept_invitation(token: str, db: Session = Depends(get_db), identity: Identity = Depends(get_identity)):
    inv = svc.accept_invitation(db, token, identity.user)
    if not inv:
        raise NotFound("Invalid or expired invitation")
    return {"success": True, "project_id": str(inv.project_id)}


@router.get("/{project_id}")
def get_project(project_id: str, db: Session = Depends(get_db), identity: Identity = Depends(get_identity)):
    project = _project_for(db, identity, project_id, Action.PROJECT_VIEW)
    return {"project": svc.serialize_project(project)}


@router.patch("/{project_id}")
def update_project(project_id: str, payload: dict, db: Session = Depends(get_db), identity: Identity = Depends(get_identity)):
    project = _project_for(db, identity, project_id, Action.PROJECT_UPDATE)
    project = svc.update_project(db, identity, project, payload)
    return {"project": svc.serialize_project(project)}


@router.delete("/{project_id}")
def delete_project(
    project_id: str,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_identity),
    storage: StorageProvider = Depends(get_storage),
):
    project = _project_for(db, identity, project_id, Action.PROJECT_DELETE)
    for key in svc.delete_project(db, identity, project):
        storage.delete(key)
    return {"success": True}


# ----- Assignments / team -----

@router.get("/{project_id}/assignments")
def list_assignments(project_id: str, db: Session = Depends(get_db), identity: Identity = Depends(get_identity)):
    project = _project_for(db, identity, project_id, Action.ASSIGNMENT_MANAGE)
    return {"assignments": [svc.serialize_member(u) for u in svc.list_assignments(db, project.id)]}


@router.post("/{project_id}/assignments")
def add_assignment(project_id: str, payload: AssignmentRequest, db: Session = Depends(get_db), identity: Identity = Depends(get_identity)):
    project = _project_for(db, identity, project_id, Action.ASSIGNMENT_MANAGE)
    created = svc.assign_user(db, project, parse_body_id(payload.user_id, "userId"))
    return {"success": True, "created": created}


@router.delete("/{project_id}/assignments")
def remove_assignment(
    project_id: str,
    user_id: Optional[str] = None,
    payload: Optional[dict] = Body(None),
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_identity),
):
    project = _project_for(db, identity, project_id, Action.ASSIGNMENT_MANAGE)
    target = parse_body_id(user_id, "userId") if user_id else _body_id(payload, "userId", "user_id")
    svc.unassign_user(db, project, target)
    return {"success": True}


@router.get("/{project_id}/team")
def project_team(project_id: str, db: Session = Depends(get_db), identity: Identity = Depends(get_identity)):
    project = _project_for(db, identity, project_id, Action.PROJECT_VIEW)
    return {"team": svc.project_team(db, identity, project.id)}


# ----- Tasks -----

@router.get("/{project_id}/tasks")
def list_tasks(project_id: str, db: Session = Depends(get_db), identity: Identity = Depends(get_identity)):
    project = _project_for(db, identity, project_id, Action.PROJECT_VIEW)
    return {
        "tasks": [svc.serialize_task(t) for t in svc.list_tasks(db, project.id)],
        "stats": svc.task_stats(db, project.id),
    }


@router.post("/{project_id}/tasks")
def create_task(
    project_id: str,
    payload: dict,
    background: BackgroundTasks,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_identity),
):
    project = _project_for(db, identity, project_id, Action.TASK_CREATE)
    task, events = svc.create_task(db, identity, project, payload)
    _dispatch(background, events)
    return {"task": svc.serialize_task(task)}


@router.patch("/{project_id}/tasks")
def update_task(
    project_id: str,
    payload: dict,
    background: BackgroundTasks,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_identity),
):
    project = _project_for(db, identity, project_id, Action.TASK_UPDATE)
    task = svc.get_task(db, project.id, _body_id(payload, "taskId", "task_id"))
    if not task:
        raise NotFound("Task not found")
    task, events = svc.update_task(db, identity, project, task, payload)
    _dispatch(background, events)
    return {"task": svc.serialize_task(task), "stats": svc.task_stats(db, project.id)}


@router.delete("/{project_id}/tasks")
def delete_task(
    project_id: str,
    background: BackgroundTasks,
    task_id: Optional[str] = None,
    payload: Optional[dict] = Body(None),
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_identity),
):
    project = _project_for(db, identity, project_id, Action.TASK_DELETE)
    tid = parse_body_id(task_id, "taskId") if task_id else _body_id(payload, "taskId", "task_id")
    task = svc.get_task(db, project.id, tid)
    if not task:
        raise NotFound("Task not found")
    events = svc.delete_task(db, identity, project, task)
    _dispatch(background, events)
    return {"success": True, "stats": svc.task_stats(db, project.id)}


# ----- Progress updates -----

@router.get("/{project_id}/updates")
def list_updates(project_id: str, db: Session = Depends(get_db), identity: Identity = Depends(get_identity)):
    project = _project_for(db, identity, project_id, Action.PROJECT_VIEW)
    return {"updates": [svc.serialize_update(u) for u in svc.list_updates(db, project.id)]}


@router.post("/{project_id}/updates")
def add_update(project_id: str, payload: dict, db: Session = Depends(get_db), identity: Identity = Depends(get_identity)):
    project = _project_for(db, identity, project_id, Action.UPDATE_CREATE)
    upd = svc.add_update(db, identity, project, payload)
    return {"update": svc.serialize_update(upd)}


# ----- Change requests -----

@router.get("/{project_id}/change-requests")
def list_change_requests(project_id: str, db: Session = Depends(get_db), identity: Identity = Depends(get_identity)):
    project = _project_for(db, identity, project_id, Action.CHANGE_REQUEST_VIEW)
    rows = cr_svc.list_change_requests(db, identity, project.id)
    return {"changeRequests": [cr_svc.serialize_change_request(cr) for cr in rows]}


@router.post("/{project_id}/change-requests")
def create_change_request(
    project_id: str,
    payload: ChangeRequestCreate,
    background: BackgroundTasks,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_identity),
):
    pid = parse_path_id(project_id)
    # The request is always filed for the caller, so ownership holds; the project must be theirs
    ctx = AccessContext(assigned=is_assigned(db, pid, identity.user_id), is_owner=True)
    enforce(identity, Action.CHANGE_REQUEST_CREATE, ctx)
    project = svc.get_project(db, pid)
    if not project:
        raise NotFound("Project not found")
    cr, events = cr_svc.create_change_request(db, identity, project, payload.sections, payload.message)
    _dispatch(background, events)
    return {"changeRequest": cr_svc.serialize_change_request(cr)}


@router.patch("/{project_id}/change-requests")
def review_change_request(
    project_id: str,
    payload: ChangeRequestReview,
    background: BackgroundTasks,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_identity),
):
    project = _project_for(db, identity, project_id, Action.CHANGE_REQUEST_REVIEW)
    cr = cr_svc.get_change_request(db, project.id, parse_body_id(payload.change_request_id, "changeRequestId"))
    if not cr:
        raise NotFound("Change request not found")
    cr, events = cr_svc.review_change_request(
        db, identity, project, cr, payload.action, payload.approved_sections, payload.admin_notes
    )
    _dispatch(background, events)
    return {"success": True, "status": cr.status, "changeRequest": cr_svc.serialize_change_request(cr)}


# ----- Invitations -----

@router.get("/{project_id}/invitations")
def list_invitations(project_id: str, db: Session = Depends(get_db), identity: Identity = Depends(get_identity)):
    project = _project_for(db, identity, project_id, Action.INVITATION_MANAGE)
    return {"invitations": [svc.serialize_invitation(i) for i in svc.list_invitations(db, project.id)]}


@router.post("/{project_id}/invitations")
def create_invitation(
    project_id: str,
    payload: InvitationRequest,
    background: BackgroundTasks,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_identity),
):
    project = _project_for(db, identity, project_id, Action.INVITATION_MANAGE)
    inv, events = svc.create_invitation(db, identity, project, payload.email)
    _dispatch(background, events)
    return {"invitation": svc.serialize_invitation(inv), "message": "Invitation sent successfully"}


# ----- Estimate -----

def _estimate_item(db: Session, project: Project, item_id) -> ProjectEstimateItem:
    item = svc.get_estimate_item(db, project.id, item_id)
    if not item:
        raise NotFound("Item not found")
    return item


@router.get("/{project_id}/estimate")
def get_estimate(project_id: str, db: Session = Depends(get_db), identity: Identity = Depends(get_identity)):
    project = _project_for(db, identity, project_id, Action.ESTIMATE_VIEW)
    return {
        "items": [svc.serialize_estimate_item(i) for i in svc.list_estimate_items(db, project.id)],
        "total": svc.estimate_total(db, project.id),
    }


@router.post("/{project_id}/estimate")
def add_estimate_item(project_id: str, payload: dict, db: Session = Depends(get_db), identity: Identity = Depends(get_identity)):
    project = _project_for(db, identity, project_id, Action.ESTIMATE_MANAGE)
    item = svc.add_estimate_item(db, project, payload)
    return {"item": svc.serialize_estimate_item(item), "total": svc.estimate_total(db, project.id)}


@router.patch("/{project_id}/estimate")
def update_estimate_item(project_id: str, payload: dict, db: Session = Depends(get_db), identity: Identity = Depends(get_identity)):
    project = _project_for(db, identity, project_id, Action.ESTIMATE_MANAGE)
    item = _estimate_item(db, project, _body_id(payload, "itemId", "item_id"))
    item = svc.update_estimate_item(db, item, payload)
    return {"item": svc.serialize_estimate_item(item), "total": svc.estimate_total(db, project.id)}


@router.delete("/{project_id}/estimate")
def delete_estimate_item(
    project_id: str,
    item_id: Optional[str] = None,
    payload: Optional[dict] = Body(None),
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_identity),
):
    project = _project_for(db, identity, project_id, Action.ESTIMATE_MANAGE)
    iid = parse_body_id(item_id, "itemId") if item_id else _body_id(payload, "itemId", "item_id")
    svc.delete_estimate_item(db, _estimate_item(db, project, iid))
    return {"success": True, "total": svc.estimate_total(db, project.id)}


# ----- Images -----

def _image(db: Session, project: Project, image_id) -> ProjectImage:
    image = svc.get_image(db, project.id, image_id)
    if not image:
        raise NotFound("Image not found")
    return image


@router.get("/{project_id}/images")
def list_images(project_id: str, db: Session = Depends(get_db), identity: Identity = Depends(get_identity)):
    project = _project_for(db, identity, project_id, Action.IMAGE_VIEW)
    return {"images": [svc.serialize_image(i) for i in svc.list_images(db, project.id)]}


@router.post("/{project_id}/images")
def add_image(project_id: str, payload: dict, db: Session = Depends(get_db), identity: Identity = Depends(get_identity)):
    # Metadata-only record; bytes go through /images/upload
    project = _project_for(db, identity, project_id, Action.IMAGE_UPLOAD)
    data = {k: payload.get(k) for k in ("filename", "caption", "storage_url", "content_type")}
    image = svc.add_image(db, identity, project, data)
    return {"image": svc.serialize_image(image)}


@router.post("/{project_id}/images/upload")
async def upload_image(
    project_id: str,
    file: UploadFile = File(...),
    caption: Optional[str] = Form(None),
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_identity),
    storage: StorageProvider = Depends(get_storage),
):
    project = _project_for(db, identity, project_id, Action.IMAGE_UPLOAD)
    filename = (file.filename or "").strip()
    if not filename:
        raise InvalidInput("Filename is required")
    content = await file.read()
    image_id = uuid.uuid4()
    key = project_image_key(str(project.id), str(image_id), filename)
    size = storage.save(content, key)
    data = {"filename": filename, "caption": caption, "content_type": file.content_type, "file_size": size}
    try:
        image = svc.add_image(db, identity, project, data, storage_key=key, image_id=image_id)
    except InvalidInput:
        storage.delete(key)
        raise
    log.info("project_image_uploaded", project_id=str(project.id), image_id=str(image.id), size=size)
    return {"image": svc.serialize_image(image)}


@router.patch("/{project_id}/images")
def update_image(project_id: str, payload: dict, db: Session = Depends(get_db), identity: Identity = Depends(get_identity)):
    project = _project_for(db, identity, project_id, Action.IMAGE_UPDATE)
    image = _image(db, project, _body_id(payload, "imageId", "image_id"))
    return {"image": svc.serialize_image(svc.update_image(db, image, payload))}


@router.delete("/{project_id}/images")
def delete_image(
    project_id: str,
    image_id: Optional[str] = None,
    payload: Optional[dict] = Body(None),
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_identity),
    storage: StorageProvider = Depends(get_storage),
):
    project = _project_for(db, identity, project_id, Action.IMAGE_DELETE)
    iid = parse_body_id(image_id, "imageId") if image_id else _body_id(payload, "imageId", "image_id")
    key = svc.delete_image(db, _image(db, project, iid))
    if key:
        storage.delete(key)
    return {"success": True}


@router.get("/{project_id}/images/{image_id}/content")
def image_content(
    project_id: str,
    image_id: str,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_identity),
    storage: StorageProvider = Depends(get_storage),
):
    project = _project_for(db, identity, project_id, Action.IMAGE_VIEW)
    image = _image(db, project, parse_path_id(image_id))
    if not image.storage_key or not storage.exists(image.storage_key):
        raise NotFound("Image content not available")
    media_type = image.content_type or mimetypes.guess_type(image.filename)[0] or "application/octet-stream"
    return StreamingResponse(
        iter_file(storage.open(image.storage_key)),
        media_type=media_type,
        headers={"Content-Disposition": f"inline; filename*=UTF-8''{quote(image.filename)}"},
    )
