import mimetypes
import uuid
from urllib.parse import quote
from typing import Optional

from fastapi import APIRouter, Depends, BackgroundTasks, Body, File, Form, UploadFile
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from ..auth.security import get_identity, parse_path_id, parse_body_id
from ..db import get_db
from ..errors import NotFound, InvalidInput
from ..logging import structlog
from ..models.models import Document
from ..schemas.resources import ShareRequest
from ..services import documents as svc
from ..services.access import Action, enforce
from ..services.identity import Identity
from ..services.notifications import dispatch_events
from ..storage.local_provider import document_key, get_storage
from ..storage.provider import StorageProvider, iter_file


router = APIRouter(prefix="/documents", tags=["documents"])
log = structlog.get_logger(__name__)


def _document_for(db: Session, identity: Identity, document_id: str, action: Action) -> Document:
    # Access is decided before existence is revealed
    did = parse_path_id(document_id)
    enforce(identity, action, svc.document_context(db, identity, did))
    doc = svc.get_document(db, did)
    if not doc:
        raise NotFound("Document not found")
    return doc


@router.get("")
def list_documents(db: Session = Depends(get_db), identity: Identity = Depends(get_identity)):
    enforce(identity, Action.DOCUMENT_LIST)
    if identity.is_client:
        shares = svc.list_client_documents(db, identity.user_id)
        return {"documents": [svc.serialize_client_document(s) for s in shares]}
    return {"documents": [svc.serialize_document(d) for d in svc.list_documents(db)]}


@router.post("")
def create_document(payload: dict, db: Session = Depends(get_db), identity: Identity = Depends(get_identity)):
    enforce(identity, Action.DOCUMENT_CREATE)
    doc = svc.create_document(db, identity, payload)
    return {"document": svc.serialize_document(doc)}


@router.post("/upload")
async def upload_document(
    file: UploadFile = File(...),
    display_name: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    work_order_id: Optional[str] = Form(None),
    project_id: Optional[str] = Form(None),
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_identity),
    storage: StorageProvider = Depends(get_storage),
):
    enforce(identity, Action.DOCUMENT_CREATE)
    filename = (file.filename or "").strip()
    if not filename:
        raise InvalidInput("Filename is required")
    content = await file.read()
    document_id = uuid.uuid4()
    key = document_key(str(document_id), filename)
    size = storage.save(content, key)
    data = {
        "filename": filename,
        "display_name": display_name or filename,
        "description": description,
        "work_order_id": work_order_id,
        "project_id": project_id,
        "file_size": size,
    }
    try:
        doc = svc.create_document(db, identity, data, storage_key=key, document_id=document_id)
    except (InvalidInput, NotFound):
        storage.delete(key)
        raise
    return {"document": svc.serialize_document(doc)}


@router.get("/clients")
def list_clients(db: Session = Depends(get_db), identity: Identity = Depends(get_identity)):
    enforce(identity, Action.CLIENT_DIRECTORY)
    return {
        "clients": [
            {"id": str(u.id), "first_name": u.first_name, "last_name": u.last_name, "email": u.email}
            for u in svc.list_clients(db)
        ]
    }


@router.get("/{document_id}")
def get_document(document_id: str, db: Session = Depends(get_db), identity: Identity = Depends(get_identity)):
    doc = _document_for(db, identity, document_id, Action.DOCUMENT_VIEW)
    if identity.is_client:
        svc.mark_viewed(db, doc.id, identity.user_id)
    return {"document": svc.serialize_document(doc)}


@router.patch("/{document_id}")
def update_document(document_id: str, payload: dict, db: Session = Depends(get_db), identity: Identity = Depends(get_identity)):
    doc = _document_for(db, identity, document_id, Action.DOCUMENT_UPDATE)
    return {"document": svc.serialize_document(svc.update_document(db, doc, payload))}


@router.delete("/{document_id}")
def delete_document(
    document_id: str,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_identity),
    storage: StorageProvider = Depends(get_storage),
):
    doc = _document_for(db, identity, document_id, Action.DOCUMENT_DELETE)
    out = svc.serialize_document(doc)
    key = svc.delete_document(db, doc)
    if key:
        storage.delete(key)
    return {"document": out, "deleted": True}


# ----- Shares -----

@router.get("/{document_id}/share")
def list_shares(document_id: str, db: Session = Depends(get_db), identity: Identity = Depends(get_identity)):
    doc = _document_for(db, identity, document_id, Action.DOCUMENT_SHARE)
    return {"shares": [svc.serialize_share(s) for s in svc.list_shares(db, doc.id)]}


@router.post("/{document_id}/share")
def share_document(
    document_id: str,
    payload: ShareRequest,
    background: BackgroundTasks,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_identity),
):
    doc = _document_for(db, identity, document_id, Action.DOCUMENT_SHARE)
    share, events = svc.share_document(
        db, identity, doc,
        parse_body_id(payload.client_user_id, "client_user_id"),
        can_download=payload.can_download,
        expires_at=payload.expires_at,
    )
    if events:
        background.add_task(dispatch_events, events)
    return {"share": svc.serialize_share(share)}


@router.delete("/{document_id}/share")
def revoke_share(
    document_id: str,
    client_user_id: Optional[str] = None,
    payload: Optional[dict] = Body(None),
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_identity),
):
    doc = _document_for(db, identity, document_id, Action.DOCUMENT_REVOKE)
    raw = client_user_id or (payload or {}).get("client_user_id")
    if not raw:
        raise InvalidInput("Client user ID is required")
    svc.revoke_share(db, identity, doc, parse_body_id(raw, "client_user_id"))
    return {"success": True}


# ----- Download -----

@router.get("/{document_id}/download")
def download_document(document_id: str, db: Session = Depends(get_db), identity: Identity = Depends(get_identity)):
    doc = _document_for(db, identity, document_id, Action.DOCUMENT_DOWNLOAD)
    return svc.record_download(db, identity, doc)


@router.get("/{document_id}/content")
def document_content(
    document_id: str,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_identity),
    storage: StorageProvider = Depends(get_storage),
):
    doc = _document_for(db, identity, document_id, Action.DOCUMENT_DOWNLOAD)
    if not doc.storage_key or not storage.exists(doc.storage_key):
        raise NotFound("Download not available for this document")
    if identity.is_client:
        svc.mark_viewed(db, doc.id, identity.user_id)
        svc.mark_downloaded(db, doc.id, identity.user_id)
    media_type = mimetypes.guess_type(doc.filename)[0] or "application/octet-stream"
    log.info("document_streamed", document_id=str(doc.id), user_id=str(identity.user_id))
    return StreamingResponse(
        iter_file(storage.open(doc.storage_key)),
        media_type=media_type,
        headers={"Content-Disposition": f"attachment; filename*=UTF-8''{quote(doc.filename)}"},
    )
