"""
Document sharing engine.

A client reaches a document only through an active share: one that exists
and has not expired. can_download gates the download action separately from
viewing. First view and first download are each stamped once and never
overwritten.
"""
import os
import uuid
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List, Tuple

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import InvalidInput, NotFound
from ..models.models import Document, DocumentShare, Project, User, WorkOrder
from .access import AccessContext
from .audit import record_audit
from .identity import Identity
from .notifications import NotificationEvent


FILE_TYPES = {
    "pdf": "pdf",
    "doc": "doc",
    "docx": "doc",
    "xls": "xls",
    "xlsx": "xls",
    "png": "image",
    "jpg": "image",
    "jpeg": "image",
    "gif": "image",
    "webp": "image",
    "txt": "text",
    "csv": "text",
}


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


def file_type_for(filename: str) -> str:
    ext = os.path.splitext(filename or "")[1].lstrip(".").lower()
    return FILE_TYPES.get(ext, "other")


def parse_expiry(value) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if not isinstance(value, datetime):
        try:
            value = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            raise InvalidInput("Invalid expires_at")
    # Stored as UTC; SQLite drops the offset
    return _utc(value).astimezone(timezone.utc)


def share_is_active(share: Optional[DocumentShare], now: Optional[datetime] = None) -> bool:
    if share is None:
        return False
    if share.expires_at is None:
        return True
    now = now or datetime.now(timezone.utc)
    return _utc(share.expires_at) > now


def download_url(doc: Document) -> Optional[str]:
    if doc.storage_url:
        return doc.storage_url
    if doc.storage_key:
        return f"{settings.public_base_url}/documents/{doc.id}/content"
    return None


# ---------- Serialization ----------

def serialize_document(d: Document) -> Dict[str, Any]:
    return {
        "id": str(d.id),
        "filename": d.filename,
        "display_name": d.display_name,
        "description": d.description,
        "file_type": d.file_type,
        "file_size": d.file_size,
        "has_content": bool(d.storage_key or d.storage_url),
        "work_order_id": str(d.work_order_id) if d.work_order_id else None,
        "project_id": str(d.project_id) if d.project_id else None,
        "uploaded_by": str(d.uploaded_by) if d.uploaded_by else None,
        "uploader_name": d.uploader.full_name if d.uploader else None,
        "is_public": bool(d.is_public),
        "created_at": _iso(d.created_at),
        "updated_at": _iso(d.updated_at),
    }


def serialize_share(s: DocumentShare) -> Dict[str, Any]:
    return {
        "id": str(s.id),
        "document_id": str(s.document_id),
        "client_user_id": str(s.client_user_id),
        "client_name": s.client.full_name if s.client else None,
        "client_email": s.client.email if s.client else None,
        "shared_by": str(s.shared_by) if s.shared_by else None,
        "can_download": bool(s.can_download),
        "expires_at": _iso(s.expires_at),
        "viewed_at": _iso(s.viewed_at),
        "downloaded_at": _iso(s.downloaded_at),
        "created_at": _iso(s.created_at),
    }


def serialize_client_document(s: DocumentShare) -> Dict[str, Any]:
    data = serialize_document(s.document)
    data.update({
        "can_download": bool(s.can_download),
        "expires_at": _iso(s.expires_at),
        "viewed_at": _iso(s.viewed_at),
        "downloaded_at": _iso(s.downloaded_at),
        "shared_at": _iso(s.created_at),
    })
    return data


# ---------- Documents ----------

def get_document(db: Session, document_id: uuid.UUID) -> Optional[Document]:
    return db.query(Document).filter(Document.id == document_id).first()


def get_share(db: Session, document_id: uuid.UUID, client_user_id: uuid.UUID) -> Optional[DocumentShare]:
    return (
        db.query(DocumentShare)
        .filter(DocumentShare.document_id == document_id, DocumentShare.client_user_id == client_user_id)
        .first()
    )


def document_context(db: Session, identity: Identity, document_id: uuid.UUID) -> AccessContext:
    """Share facts for client callers; internal callers need none."""
    if not identity.is_client:
        return AccessContext()
    share = get_share(db, document_id, identity.user_id)
    return AccessContext(share_active=share_is_active(share), can_download=bool(share and share.can_download))


def list_documents(db: Session) -> List[Document]:
    return db.query(Document).order_by(Document.created_at.desc()).all()


def list_client_documents(db: Session, client_user_id: uuid.UUID) -> List[DocumentShare]:
    now = datetime.now(timezone.utc)
    return (
        db.query(DocumentShare)
        .join(Document, Document.id == DocumentShare.document_id)
        .filter(DocumentShare.client_user_id == client_user_id)
        .filter(or_(DocumentShare.expires_at.is_(None), DocumentShare.expires_at > now))
        .order_by(DocumentShare.created_at.desc())
        .all()
    )


def create_document(
    db: Session,
    identity: Identity,
    data: Dict[str, Any],
    storage_key: Optional[str] = None,
    document_id: Optional[uuid.UUID] = None,
) -> Document:
    filename = _clean(data.get("filename"))
    display_name = _clean(data.get("display_name")) or (filename if storage_key else None)
    if not filename:
        raise InvalidInput("Filename is required")
    if not display_name:
        raise InvalidInput("Display name is required")
    file_size = data.get("file_size")
    if file_size is not None:
        try:
            file_size = int(file_size)
        except (TypeError, ValueError):
            raise InvalidInput("Invalid file_size")
    doc = Document(
        id=document_id or uuid.uuid4(),
        filename=filename,
        display_name=display_name,
        description=_clean(data.get("description")),
        file_type=_clean(data.get("file_type")) or file_type_for(filename),
        file_size=file_size,
        storage_key=storage_key,
        storage_url=_clean(data.get("storage_url")),
        work_order_id=_linked(db, WorkOrder, data.get("work_order_id"), "work_order_id"),
        project_id=_linked(db, Project, data.get("project_id"), "project_id"),
        uploaded_by=identity.user_id,
        is_public=_flag(data.get("is_public"), "is_public") or False,
    )
    db.add(doc)
    db.commit()
    db.refresh(doc)
    return doc


def _optional_uuid(value, field: str) -> Optional[uuid.UUID]:
    if value is None or value == "":
        return None
    try:
        return uuid.UUID(str(value))
    except (ValueError, TypeError):
        raise InvalidInput(f"Invalid {field}")


def _linked(db: Session, model, value, field: str) -> Optional[uuid.UUID]:
    linked_id = _optional_uuid(value, field)
    if linked_id is not None and not db.query(model.id).filter(model.id == linked_id).first():
        raise NotFound(f"{field[:-3].replace('_', ' ').capitalize()} not found")
    return linked_id


def _flag(value, field: str) -> Optional[bool]:
    if value is None:
        return None
    if not isinstance(value, bool):
        raise InvalidInput(f"Invalid {field}")
    return value


def update_document(db: Session, doc: Document, data: Dict[str, Any]) -> Document:
    if "display_name" in data:
        display_name = _clean(data.get("display_name"))
        if not display_name:
            raise InvalidInput("Display name is required")
        doc.display_name = display_name
    if "description" in data:
        doc.description = _clean(data.get("description"))
    if "is_public" in data and data["is_public"] is not None:
        doc.is_public = _flag(data["is_public"], "is_public")
    if "work_order_id" in data:
        doc.work_order_id = _linked(db, WorkOrder, data.get("work_order_id"), "work_order_id")
    if "project_id" in data:
        doc.project_id = _linked(db, Project, data.get("project_id"), "project_id")
    doc.updated_at = datetime.now(timezone.utc)
    db.commit()
    db.refresh(doc)
    return doc


def delete_document(db: Session, doc: Document) -> Optional[str]:
    """Delete the row and its shares; returns the storage key to remove, if any."""
    key = doc.storage_key
    db.delete(doc)
    db.commit()
    return key


# ---------- Shares ----------

def list_shares(db: Session, document_id: uuid.UUID) -> List[DocumentShare]:
    return (
        db.query(DocumentShare)
        .filter(DocumentShare.document_id == document_id)
        .order_by(DocumentShare.created_at.desc())
        .all()
    )


def share_document(
    db: Session,
    identity: Identity,
    doc: Document,
    client_user_id: uuid.UUID,
    can_download=None,
    expires_at=None,
) -> Tuple[DocumentShare, List[NotificationEvent]]:
    """
    Grant (or re-grant) a client access to a document.

    Re-sharing updates can_download, expires_at and shared_by on the existing
    row; first-touch timestamps are kept.

    Raises:
        NotFound: the client user does not exist
        InvalidInput: the target user is not a client
    """
    client = db.query(User).filter(User.id == client_user_id).first()
    if not client:
        raise NotFound("User not found")
    if client.role != "client":
        raise InvalidInput("Documents can only be shared with clients")
    allow_download = can_download is not False
    expiry = parse_expiry(expires_at)

    share = get_share(db, doc.id, client.id)
    created = share is None
    if created:
        share = DocumentShare(document_id=doc.id, client_user_id=client.id)
        db.add(share)
    share.shared_by = identity.user_id
    share.can_download = allow_download
    share.expires_at = expiry
    db.flush()
    record_audit(
        db, "document_share", share.id, "SHARE", identity.user_id, identity.role.value,
        context={"document_id": str(doc.id), "client_user_id": str(client.id),
                 "can_download": allow_download, "expires_at": _iso(expiry)},
    )
    db.commit()
    db.refresh(share)
    events = []
    if created:
        events.append(NotificationEvent(
            template_key="document.shared",
            payload={
                "document_name": doc.display_name,
                "shared_by": identity.user.full_name,
                "link": f"/documents/{doc.id}",
            },
            user_ids=[client.id],
        ))
    return share, events


def revoke_share(db: Session, identity: Identity, doc: Document, client_user_id: uuid.UUID) -> bool:
    share = get_share(db, doc.id, client_user_id)
    if share is None:
        return False
    record_audit(db, "document_share", share.id, "REVOKE", identity.user_id, identity.role.value,
                 context={"document_id": str(doc.id), "client_user_id": str(client_user_id)})
    db.delete(share)
    db.commit()
    return True


def mark_viewed(db: Session, document_id: uuid.UUID, client_user_id: uuid.UUID) -> None:
    now = datetime.now(timezone.utc)
    (
        db.query(DocumentShare)
        .filter(
            DocumentShare.document_id == document_id,
            DocumentShare.client_user_id == client_user_id,
            DocumentShare.viewed_at.is_(None),
        )
        .update({DocumentShare.viewed_at: now}, synchronize_session=False)
    )
    db.commit()


def mark_downloaded(db: Session, document_id: uuid.UUID, client_user_id: uuid.UUID) -> None:
    now = datetime.now(timezone.utc)
    (
        db.query(DocumentShare)
        .filter(
            DocumentShare.document_id == document_id,
            DocumentShare.client_user_id == client_user_id,
            DocumentShare.downloaded_at.is_(None),
        )
        .update({DocumentShare.downloaded_at: now}, synchronize_session=False)
    )
    db.commit()


def record_download(db: Session, identity: Identity, doc: Document) -> Dict[str, Any]:
    """
    Resolve the download target for a permitted caller.

    Client downloads stamp first view and first download on their share.

    Raises:
        NotFound: the document has no stored bytes or external URL
    """
    url = download_url(doc)
    if not url:
        raise NotFound("Download not available for this document")
    if identity.is_client:
        mark_viewed(db, doc.id, identity.user_id)
        mark_downloaded(db, doc.id, identity.user_id)
    return {"downloadUrl": url, "filename": doc.filename, "display_name": doc.display_name}


def list_clients(db: Session) -> List[User]:
    return db.query(User).filter(User.role == "client").order_by(User.last_name.asc(), User.first_name.asc()).all()
