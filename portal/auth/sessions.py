"""
Session manager.
Opaque server-side sessions with an absolute expiry and no renewal.
"""
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import UserSession


def _utc(dt: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; they are stored as UTC
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def create_session(db: Session, user_id: uuid.UUID, now: Optional[datetime] = None) -> UserSession:
    """
    Issue a new session for a user.

    Args:
        db: Database session
        user_id: Owner of the session
        now: Issuance time (defaults to the current UTC time)

    Returns:
        The persisted UserSession; its id is the cookie value
    """
    now = _utc(now) or datetime.now(timezone.utc)
    sess = UserSession(
        id=secrets.token_urlsafe(32),
        user_id=user_id,
        created_at=now,
        expires_at=now + timedelta(days=settings.session_ttl_days),
    )
    db.add(sess)
    db.commit()
    db.refresh(sess)
    return sess


def validate_session(db: Session, token: Optional[str], now: Optional[datetime] = None) -> Optional[UserSession]:
    """
    Return the session for a token while it is still valid.

    A session is valid strictly before its expires_at. Unknown, empty and
    expired tokens all yield None.
    """
    if not token:
        return None
    sess = db.query(UserSession).filter(UserSession.id == token).first()
    if not sess:
        return None
    now = _utc(now) or datetime.now(timezone.utc)
    if now >= _utc(sess.expires_at):
        return None
    return sess


def delete_session(db: Session, token: Optional[str]) -> None:
    if not token:
        return
    db.query(UserSession).filter(UserSession.id == token).delete()
    db.commit()


def purge_expired_sessions(db: Session, now: Optional[datetime] = None) -> int:
    now = _utc(now) or datetime.now(timezone.utc)
    count = db.query(UserSession).filter(UserSession.expires_at <= now).delete()
    db.commit()
    return int(count)
