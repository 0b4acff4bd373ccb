from datetime import timezone
from typing import Optional

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.orm import Session

from ..config import settings
from ..db import get_db
from ..errors import Unauthenticated
from ..logging import structlog
from ..models.models import UserSession
from ..schemas.auth import LoginRequest, RegisterRequest
from ..services.access import Role
from ..services.identity import Identity
from ..services.projects import process_pending_invitations
from ..services.users import authenticate, create_user, serialize_user
from .security import get_optional_identity, session_token
from .sessions import create_session, delete_session


router = APIRouter(prefix="/auth", tags=["auth"])
log = structlog.get_logger(__name__)


def _set_session_cookie(response: Response, sess: UserSession) -> None:
    expires_at = sess.expires_at
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    response.set_cookie(
        key=settings.session_cookie_name,
        value=sess.id,
        expires=expires_at,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
        path="/",
    )


def _session_out(sess: UserSession) -> dict:
    expires_at = sess.expires_at
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return {"expires_at": expires_at.isoformat()}


@router.post("/login")
def login(payload: LoginRequest, response: Response, db: Session = Depends(get_db)):
    user = authenticate(db, payload.email, payload.password)
    if not user:
        log.info("login_failed", email=payload.email.strip().lower())
        raise Unauthenticated("Invalid email or password")
    sess = create_session(db, user.id)
    _set_session_cookie(response, sess)
    log.info("login_succeeded", user_id=str(user.id))
    return {"user": serialize_user(user), "session": _session_out(sess)}


@router.post("/logout")
def logout(request: Request, response: Response, db: Session = Depends(get_db)):
    delete_session(db, session_token(request))
    response.delete_cookie(settings.session_cookie_name, path="/")
    return {"success": True}


@router.post("/register")
def register(payload: RegisterRequest, response: Response, db: Session = Depends(get_db)):
    if payload.role and payload.role.strip().lower() != Role.CLIENT.value:
        log.warning("register_role_ignored", requested_role=payload.role)
    user = create_user(
        db,
        email=payload.email,
        password=payload.password,
        first_name=payload.first_name,
        last_name=payload.last_name,
        role=Role.CLIENT,
        phone=payload.phone,
    )
    processed = process_pending_invitations(db, user.email, user.id)
    sess = create_session(db, user.id)
    _set_session_cookie(response, sess)
    log.info("user_registered", user_id=str(user.id), invitations_processed=processed)
    return {
        "user": serialize_user(user),
        "session": _session_out(sess),
        "success": True,
        "invitationsProcessed": processed,
    }


@router.get("/session")
def current_session(identity: Optional[Identity] = Depends(get_optional_identity)):
    if identity is None:
        return {"user": None}
    return {"user": serialize_user(identity.user)}
