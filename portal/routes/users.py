from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth.security import get_identity
from ..db import get_db
from ..errors import InvalidInput
from ..logging import structlog
from ..schemas.auth import UserCreateRequest
from ..services.access import Action, Role, enforce
from ..services.identity import Identity
from ..services.users import create_user, list_users, serialize_user


router = APIRouter(prefix="/users", tags=["users"])
log = structlog.get_logger(__name__)


@router.get("")
def get_users(db: Session = Depends(get_db), identity: Identity = Depends(get_identity)):
    enforce(identity, Action.USER_MANAGE)
    return {"users": [serialize_user(u) for u in list_users(db)]}


@router.post("")
def provision_user(payload: UserCreateRequest, db: Session = Depends(get_db), identity: Identity = Depends(get_identity)):
    """Admin provisioning path; the only way to create non-client accounts."""
    enforce(identity, Action.USER_MANAGE)
    role = Role.parse(payload.role)
    if role is None:
        raise InvalidInput("Invalid role")
    user = create_user(
        db,
        email=payload.email,
        password=payload.password,
        first_name=payload.first_name,
        last_name=payload.last_name,
        role=role,
        phone=payload.phone,
    )
    log.info("user_provisioned", user_id=str(user.id), role=role.value, by=str(identity.user_id))
    return {"user": serialize_user(user)}
