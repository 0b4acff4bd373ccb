"""
Identity and role resolution.
Maps a validated session to the user record and its role.
"""
import uuid
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from ..auth.sessions import validate_session
from ..models.models import User, ProjectAssignment
from .access import Role


@dataclass(frozen=True)
class Identity:
    user: User
    role: Role

    @property
    def user_id(self) -> uuid.UUID:
        return self.user.id

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN

    @property
    def is_client(self) -> bool:
        return self.role is Role.CLIENT

    @property
    def is_internal(self) -> bool:
        return self.role.is_internal


def resolve_identity(db: Session, token: Optional[str]) -> Optional[Identity]:
    """
    Resolve a session token into an Identity.

    Returns None when the session is missing or expired, when the user row is
    gone, or when the stored role is not one the portal recognizes.
    """
    sess = validate_session(db, token)
    if not sess:
        return None
    user = db.query(User).filter(User.id == sess.user_id).first()
    if not user:
        return None
    role = Role.parse(user.role)
    if role is None:
        return None
    return Identity(user=user, role=role)


def is_assigned(db: Session, project_id: uuid.UUID, user_id: uuid.UUID) -> bool:
    return (
        db.query(ProjectAssignment.id)
        .filter(ProjectAssignment.project_id == project_id, ProjectAssignment.user_id == user_id)
        .first()
        is not None
    )
