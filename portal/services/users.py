"""
Credential store.
Account creation and password verification keyed by lower-cased email.
"""
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..auth.security import get_password_hash, verify_password
from ..config import settings
from ..errors import Conflict, InvalidInput
from ..models.models import User
from .access import Role


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def serialize_user(u: User) -> Dict[str, Any]:
    return {
        "id": str(u.id),
        "email": u.email,
        "first_name": u.first_name,
        "last_name": u.last_name,
        "phone": u.phone,
        "role": u.role,
    }


def get_user_by_email(db: Session, email: str) -> Optional[User]:
    return db.query(User).filter(User.email == normalize_email(email)).first()


def create_user(
    db: Session,
    email: str,
    password: str,
    first_name: str,
    last_name: str,
    role: Role = Role.CLIENT,
    phone: Optional[str] = None,
) -> User:
    """
    Create an account.

    Raises:
        InvalidInput: short password or blank names
        Conflict: the email is already registered
    """
    email = normalize_email(email)
    if len(password or "") < settings.password_min_length:
        raise InvalidInput(f"Password must be at least {settings.password_min_length} characters")
    first_name = (first_name or "").strip()
    last_name = (last_name or "").strip()
    if not email or not first_name or not last_name:
        raise InvalidInput("All fields are required")
    if get_user_by_email(db, email):
        raise Conflict("Email already registered")
    user = User(
        email=email,
        password_hash=get_password_hash(password),
        first_name=first_name,
        last_name=last_name,
        phone=(phone or "").strip() or None,
        role=role.value,
    )
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise Conflict("Email already registered")
    db.refresh(user)
    return user


def authenticate(db: Session, email: str, password: str) -> Optional[User]:
    user = get_user_by_email(db, email)
    if not user or not verify_password(password, user.password_hash):
        return None
    user.last_login_at = datetime.now(timezone.utc)
    db.commit()
    return user


def list_users(db: Session) -> List[User]:
    return db.query(User).order_by(User.created_at.desc()).all()
