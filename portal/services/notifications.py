"""
Notification dispatcher.

Lifecycle engines describe what happened as NotificationEvent values; routes
hand them to FastAPI BackgroundTasks so delivery runs after the response and
outside the request's transaction. Every delivery attempt is written to the
notifications outbox. Failures are logged and never propagate.
"""
import smtplib
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.message import EmailMessage
from typing import Optional, Dict, Any, List, Iterable, Tuple

from sqlalchemy.orm import Session

from ..config import settings
from ..db import SessionLocal
from ..logging import structlog
from ..models.models import Notification, User


log = structlog.get_logger(__name__)


SUBJECTS = {
    "task.created": "New task added",
    "task.completed": "Task completed",
    "task.deleted": "Task removed",
    "change_request.created": "New change request",
    "change_request.reviewed": "Your change request was reviewed",
    "project.invitation": "You have been invited to a project",
    "work_order.created": "New work order",
    "work_order.completed": "Work order completed",
    "work_order.status_changed": "Work order status changed",
    "signature.added": "Work order signed",
    "work_order.invitation":"You have been invited to review a work order",
    "document.shared": "A document was shared with you",
}


@dataclass
class NotificationEvent:
    template_key: str
    payload: Dict[str, Any] = field(default_factory=dict)
    user_ids: List[uuid.UUID] = field(default_factory=list)
    emails: List[str] = field(default_factory=list)  # Recipients without an account
    to_admins: bool = False
    exclude_user_id: Optional[uuid.UUID] = None  # Usually the actor


def _recipients(db: Session, event: NotificationEvent) -> List[Tuple[Optional[uuid.UUID], str]]:
    seen = set()
    out: List[Tuple[Optional[uuid.UUID], str]] = []
    users: List[User] = []
    if event.user_ids:
        users.extend(db.query(User).filter(User.id.in_(list(event.user_ids))).all())
    if event.to_admins:
        users.extend(db.query(User).filter(User.role == "admin").all())
    for u in users:
        if u.id == event.exclude_user_id or u.id in seen:
            continue
        seen.add(u.id)
        out.append((u.id, u.email))
    for email in event.emails:
        key = (email or "").strip().lower()
        if key and key not in seen:
            seen.add(key)
            out.append((None, key))
    return out


def _render_body(event: NotificationEvent) -> str:
    lines = [SUBJECTS.get(event.template_key, event.template_key)]
    for k in sorted(event.payload.keys()):
        lines.append(f"{k}: {event.payload[k]}")
    link = event.payload.get("link")
    if link:
        lines.append(f"{settings.public_base_url}{link}")
    return "\n".join(lines)


def send_email(to: str, subject: str, body: str) -> None:
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = settings.mail_from
    msg["To"] = to
    msg.set_content(body)
    with smtplib.SMTP(settings.smtp_host, settings.smtp_port) as s:
        if settings.smtp_tls:
            s.starttls()
        if settings.smtp_username and settings.smtp_password:
            s.login(settings.smtp_username, settings.smtp_password)
        s.send_message(msg)


def _email_configured() -> bool:
    return bool(settings.enable_email and settings.smtp_host and settings.mail_from)


def deliver(db: Session, event: NotificationEvent) -> List[Notification]:
    """
    Write one outbox row per recipient and attempt delivery.

    Args:
        db: Database session owned by the dispatcher
        event: Event produced by a lifecycle engine

    Returns:
        Notification rows written for the event
    """
    rows = []
    for user_id, email in _recipients(db, event):
        row = Notification(
            user_id=user_id,
            recipient_email=email,
            channel="email",
            template_key=event.template_key,
            payload_json=event.payload,
            status="pending",
        )
        if not _email_configured():
            row.status = "skipped"
        else:
            try:
                send_email(email, SUBJECTS.get(event.template_key, event.template_key), _render_body(event))
                row.status = "sent"
                row.sent_at = datetime.now(timezone.utc)
            except (smtplib.SMTPException, OSError) as e:
                row.status = "failed"
                row.error_message = str(e)
                log.warning("notification_send_failed", template_key=event.template_key, error=str(e))
        db.add(row)
        rows.append(row)
    db.commit()
    return rows


def dispatch_events(events: Iterable[NotificationEvent]) -> None:
    """Background entry point; opens its own session and swallows failures."""
    db = SessionLocal()
    try:
        for event in events:
            try:
                rows = deliver(db, event)
                log.info("notification_dispatched", template_key=event.template_key, recipients=len(rows))
            except Exception as e:
                db.rollback()
                log.error("notification_dispatch_failed", template_key=event.template_key, error=str(e))
    finally:
        db.close()
