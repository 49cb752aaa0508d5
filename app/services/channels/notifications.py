"""Notification rows for thread assignees."""

from __future__ import annotations

from sqlalchemy.orm import Session

from app.logging import get_logger
from app.models.helpdesk.channel import Channel
from app.models.helpdesk.contact import Contact
from app.models.helpdesk.enums import NotificationType
from app.models.helpdesk.notification import Notification
from app.models.helpdesk.thread import Thread

logger = get_logger(__name__)

PREVIEW_LENGTH = 100


def _preview(body: str | None, limit: int = PREVIEW_LENGTH) -> str:
    text = (body or "").strip()
    if len(text) > limit:
        return text[:limit]
    return text


def _contact_label(contact: Contact | None) -> str:
    if not contact:
        return "Unknown"
    return contact.name or contact.handle or "Unknown"


def notify_new_message(
    db: Session,
    *,
    thread: Thread,
    contact: Contact | None,
    channel: Channel,
    body: str | None,
) -> Notification | None:
    if not thread.assignee_id:
        return None
    notification = Notification(
        user_id=thread.assignee_id,
        thread_id=thread.id,
        type=NotificationType.new_message,
        payload={
            "thread_id": str(thread.id),
            "contact_name": _contact_label(contact),
            "preview": _preview(body),
            "channel_name": channel.display_name,
        },
    )
    db.add(notification)
    db.flush()
    logger.info("notification_created type=new_message user_id=%s thread_id=%s", thread.assignee_id, thread.id)
    return notification


def has_notification(db: Session, *, user_id, thread_id, notification_type: NotificationType) -> bool:
    return (
        db.query(Notification.id)
        .filter(Notification.user_id == user_id)
        .filter(Notification.thread_id == thread_id)
        .filter(Notification.type == notification_type)
        .first()
        is not None
    )


def notify_sla(
    db: Session,
    *,
    thread: Thread,
    notification_type: NotificationType,
    sla_minutes: int,
    age_minutes: int,
) -> Notification | None:
    """Create an SLA notification unless the assignee already has one of this type."""
    if not thread.assignee_id:
        return None
    if has_notification(db, user_id=thread.assignee_id, thread_id=thread.id, notification_type=notification_type):
        return None
    payload = {
        "thread_id": str(thread.id),
        "thread_contact": _contact_label(thread.contact),
        "sla_minutes": sla_minutes,
    }
    if notification_type == NotificationType.sla_expired:
        payload["minutes_exceeded"] = age_minutes - sla_minutes
    else:
        payload["minutes_remaining"] = sla_minutes - age_minutes
    notification = Notification(
        user_id=thread.assignee_id,
        thread_id=thread.id,
        type=notification_type,
        payload=payload,
    )
    db.add(notification)
    db.flush()
    return notification
