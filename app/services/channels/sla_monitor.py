"""Periodic SLA sweep over open and pending threads."""

from __future__ import annotations

import math
from datetime import UTC, datetime

from sqlalchemy.orm import Session, selectinload

from app.logging import get_logger
from app.models.helpdesk.enums import NotificationType, ThreadStatus
from app.models.helpdesk.tenant import SlaPolicy
from app.models.helpdesk.thread import Thread
from app.services.channels.notifications import notify_sla

logger = get_logger(__name__)

WARNING_RATIO = 0.75
MAX_BATCH_SIZE = 500


def _tenant_policy(db: Session, tenant_id, cache: dict) -> SlaPolicy | None:
    if tenant_id not in cache:
        cache[tenant_id] = (
            db.query(SlaPolicy)
            .filter(SlaPolicy.tenant_id == tenant_id)
            .order_by(SlaPolicy.created_at.asc())
            .first()
        )
    return cache[tenant_id]


def _age_minutes(last_message_at: datetime, now: datetime) -> int:
    if last_message_at.tzinfo is None:
        last_message_at = last_message_at.replace(tzinfo=UTC)
    return int((now - last_message_at).total_seconds() // 60)


def classify_sla(age_minutes: int, sla_minutes: int) -> NotificationType | None:
    if age_minutes >= sla_minutes:
        return NotificationType.sla_expired
    if age_minutes >= math.floor(sla_minutes * WARNING_RATIO):
        return NotificationType.sla_warning
    return None


def monitor_slas(db: Session, *, tenant_id=None, now: datetime | None = None) -> dict:
    """Create warning/expired notifications for assigned threads.

    Uses the tenant's oldest SLA policy and the thread's last message time.
    Each notification type is created at most once per thread and assignee.
    """
    now = now or datetime.now(UTC)
    query = (
        db.query(Thread)
        .options(selectinload(Thread.contact))
        .filter(Thread.status.in_([ThreadStatus.open, ThreadStatus.pending]))
        .filter(Thread.assignee_id.isnot(None))
        .filter(Thread.last_message_at.isnot(None))
    )
    if tenant_id is not None:
        query = query.filter(Thread.tenant_id == tenant_id)
    threads = query.order_by(Thread.last_message_at.asc()).limit(MAX_BATCH_SIZE).all()

    policies: dict = {}
    created = {NotificationType.sla_warning.value: 0, NotificationType.sla_expired.value: 0}
    for thread in threads:
        policy = _tenant_policy(db, thread.tenant_id, policies)
        if not policy or not policy.first_response_minutes:
            continue
        age = _age_minutes(thread.last_message_at, now)
        notification_type = classify_sla(age, policy.first_response_minutes)
        if notification_type is None:
            continue
        notification = notify_sla(
            db,
            thread=thread,
            notification_type=notification_type,
            sla_minutes=policy.first_response_minutes,
            age_minutes=age,
        )
        if notification:
            created[notification_type.value] += 1
            logger.info(
                "sla_notification_created type=%s thread_id=%s user_id=%s age_minutes=%s",
                notification_type.value,
                thread.id,
                thread.assignee_id,
                age,
            )
    db.commit()
    logger.info(
        "sla_monitor_complete threads=%s warnings=%s expired=%s",
        len(threads),
        created[NotificationType.sla_warning.value],
        created[NotificationType.sla_expired.value],
    )
    return {"checked": len(threads), **created}
