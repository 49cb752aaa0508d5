"""Durable outbound send queue.

Each send is an ``OutboxMessage`` row processed by a Celery task. Retryable
adapter failures reschedule the row with capped exponential backoff and
raise ``TransientOutboundError`` so the task retries; anything else is
terminal and stays ``failed`` until someone requeues it.
"""

from __future__ import annotations

import asyncio
import secrets
import uuid
from datetime import UTC, datetime, timedelta

from sqlalchemy import and_, func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import settings
from app.logging import get_logger
from app.models.helpdesk.channel import Channel
from app.models.helpdesk.enums import MessageDirection
from app.models.helpdesk.outbox import OutboxMessage
from app.models.helpdesk.thread import Message, Thread
from app.schemas.helpdesk.channels import Attachment, OutboundJob, SendMessageRequest
from app.services.channels.credentials import ChannelCredentialsResolver, get_credentials_resolver
from app.services.channels.errors import (
    AdapterError,
    CredentialsError,
    ErrorType,
    create_adapter_error,
)
from app.services.channels.observability import OUTBOUND_MESSAGES
from app.services.channels.registry import AdapterRegistry, get_registry

logger = get_logger(__name__)

STATUS_QUEUED = "queued"
STATUS_SENDING = "sending"
STATUS_RETRYING = "retrying"
STATUS_SENT = "sent"
STATUS_FAILED = "failed"

TERMINAL_STATUSES = {STATUS_SENT, STATUS_FAILED}


class TransientOutboundError(Exception):
    """Raised when a send failed but should be retried later."""


def _now() -> datetime:
    return datetime.now(UTC)


def _compute_backoff_seconds(
    attempts: int,
    base: float | None = None,
    max_backoff: float | None = None,
) -> float:
    base = settings.outbound_backoff_base_seconds if base is None else base
    max_backoff = settings.outbound_backoff_max_seconds if max_backoff is None else max_backoff
    backoff = min(base * (2 ** max(attempts - 1, 0)), max_backoff)
    jitter = backoff * (secrets.randbelow(2500) / 10000)
    return backoff + jitter


def _claimable(now: datetime):
    """Rows a worker may take: waiting ones, or sends whose worker died mid-flight."""
    stale_before = now - timedelta(seconds=settings.outbound_sending_stale_seconds)
    return or_(
        OutboxMessage.status.in_([STATUS_QUEUED, STATUS_RETRYING]),
        and_(OutboxMessage.status == STATUS_SENDING, OutboxMessage.last_attempt_at < stale_before),
    )


def _find_by_idempotency_key(db: Session, idempotency_key: str) -> OutboxMessage | None:
    return (
        db.query(OutboxMessage)
        .filter(OutboxMessage.idempotency_key == idempotency_key)
        .order_by(OutboxMessage.created_at.desc())
        .first()
    )


def _dispatch(outbox_id: str) -> None:
    from app.tasks.channels import send_outbox_item_task

    send_outbox_item_task.delay(outbox_id)


def enqueue_outbound_message(
    db: Session,
    *,
    channel_id: uuid.UUID,
    message_id: uuid.UUID,
    message: SendMessageRequest,
    idempotency_key: str | None = None,
    priority: int = 0,
    dispatch: bool = True,
    trace_id: str | None = None,
) -> OutboxMessage:
    if idempotency_key:
        idempotency_key = idempotency_key.strip() or None
    if idempotency_key:
        existing = _find_by_idempotency_key(db, idempotency_key)
        if existing:
            return existing

    job = OutboundJob(channel_id=channel_id, message_id=message_id, message=message, trace_id=trace_id)
    outbox = OutboxMessage(
        channel_id=channel_id,
        message_id=message_id,
        status=STATUS_QUEUED,
        attempts=0,
        next_attempt_at=_now(),
        payload=job.model_dump(mode="json"),
        idempotency_key=idempotency_key,
        priority=priority,
    )
    db.add(outbox)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        if idempotency_key:
            existing = _find_by_idempotency_key(db, idempotency_key)
            if existing:
                return existing
        raise
    db.refresh(outbox)
    logger.info("outbox_enqueued outbox_id=%s channel_id=%s message_id=%s", outbox.id, channel_id, message_id)

    if dispatch:
        _dispatch(str(outbox.id))
    return outbox


def queue_thread_reply(
    db: Session,
    thread: Thread,
    *,
    body: str,
    attachments: list[Attachment] | None = None,
    idempotency_key: str | None = None,
    dispatch: bool = True,
    trace_id: str | None = None,
) -> tuple[Message, OutboxMessage]:
    """Create the outbound ``Message`` row for a reply and enqueue its send."""
    request = SendMessageRequest(thread_external_id=thread.external_id, body=body, attachments=attachments)
    message = Message(
        thread_id=thread.id,
        channel_id=thread.channel_id,
        direction=MessageDirection.outbound,
        body=request.body,
        attachments=[item.model_dump(mode="json", by_alias=True) for item in attachments or []] or None,
        sent_at=_now(),
    )
    db.add(message)
    thread.last_message_at = message.sent_at
    db.commit()
    db.refresh(message)
    outbox = enqueue_outbound_message(
        db,
        channel_id=thread.channel_id,
        message_id=message.id,
        message=request,
        idempotency_key=idempotency_key,
        dispatch=dispatch,
        trace_id=trace_id,
    )
    return message, outbox


def _mark_failed(
    db: Session,
    outbox: OutboxMessage,
    message: Message | None,
    error: AdapterError,
    platform: str,
) -> OutboxMessage:
    outbox.status = STATUS_FAILED
    outbox.last_error = error.message
    outbox.error_type = error.type.value
    outbox.next_attempt_at = None
    if message is not None:
        message.failed_reason = error.message
    db.commit()
    db.refresh(outbox)
    OUTBOUND_MESSAGES.labels(platform=platform, status="failed").inc()
    logger.warning(
        "outbox_failed outbox_id=%s platform=%s error_type=%s attempts=%s",
        outbox.id,
        platform,
        error.type.value,
        outbox.attempts,
    )
    return outbox


def _mark_retrying(
    db: Session,
    outbox: OutboxMessage,
    message: Message,
    error: AdapterError,
    platform: str,
) -> None:
    outbox.status = STATUS_RETRYING
    outbox.last_error = error.message
    outbox.error_type = error.type.value
    outbox.next_attempt_at = _now() + timedelta(seconds=_compute_backoff_seconds(outbox.attempts or 1))
    message.failed_reason = error.message
    db.commit()
    OUTBOUND_MESSAGES.labels(platform=platform, status="retrying").inc()
    logger.info(
        "outbox_retry_scheduled outbox_id=%s platform=%s attempts=%s next_attempt_at=%s",
        outbox.id,
        platform,
        outbox.attempts,
        outbox.next_attempt_at,
    )


def process_outbox_item(
    db: Session,
    outbox_id: str,
    *,
    registry: AdapterRegistry | None = None,
    resolver: ChannelCredentialsResolver | None = None,
) -> OutboxMessage:
    registry = registry or get_registry()
    resolver = resolver or get_credentials_resolver()

    outbox = db.get(OutboxMessage, uuid.UUID(str(outbox_id)))
    if not outbox:
        raise ValueError("Outbox item not found")
    if outbox.status in TERMINAL_STATUSES:
        return outbox
    next_attempt_at = outbox.next_attempt_at
    if next_attempt_at and next_attempt_at.tzinfo is None:
        next_attempt_at = next_attempt_at.replace(tzinfo=UTC)
    if next_attempt_at and next_attempt_at > _now():
        return outbox

    now = _now()
    # Compare-and-set so an immediate dispatch and the periodic sweep never both send.
    claimed = db.execute(
        update(OutboxMessage)
        .where(OutboxMessage.id == outbox.id, _claimable(now))
        .values(
            status=STATUS_SENDING,
            attempts=func.coalesce(OutboxMessage.attempts, 0) + 1,
            last_attempt_at=now,
        )
        .execution_options(synchronize_session=False)
    ).rowcount
    db.commit()
    db.refresh(outbox)
    if not claimed:
        logger.info("outbox_claim_skipped outbox_id=%s status=%s", outbox.id, outbox.status)
        return outbox

    job = OutboundJob.model_validate(outbox.payload or {})
    message = db.get(Message, job.message_id)
    channel = db.get(Channel, job.channel_id)
    platform = channel.type.value if channel else "unknown"

    # Missing rows or platforms are data problems, never transient.
    if message is None:
        error = create_adapter_error(ErrorType.VALIDATION, f"Message {job.message_id} not found")
        return _mark_failed(db, outbox, None, error, platform)
    if channel is None:
        error = create_adapter_error(ErrorType.VALIDATION, f"Channel {job.channel_id} not found")
        return _mark_failed(db, outbox, message, error, platform)
    adapter = registry.get(channel.type)
    if adapter is None:
        error = create_adapter_error(ErrorType.VALIDATION, f"No adapter registered for platform {platform}")
        return _mark_failed(db, outbox, message, error, platform)
    try:
        credentials = resolver.resolve_for_channel(channel)
    except CredentialsError as exc:
        return _mark_failed(db, outbox, message, exc.as_adapter_error(), platform)

    try:
        result = asyncio.run(adapter.send_message(str(channel.id), job.message, credentials))
    except Exception as exc:
        logger.exception("outbox_send_crashed outbox_id=%s platform=%s", outbox.id, platform)
        error = create_adapter_error(ErrorType.UNKNOWN, str(exc) or exc.__class__.__name__)
        return _mark_failed(db, outbox, message, error, platform)

    if result.success and result.data:
        now = _now()
        message.external_id = result.data.external_id
        message.delivered_at = now
        message.failed_reason = None
        outbox.status = STATUS_SENT
        outbox.last_error = None
        outbox.error_type = None
        outbox.next_attempt_at = None
        db.commit()
        db.refresh(outbox)
        OUTBOUND_MESSAGES.labels(platform=platform, status="sent").inc()
        logger.info("outbox_sent outbox_id=%s platform=%s external_id=%s", outbox.id, platform, message.external_id)
        return outbox

    error = result.error or create_adapter_error(ErrorType.UNKNOWN, "Adapter returned no result")
    if error.type == ErrorType.AUTHENTICATION:
        # Force a fresh read in case the channel was reconnected meanwhile.
        resolver.invalidate(channel.id)
    if error.retryable and (outbox.attempts or 0) < settings.outbound_max_attempts:
        _mark_retrying(db, outbox, message, error, platform)
        raise TransientOutboundError(error.message)
    return _mark_failed(db, outbox, message, error, platform)


def list_due_outbox_ids(db: Session, *, limit: int = 50) -> list[str]:
    now = _now()
    items = (
        db.query(OutboxMessage)
        .filter(_claimable(now))
        .filter((OutboxMessage.next_attempt_at.is_(None)) | (OutboxMessage.next_attempt_at <= now))
        .order_by(OutboxMessage.priority.desc(), OutboxMessage.created_at.asc())
        .limit(limit)
        .all()
    )
    return [str(item.id) for item in items]


def list_failed_outbox(db: Session, *, limit: int = 50) -> list[OutboxMessage]:
    return (
        db.query(OutboxMessage)
        .filter(OutboxMessage.status == STATUS_FAILED)
        .order_by(OutboxMessage.updated_at.desc())
        .limit(limit)
        .all()
    )


def requeue_outbox_item(db: Session, outbox_id: str, *, dispatch: bool = True) -> OutboxMessage:
    """Manually put a failed send back on the queue with a fresh attempt budget."""
    outbox = db.get(OutboxMessage, uuid.UUID(str(outbox_id)))
    if not outbox:
        raise ValueError("Outbox item not found")
    if outbox.status != STATUS_FAILED:
        return outbox
    outbox.status = STATUS_QUEUED
    outbox.attempts = 0
    outbox.next_attempt_at = _now()
    db.commit()
    db.refresh(outbox)
    logger.info("outbox_requeued outbox_id=%s", outbox.id)
    if dispatch:
        _dispatch(str(outbox.id))
    return outbox


def cleanup_old_outbox(db: Session, *, retention_days: int | None = None) -> int:
    retention_days = settings.outbox_retention_days if retention_days is None else retention_days
    cutoff = _now() - timedelta(days=retention_days)
    deleted = (
        db.query(OutboxMessage)
        .filter(OutboxMessage.status.in_(list(TERMINAL_STATUSES)))
        .filter(OutboxMessage.updated_at < cutoff)
        .delete(synchronize_session=False)
    )
    db.commit()
    if deleted:
        logger.info("outbox_cleanup deleted=%s retention_days=%s", deleted, retention_days)
    return deleted
