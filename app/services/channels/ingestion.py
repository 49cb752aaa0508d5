"""Inbound webhook orchestration: normalize, then store per channel.

The payload does not identify its channel, so every active channel of the
resolved platform is offered it and adapters return ``None`` for payloads
that are not theirs.
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.orm import Session

from app.logging import get_logger
from app.models.helpdesk.channel import Channel
from app.models.helpdesk.enums import ChannelStatus, ChannelType
from app.schemas.helpdesk.channels import NormalizedMessage
from app.services.channels.credentials import ChannelCredentialsResolver, get_credentials_resolver
from app.services.channels.errors import AdapterNotFoundError
from app.services.channels.notifications import notify_new_message
from app.services.channels.observability import INBOUND_MESSAGES
from app.services.channels.registry import AdapterRegistry, get_registry
from app.services.channels.upsert import (
    find_inbound_message,
    insert_inbound_message,
    upsert_contact,
    upsert_thread,
)
from app.services.webhook_dead_letter import write_dead_letter

logger = get_logger(__name__)

STATUS_CREATED = "created"
STATUS_DUPLICATE = "duplicate"
STATUS_SKIPPED = "skipped"
STATUS_ERROR = "error"


@dataclass(frozen=True)
class IngestOutcome:
    channel_id: str
    status: str
    message_id: str | None = None
    thread_id: str | None = None
    external_id: str | None = None


def detect_meta_platform(payload: dict) -> str:
    """Instagram payloads say so; everything else on the Meta endpoint is Facebook."""
    if isinstance(payload, dict) and payload.get("object") == "instagram":
        return ChannelType.instagram.value
    return ChannelType.facebook.value


def list_active_channels(db: Session, platform: str) -> list[Channel]:
    return (
        db.query(Channel)
        .filter(Channel.type == ChannelType(platform))
        .filter(Channel.status == ChannelStatus.active)
        .order_by(Channel.created_at.asc())
        .all()
    )


def store_inbound_message(db: Session, channel: Channel, message: NormalizedMessage) -> IngestOutcome:
    """Upsert contact and thread, then insert the message. Caller commits.

    A redelivered message is reported as a duplicate before the contact or
    thread is touched, so a late retry never reopens a closed thread.
    """
    existing = find_inbound_message(db, channel_id=channel.id, external_id=message.external_id)
    if existing is not None:
        return IngestOutcome(
            channel_id=str(channel.id),
            status=STATUS_DUPLICATE,
            thread_id=str(existing.thread_id),
            external_id=message.external_id,
        )
    platform = channel.type.value
    contact = upsert_contact(
        db,
        tenant_id=channel.tenant_id,
        platform=platform,
        handle=message.sender_handle,
        name=message.sender_name,
        phone=message.sender_handle if channel.type == ChannelType.whatsapp else None,
    )
    thread, created = upsert_thread(
        db,
        channel=channel,
        external_id=message.thread_external_id,
        contact_id=contact.id,
        message_at=message.sent_at,
    )
    message_id = insert_inbound_message(db, thread=thread, message=message)
    if message_id is None:
        return IngestOutcome(
            channel_id=str(channel.id),
            status=STATUS_DUPLICATE,
            thread_id=str(thread.id),
            external_id=message.external_id,
        )
    if created:
        logger.info("thread_created channel_id=%s thread_id=%s", channel.id, thread.id)
    notify_new_message(db, thread=thread, contact=contact, channel=channel, body=message.body)
    return IngestOutcome(
        channel_id=str(channel.id),
        status=STATUS_CREATED,
        message_id=str(message_id),
        thread_id=str(thread.id),
        external_id=message.external_id,
    )


async def ingest_webhook_payload(
    db: Session,
    platform: str,
    payload: dict,
    *,
    registry: AdapterRegistry | None = None,
    resolver: ChannelCredentialsResolver | None = None,
    trace_id: str | None = None,
) -> list[IngestOutcome]:
    registry = registry or get_registry()
    resolver = resolver or get_credentials_resolver()
    adapter = registry.get(platform)
    if adapter is None:
        raise AdapterNotFoundError(platform)

    outcomes: list[IngestOutcome] = []
    for channel in list_active_channels(db, platform):
        channel_id = str(channel.id)
        try:
            credentials = resolver.resolve_optional(channel)
            normalized = await adapter.ingest_webhook(payload, channel_id, credentials)
            if normalized is None:
                INBOUND_MESSAGES.labels(platform=platform, status=STATUS_SKIPPED).inc()
                outcomes.append(IngestOutcome(channel_id=channel_id, status=STATUS_SKIPPED))
                continue
            outcome = store_inbound_message(db, channel, normalized)
            db.commit()
        except Exception as exc:
            db.rollback()
            logger.exception("inbound_ingest_failed platform=%s channel_id=%s", platform, channel_id)
            INBOUND_MESSAGES.labels(platform=platform, status=STATUS_ERROR).inc()
            write_dead_letter(platform, payload, exc, channel_id=channel_id, trace_id=trace_id)
            outcomes.append(IngestOutcome(channel_id=channel_id, status=STATUS_ERROR))
            continue

        INBOUND_MESSAGES.labels(platform=platform, status=outcome.status).inc()
        logger.info(
            "inbound_message_ingested platform=%s channel_id=%s status=%s external_id=%s",
            platform,
            channel_id,
            outcome.status,
            outcome.external_id,
        )
        outcomes.append(outcome)
    return outcomes
