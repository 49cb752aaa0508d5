"""Race-safe contact/thread/message writes for inbound delivery.

Platforms redeliver webhooks and deliveries for one conversation can race,
so every natural-key write is a single ``INSERT ... ON CONFLICT`` statement
against the unique constraints on the models.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from app.models.helpdesk.channel import Channel
from app.models.helpdesk.contact import Contact
from app.models.helpdesk.enums import MessageDirection, ThreadStatus
from app.models.helpdesk.thread import Message, Thread
from app.schemas.helpdesk.channels import NormalizedMessage

_INSERTS = {"postgresql": pg_insert, "sqlite": sqlite_insert}


def _insert(db: Session, model):
    dialect = db.get_bind().dialect.name
    insert = _INSERTS.get(dialect)
    if insert is None:
        raise RuntimeError(f"Unsupported database dialect for upserts: {dialect}")
    return insert(model)


def upsert_contact(
    db: Session,
    *,
    tenant_id: uuid.UUID,
    platform: str,
    handle: str,
    name: str | None = None,
    phone: str | None = None,
) -> Contact:
    now = datetime.now(UTC)
    stmt = _insert(db, Contact).values(
        id=uuid.uuid4(),
        tenant_id=tenant_id,
        platform=platform,
        handle=handle,
        name=name,
        phone=phone,
        created_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[Contact.tenant_id, Contact.platform, Contact.handle],
        # Keep known values when the new delivery omits them.
        set_={
            "name": func.coalesce(stmt.excluded.name, Contact.name),
            "phone": func.coalesce(stmt.excluded.phone, Contact.phone),
            "updated_at": now,
        },
    ).returning(Contact.id)
    contact_id = db.execute(stmt).scalar_one()
    return db.get(Contact, contact_id, populate_existing=True)


def upsert_thread(
    db: Session,
    *,
    channel: Channel,
    external_id: str,
    contact_id: uuid.UUID | None,
    message_at: datetime,
) -> tuple[Thread, bool]:
    """Return the thread for ``(channel, external_id)`` and whether it was created.

    Existing threads are reopened if closed and their ``last_message_at``
    moves forward to ``message_at``.
    """
    now = datetime.now(UTC)
    stmt = (
        _insert(db, Thread)
        .values(
            id=uuid.uuid4(),
            tenant_id=channel.tenant_id,
            local_id=channel.local_id,
            channel_id=channel.id,
            contact_id=contact_id,
            external_id=external_id,
            status=ThreadStatus.open,
            last_message_at=message_at,
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(index_elements=[Thread.channel_id, Thread.external_id])
        .returning(Thread.id)
    )
    thread_id = db.execute(stmt).scalar_one_or_none()
    if thread_id is not None:
        return db.get(Thread, thread_id, populate_existing=True), True

    thread = db.scalars(
        select(Thread)
        .where(Thread.channel_id == channel.id, Thread.external_id == external_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).one()
    if thread.status == ThreadStatus.closed:
        thread.status = ThreadStatus.open
    if thread.last_message_at is None or _as_utc(thread.last_message_at) < message_at:
        thread.last_message_at = message_at
    if thread.contact_id is None:
        thread.contact_id = contact_id
    db.flush()
    return thread, False


def find_inbound_message(db: Session, *, channel_id: uuid.UUID, external_id: str) -> Message | None:
    return db.scalars(
        select(Message).where(Message.channel_id == channel_id, Message.external_id == external_id)
    ).first()


def insert_inbound_message(db: Session, *, thread: Thread, message: NormalizedMessage) -> uuid.UUID | None:
    """Insert the message; ``None`` means this external id was already stored."""
    now = datetime.now(UTC)
    stmt = (
        _insert(db, Message)
        .values(
            id=uuid.uuid4(),
            thread_id=thread.id,
            channel_id=thread.channel_id,
            direction=MessageDirection.inbound,
            external_id=message.external_id,
            body=message.body,
            attachments=[item.model_dump(mode="json", by_alias=True) for item in message.attachments] or None,
            sent_at=message.sent_at,
            delivered_at=message.sent_at,
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(index_elements=[Message.channel_id, Message.external_id])
        .returning(Message.id)
    )
    return db.execute(stmt).scalar_one_or_none()


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes.
    return value if value.tzinfo else value.replace(tzinfo=UTC)
