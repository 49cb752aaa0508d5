"""channel core tables

Revision ID: 0001_channel_core
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "0001_channel_core"
down_revision = None
branch_labels = None
depends_on = None

UUID = postgresql.UUID(as_uuid=True)

channel_type = postgresql.ENUM(
    "whatsapp", "instagram", "facebook", "tiktok", "mock",
    name="channeltype",
    create_type=False,
)
channel_status = postgresql.ENUM("active", "inactive", "error", name="channelstatus", create_type=False)
thread_status = postgresql.ENUM("open", "pending", "closed", name="threadstatus", create_type=False)
message_direction = postgresql.ENUM("inbound", "outbound", name="messagedirection", create_type=False)
notification_type = postgresql.ENUM(
    "new_message", "sla_warning", "sla_expired",
    name="notificationtype",
    create_type=False,
)

ENUMS = (channel_type, channel_status, thread_status, message_direction, notification_type)


def _timestamps(updated: bool = True) -> list[sa.Column]:
    columns = [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]
    if updated:
        columns.append(
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())
        )
    return columns


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in ENUMS:
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "tenants",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("name", sa.String(160), nullable=False),
        *_timestamps(updated=False),
    )
    op.create_table(
        "locals",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("tenant_id", UUID, sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("name", sa.String(160), nullable=False),
        *_timestamps(updated=False),
    )
    op.create_table(
        "users",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("name", sa.String(160), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        *_timestamps(updated=False),
    )
    op.create_table(
        "sla_policies",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("tenant_id", UUID, sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("name", sa.String(160), nullable=False),
        sa.Column("first_response_minutes", sa.Integer(), nullable=False),
        *_timestamps(updated=False),
    )
    op.create_table(
        "channels",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("local_id", UUID, sa.ForeignKey("locals.id"), nullable=False),
        sa.Column("type", channel_type, nullable=False),
        sa.Column("display_name", sa.String(160), nullable=False),
        sa.Column("status", channel_status, nullable=False, server_default="active"),
        sa.Column("meta", sa.JSON(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_channels_type_status", "channels", ["type", "status"])

    op.create_table(
        "contacts",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("tenant_id", UUID, sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("platform", sa.String(32), nullable=False),
        sa.Column("handle", sa.String(255), nullable=False),
        sa.Column("name", sa.String(160), nullable=True),
        sa.Column("phone", sa.String(40), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", "platform", "handle", name="uq_contacts_tenant_platform_handle"),
    )
    op.create_table(
        "threads",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("tenant_id", UUID, sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("local_id", UUID, sa.ForeignKey("locals.id"), nullable=False),
        sa.Column("channel_id", UUID, sa.ForeignKey("channels.id"), nullable=False),
        sa.Column("contact_id", UUID, sa.ForeignKey("contacts.id"), nullable=True),
        sa.Column("assignee_id", UUID, sa.ForeignKey("users.id"), nullable=True),
        sa.Column("external_id", sa.String(255), nullable=False),
        sa.Column("status", thread_status, nullable=False, server_default="open"),
        sa.Column("last_message_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("channel_id", "external_id", name="uq_threads_channel_external"),
    )
    op.create_index("ix_threads_status_last_message", "threads", ["status", "last_message_at"])

    op.create_table(
        "messages",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("thread_id", UUID, sa.ForeignKey("threads.id"), nullable=False),
        sa.Column("channel_id", UUID, sa.ForeignKey("channels.id"), nullable=False),
        sa.Column("direction", message_direction, nullable=False),
        sa.Column("external_id", sa.String(255), nullable=True),
        sa.Column("body", sa.Text(), nullable=True),
        sa.Column("attachments", sa.JSON(), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_reason", sa.Text(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("channel_id", "external_id", name="uq_messages_channel_external"),
    )
    op.create_table(
        "notifications",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("user_id", UUID, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("thread_id", UUID, sa.ForeignKey("threads.id"), nullable=True),
        sa.Column("type", notification_type, nullable=False),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(updated=False),
    )
    op.create_index(
        "ix_notifications_user_thread_type",
        "notifications",
        ["user_id", "thread_id", "type"],
    )

    op.create_table(
        "channel_outbox",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("channel_id", UUID, sa.ForeignKey("channels.id"), nullable=False),
        sa.Column("message_id", UUID, sa.ForeignKey("messages.id"), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="queued"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("error_type", sa.String(32), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("idempotency_key", sa.String(128), nullable=True, unique=True),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
    )
    op.create_index("ix_channel_outbox_status", "channel_outbox", ["status"])
    op.create_index(
        "ix_channel_outbox_status_next_attempt",
        "channel_outbox",
        ["status", "next_attempt_at"],
    )

    op.create_table(
        "webhook_dead_letters",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("platform", sa.String(40), nullable=False),
        sa.Column("channel_id", UUID, nullable=True),
        sa.Column("trace_id", sa.String(64), nullable=True),
        sa.Column("message_id", sa.String(255), nullable=True),
        sa.Column("raw_payload", sa.JSON(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        *_timestamps(updated=False),
    )
    op.create_index(
        "ix_webhook_dead_letters_platform_created",
        "webhook_dead_letters",
        ["platform", "created_at"],
    )


def downgrade() -> None:
    op.drop_table("webhook_dead_letters")
    op.drop_table("channel_outbox")
    op.drop_table("notifications")
    op.drop_table("messages")
    op.drop_table("threads")
    op.drop_table("contacts")
    op.drop_table("channels")
    op.drop_table("sla_policies")
    op.drop_table("users")
    op.drop_table("locals")
    op.drop_table("tenants")

    bind = op.get_bind()
    for enum_type in reversed(ENUMS):
        postgresql.ENUM(name=enum_type.name, create_type=False).drop(bind, checkfirst=True)
