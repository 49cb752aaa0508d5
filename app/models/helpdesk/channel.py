import uuid
from datetime import UTC, datetime

from sqlalchemy import JSON, DateTime, Enum, ForeignKey, Index, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db import Base
from app.models.helpdesk.enums import ChannelStatus, ChannelType


class Channel(Base):
    """One connected messaging surface (a WhatsApp number, a page, an account).

    ``meta`` holds the platform credential blob, either plain or with an
    ``encryptedCredentials`` section; see ``app.services.channels.credentials``.
    """

    __tablename__ = "channels"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    local_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("locals.id"), nullable=False)
    type: Mapped[ChannelType] = mapped_column(Enum(ChannelType), nullable=False)
    display_name: Mapped[str] = mapped_column(String(160), nullable=False)
    status: Mapped[ChannelStatus] = mapped_column(Enum(ChannelStatus), default=ChannelStatus.active)
    meta: Mapped[dict | None] = mapped_column(JSON)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    local = relationship("Local", back_populates="channels")
    threads = relationship("Thread", back_populates="channel")

    @property
    def tenant_id(self) -> uuid.UUID:
        return self.local.tenant_id


Index("ix_channels_type_status", Channel.type, Channel.status)
