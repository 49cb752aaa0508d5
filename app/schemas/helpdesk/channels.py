from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

AttachmentType = Literal["image", "video", "audio", "file"]


class Attachment(BaseModel):
    url: str
    mime_type: str | None = Field(default=None, alias="mimeType")
    filename: str | None = None
    type: AttachmentType = "file"

    model_config = ConfigDict(populate_by_name=True)


class NormalizedMessage(BaseModel):
    """Platform-neutral inbound message produced by ``ChannelAdapter.ingest_webhook``."""

    external_id: str
    sender_handle: str
    sender_name: str | None = None
    thread_external_id: str
    body: str = ""
    attachments: list[Attachment] = Field(default_factory=list)
    sent_at: datetime


class SendMessageRequest(BaseModel):
    thread_external_id: str = Field(min_length=1)
    body: str = ""
    attachments: list[Attachment] | None = None

    @model_validator(mode="after")
    def _require_body_or_attachments(self):
        if not self.body.strip() and not self.attachments:
            raise ValueError("Message body is required when no attachments are provided.")
        return self


class SendMessageResult(BaseModel):
    external_id: str


class ThreadSummary(BaseModel):
    external_id: str
    participant_handle: str | None = None
    participant_name: str | None = None
    last_message_at: datetime | None = None
    snippet: str | None = None


class ValidationResult(BaseModel):
    valid: bool
    error: str | None = None
    details: dict | None = None


class SubscribeResult(BaseModel):
    success: bool
    error: str | None = None


class OutboundJob(BaseModel):
    """Queue job payload for one outbound send."""

    channel_id: UUID
    message_id: UUID
    message: SendMessageRequest
    trace_id: str | None = None


class WhatsAppCredentials(BaseModel):
    phone_id: str = Field(alias="phoneId")
    access_token: str = Field(alias="accessToken")
    business_account_id: str | None = Field(default=None, alias="businessAccountId")

    model_config = ConfigDict(populate_by_name=True)


class MetaCredentials(BaseModel):
    page_id: str = Field(alias="pageId")
    access_token: str = Field(alias="accessToken")

    model_config = ConfigDict(populate_by_name=True)


class TikTokCredentials(BaseModel):
    access_token: str = Field(alias="accessToken")
    app_id: str | None = Field(default=None, alias="appId")
    app_secret: str | None = Field(default=None, alias="appSecret")

    model_config = ConfigDict(populate_by_name=True)
