"""Meta Messenger Platform adapter for Instagram Direct and Facebook Messenger.

Both surfaces share the Send API and webhook envelope; they differ only in
the ``object`` discriminator, the conversations ``platform`` filter and the
page validation probe.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime

import httpx

from app.config import settings
from app.logging import get_logger
from app.schemas.helpdesk.channels import (
    Attachment,
    NormalizedMessage,
    SendMessageRequest,
    SendMessageResult,
    ThreadSummary,
    ValidationResult,
)
from app.services.channels.adapters.base import ChannelAdapter, response_json, truncate_handle
from app.services.channels.errors import AdapterResult, ErrorType, analyze_meta_error, create_adapter_error
from app.services.channels.media import MediaUrlMapper

logger = get_logger(__name__)

_ATTACHMENT_TYPES = {"image", "video", "audio", "file"}


@dataclass(frozen=True)
class MetaSurface:
    platform: str
    label: str
    webhook_object: str
    conversations_platform: str
    validation_fields: str
    requires_instagram_account: bool = False


INSTAGRAM = MetaSurface(
    platform="instagram",
    label="Instagram",
    webhook_object="instagram",
    conversations_platform="instagram",
    validation_fields="id,name,instagram_business_account",
    requires_instagram_account=True,
)
FACEBOOK = MetaSurface(
    platform="facebook",
    label="Facebook",
    webhook_object="page",
    conversations_platform="messenger",
    validation_fields="id,name,category",
)


def _parse_ms_timestamp(value) -> datetime:
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=UTC)
    except (TypeError, ValueError, OverflowError):
        return datetime.now(UTC)


def _parse_graph_time(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        # Graph returns e.g. 2024-01-01T10:00:00+0000
        return datetime.strptime(value, "%Y-%m-%dT%H:%M:%S%z")
    except ValueError:
        return None


def _build_message(message: SendMessageRequest) -> dict:
    if not message.attachments:
        return {"text": message.body}
    attachment = message.attachments[0]
    content: dict = {"attachment": {"type": attachment.type, "payload": {"url": attachment.url}}}
    if message.body and attachment.type != "audio":
        content["text"] = message.body
    return content


class MetaMessengerAdapter(ChannelAdapter):
    required_fields = ("pageId", "accessToken")
    max_body_length = 2000

    def __init__(self, surface: MetaSurface, media_mapper: MediaUrlMapper | None = None):
        super().__init__(media_mapper)
        self.surface = surface
        self.platform = surface.platform
        self.label = surface.label

    async def validate_credentials(self, credentials: dict) -> ValidationResult:
        missing = self.missing_fields(credentials)
        if missing:
            return ValidationResult(
                valid=False,
                error=f"Missing required fields: {', '.join(missing)}",
                details={"missing_fields": missing},
            )
        page_id = credentials["pageId"]
        try:
            response = await self._request(
                "validate_credentials",
                "GET",
                f"{settings.meta_graph_base_url}/{page_id}",
                params={"fields": self.surface.validation_fields},
                headers={"Authorization": f"Bearer {credentials['accessToken']}"},
            )
        except httpx.HTTPError as exc:
            return ValidationResult(valid=False, error=self._exception_error(exc, "validate_credentials").message)

        data = response_json(response)
        if response.status_code >= 400:
            error = analyze_meta_error(data, self.label, "validate_credentials", response.status_code)
            self._fail("validate_credentials", error, extra_context={"page_id": page_id})
            return ValidationResult(valid=False, error=error.message)

        details = {"page_id": data.get("id"), "page_name": data.get("name")}
        if self.surface.requires_instagram_account:
            account = data.get("instagram_business_account")
            if not account:
                return ValidationResult(
                    valid=False,
                    error="This Facebook page has no connected Instagram Business account",
                    details=details,
                )
            details["instagram_account_id"] = account.get("id") if isinstance(account, dict) else account
        else:
            details["category"] = data.get("category")
        return ValidationResult(valid=True, details=details)

    async def send_message(
        self,
        channel_id: str,
        message: SendMessageRequest,
        credentials: dict,
    ) -> AdapterResult[SendMessageResult]:
        precheck = self._precheck_send(channel_id, message, credentials)
        if precheck:
            return self._fail("send_message", precheck, channel_id)

        context = {"recipient": truncate_handle(message.thread_external_id), "message_length": len(message.body)}
        payload = {
            "recipient": {"id": message.thread_external_id},
            "message": _build_message(message),
            "messaging_type": "RESPONSE",
        }
        try:
            response = await self._request(
                "send_message",
                "POST",
                f"{settings.meta_graph_base_url}/{credentials['pageId']}/messages",
                json=payload,
                headers={"Authorization": f"Bearer {credentials['accessToken']}"},
            )
        except httpx.HTTPError as exc:
            return self._fail("send_message", self._exception_error(exc, "send_message"), channel_id, context)

        data = response_json(response)
        if response.status_code >= 400:
            error = analyze_meta_error(data, self.label, "send_message", response.status_code)
            return self._fail("send_message", error, channel_id, context)
        external_id = data.get("message_id")
        if not external_id:
            error = create_adapter_error(
                ErrorType.API,
                f"{self.label} did not return a message id",
                details={"channel_id": channel_id},
            )
            return self._fail("send_message", error, channel_id, context)
        logger.info("meta_message_sent platform=%s channel_id=%s external_id=%s", self.platform, channel_id, external_id)
        return AdapterResult.ok(SendMessageResult(external_id=external_id))

    async def list_threads(self, channel_id: str, credentials: dict) -> AdapterResult[list[ThreadSummary]]:
        missing = self.missing_fields(credentials)
        if missing:
            return self._fail("list_threads", self._missing_credentials_error(missing, channel_id), channel_id)
        try:
            response = await self._request(
                "list_threads",
                "GET",
                f"{settings.meta_graph_base_url}/{credentials['pageId']}/conversations",
                params={
                    "platform": self.surface.conversations_platform,
                    "fields": "id,participants,updated_time,snippet",
                },
                headers={"Authorization": f"Bearer {credentials['accessToken']}"},
            )
        except httpx.HTTPError as exc:
            return self._fail("list_threads", self._exception_error(exc, "list_threads"), channel_id)

        data = response_json(response)
        if response.status_code >= 400:
            error = analyze_meta_error(data, self.label, "list_threads", response.status_code)
            return self._fail("list_threads", error, channel_id)

        threads = []
        page_id = str(credentials["pageId"])
        for conversation in data.get("data") or []:
            participants = (conversation.get("participants") or {}).get("data") or []
            # The page itself is listed as a participant; pick the customer.
            customer = next((p for p in participants if str(p.get("id")) != page_id), None)
            if not customer or not conversation.get("id"):
                continue
            threads.append(
                ThreadSummary(
                    external_id=conversation["id"],
                    participant_handle=customer.get("id"),
                    participant_name=customer.get("name") or customer.get("username"),
                    last_message_at=_parse_graph_time(conversation.get("updated_time")),
                    snippet=conversation.get("snippet"),
                )
            )
        return AdapterResult.ok(threads)

    async def ingest_webhook(
        self,
        payload: dict,
        channel_id: str,
        credentials: dict | None = None,
    ) -> NormalizedMessage | None:
        if not isinstance(payload, dict) or payload.get("object") != self.surface.webhook_object:
            return None
        entries = payload.get("entry") or []
        if not entries:
            return None
        messaging_events = entries[0].get("messaging") or []
        if not messaging_events:
            return None
        event = messaging_events[0]
        message = event.get("message")
        if not isinstance(message, dict) or message.get("is_echo"):
            return None
        sender_id = (event.get("sender") or {}).get("id")
        if not sender_id or not message.get("mid"):
            return None

        attachments = []
        for item in message.get("attachments") or []:
            item_payload = item.get("payload") or {}
            attachment_type = item.get("type")
            attachments.append(
                Attachment(
                    type=attachment_type if attachment_type in _ATTACHMENT_TYPES else "file",
                    url=item_payload.get("url") or "",
                    mime_type=item_payload.get("mime_type"),
                )
            )
        if attachments:
            attachments = await self.media_mapper.map_attachments(attachments, self.platform, credentials)

        return NormalizedMessage(
            external_id=message["mid"],
            sender_handle=sender_id,
            thread_external_id=sender_id,
            body=message.get("text") or "",
            attachments=attachments,
            sent_at=_parse_ms_timestamp(event.get("timestamp")),
        )
