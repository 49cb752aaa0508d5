"""WhatsApp Cloud API adapter."""

from __future__ import annotations

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

logger = get_logger(__name__)

_MEDIA_TYPES = {
    "image": "image",
    "video": "video",
    "audio": "audio",
    "document": "file",
    "sticker": "image",
}
_OUTBOUND_MEDIA_TYPES = {"image": "image", "video": "video", "audio": "audio", "file": "document"}


def _build_send_payload(message: SendMessageRequest) -> dict:
    payload: dict = {"messaging_product": "whatsapp", "to": message.thread_external_id}
    if not message.attachments:
        payload["type"] = "text"
        payload["text"] = {"body": message.body}
        return payload

    attachment = message.attachments[0]
    media_type = _OUTBOUND_MEDIA_TYPES[attachment.type]
    media: dict = {"link": attachment.url}
    # WhatsApp rejects captions on audio.
    if message.body and media_type != "audio":
        media["caption"] = message.body
    if media_type == "document" and attachment.filename:
        media["filename"] = attachment.filename
    payload["type"] = media_type
    payload[media_type] = media
    return payload


class WhatsAppCloudAdapter(ChannelAdapter):
    platform = "whatsapp"
    label = "WhatsApp"
    required_fields = ("phoneId", "accessToken")
    max_body_length = 4096

    async def validate_credentials(self, credentials: dict) -> ValidationResult:
        missing = self.missing_fields(credentials)
        if missing:
            return ValidationResult(
                valid=False,
                error=f"Missing required fields: {', '.join(missing)}",
                details={"missing_fields": missing},
            )
        headers = {"Authorization": f"Bearer {credentials['accessToken']}"}
        phone_url = f"{settings.meta_graph_base_url}/{credentials['phoneId']}"
        try:
            response = await self._request(
                "validate_credentials",
                "GET",
                phone_url,
                params={"fields": "id,display_phone_number,verified_name"},
                headers=headers,
            )
            if response.status_code >= 400:
                error = analyze_meta_error(
                    response_json(response), self.label, "validate_credentials", response.status_code
                )
                return ValidationResult(valid=False, error=f"Invalid credentials: {error.message}")
            data = response_json(response)

            business_id = credentials.get("businessAccountId") or credentials.get("businessId")
            if business_id:
                business = await self._request(
                    "validate_credentials",
                    "GET",
                    f"{settings.meta_graph_base_url}/{business_id}",
                    headers=headers,
                )
                if business.status_code >= 400:
                    return ValidationResult(
                        valid=False,
                        error="Business account id is invalid or not accessible with this token",
                    )
        except httpx.HTTPError as exc:
            error = self._exception_error(exc, "validate_credentials")
            return ValidationResult(valid=False, error=error.message)

        return ValidationResult(
            valid=True,
            details={
                "phone_number": data.get("display_phone_number"),
                "verified_name": data.get("verified_name"),
            },
        )

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
        try:
            response = await self._request(
                "send_message",
                "POST",
                f"{settings.meta_graph_base_url}/{credentials['phoneId']}/messages",
                json=_build_send_payload(message),
                headers={"Authorization": f"Bearer {credentials['accessToken']}"},
            )
        except httpx.HTTPError as exc:
            return self._fail("send_message", self._exception_error(exc, "send_message"), channel_id, context)

        data = response_json(response)
        if response.status_code >= 400:
            error = analyze_meta_error(data, self.label, "send_message", response.status_code)
            return self._fail("send_message", error, channel_id, context)

        messages = data.get("messages") or []
        external_id = messages[0].get("id") if messages and isinstance(messages[0], dict) else None
        if not external_id:
            error = create_adapter_error(
                ErrorType.API,
                "WhatsApp did not return a message id",
                details={"channel_id": channel_id},
            )
            return self._fail("send_message", error, channel_id, context)
        logger.info("whatsapp_message_sent channel_id=%s external_id=%s", channel_id, external_id)
        return AdapterResult.ok(SendMessageResult(external_id=external_id))

    async def list_threads(self, channel_id: str, credentials: dict) -> AdapterResult[list[ThreadSummary]]:
        # The Cloud API has no conversation listing; threads arrive via webhooks.
        return AdapterResult.ok([])

    async def ingest_webhook(
        self,
        payload: dict,
        channel_id: str,
        credentials: dict | None = None,
    ) -> NormalizedMessage | None:
        if not isinstance(payload, dict) or payload.get("object") != "whatsapp_business_account":
            return None
        entries = payload.get("entry") or []
        if not entries:
            return None
        changes = entries[0].get("changes") or []
        if not changes or changes[0].get("field") != "messages":
            return None
        value = changes[0].get("value") or {}
        messages = value.get("messages") or []
        if not messages:
            # Status callbacks (sent/delivered/read) carry no message.
            return None
        message = messages[0]
        sender = message.get("from")
        external_id = message.get("id")
        if not sender or not external_id:
            return None

        contacts = value.get("contacts") or []
        profile = (contacts[0].get("profile") or {}) if contacts else {}

        msg_type = message.get("type")
        body = ""
        attachments: list[Attachment] = []
        if msg_type == "text":
            body = (message.get("text") or {}).get("body") or ""
        elif msg_type in _MEDIA_TYPES:
            media = message.get(msg_type) or {}
            body = media.get("caption") or ""
            if media.get("id"):
                attachments.append(
                    Attachment(
                        type=_MEDIA_TYPES[msg_type],
                        url=media["id"],
                        mime_type=media.get("mime_type"),
                        filename=media.get("filename"),
                    )
                )
        if attachments:
            attachments = await self.media_mapper.map_attachments(attachments, self.platform, credentials)

        return NormalizedMessage(
            external_id=external_id,
            sender_handle=sender,
            sender_name=profile.get("name"),
            thread_external_id=sender,
            body=body,
            attachments=attachments,
            sent_at=_parse_timestamp(message.get("timestamp")),
        )


def _parse_timestamp(value) -> datetime:
    try:
        return datetime.fromtimestamp(int(value), tz=UTC)
    except (TypeError, ValueError, OverflowError):
        return datetime.now(UTC)
