"""TikTok Business messaging adapter."""

from __future__ import annotations

import hashlib
import json
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
from app.services.channels.errors import AdapterResult, ErrorType, analyze_http_error, create_adapter_error

logger = get_logger(__name__)

_MEDIA_TYPES = {"image", "video", "audio", "file"}


def _parse_timestamp(value) -> datetime:
    if value is None:
        return datetime.now(UTC)
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=UTC)
    except (TypeError, ValueError, OverflowError):
        return datetime.now(UTC)


def _fallback_message_id(message: dict) -> str:
    """Stable id for events without ``message_id`` so redeliveries dedupe."""
    encoded = json.dumps(message, sort_keys=True, default=str).encode("utf-8")
    digest = hashlib.sha256(encoded).hexdigest()[:16]
    try:
        return f"tiktok_{int(message['timestamp'])}_{digest}"
    except (KeyError, TypeError, ValueError):
        return f"tiktok_{digest}"


class TikTokAdapter(ChannelAdapter):
    platform = "tiktok"
    label = "TikTok"
    required_fields = ("accessToken",)

    def _headers(self, credentials: dict) -> dict:
        return {"Access-Token": credentials["accessToken"]}

    async def validate_credentials(self, credentials: dict) -> ValidationResult:
        missing = self.missing_fields(credentials)
        if missing:
            return ValidationResult(
                valid=False,
                error=f"Missing required fields: {', '.join(missing)}",
                details={"missing_fields": missing},
            )
        if not credentials.get("appId"):
            return ValidationResult(valid=True, details={"probed": False})
        try:
            response = await self._request(
                "validate_credentials",
                "GET",
                f"{settings.tiktok_api_base_url}/user/info/",
                headers=self._headers(credentials),
            )
        except httpx.HTTPError as exc:
            return ValidationResult(valid=False, error=self._exception_error(exc, "validate_credentials").message)
        data = response_json(response)
        if response.status_code >= 400 or data.get("code", 0) != 0:
            reason = data.get("message") or f"HTTP {response.status_code}"
            return ValidationResult(valid=False, error=f"Invalid credentials: {reason}")
        return ValidationResult(valid=True, details={"probed": True, "user": data.get("data")})

    async def send_message(
        self,
        channel_id: str,
        message: SendMessageRequest,
        credentials: dict,
    ) -> AdapterResult[SendMessageResult]:
        precheck = self._precheck_send(channel_id, message, credentials)
        if precheck:
            return self._fail("send_message", precheck, channel_id)

        content: dict = {"text": message.body}
        if message.attachments:
            attachment = message.attachments[0]
            content["media"] = {"type": attachment.type, "url": attachment.url}
            if attachment.type == "file" and attachment.filename:
                content["media"]["filename"] = attachment.filename
        payload = {"recipient": {"user_id": message.thread_external_id}, "message": content}
        if credentials.get("appId"):
            payload["app_id"] = credentials["appId"]

        context = {"recipient": truncate_handle(message.thread_external_id), "message_length": len(message.body)}
        try:
            response = await self._request(
                "send_message",
                "POST",
                f"{settings.tiktok_api_base_url}/business/message/send/",
                json=payload,
                headers=self._headers(credentials),
            )
        except httpx.HTTPError as exc:
            return self._fail("send_message", self._exception_error(exc, "send_message"), channel_id, context)

        data = response_json(response)
        if response.status_code >= 400:
            error = analyze_http_error(response.status_code, data.get("message"), self.label, "send_message")
            return self._fail("send_message", error, channel_id, context)
        if data.get("code", 0) != 0:
            # Business API reports failures in the envelope with HTTP 200.
            error = create_adapter_error(
                ErrorType.API,
                f"TikTok error {data.get('code')}: {data.get('message') or 'unknown error'}",
                retryable=False,
                details={"platform": self.label, "method": "send_message", "error_code": data.get("code")},
            )
            return self._fail("send_message", error, channel_id, context)
        external_id = (data.get("data") or {}).get("message_id")
        if not external_id:
            error = create_adapter_error(
                ErrorType.API,
                "TikTok did not return a message id",
                details={"channel_id": channel_id},
            )
            return self._fail("send_message", error, channel_id, context)
        return AdapterResult.ok(SendMessageResult(external_id=external_id))

    async def list_threads(self, channel_id: str, credentials: dict) -> AdapterResult[list[ThreadSummary]]:
        return AdapterResult.ok([])

    async def ingest_webhook(
        self,
        payload: dict,
        channel_id: str,
        credentials: dict | None = None,
    ) -> NormalizedMessage | None:
        # Meta-style envelopes carry an "object" discriminator; TikTok's do not.
        if not isinstance(payload, dict) or "object" in payload:
            return None
        message = payload.get("message")
        if not isinstance(message, dict):
            return None
        sender_id = message.get("sender_id")
        if not sender_id:
            return None

        attachments = []
        media = message.get("media")
        if isinstance(media, dict) and media.get("type") in _MEDIA_TYPES and media.get("url"):
            attachments.append(
                Attachment(
                    type=media["type"],
                    url=media["url"],
                    mime_type=media.get("mime_type"),
                    filename=media.get("filename"),
                )
            )

        return NormalizedMessage(
            external_id=message.get("message_id") or _fallback_message_id(message),
            sender_handle=sender_id,
            sender_name=message.get("sender_name"),
            thread_external_id=message.get("conversation_id") or sender_id,
            body=message.get("text") or "",
            attachments=attachments,
            sent_at=_parse_timestamp(message.get("timestamp")),
        )
