"""In-memory adapter for development and tests.

Needs no credentials, always accepts webhooks and produces deterministic
ids so the same payload maps to the same message.
"""

from __future__ import annotations

import hashlib
import json
from datetime import UTC, datetime

from app.schemas.helpdesk.channels import (
    Attachment,
    NormalizedMessage,
    SendMessageRequest,
    SendMessageResult,
    ThreadSummary,
    ValidationResult,
)
from app.services.channels.adapters.base import ChannelAdapter
from app.services.channels.errors import AdapterResult

MOCK_THREADS_AT = datetime(2024, 1, 1, tzinfo=UTC)


def _digest(value) -> str:
    encoded = json.dumps(value, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()[:16]


def _parse_timestamp(value) -> datetime:
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=UTC)
    except (TypeError, ValueError, OverflowError):
        return MOCK_THREADS_AT


class MockAdapter(ChannelAdapter):
    platform = "mock"
    label = "Mock"
    max_body_length = 4096

    def __init__(self, media_mapper=None):
        super().__init__(media_mapper)
        self.sent: list[SendMessageRequest] = []

    async def validate_credentials(self, credentials: dict) -> ValidationResult:
        return ValidationResult(valid=True, details={"message": "Test channel, no credentials required"})

    async def send_message(
        self,
        channel_id: str,
        message: SendMessageRequest,
        credentials: dict,
    ) -> AdapterResult[SendMessageResult]:
        precheck = self._precheck_send(channel_id, message, credentials)
        if precheck:
            return self._fail("send_message", precheck, channel_id)
        self.sent.append(message)
        return AdapterResult.ok(SendMessageResult(external_id=f"mock_sent_{len(self.sent)}"))

    async def list_threads(self, channel_id: str, credentials: dict) -> AdapterResult[list[ThreadSummary]]:
        return AdapterResult.ok(
            [
                ThreadSummary(
                    external_id="mock_thread_1",
                    participant_handle="user_123",
                    participant_name="Demo User",
                    last_message_at=MOCK_THREADS_AT,
                )
            ]
        )

    def verify_webhook(self, raw_payload: bytes | str, signature: str | None, secret: str | None = None) -> bool:
        return True

    async def ingest_webhook(
        self,
        payload: dict,
        channel_id: str,
        credentials: dict | None = None,
    ) -> NormalizedMessage | None:
        if not isinstance(payload, dict):
            return None
        sender = payload.get("sender") or "mock_user"
        sent_at = _parse_timestamp(payload.get("timestamp"))
        return NormalizedMessage(
            external_id=payload.get("messageId") or f"mock_{_digest(payload)}",
            sender_handle=sender,
            sender_name=payload.get("senderName") or "Mock User",
            thread_external_id=payload.get("threadId") or sender,
            body=payload.get("text") or payload.get("body") or "",
            attachments=[Attachment.model_validate(item) for item in payload.get("attachments") or []],
            sent_at=sent_at,
        )
