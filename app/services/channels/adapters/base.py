"""Shared behaviour for channel adapters."""

from __future__ import annotations

import time
from typing import Any

import httpx

from app.config import settings
from app.logging import get_logger
from app.schemas.helpdesk.channels import (
    NormalizedMessage,
    SendMessageRequest,
    SendMessageResult,
    SubscribeResult,
    ThreadSummary,
    ValidationResult,
)
from app.services.channels.errors import (
    AdapterError,
    AdapterResult,
    ErrorType,
    analyze_api_error,
    create_adapter_error,
    log_adapter_error,
)
from app.services.channels.media import MediaUrlMapper
from app.services.channels.observability import ADAPTER_CALL_SECONDS
from app.services.channels.webhook_verification import signature_algorithm, verify_webhook_signature

logger = get_logger(__name__)


class ChannelAdapter:
    """One platform's implementation of the channel contract.

    Every operation returns a value for expected failures; exceptions are
    reserved for programming errors.
    """

    platform: str = ""
    label: str = ""
    required_fields: tuple[str, ...] = ()
    max_body_length: int | None = None

    def __init__(self, media_mapper: MediaUrlMapper | None = None):
        self.media_mapper = media_mapper or MediaUrlMapper()

    async def validate_credentials(self, credentials: dict) -> ValidationResult:
        raise NotImplementedError

    async def send_message(
        self,
        channel_id: str,
        message: SendMessageRequest,
        credentials: dict,
    ) -> AdapterResult[SendMessageResult]:
        raise NotImplementedError

    async def list_threads(self, channel_id: str, credentials: dict) -> AdapterResult[list[ThreadSummary]]:
        raise NotImplementedError

    async def ingest_webhook(
        self,
        payload: dict,
        channel_id: str,
        credentials: dict | None = None,
    ) -> NormalizedMessage | None:
        raise NotImplementedError

    async def subscribe_webhooks(self, channel_id: str, callback_url: str) -> SubscribeResult:
        # Fixed app-level webhook configured in the platform dashboard.
        logger.info("webhook_subscription platform=%s channel_id=%s url=%s", self.platform, channel_id, callback_url)
        return SubscribeResult(success=True)

    def verify_webhook(self, raw_payload: bytes | str, signature: str | None, secret: str | None = None) -> bool:
        if not secret:
            if settings.is_development:
                logger.warning("webhook_secret_missing platform=%s action=skip_verification", self.platform)
                return True
            logger.warning("webhook_secret_missing platform=%s action=reject", self.platform)
            return False
        verified = verify_webhook_signature(raw_payload, signature, secret, algorithm=signature_algorithm(signature))
        if not verified:
            logger.warning(
                "webhook_verification_failed platform=%s has_signature=%s payload_len=%s",
                self.platform,
                bool(signature),
                len(raw_payload),
            )
        return verified

    def missing_fields(self, credentials: dict | None) -> list[str]:
        credentials = credentials or {}
        return [field for field in self.required_fields if not credentials.get(field)]

    def _missing_credentials_error(self, missing: list[str], channel_id: str | None = None) -> AdapterError:
        return create_adapter_error(
            ErrorType.VALIDATION,
            f"Missing required credentials for {self.label}: {', '.join(missing)}",
            details={"channel_id": channel_id, "missing_fields": missing},
        )

    def _precheck_send(
        self,
        channel_id: str,
        message: SendMessageRequest,
        credentials: dict,
    ) -> AdapterError | None:
        """Structural checks that must pass before any network call."""
        missing = self.missing_fields(credentials)
        if missing:
            return self._missing_credentials_error(missing, channel_id)
        if self.max_body_length is not None and len(message.body) > self.max_body_length:
            return create_adapter_error(
                ErrorType.MESSAGE_TOO_LONG,
                f"Message exceeds the {self.max_body_length} character limit of {self.label}",
                details={"channel_id": channel_id, "message_length": len(message.body)},
            )
        return None

    def _fail(
        self,
        method: str,
        error: AdapterError,
        channel_id: str | None = None,
        extra_context: dict[str, Any] | None = None,
    ) -> AdapterResult:
        log_adapter_error(self.label, method, error, channel_id, extra_context)
        return AdapterResult.fail(error)

    def _exception_error(self, exc: Exception, method: str) -> AdapterError:
        return analyze_api_error(exc, self.label, method)

    async def _request(
        self,
        method: str,
        http_method: str,
        url: str,
        **kwargs: Any,
    ) -> httpx.Response:
        start = time.perf_counter()
        try:
            async with httpx.AsyncClient(timeout=settings.channel_http_timeout_seconds) as client:
                return await client.request(http_method, url, **kwargs)
        finally:
            ADAPTER_CALL_SECONDS.labels(platform=self.platform, method=method).observe(time.perf_counter() - start)


def response_json(response: httpx.Response) -> dict:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def truncate_handle(handle: str | None) -> str:
    if not handle:
        return ""
    return handle if len(handle) <= 4 else f"...{handle[-4:]}"
