"""Error taxonomy for channel adapters and the services around them.

Adapters never raise for expected platform failures. They return an
``AdapterResult`` carrying an ``AdapterError`` whose ``retryable`` flag
drives logging severity and the outbound queue's retry decision.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

import httpx
from fastapi import HTTPException

from app.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class ErrorType(str, enum.Enum):
    VALIDATION = "VALIDATION"
    AUTHENTICATION = "AUTHENTICATION"
    NETWORK = "NETWORK"
    RATE_LIMIT = "RATE_LIMIT"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    MESSAGE_TOO_LONG = "MESSAGE_TOO_LONG"
    API = "API"
    UNKNOWN = "UNKNOWN"


_RETRYABLE_BY_DEFAULT = frozenset({ErrorType.NETWORK, ErrorType.RATE_LIMIT, ErrorType.QUOTA_EXCEEDED})

META_AUTH_CODES = {190, 463}
META_ABUSE_CODE = 368
META_INVALID_PARAM_CODE = 100
META_APP_LIMIT_CODE = 4
META_MESSAGING_WINDOW_CODE = 10

_LENGTH_HINTS = ("too long", "length", "exceeds")


@dataclass(frozen=True)
class AdapterError:
    type: ErrorType
    message: str
    retryable: bool = False
    status_code: int | None = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AdapterResult(Generic[T]):
    success: bool
    data: T | None = None
    error: AdapterError | None = None

    @classmethod
    def ok(cls, data: T | None = None) -> AdapterResult[T]:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: AdapterError) -> AdapterResult[T]:
        return cls(success=False, error=error)


def create_adapter_error(
    error_type: ErrorType,
    message: str,
    *,
    retryable: bool | None = None,
    status_code: int | None = None,
    details: dict[str, Any] | None = None,
) -> AdapterError:
    if retryable is None:
        retryable = error_type in _RETRYABLE_BY_DEFAULT
    return AdapterError(
        type=error_type,
        message=message,
        retryable=retryable,
        status_code=status_code,
        details=dict(details or {}),
    )


def _status_code_of(error: Exception) -> int | None:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    status_code = getattr(error, "status_code", None) or getattr(error, "status", None)
    if isinstance(status_code, int):
        return status_code
    return None


def analyze_api_error(error: Exception, platform: str, method: str = "") -> AdapterError:
    """Classify an exception raised while talking to a platform API."""
    details = {"platform": platform, "method": method}
    if isinstance(error, httpx.TransportError):
        # Covers connect/read timeouts as well as refused connections.
        return create_adapter_error(
            ErrorType.NETWORK,
            f"Connection error with {platform}: {error}",
            retryable=True,
            details=details,
        )
    status_code = _status_code_of(error)
    if status_code is not None:
        return analyze_http_error(status_code, str(error), platform, method)
    return create_adapter_error(
        ErrorType.UNKNOWN,
        f"Unknown error in {platform}: {error or 'no message'}",
        retryable=False,
        details=details,
    )


def analyze_http_error(status_code: int, message: str | None, platform: str, method: str = "") -> AdapterError:
    details = {"platform": platform, "method": method}
    text = message or ""
    if status_code == 400:
        if any(hint in text.lower() for hint in _LENGTH_HINTS):
            return create_adapter_error(
                ErrorType.MESSAGE_TOO_LONG,
                f"Message rejected by {platform} as too long: {text}",
                status_code=status_code,
                details=details,
            )
        return create_adapter_error(
            ErrorType.VALIDATION,
            f"Invalid request to {platform}: {text or 'bad request'}",
            status_code=status_code,
            details=details,
        )
    if status_code in {401, 403}:
        return create_adapter_error(
            ErrorType.AUTHENTICATION,
            f"Access token rejected by {platform}",
            status_code=status_code,
            details=details,
        )
    if status_code == 408:
        return create_adapter_error(
            ErrorType.NETWORK,
            f"Request to {platform} timed out",
            status_code=status_code,
            details=details,
        )
    if status_code == 413:
        return create_adapter_error(
            ErrorType.MESSAGE_TOO_LONG,
            f"Payload too large for {platform}",
            status_code=status_code,
            details=details,
        )
    if status_code == 429:
        return create_adapter_error(
            ErrorType.RATE_LIMIT,
            f"Rate limit exceeded on {platform}",
            status_code=status_code,
            details=details,
        )
    if status_code >= 500:
        return create_adapter_error(
            ErrorType.NETWORK,
            f"{platform} server error {status_code}",
            retryable=True,
            status_code=status_code,
            details=details,
        )
    return create_adapter_error(
        ErrorType.API,
        f"HTTP {status_code} from {platform}: {text or 'unexpected response'}",
        retryable=False,
        status_code=status_code,
        details=details,
    )


def analyze_meta_error(
    error_payload: Any,
    platform: str,
    method: str = "",
    status_code: int | None = None,
) -> AdapterError:
    """Classify a Graph API error body (``{"error": {"code": ..., "message": ...}}``)."""
    error = error_payload.get("error") if isinstance(error_payload, dict) else None
    if not isinstance(error, dict):
        error = {}
    code = error.get("code")
    raw_message = error.get("message") or "unknown error"
    details = {"platform": platform, "method": method, "error_code": code}

    if code is None and status_code is not None:
        return analyze_http_error(status_code, raw_message, platform, method)

    if code in META_AUTH_CODES:
        return create_adapter_error(
            ErrorType.AUTHENTICATION,
            f"Access token for {platform} is expired or invalid",
            retryable=False,
            status_code=status_code,
            details=details,
        )
    if code == META_ABUSE_CODE:
        return create_adapter_error(
            ErrorType.RATE_LIMIT,
            f"Action blocked by {platform} after abuse detection",
            retryable=True,
            status_code=status_code,
            details=details,
        )
    if code == META_INVALID_PARAM_CODE:
        return create_adapter_error(
            ErrorType.VALIDATION,
            f"Invalid parameter for {platform}: {raw_message}",
            retryable=False,
            status_code=status_code,
            details=details,
        )
    if code == META_APP_LIMIT_CODE:
        return create_adapter_error(
            ErrorType.QUOTA_EXCEEDED,
            f"Application request limit reached on {platform}",
            retryable=True,
            status_code=status_code,
            details=details,
        )
    if code == META_MESSAGING_WINDOW_CODE:
        details["user_message"] = (
            "This message cannot be sent because more than 24 hours have passed since "
            "the customer's last message. Wait for the customer to write again."
        )
        return create_adapter_error(
            ErrorType.VALIDATION,
            f"{platform} only allows replies within 24 hours of the customer's last message",
            retryable=False,
            status_code=status_code,
            details=details,
        )
    return create_adapter_error(
        ErrorType.API,
        f"{platform} error: {raw_message}",
        retryable=isinstance(code, int) and code >= 500,
        status_code=status_code,
        details=details,
    )


def log_adapter_error(
    adapter: str,
    method: str,
    error: AdapterError,
    channel_id: str | None = None,
    extra_context: dict[str, Any] | None = None,
) -> None:
    context = {**(extra_context or {}), **error.details}
    context_text = " ".join(f"{key}={value}" for key, value in sorted(context.items()))
    log = logger.warning if error.retryable else logger.error
    log(
        "channel_adapter_error adapter=%s method=%s channel_id=%s type=%s retryable=%s status_code=%s %s message=%s",
        adapter,
        method,
        channel_id,
        error.type.value,
        error.retryable,
        error.status_code,
        context_text,
        error.message,
        extra={
            "adapter": adapter,
            "adapter_method": method,
            "channel_id": channel_id,
            "error_type": error.type.value,
            "retryable": error.retryable,
            "status_code": error.status_code,
            "context": context,
        },
    )


@dataclass(frozen=True)
class ChannelServiceError(Exception):
    code: str
    detail: str
    status_code: int = 400
    retryable: bool = False

    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=self.detail)


class ChannelNotFoundError(ChannelServiceError):
    def __init__(self, detail: str):
        super().__init__(code="channel_not_found", detail=detail, status_code=404, retryable=False)


class AdapterNotFoundError(ChannelServiceError):
    def __init__(self, platform: str):
        super().__init__(
            code="adapter_not_found",
            detail=f"No adapter registered for platform {platform}",
            status_code=400,
            retryable=False,
        )


class CredentialsError(ChannelServiceError):
    def __init__(self, detail: str, error_type: ErrorType = ErrorType.VALIDATION):
        super().__init__(code="invalid_credentials", detail=detail, status_code=400, retryable=False)
        # Frozen dataclass; bypass to record the classification.
        object.__setattr__(self, "error_type", error_type)

    def as_adapter_error(self) -> AdapterError:
        return create_adapter_error(self.error_type, self.detail, retryable=False)
