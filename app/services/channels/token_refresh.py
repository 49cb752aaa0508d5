"""OAuth access-token refresh for connected channels.

Meta tokens (Instagram, Facebook and WhatsApp Cloud) are re-exchanged with
``grant_type=fb_exchange_token``; TikTok uses its ``refresh_token`` grant.
Refreshed tokens are written back through ``ChannelCredentialsResolver.store``
so the resolver cache never serves the old token.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import httpx
from sqlalchemy.orm import Session

from app.config import settings
from app.logging import get_logger
from app.models.helpdesk.channel import Channel
from app.models.helpdesk.enums import ChannelStatus, ChannelType
from app.models.helpdesk.tenant import Local
from app.services.channels.adapters.base import response_json
from app.services.channels.credentials import ChannelCredentialsResolver, get_credentials_resolver, parse_expiry
from app.services.channels.crypto import ENCRYPTED_KEY, CredentialDecryptionError, decrypt_credentials
from app.services.channels.errors import (
    AdapterError,
    AdapterResult,
    CredentialsError,
    ErrorType,
    analyze_api_error,
    analyze_http_error,
    analyze_meta_error,
    create_adapter_error,
    log_adapter_error,
)

logger = get_logger(__name__)

# Used when the token endpoint omits ``expires_in``.
META_DEFAULT_EXPIRES_IN = 60 * 24 * 3600
TIKTOK_DEFAULT_EXPIRES_IN = 24 * 3600

META_TOKEN_TYPES = frozenset({ChannelType.whatsapp, ChannelType.instagram, ChannelType.facebook})

_LABELS = {
    ChannelType.whatsapp: "WhatsApp",
    ChannelType.instagram: "Instagram",
    ChannelType.facebook: "Facebook",
    ChannelType.tiktok: "TikTok",
}


class TransientTokenRefreshError(Exception):
    """Raised when a refresh failed but should be retried later."""


@dataclass(frozen=True)
class RefreshedToken:
    access_token: str
    refresh_token: str | None
    expires_at: datetime


@dataclass(frozen=True)
class TokenExpiration:
    channel_id: uuid.UUID
    channel_type: str
    display_name: str
    expires_at: datetime
    minutes_until_expiration: int
    can_refresh: bool


@dataclass(frozen=True)
class RefreshOutcome:
    channel_id: str
    success: bool
    expires_at: datetime | None = None
    error: AdapterError | None = None

    @property
    def retryable(self) -> bool:
        return bool(self.error and self.error.retryable)


def _now() -> datetime:
    return datetime.now(UTC)


def _expires_in(value, default: int) -> int:
    try:
        seconds = int(value)
    except (TypeError, ValueError):
        return default
    return seconds if seconds > 0 else default


def minutes_until_expiration(expires_at: datetime, now: datetime | None = None) -> int:
    remaining = expires_at - (now or _now())
    return max(0, int(remaining.total_seconds() // 60))


def can_refresh(channel_type: ChannelType, credentials: dict) -> bool:
    if channel_type in META_TOKEN_TYPES:
        # A still-valid long-lived token can be exchanged for a fresh one.
        return bool(credentials.get("refreshToken") or credentials.get("accessToken"))
    if channel_type == ChannelType.tiktok:
        return bool(credentials.get("refreshToken"))
    return False


async def _call(http_method: str, url: str, **kwargs) -> httpx.Response:
    async with httpx.AsyncClient(timeout=settings.channel_http_timeout_seconds) as client:
        return await client.request(http_method, url, **kwargs)


async def exchange_meta_token(credentials: dict, label: str = "Meta") -> AdapterResult[RefreshedToken]:
    if not settings.meta_app_id or not settings.meta_app_secret:
        return AdapterResult.fail(
            create_adapter_error(
                ErrorType.VALIDATION,
                "META_APP_ID and META_APP_SECRET are required to refresh Meta tokens",
            )
        )
    token = credentials.get("refreshToken") or credentials.get("accessToken")
    if not token:
        return AdapterResult.fail(create_adapter_error(ErrorType.VALIDATION, f"No {label} token to exchange"))

    try:
        response = await _call(
            "GET",
            f"{settings.meta_graph_base_url}/oauth/access_token",
            params={
                "grant_type": "fb_exchange_token",
                "client_id": settings.meta_app_id,
                "client_secret": settings.meta_app_secret,
                "fb_exchange_token": token,
            },
        )
    except httpx.HTTPError as exc:
        return AdapterResult.fail(analyze_api_error(exc, label, "refresh_token"))

    data = response_json(response)
    if response.status_code >= 400 or "error" in data:
        return AdapterResult.fail(analyze_meta_error(data, label, "refresh_token", response.status_code))
    access_token = data.get("access_token")
    if not access_token:
        return AdapterResult.fail(
            create_adapter_error(ErrorType.API, f"{label} token exchange returned no access_token")
        )
    expires_in = _expires_in(data.get("expires_in"), META_DEFAULT_EXPIRES_IN)
    return AdapterResult.ok(
        RefreshedToken(
            access_token=access_token,
            refresh_token=data.get("refresh_token") or credentials.get("refreshToken"),
            expires_at=_now() + timedelta(seconds=expires_in),
        )
    )


async def refresh_tiktok_token(credentials: dict) -> AdapterResult[RefreshedToken]:
    refresh_token = credentials.get("refreshToken")
    if not refresh_token:
        return AdapterResult.fail(create_adapter_error(ErrorType.VALIDATION, "No TikTok refresh token stored"))
    client_key = credentials.get("appId") or settings.tiktok_client_key
    client_secret = credentials.get("appSecret") or settings.tiktok_client_secret
    if not client_key or not client_secret:
        return AdapterResult.fail(
            create_adapter_error(ErrorType.VALIDATION, "TikTok client key and secret are required to refresh tokens")
        )

    try:
        response = await _call(
            "POST",
            settings.tiktok_oauth_refresh_url,
            data={
                "client_key": client_key,
                "client_secret": client_secret,
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            },
            headers={"Accept": "application/json"},
        )
    except httpx.HTTPError as exc:
        return AdapterResult.fail(analyze_api_error(exc, "TikTok", "refresh_token"))

    data = response_json(response)
    body = data.get("data") if isinstance(data.get("data"), dict) else data
    if response.status_code >= 400:
        description = body.get("error_description") or body.get("description") or data.get("message")
        return AdapterResult.fail(analyze_http_error(response.status_code, description, "TikTok", "refresh_token"))
    if body.get("error") or body.get("error_code"):
        description = body.get("error_description") or body.get("description") or str(body.get("error"))
        # A rejected refresh grant only recovers by reconnecting the account.
        return AdapterResult.fail(
            create_adapter_error(
                ErrorType.AUTHENTICATION,
                f"TikTok refused the refresh token: {description}",
                retryable=False,
                details={"error_code": body.get("error_code") or body.get("error")},
            )
        )
    access_token = body.get("access_token")
    if not access_token:
        return AdapterResult.fail(create_adapter_error(ErrorType.API, "TikTok token refresh returned no access_token"))
    expires_in = _expires_in(body.get("expires_in"), TIKTOK_DEFAULT_EXPIRES_IN)
    return AdapterResult.ok(
        RefreshedToken(
            access_token=access_token,
            refresh_token=body.get("refresh_token") or refresh_token,
            expires_at=_now() + timedelta(seconds=expires_in),
        )
    )


async def refresh_platform_token(channel_type: ChannelType, credentials: dict) -> AdapterResult[RefreshedToken]:
    if channel_type in META_TOKEN_TYPES:
        return await exchange_meta_token(credentials, _LABELS[channel_type])
    if channel_type == ChannelType.tiktok:
        return await refresh_tiktok_token(credentials)
    return AdapterResult.fail(
        create_adapter_error(ErrorType.VALIDATION, f"Token refresh is not supported for {channel_type.value}")
    )


def list_channels_needing_refresh(
    db: Session,
    *,
    tenant_id: uuid.UUID | None = None,
    refresh_before_minutes: int | None = None,
    resolver: ChannelCredentialsResolver | None = None,
) -> list[TokenExpiration]:
    """Channels whose ``expiresAt`` falls inside the refresh window, most urgent first."""
    resolver = resolver or get_credentials_resolver()
    if refresh_before_minutes is None:
        refresh_before_minutes = settings.token_refresh_before_minutes
    now = _now()
    window_end = now + timedelta(minutes=refresh_before_minutes)

    query = db.query(Channel).filter(Channel.status != ChannelStatus.inactive)
    if tenant_id is not None:
        query = query.join(Local, Channel.local_id == Local.id).filter(Local.tenant_id == tenant_id)

    expiring: list[TokenExpiration] = []
    for channel in query.all():
        if not isinstance(channel.meta, dict):
            continue
        try:
            credentials = decrypt_credentials(channel.meta, key_hex=resolver.key_hex)
        except CredentialDecryptionError as exc:
            logger.warning("token_refresh_decrypt_failed channel_id=%s error=%s", channel.id, exc)
            continue
        expires_at = parse_expiry(credentials.get("expiresAt"))
        if expires_at is None or expires_at > window_end:
            continue
        expiring.append(
            TokenExpiration(
                channel_id=channel.id,
                channel_type=channel.type.value,
                display_name=channel.display_name,
                expires_at=expires_at,
                minutes_until_expiration=minutes_until_expiration(expires_at, now),
                can_refresh=can_refresh(channel.type, credentials),
            )
        )
    expiring.sort(key=lambda item: item.expires_at)
    return expiring


def _refresh_failed(channel: Channel, error: AdapterError) -> RefreshOutcome:
    log_adapter_error(_LABELS.get(channel.type, channel.type.value), "refresh_token", error, str(channel.id))
    return RefreshOutcome(channel_id=str(channel.id), success=False, error=error)


def refresh_channel_credentials(
    db: Session,
    channel: Channel,
    *,
    resolver: ChannelCredentialsResolver | None = None,
) -> RefreshOutcome:
    resolver = resolver or get_credentials_resolver()
    blob = channel.meta if isinstance(channel.meta, dict) else {}
    try:
        credentials = decrypt_credentials(blob, key_hex=resolver.key_hex)
    except CredentialDecryptionError as exc:
        return _refresh_failed(
            channel, create_adapter_error(ErrorType.VALIDATION, f"Could not decrypt credentials: {exc}")
        )
    if not can_refresh(channel.type, credentials):
        return _refresh_failed(
            channel, create_adapter_error(ErrorType.VALIDATION, "Channel has no token that can be refreshed")
        )

    result = asyncio.run(refresh_platform_token(channel.type, credentials))
    if not result.success or result.data is None:
        error = result.error or create_adapter_error(ErrorType.UNKNOWN, "Token refresh returned no result")
        return _refresh_failed(channel, error)

    refreshed = result.data
    updated = {
        **credentials,
        "accessToken": refreshed.access_token,
        "expiresAt": refreshed.expires_at.isoformat(),
        "savedAt": _now().isoformat(),
    }
    if refreshed.refresh_token:
        updated["refreshToken"] = refreshed.refresh_token
    if channel.status == ChannelStatus.error:
        channel.status = ChannelStatus.active
    try:
        resolver.store(db, channel, updated, encrypt=ENCRYPTED_KEY in blob)
    except CredentialsError as exc:
        db.rollback()
        return _refresh_failed(channel, exc.as_adapter_error())

    logger.info(
        "channel_token_refreshed channel_id=%s platform=%s expires_at=%s",
        channel.id,
        channel.type.value,
        refreshed.expires_at.isoformat(),
    )
    return RefreshOutcome(channel_id=str(channel.id), success=True, expires_at=refreshed.expires_at)
