"""Per-channel credential resolution.

Reads the credential blob stored on ``Channel.meta``, decrypts its
``encryptedCredentials`` section if present and checks the fields the
platform adapter requires. Resolved blobs are cached per process and
must be invalidated when a channel's credentials are rotated.
"""

from __future__ import annotations

from datetime import UTC, datetime

from pydantic import BaseModel, ValidationError
from sqlalchemy.orm import Session

from app.config import settings
from app.logging import get_logger
from app.models.helpdesk.channel import Channel
from app.schemas.helpdesk.channels import MetaCredentials, TikTokCredentials, WhatsAppCredentials
from app.services.channels.cache import TTLCache
from app.services.channels.crypto import CredentialDecryptionError, decrypt_credentials, encrypt_credentials
from app.services.channels.errors import ChannelNotFoundError, CredentialsError, ErrorType
from app.services.channels.registry import AdapterRegistry, get_registry

logger = get_logger(__name__)

CREDENTIAL_SCHEMAS: dict[str, type[BaseModel]] = {
    "whatsapp": WhatsAppCredentials,
    "instagram": MetaCredentials,
    "facebook": MetaCredentials,
    "tiktok": TikTokCredentials,
}


def parse_expiry(value) -> datetime | None:
    if value in (None, ""):
        return None
    if isinstance(value, int | float):
        # Epoch milliseconds or seconds.
        seconds = value / 1000 if value > 10**11 else value
        return datetime.fromtimestamp(seconds, tz=UTC)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return None


class ChannelCredentialsResolver:
    def __init__(
        self,
        cache: TTLCache | None = None,
        registry: AdapterRegistry | None = None,
        key_hex: str | None = None,
    ):
        self.cache = cache or TTLCache(settings.credentials_cache_ttl_seconds)
        self.registry = registry or get_registry()
        self.key_hex = key_hex

    def resolve(self, db: Session, channel_id) -> dict:
        cached = self.cache.get(str(channel_id))
        if cached is not None:
            return dict(cached)
        channel = db.get(Channel, channel_id)
        if not channel:
            raise ChannelNotFoundError(f"Channel {channel_id} not found")
        return self.resolve_for_channel(channel)

    def resolve_for_channel(self, channel: Channel) -> dict:
        cache_key = str(channel.id)
        cached = self.cache.get(cache_key)
        if cached is not None:
            return dict(cached)

        blob = channel.meta if isinstance(channel.meta, dict) else {}
        try:
            credentials = decrypt_credentials(blob, key_hex=self.key_hex)
        except CredentialDecryptionError as exc:
            logger.error("channel_credentials_decrypt_failed channel_id=%s error=%s", channel.id, exc)
            raise CredentialsError(f"Could not decrypt credentials: {exc}") from exc

        adapter = self.registry.require(channel.type)
        missing = adapter.missing_fields(credentials)
        if missing:
            raise CredentialsError(f"Missing required credentials: {', '.join(missing)}")

        expires_at = parse_expiry(credentials.get("expiresAt"))
        if expires_at and expires_at <= datetime.now(UTC):
            logger.warning("channel_credentials_expired channel_id=%s expires_at=%s", channel.id, expires_at)
            raise CredentialsError("Access token has expired", error_type=ErrorType.AUTHENTICATION)

        self.cache.set(cache_key, credentials)
        return dict(credentials)

    def resolve_optional(self, channel: Channel) -> dict | None:
        """Best-effort lookup for enrichment paths such as media mapping."""
        try:
            return self.resolve_for_channel(channel)
        except CredentialsError as exc:
            logger.warning("channel_credentials_unavailable channel_id=%s error=%s", channel.id, exc.detail)
            return None

    def invalidate(self, channel_id) -> None:
        self.cache.invalidate(str(channel_id))

    def store(self, db: Session, channel: Channel, credentials: dict, *, encrypt: bool = True) -> Channel:
        """Persist new credentials for a channel (connect or rotate)."""
        schema = CREDENTIAL_SCHEMAS.get(channel.type.value)
        if schema is not None:
            try:
                schema.model_validate(credentials)
            except ValidationError as exc:
                fields = sorted({str(err["loc"][0]) for err in exc.errors() if err.get("loc")})
                raise CredentialsError(f"Invalid credentials for {channel.type.value}: {', '.join(fields)}") from exc
        channel.meta = encrypt_credentials(credentials, key_hex=self.key_hex) if encrypt else dict(credentials)
        db.commit()
        db.refresh(channel)
        self.invalidate(channel.id)
        logger.info("channel_credentials_stored channel_id=%s encrypted=%s", channel.id, encrypt)
        return channel


_resolver: ChannelCredentialsResolver | None = None


def get_credentials_resolver() -> ChannelCredentialsResolver:
    global _resolver
    if _resolver is None:
        _resolver = ChannelCredentialsResolver()
    return _resolver
