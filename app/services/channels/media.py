"""Resolve platform media ids to fetchable URLs."""

from __future__ import annotations

import httpx

from app.config import settings
from app.logging import get_logger
from app.schemas.helpdesk.channels import Attachment
from app.services.channels.cache import TTLCache

logger = get_logger(__name__)

_GRAPH_PLATFORMS = {"whatsapp", "instagram", "facebook"}


def _is_url(value: str | None) -> bool:
    return bool(value) and value.startswith(("http://", "https://"))


class MediaUrlMapper:
    """Maps opaque media ids to URLs, caching each resolved id for the TTL.

    Resolution failures leave the attachment untouched; a missing URL never
    blocks ingestion of the surrounding message.
    """

    def __init__(self, cache: TTLCache | None = None):
        self.cache = cache or TTLCache(settings.media_url_cache_ttl_seconds)

    async def map_attachments(
        self,
        attachments: list[Attachment],
        platform: str,
        credentials: dict | None,
    ) -> list[Attachment]:
        mapped = []
        for attachment in attachments:
            mapped.append(await self.map_attachment(attachment, platform, credentials))
        return mapped

    async def map_attachment(
        self,
        attachment: Attachment,
        platform: str,
        credentials: dict | None,
    ) -> Attachment:
        if _is_url(attachment.url) or not attachment.url:
            return attachment
        platform = platform.lower()
        if platform not in _GRAPH_PLATFORMS:
            # TikTok delivers direct media URLs.
            return attachment
        access_token = (credentials or {}).get("accessToken")
        if not access_token:
            logger.warning("media_mapping_skipped platform=%s reason=no_access_token", platform)
            return attachment

        cache_key = f"{platform}:{attachment.url}"
        resolved = self.cache.get(cache_key)
        if resolved is None:
            resolved = await self._fetch_graph_media(attachment.url, access_token, platform)
            if resolved is None:
                return attachment
            self.cache.set(cache_key, resolved)
        return attachment.model_copy(
            update={
                "url": resolved.get("url") or attachment.url,
                "mime_type": resolved.get("mime_type") or attachment.mime_type,
                "filename": resolved.get("filename") or attachment.filename,
            }
        )

    async def _fetch_graph_media(self, media_id: str, access_token: str, platform: str) -> dict | None:
        url = f"{settings.meta_graph_base_url}/{media_id}"
        try:
            async with httpx.AsyncClient(timeout=settings.channel_http_timeout_seconds) as client:
                response = await client.get(url, headers={"Authorization": f"Bearer {access_token}"})
        except httpx.HTTPError as exc:
            logger.warning("media_mapping_request_failed platform=%s media_id=%s error=%s", platform, media_id, exc)
            return None
        if response.status_code >= 400:
            logger.warning(
                "media_mapping_lookup_failed platform=%s media_id=%s status=%s",
                platform,
                media_id,
                response.status_code,
            )
            return None
        try:
            data = response.json()
        except ValueError:
            return None
        return data if isinstance(data, dict) else None
