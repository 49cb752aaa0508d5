from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from app.schemas.helpdesk.channels import Attachment
from app.services.channels.cache import TTLCache
from app.services.channels.media import MediaUrlMapper


class _Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_ttl_cache_expires_entries():
    clock = _Clock()
    cache = TTLCache(ttl_seconds=10, clock=clock)
    cache.set("a", {"token": "x"})
    assert cache.get("a") == {"token": "x"}
    clock.now += 10
    assert cache.get("a") is None
    assert len(cache) == 0


def test_ttl_cache_invalidation():
    cache = TTLCache(ttl_seconds=60)
    cache.set("whatsapp:1", "one")
    cache.set("whatsapp:2", "two")
    cache.set("tiktok:1", "three")
    cache.invalidate("tiktok:1")
    assert cache.get("tiktok:1") is None
    cache.invalidate_prefix("whatsapp:")
    assert len(cache) == 0
    cache.set("x", 1, ttl_seconds=5)
    cache.clear()
    assert cache.get("x") is None


def _graph_client(mock_client, response=None, side_effect=None):
    mock_instance = AsyncMock()
    mock_instance.get = AsyncMock(return_value=response, side_effect=side_effect)
    mock_client.return_value.__aenter__ = AsyncMock(return_value=mock_instance)
    mock_client.return_value.__aexit__ = AsyncMock(return_value=None)
    return mock_instance


@pytest.mark.asyncio
async def test_media_mapper_resolves_and_caches_graph_ids():
    mapper = MediaUrlMapper()
    response = MagicMock()
    response.status_code = 200
    response.json.return_value = {"url": "https://lookaside.test/media_1", "mime_type": "image/jpeg"}
    attachment = Attachment(url="media_1", type="image")

    with patch("app.services.channels.media.httpx.AsyncClient") as mock_client:
        mock_instance = _graph_client(mock_client, response)
        first = await mapper.map_attachment(attachment, "whatsapp", {"accessToken": "wa-token"})
        second = await mapper.map_attachment(attachment, "whatsapp", {"accessToken": "wa-token"})

    assert first.url == "https://lookaside.test/media_1"
    assert first.mime_type == "image/jpeg"
    assert second == first
    assert mock_instance.get.await_count == 1
    assert mock_instance.get.call_args.kwargs["headers"] == {"Authorization": "Bearer wa-token"}


@pytest.mark.asyncio
async def test_media_mapper_leaves_urls_and_tiktok_alone():
    mapper = MediaUrlMapper()
    with patch("app.services.channels.media.httpx.AsyncClient") as mock_client:
        url_attachment = Attachment(url="https://cdn.test/a.png", type="image")
        assert await mapper.map_attachment(url_attachment, "instagram", {"accessToken": "t"}) == url_attachment
        tiktok_attachment = Attachment(url="tt_media", type="video")
        assert await mapper.map_attachment(tiktok_attachment, "tiktok", {"accessToken": "t"}) == tiktok_attachment
    mock_client.assert_not_called()


@pytest.mark.asyncio
async def test_media_mapper_failure_keeps_original_attachment():
    mapper = MediaUrlMapper()
    attachment = Attachment(url="media_9", type="file")
    with patch("app.services.channels.media.httpx.AsyncClient") as mock_client:
        _graph_client(mock_client, side_effect=httpx.ConnectError("refused"))
        mapped = await mapper.map_attachments([attachment], "facebook", {"accessToken": "t"})
    assert mapped == [attachment]
    assert mapper.cache.get("facebook:media_9") is None


@pytest.mark.asyncio
async def test_media_mapper_without_token_skips_lookup():
    mapper = MediaUrlMapper()
    attachment = Attachment(url="media_2", type="audio")
    with patch("app.services.channels.media.httpx.AsyncClient") as mock_client:
        assert await mapper.map_attachment(attachment, "whatsapp", None) == attachment
    mock_client.assert_not_called()
