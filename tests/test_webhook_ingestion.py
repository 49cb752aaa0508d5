import dataclasses
import hashlib
import hmac
import json
from datetime import UTC, datetime

import pytest

from app.models.helpdesk import (
    Channel,
    ChannelStatus,
    ChannelType,
    Contact,
    Message,
    MessageDirection,
    Notification,
    Thread,
    ThreadStatus,
)
from app.models.helpdesk.enums import NotificationType
from app.services.channels import ingestion
from app.services.channels.adapters.mock import MockAdapter
from app.services.channels.registry import AdapterRegistry
from app.web.public import channel_webhooks

WA_SECRET = "wa-secret"


def _whatsapp_payload(message_id="wamid.123", text="Hello", timestamp="1700000000", name="Jane Doe"):
    contacts = [{"profile": {"name": name}, "wa_id": "1234567890"}] if name else []
    return {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "id": "waba_1",
                "changes": [
                    {
                        "field": "messages",
                        "value": {
                            "contacts": contacts,
                            "messages": [
                                {
                                    "from": "+1234567890",
                                    "id": message_id,
                                    "timestamp": timestamp,
                                    "type": "text",
                                    "text": {"body": text},
                                }
                            ],
                        },
                    }
                ],
            }
        ],
    }


def _signed(payload: dict, secret: str) -> tuple[bytes, dict]:
    body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return body, {"Content-Type": "application/json", "X-Hub-Signature-256": f"sha256={digest}"}


def _utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=UTC)


def test_whatsapp_webhook_creates_contact_thread_and_message(client, db_session, whatsapp_channel, monkeypatch):
    monkeypatch.setenv("WHATSAPP_WEBHOOK_SECRET", WA_SECRET)
    body, headers = _signed(_whatsapp_payload(), WA_SECRET)

    response = client.post("/webhooks/whatsapp", content=body, headers=headers)

    assert response.status_code == 200
    assert response.json() == {"success": True, "processed": 1}
    contact = db_session.query(Contact).filter(Contact.handle == "+1234567890").one()
    assert contact.platform == "whatsapp"
    assert contact.name == "Jane Doe"
    assert contact.phone == "+1234567890"
    thread = db_session.query(Thread).filter(Thread.channel_id == whatsapp_channel.id).one()
    assert thread.external_id == "+1234567890"
    assert thread.contact_id == contact.id
    assert thread.status == ThreadStatus.open
    message = db_session.query(Message).filter(Message.external_id == "wamid.123").one()
    assert message.thread_id == thread.id
    assert message.direction == MessageDirection.inbound
    assert message.body == "Hello"


def test_whatsapp_webhook_redelivery_is_idempotent(client, db_session, whatsapp_channel, monkeypatch):
    monkeypatch.setenv("WHATSAPP_WEBHOOK_SECRET", WA_SECRET)
    body, headers = _signed(_whatsapp_payload(), WA_SECRET)

    first = client.post("/webhooks/whatsapp", content=body, headers=headers)
    second = client.post("/webhooks/whatsapp", content=body, headers=headers)

    assert first.json()["processed"] == 1
    assert second.status_code == 200
    assert second.json()["processed"] == 0
    assert db_session.query(Message).filter(Message.channel_id == whatsapp_channel.id).count() == 1
    assert db_session.query(Thread).filter(Thread.channel_id == whatsapp_channel.id).count() == 1


def test_whatsapp_webhook_rejects_bad_signature(client, db_session, whatsapp_channel, monkeypatch):
    monkeypatch.setenv("WHATSAPP_WEBHOOK_SECRET", WA_SECRET)
    body, headers = _signed(_whatsapp_payload(), "not-the-secret")

    response = client.post("/webhooks/whatsapp", content=body, headers=headers)

    assert response.status_code == 403
    assert db_session.query(Message).count() == 0


def test_webhook_signature_is_checked_over_raw_bytes(client, db_session, whatsapp_channel, monkeypatch):
    monkeypatch.setenv("WHATSAPP_WEBHOOK_SECRET", WA_SECRET)
    body, headers = _signed(_whatsapp_payload(), WA_SECRET)
    reformatted = json.dumps(json.loads(body), indent=2).encode("utf-8")

    response = client.post("/webhooks/whatsapp", content=reformatted, headers=headers)

    assert response.status_code == 403


def test_webhook_without_signature_rejected_outside_development(client, whatsapp_channel, monkeypatch):
    monkeypatch.setenv("WHATSAPP_WEBHOOK_SECRET", WA_SECRET)
    body = json.dumps(_whatsapp_payload()).encode("utf-8")

    response = client.post("/webhooks/whatsapp", content=body, headers={"Content-Type": "application/json"})

    assert response.status_code == 403
    assert response.json() == {"error": "Signature required"}


def test_webhook_without_signature_allowed_in_development(client, db_session, whatsapp_channel, monkeypatch):
    monkeypatch.setattr(
        channel_webhooks,
        "settings",
        dataclasses.replace(channel_webhooks.settings, environment="development"),
    )
    body = json.dumps(_whatsapp_payload()).encode("utf-8")

    response = client.post("/webhooks/whatsapp", content=body, headers={"Content-Type": "application/json"})

    assert response.status_code == 200
    assert response.json()["processed"] == 1


def test_webhook_invalid_json(client):
    response = client.post("/webhooks/whatsapp", content=b"{not json", headers={"Content-Type": "application/json"})
    assert response.status_code == 400
    assert "error" in response.json()


def test_webhook_without_registered_adapter_is_rejected(client, monkeypatch):
    monkeypatch.setattr(channel_webhooks, "get_registry", lambda: AdapterRegistry({}))
    body = json.dumps(_whatsapp_payload()).encode("utf-8")

    response = client.post("/webhooks/whatsapp", content=body, headers={"Content-Type": "application/json"})

    assert response.status_code == 400
    assert "whatsapp" in response.json()["error"]


def test_meta_webhook_routes_instagram_payload(client, db_session, instagram_channel, monkeypatch):
    monkeypatch.setenv("INSTAGRAM_WEBHOOK_SECRET", "ig-secret")
    payload = {
        "object": "instagram",
        "entry": [
            {
                "id": "page_1",
                "messaging": [
                    {
                        "sender": {"id": "ig_user_7"},
                        "recipient": {"id": "page_1"},
                        "timestamp": 1700000000000,
                        "message": {"mid": "m_ig_1", "text": "Is this in stock?"},
                    }
                ],
            }
        ],
    }
    body, headers = _signed(payload, "ig-secret")

    response = client.post("/webhooks/meta", content=body, headers=headers)

    assert response.status_code == 200
    assert response.json()["processed"] == 1
    message = db_session.query(Message).filter(Message.external_id == "m_ig_1").one()
    assert message.channel_id == instagram_channel.id


def _channel(db_session, local, channel_type, name, meta):
    channel = Channel(local_id=local.id, type=channel_type, display_name=name, meta=meta)
    db_session.add(channel)
    db_session.commit()
    db_session.refresh(channel)
    return channel


def test_meta_webhook_routes_page_payload_to_facebook(client, db_session, local, monkeypatch):
    facebook_channel = _channel(
        db_session, local, ChannelType.facebook, "Facebook", {"pageId": "page_9", "accessToken": "fb-token"}
    )
    monkeypatch.setenv("FACEBOOK_WEBHOOK_SECRET", "fb-secret")
    payload = {
        "object": "page",
        "entry": [
            {
                "id": "page_9",
                "messaging": [
                    {
                        "sender": {"id": "fb_user_3"},
                        "recipient": {"id": "page_9"},
                        "timestamp": 1700000000000,
                        "message": {"mid": "m_fb_1", "text": "Are you open today?"},
                    }
                ],
            }
        ],
    }
    body, headers = _signed(payload, "fb-secret")

    response = client.post("/webhooks/meta", content=body, headers=headers)

    assert response.status_code == 200
    assert response.json()["processed"] == 1
    message = db_session.query(Message).filter(Message.external_id == "m_fb_1").one()
    assert message.channel_id == facebook_channel.id
    thread = db_session.get(Thread, message.thread_id)
    assert thread.external_id == "fb_user_3"


def test_tiktok_webhook_uses_generic_secret_fallback(client, db_session, local, monkeypatch):
    tiktok_channel = _channel(db_session, local, ChannelType.tiktok, "TikTok", {"accessToken": "tt-token"})
    monkeypatch.delenv("TIKTOK_WEBHOOK_SECRET", raising=False)
    monkeypatch.setenv("WEBHOOK_SECRET", "shared-secret")
    payload = {
        "message": {
            "message_id": "tt_msg_1",
            "sender_id": "tt_user_8",
            "sender_name": "Sam",
            "conversation_id": "tt_conv_1",
            "text": "Hello from TikTok",
            "timestamp": 1700000000000,
        }
    }
    body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    digest = hmac.new(b"shared-secret", body, hashlib.sha256).hexdigest()
    headers = {"Content-Type": "application/json", "X-TikTok-Signature": digest}

    response = client.post("/webhooks/tiktok", content=body, headers=headers)

    assert response.status_code == 200
    assert response.json()["processed"] == 1
    message = db_session.query(Message).filter(Message.external_id == "tt_msg_1").one()
    assert message.channel_id == tiktok_channel.id
    assert message.body == "Hello from TikTok"
    thread = db_session.get(Thread, message.thread_id)
    assert thread.external_id == "tt_conv_1"
    contact = db_session.get(Contact, thread.contact_id)
    assert contact.handle == "tt_user_8"
    assert contact.name == "Sam"

    bad_headers = dict(headers, **{"X-TikTok-Signature": "0" * 64})
    assert client.post("/webhooks/tiktok", content=body, headers=bad_headers).status_code == 403


def test_whatsapp_verify_handshake(client, monkeypatch):
    monkeypatch.setattr(
        channel_webhooks,
        "settings",
        dataclasses.replace(channel_webhooks.settings, whatsapp_verify_token="verify-me"),
    )
    ok = client.get(
        "/webhooks/whatsapp",
        params={"hub.mode": "subscribe", "hub.verify_token": "verify-me", "hub.challenge": "12345"},
    )
    assert ok.status_code == 200
    assert ok.text == "12345"

    bad = client.get(
        "/webhooks/whatsapp",
        params={"hub.mode": "subscribe", "hub.verify_token": "wrong", "hub.challenge": "12345"},
    )
    assert bad.status_code == 403


def test_detect_meta_platform():
    assert ingestion.detect_meta_platform({"object": "instagram"}) == "instagram"
    assert ingestion.detect_meta_platform({"object": "page"}) == "facebook"
    assert ingestion.detect_meta_platform({}) == "facebook"


@pytest.mark.asyncio
async def test_ingest_skips_inactive_channels(db_session, whatsapp_channel):
    whatsapp_channel.status = ChannelStatus.inactive
    db_session.commit()

    outcomes = await ingestion.ingest_webhook_payload(db_session, "whatsapp", _whatsapp_payload())

    assert outcomes == []
    assert db_session.query(Message).count() == 0


@pytest.mark.asyncio
async def test_ingest_notifies_assignee_on_new_message(db_session, whatsapp_channel, agent_user):
    await ingestion.ingest_webhook_payload(db_session, "whatsapp", _whatsapp_payload())
    thread = db_session.query(Thread).filter(Thread.channel_id == whatsapp_channel.id).one()
    thread.assignee_id = agent_user.id
    db_session.commit()

    long_text = "x" * 150
    outcomes = await ingestion.ingest_webhook_payload(
        db_session,
        "whatsapp",
        _whatsapp_payload(message_id="wamid.124", text=long_text, timestamp="1700000100"),
    )

    assert [outcome.status for outcome in outcomes] == [ingestion.STATUS_CREATED]
    notification = db_session.query(Notification).filter(Notification.user_id == agent_user.id).one()
    assert notification.type == NotificationType.new_message
    assert notification.payload["thread_id"] == str(thread.id)
    assert notification.payload["contact_name"] == "Jane Doe"
    assert notification.payload["preview"] == "x" * 100
    assert notification.payload["channel_name"] == "WhatsApp Main"


@pytest.mark.asyncio
async def test_ingest_reopens_closed_thread_and_keeps_known_name(db_session, whatsapp_channel):
    await ingestion.ingest_webhook_payload(db_session, "whatsapp", _whatsapp_payload())
    thread = db_session.query(Thread).filter(Thread.channel_id == whatsapp_channel.id).one()
    thread.status = ThreadStatus.closed
    db_session.commit()

    await ingestion.ingest_webhook_payload(
        db_session,
        "whatsapp",
        _whatsapp_payload(message_id="wamid.200", timestamp="1700000500", name=None),
    )

    db_session.refresh(thread)
    assert thread.status == ThreadStatus.open
    assert _utc(thread.last_message_at) == datetime.fromtimestamp(1700000500, tz=UTC)
    contact = db_session.get(Contact, thread.contact_id)
    assert contact.name == "Jane Doe"


@pytest.mark.asyncio
async def test_ingest_redelivery_leaves_closed_thread_closed(db_session, whatsapp_channel):
    first = await ingestion.ingest_webhook_payload(db_session, "whatsapp", _whatsapp_payload())
    thread = db_session.query(Thread).filter(Thread.channel_id == whatsapp_channel.id).one()
    thread.status = ThreadStatus.closed
    db_session.commit()
    db_session.refresh(thread)
    last_message_at = thread.last_message_at

    outcomes = await ingestion.ingest_webhook_payload(db_session, "whatsapp", _whatsapp_payload())

    assert [outcome.status for outcome in outcomes] == [ingestion.STATUS_DUPLICATE]
    assert outcomes[0].thread_id == first[0].thread_id
    db_session.refresh(thread)
    assert thread.status == ThreadStatus.closed
    assert thread.last_message_at == last_message_at
    assert db_session.query(Message).filter(Message.thread_id == thread.id).count() == 1


@pytest.mark.asyncio
async def test_ingest_out_of_order_delivery_does_not_move_thread_back(db_session, whatsapp_channel):
    await ingestion.ingest_webhook_payload(
        db_session, "whatsapp", _whatsapp_payload(message_id="wamid.late", timestamp="1700000900")
    )
    await ingestion.ingest_webhook_payload(
        db_session, "whatsapp", _whatsapp_payload(message_id="wamid.early", timestamp="1700000000")
    )

    thread = db_session.query(Thread).filter(Thread.channel_id == whatsapp_channel.id).one()
    db_session.refresh(thread)
    assert _utc(thread.last_message_at) == datetime.fromtimestamp(1700000900, tz=UTC)
    assert db_session.query(Message).filter(Message.thread_id == thread.id).count() == 2


class _BrokenAdapter(MockAdapter):
    platform = "whatsapp"

    async def ingest_webhook(self, payload, channel_id, credentials=None):
        raise RuntimeError("normalizer exploded")


@pytest.mark.asyncio
async def test_ingest_failure_is_dead_lettered(db_session, whatsapp_channel, dead_letters):
    registry = AdapterRegistry({"whatsapp": _BrokenAdapter()})
    payload = _whatsapp_payload()

    outcomes = await ingestion.ingest_webhook_payload(
        db_session, "whatsapp", payload, registry=registry, trace_id="trace-1"
    )

    assert [outcome.status for outcome in outcomes] == [ingestion.STATUS_ERROR]
    assert len(dead_letters) == 1
    assert dead_letters[0]["platform"] == "whatsapp"
    assert dead_letters[0]["payload"] == payload
    assert dead_letters[0]["channel_id"] == str(whatsapp_channel.id)
    assert dead_letters[0]["trace_id"] == "trace-1"
    assert db_session.query(Message).count() == 0
