import json
import time

from fastapi import APIRouter, Depends, Query, Request, Response, status
from sqlalchemy.orm import Session
from starlette.requests import ClientDisconnect
from starlette.responses import JSONResponse

from app.config import resolve_webhook_secret, settings
from app.db import get_db
from app.logging import get_logger, set_trace_id
from app.models.helpdesk.enums import ChannelType
from app.services.channels.errors import AdapterNotFoundError
from app.services.channels.ingestion import STATUS_CREATED, detect_meta_platform, ingest_webhook_payload
from app.services.channels.observability import WEBHOOK_REQUESTS
from app.services.channels.registry import get_registry
from app.services.channels.webhook_verification import extract_signature_from_headers, log_webhook_verification
from app.telemetry import get_tracer

logger = get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["web-public-channel-webhooks"])


def _error(platform: str, result: str, status_code: int, message: str) -> JSONResponse:
    WEBHOOK_REQUESTS.labels(platform=platform, result=result).inc()
    return JSONResponse(status_code=status_code, content={"error": message})


def _verify_handshake(name: str, expected_token: str | None, mode: str | None, token: str | None, challenge):
    if not expected_token:
        logger.warning("%s_webhook_verify_failed reason=no_verify_token_configured", name)
        return Response(status_code=403)
    if mode == "subscribe" and token == expected_token:
        logger.info("%s_webhook_verified", name)
        return Response(content=challenge or "", media_type="text/plain")
    logger.warning("%s_webhook_verify_failed mode=%s token_match=%s", name, mode, token == expected_token)
    return Response(status_code=403)


async def _handle_webhook(request: Request, db: Session, endpoint: str):
    """Verify and ingest one webhook delivery.

    The raw body is read before parsing so the signature is checked over
    the exact bytes the platform signed.
    """
    trace_id = set_trace_id()
    start = time.monotonic()
    try:
        body = await request.body()
    except ClientDisconnect:
        logger.warning("%s_webhook_client_disconnect", endpoint)
        # 500 so the platform redelivers; the body was not fully read.
        return _error(endpoint, "disconnect", 500, "Client disconnected")

    try:
        try:
            payload = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            logger.warning("%s_webhook_invalid_json payload_len=%s", endpoint, len(body))
            return _error(endpoint, "invalid_json", 400, "Invalid JSON payload")
        if not isinstance(payload, dict):
            return _error(endpoint, "invalid_json", 400, "Invalid JSON payload")

        platform = detect_meta_platform(payload) if endpoint == "meta" else endpoint
        try:
            adapter = get_registry().require(platform)
        except AdapterNotFoundError as exc:
            http_exc = exc.to_http_exception()
            return _error(endpoint, "unknown_platform", http_exc.status_code, http_exc.detail)

        signature = extract_signature_from_headers(request.headers)
        if signature:
            verified = adapter.verify_webhook(body, signature, resolve_webhook_secret(platform))
            log_webhook_verification(platform, verified, signature, len(body))
            if not verified:
                return _error(platform, "invalid_signature", 403, "Invalid signature")
        else:
            logger.warning("webhook_signature_missing platform=%s payload_len=%s", platform, len(body))
            if not settings.is_development:
                return _error(platform, "missing_signature", 403, "Signature required")

        with get_tracer(__name__).start_as_current_span("channel.webhook.ingest") as span:
            span.set_attribute("channel.platform", platform)
            outcomes = await ingest_webhook_payload(db, platform, payload, trace_id=trace_id)
    except Exception:
        logger.exception("%s_webhook_unhandled", endpoint)
        return _error(endpoint, "error", 500, "Internal error")

    created = sum(1 for outcome in outcomes if outcome.status == STATUS_CREATED)
    WEBHOOK_REQUESTS.labels(platform=platform, result="ok").inc()
    logger.info(
        "webhook_processed platform=%s channels=%s created=%s latency_ms=%s",
        platform,
        len(outcomes),
        created,
        int((time.monotonic() - start) * 1000),
    )
    return {"success": True, "processed": created}


@router.get("/whatsapp")
async def whatsapp_webhook_verify(
    hub_mode: str = Query(None, alias="hub.mode"),
    hub_verify_token: str = Query(None, alias="hub.verify_token"),
    hub_challenge: str = Query(None, alias="hub.challenge"),
):
    """Handle the WhatsApp subscription challenge."""
    return _verify_handshake("whatsapp", settings.whatsapp_verify_token, hub_mode, hub_verify_token, hub_challenge)


@router.post("/whatsapp", status_code=status.HTTP_200_OK)
async def whatsapp_webhook(request: Request, db: Session = Depends(get_db)):
    return await _handle_webhook(request, db, ChannelType.whatsapp.value)


@router.get("/meta")
async def meta_webhook_verify(
    hub_mode: str = Query(None, alias="hub.mode"),
    hub_verify_token: str = Query(None, alias="hub.verify_token"),
    hub_challenge: str = Query(None, alias="hub.challenge"),
):
    """Handle the Meta (Instagram/Facebook) subscription challenge."""
    return _verify_handshake("meta", settings.meta_verify_token, hub_mode, hub_verify_token, hub_challenge)


@router.post("/meta", status_code=status.HTTP_200_OK)
async def meta_webhook(request: Request, db: Session = Depends(get_db)):
    """Instagram and Facebook share one endpoint; ``object`` picks the platform."""
    return await _handle_webhook(request, db, "meta")


@router.get("/tiktok")
async def tiktok_webhook_verify(
    hub_mode: str = Query(None, alias="hub.mode"),
    hub_verify_token: str = Query(None, alias="hub.verify_token"),
    hub_challenge: str = Query(None, alias="hub.challenge"),
):
    return _verify_handshake("tiktok", settings.tiktok_verify_token, hub_mode, hub_verify_token, hub_challenge)


@router.post("/tiktok", status_code=status.HTTP_200_OK)
async def tiktok_webhook(request: Request, db: Session = Depends(get_db)):
    return await _handle_webhook(request, db, ChannelType.tiktok.value)
