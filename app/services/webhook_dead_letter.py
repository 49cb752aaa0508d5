"""Persist webhook payloads that failed ingestion."""

import traceback
import uuid

from app.db import SessionLocal
from app.logging import get_logger
from app.models.webhook_dead_letter import WebhookDeadLetter

logger = get_logger(__name__)


def write_dead_letter(
    platform: str,
    raw_payload: dict | str,
    error: str | Exception,
    *,
    channel_id: uuid.UUID | str | None = None,
    trace_id: str | None = None,
    message_id: str | None = None,
) -> None:
    """Store a failed payload for later inspection.

    Opens its own session so it works when the caller's session has been
    rolled back or is mid-transaction.
    """
    if isinstance(error, Exception):
        # Format the exception object itself; sys.exc_info() may hold another.
        error_str = "".join(traceback.format_exception(type(error), error, error.__traceback__))
    else:
        error_str = str(error)
    if isinstance(raw_payload, str):
        raw_payload = {"raw_text": raw_payload[:8000]}
    if isinstance(channel_id, str):
        channel_id = uuid.UUID(channel_id)

    session = SessionLocal()
    try:
        session.add(
            WebhookDeadLetter(
                platform=platform,
                channel_id=channel_id,
                trace_id=trace_id,
                message_id=message_id,
                raw_payload=raw_payload,
                error=error_str[:4000] if error_str else None,
            )
        )
        session.commit()
        logger.info(
            "webhook_dead_letter_written platform=%s channel_id=%s message_id=%s",
            platform,
            channel_id,
            message_id,
        )
    except Exception:
        session.rollback()
        logger.exception("webhook_dead_letter_write_failed platform=%s channel_id=%s", platform, channel_id)
    finally:
        session.close()
