import uuid

from app.celery_app import celery_app
from app.config import settings
from app.db import SessionLocal
from app.logging import get_logger, set_trace_id
from app.models.helpdesk.channel import Channel
from app.models.helpdesk.outbox import OutboxMessage
from app.services.channels.outbox import (
    TransientOutboundError,
    cleanup_old_outbox,
    list_due_outbox_ids,
    process_outbox_item,
)
from app.services.channels.sla_monitor import monitor_slas
from app.services.channels.token_refresh import (
    TransientTokenRefreshError,
    list_channels_needing_refresh,
    refresh_channel_credentials,
)

logger = get_logger(__name__)


def _trace_id_for(session, outbox_id: str) -> str | None:
    outbox = session.get(OutboxMessage, uuid.UUID(str(outbox_id)))
    if outbox and isinstance(outbox.payload, dict):
        return outbox.payload.get("trace_id")
    return None


@celery_app.task(
    name="app.tasks.channels.send_outbox_item",
    autoretry_for=(TransientOutboundError,),
    retry_kwargs={"max_retries": settings.outbound_max_attempts},
    retry_backoff=int(settings.outbound_backoff_base_seconds),
    retry_backoff_max=int(settings.outbound_backoff_max_seconds),
    retry_jitter=True,
)
def send_outbox_item_task(outbox_id: str):
    session = SessionLocal()
    try:
        set_trace_id(_trace_id_for(session, outbox_id))
        outbox = process_outbox_item(session, outbox_id)
        return outbox.status
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@celery_app.task(name="app.tasks.channels.process_outbox_queue")
def process_outbox_queue_task(limit: int = 50):
    set_trace_id()
    session = SessionLocal()
    try:
        ids = list_due_outbox_ids(session, limit=limit)
        for outbox_id in ids:
            send_outbox_item_task.delay(outbox_id)
        if ids:
            logger.info("outbox_queue_dispatched count=%s", len(ids))
        return len(ids)
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@celery_app.task(name="app.tasks.channels.cleanup_old_outbox")
def cleanup_old_outbox_task(retention_days: int | None = None):
    set_trace_id()
    session = SessionLocal()
    try:
        return cleanup_old_outbox(session, retention_days=retention_days)
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@celery_app.task(name="app.tasks.channels.monitor_slas")
def monitor_slas_task():
    set_trace_id()
    session = SessionLocal()
    try:
        return monitor_slas(session)
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@celery_app.task(
    name="app.tasks.channels.refresh_channel_token",
    autoretry_for=(TransientTokenRefreshError,),
    retry_kwargs={"max_retries": settings.token_refresh_max_attempts},
    retry_backoff=2,
    retry_jitter=True,
)
def refresh_channel_token_task(channel_id: str):
    set_trace_id()
    session = SessionLocal()
    try:
        channel = session.get(Channel, uuid.UUID(str(channel_id)))
        if channel is None:
            logger.warning("token_refresh_channel_missing channel_id=%s", channel_id)
            return False
        outcome = refresh_channel_credentials(session, channel)
        if outcome.retryable:
            raise TransientTokenRefreshError(outcome.error.message)
        return outcome.success
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@celery_app.task(name="app.tasks.channels.refresh_expiring_tokens")
def refresh_expiring_tokens_task(tenant_id: str | None = None, refresh_before_minutes: int | None = None):
    set_trace_id()
    session = SessionLocal()
    try:
        expiring = list_channels_needing_refresh(
            session,
            tenant_id=uuid.UUID(str(tenant_id)) if tenant_id else None,
            refresh_before_minutes=refresh_before_minutes,
        )
        scheduled = 0
        for item in expiring:
            if not item.can_refresh:
                logger.warning(
                    "token_refresh_skipped channel_id=%s platform=%s minutes_left=%s",
                    item.channel_id,
                    item.channel_type,
                    item.minutes_until_expiration,
                )
                continue
            refresh_channel_token_task.delay(str(item.channel_id))
            scheduled += 1
        if expiring:
            logger.info("token_refresh_scheduled scheduled=%s expiring=%s", scheduled, len(expiring))
        return scheduled
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
