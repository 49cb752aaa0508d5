from datetime import timedelta

from celery import Celery

from app.config import settings
from app.logging import configure_logging

configure_logging()

celery_app = Celery("helpdesk", include=["app.tasks.channels"])
celery_app.conf.update(
    broker_url=settings.redis_url,
    result_backend=settings.redis_url,
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    worker_concurrency=settings.outbound_worker_concurrency,
    beat_schedule={
        "channel_outbox_queue": {
            "task": "app.tasks.channels.process_outbox_queue",
            "schedule": timedelta(seconds=30),
        },
        "channel_sla_monitor": {
            "task": "app.tasks.channels.monitor_slas",
            "schedule": timedelta(seconds=settings.sla_monitor_interval_seconds),
        },
        "channel_outbox_cleanup": {
            "task": "app.tasks.channels.cleanup_old_outbox",
            "schedule": timedelta(days=1),
        },
        "channel_token_refresh": {
            "task": "app.tasks.channels.refresh_expiring_tokens",
            "schedule": timedelta(seconds=settings.token_refresh_interval_seconds),
        },
    },
)
