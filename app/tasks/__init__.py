from app.tasks.channels import (  # noqa: F401
    cleanup_old_outbox_task,
    monitor_slas_task,
    process_outbox_queue_task,
    refresh_channel_token_task,
    refresh_expiring_tokens_task,
    send_outbox_item_task,
)
