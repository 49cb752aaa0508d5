from app.models.helpdesk import (  # noqa: F401
    Channel,
    ChannelStatus,
    ChannelType,
    Contact,
    Local,
    Message,
    MessageDirection,
    Notification,
    NotificationType,
    OutboxMessage,
    SlaPolicy,
    Tenant,
    Thread,
    ThreadStatus,
    User,
)
from app.models.webhook_dead_letter import WebhookDeadLetter  # noqa: F401
