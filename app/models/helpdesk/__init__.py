from app.models.helpdesk.channel import Channel
from app.models.helpdesk.contact import Contact
from app.models.helpdesk.enums import (
    ChannelStatus,
    ChannelType,
    MessageDirection,
    NotificationType,
    ThreadStatus,
)
from app.models.helpdesk.notification import Notification
from app.models.helpdesk.outbox import OutboxMessage
from app.models.helpdesk.tenant import Local, SlaPolicy, Tenant, User
from app.models.helpdesk.thread import Message, Thread

__all__ = [
    "Channel",
    "ChannelStatus",
    "ChannelType",
    "Contact",
    "Local",
    "Message",
    "MessageDirection",
    "Notification",
    "NotificationType",
    "OutboxMessage",
    "SlaPolicy",
    "Tenant",
    "Thread",
    "ThreadStatus",
    "User",
]
