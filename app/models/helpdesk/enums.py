import enum


class ChannelType(enum.Enum):
    whatsapp = "whatsapp"
    instagram = "instagram"
    facebook = "facebook"
    tiktok = "tiktok"
    mock = "mock"


class ChannelStatus(enum.Enum):
    active = "active"
    inactive = "inactive"
    error = "error"


class ThreadStatus(enum.Enum):
    open = "open"
    pending = "pending"
    closed = "closed"


class MessageDirection(enum.Enum):
    inbound = "inbound"
    outbound = "outbound"


class NotificationType(enum.Enum):
    new_message = "new_message"
    sla_warning = "sla_warning"
    sla_expired = "sla_expired"
