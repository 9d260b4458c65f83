"""Email-related enums."""

from enum import Enum


class EmailStatus(str, Enum):
    """Status of outbound emails."""

    QUEUED = "queued"
    SENT = "sent"
    FAILED = "failed"


class EmailTransport(str, Enum):
    """Transport that delivered (or last attempted) a message."""

    SMTP = "smtp"
    RESEND = "resend"


class RecipientType(str, Enum):
    """How a rule picks its recipient."""

    STATIC = "static"
    FIELD = "field"


class ProcessingLogLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
