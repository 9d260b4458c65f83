"""Enum definitions for application constants."""

from officiant.db.enums.email import (
    EmailStatus,
    EmailTransport,
    ProcessingLogLevel,
    RecipientType,
)
from officiant.db.enums.forms import FieldMappingType, FormType, SubmissionStatus
from officiant.db.enums.rules import ConditionOperator

__all__ = [
    "ConditionOperator",
    "EmailStatus",
    "EmailTransport",
    "FieldMappingType",
    "FormType",
    "ProcessingLogLevel",
    "RecipientType",
    "SubmissionStatus",
]
