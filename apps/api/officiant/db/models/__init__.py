"""SQLAlchemy ORM models."""

from officiant.db.models.email import (
    EmailLog,
    EmailProcessingLog,
    EmailRule,
    EmailTemplate,
)
from officiant.db.models.forms import Form, FormField, FormSection, FormSubmission
from officiant.db.models.leads import Booking, Lead

__all__ = [
    "Booking",
    "EmailLog",
    "EmailProcessingLog",
    "EmailRule",
    "EmailTemplate",
    "Form",
    "FormField",
    "FormSection",
    "FormSubmission",
    "Lead",
]
