"""Email template, rule and log models."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, ForeignKey, Index, String, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from officiant.db.base import Base, JsonType
from officiant.db.enums import EmailStatus, ProcessingLogLevel, RecipientType


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EmailTemplate(Base):
    """Subject/body with {{variable}} placeholders and default CC/BCC lists."""

    __tablename__ = "email_templates"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    subject: Mapped[str] = mapped_column(String(200), nullable=False)
    html_content: Mapped[str] = mapped_column(Text, nullable=False)
    text_content: Mapped[str | None] = mapped_column(Text, nullable=True)
    cc_emails: Mapped[str | None] = mapped_column(Text, nullable=True)
    bcc_emails: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        default=_utcnow, server_default=func.now(), nullable=False
    )


class EmailRule(Base):
    """
    Form-scoped automation: when every condition matches a submission,
    send the template to the configured recipient.
    """

    __tablename__ = "email_rules"
    __table_args__ = (Index("idx_email_rules_form_active", "form_id", "is_active"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    form_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("forms.id", ondelete="CASCADE"), nullable=False
    )
    template_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("email_templates.id", ondelete="SET NULL"), nullable=True
    )
    name: Mapped[str] = mapped_column(String(150), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # List of {field, operator, value}; legacy rows store a JSON string.
    conditions: Mapped[list | str | None] = mapped_column(JsonType, nullable=True)
    recipient_type: Mapped[str] = mapped_column(
        String(20), default=RecipientType.STATIC.value, nullable=False
    )
    recipient_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    recipient_field: Mapped[str | None] = mapped_column(String(100), nullable=True)
    cc_emails: Mapped[str | None] = mapped_column(Text, nullable=True)
    bcc_emails: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        default=_utcnow, server_default=func.now(), nullable=False
    )

    template: Mapped[EmailTemplate | None] = relationship(lazy="joined")


class EmailLog(Base):
    """One row per dispatch attempt for a matched rule."""

    __tablename__ = "email_logs"
    __table_args__ = (
        Index("idx_email_logs_submission", "submission_id"),
        Index("idx_email_logs_correlation", "correlation_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    form_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    submission_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    rule_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    template_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    correlation_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    recipient_email: Mapped[str] = mapped_column(String(255), nullable=False)
    cc_recipients: Mapped[list | None] = mapped_column(JsonType, nullable=True)
    bcc_recipients: Mapped[list | None] = mapped_column(JsonType, nullable=True)
    subject: Mapped[str] = mapped_column(String(500), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=EmailStatus.QUEUED.value, nullable=False
    )
    transport: Mapped[str | None] = mapped_column(String(20), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        default=_utcnow, server_default=func.now(), nullable=False
    )


class EmailProcessingLog(Base):
    """Structured trace of a processing run, grouped by correlation id."""

    __tablename__ = "email_processing_logs"
    __table_args__ = (Index("idx_email_processing_logs_correlation", "correlation_id"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    correlation_id: Mapped[str] = mapped_column(String(64), nullable=False)
    level: Mapped[str] = mapped_column(
        String(10), default=ProcessingLogLevel.INFO.value, nullable=False
    )
    message: Mapped[str] = mapped_column(Text, nullable=False)
    source: Mapped[str] = mapped_column(String(50), nullable=False)
    form_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    submission_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    rule_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    details: Mapped[dict | None] = mapped_column(JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        default=_utcnow, server_default=func.now(), nullable=False
    )
