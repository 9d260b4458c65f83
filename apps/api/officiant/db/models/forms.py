"""Form, section, field and submission models."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, ForeignKey, Index, Integer, String, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from officiant.db.base import Base, JsonType
from officiant.db.enums import FormType, SubmissionStatus


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Form(Base):
    """Public form owning ordered sections of fields."""

    __tablename__ = "forms"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(150), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    form_type: Mapped[str] = mapped_column(
        String(20), default=FormType.INQUIRY.value, nullable=False
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        default=_utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        default=_utcnow, onupdate=_utcnow, server_default=func.now(), nullable=False
    )

    sections: Mapped[list[FormSection]] = relationship(
        back_populates="form",
        order_by="FormSection.position",
        cascade="all, delete-orphan",
    )


class FormSection(Base):
    __tablename__ = "form_sections"
    __table_args__ = (Index("idx_form_sections_form", "form_id", "position"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    form_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("forms.id", ondelete="CASCADE"), nullable=False
    )
    title: Mapped[str | None] = mapped_column(String(150), nullable=True)
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    form: Mapped[Form] = relationship(back_populates="sections")
    fields: Mapped[list[FormField]] = relationship(
        back_populates="section",
        order_by="FormField.position",
        cascade="all, delete-orphan",
    )


class FormField(Base):
    """
    A single input on a form.

    ``id`` is generated when the form is built and is the key used in
    submission payloads. ``stable_id`` is the symbolic name rules refer to.
    """

    __tablename__ = "form_fields"
    __table_args__ = (
        Index("idx_form_fields_section", "section_id", "position"),
        Index("idx_form_fields_stable_id", "stable_id"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    section_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("form_sections.id", ondelete="CASCADE"), nullable=False
    )
    label: Mapped[str | None] = mapped_column(String(255), nullable=True)
    stable_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    field_type: Mapped[str] = mapped_column(String(30), default="text", nullable=False)
    # {"type": "email"} or {"type": "custom", "customKey": "weddingDate"}
    mapping: Mapped[dict | None] = mapped_column(JsonType, nullable=True)
    required: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    section: Mapped[FormSection] = relationship(back_populates="fields")


class FormSubmission(Base):
    """Immutable submission payload, linked to the lead/booking it produced."""

    __tablename__ = "form_submissions"
    __table_args__ = (Index("idx_form_submissions_form", "form_id", "created_at"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    form_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("forms.id", ondelete="CASCADE"), nullable=False
    )
    data: Mapped[dict] = mapped_column(JsonType, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=SubmissionStatus.RECEIVED.value, nullable=False
    )
    lead_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("leads.id", ondelete="SET NULL"), nullable=True
    )
    booking_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("bookings.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        default=_utcnow, server_default=func.now(), nullable=False
    )
