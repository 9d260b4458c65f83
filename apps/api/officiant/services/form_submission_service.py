"""Form submission intake: store the payload and create the lead/booking it describes."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any

from officiant.db.enums import FormType
from officiant.services.definitions import FormDefinition
from officiant.services.persistence import PersistenceService
from officiant.services.submission_metadata import attach_metadata, mapped_contact
from officiant.types import SubmissionData

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubmissionResult:
    submission_id: str
    data: SubmissionData
    lead_id: str | None = None
    booking_id: str | None = None


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def contact_name(contact: dict[str, Any]) -> str | None:
    name = _text(contact.get("name"))
    if name:
        return name
    parts = [_text(contact.get("firstName")), _text(contact.get("lastName"))]
    return " ".join(p for p in parts if p) or None


async def create_submission(
    persistence: PersistenceService,
    form: FormDefinition,
    raw_data: SubmissionData,
    *,
    now_ms: int | None = None,
) -> SubmissionResult:
    """
    Persist a submission with its ``__mappedFields``/``__sectionInfo``.

    A lead is created when the submission carries any contact detail, and a
    booking as well for booking forms. The stored payload gets a
    ``trackingToken`` of ``<submission id>-<epoch ms>``.
    """
    data = attach_metadata(form, raw_data)
    contact = mapped_contact(data)

    lead_id = None
    name, email, phone = contact_name(contact), _text(contact.get("email")), _text(contact.get("phone"))
    if name or email or phone:
        lead_id = await persistence.create_lead(
            form_id=form.id, name=name, email=email, phone=phone
        )

    booking_id = None
    if form.form_type == FormType.BOOKING.value:
        booking_id = await persistence.create_booking(
            lead_id=lead_id,
            event_date=_text(contact.get("date")),
            location=_text(contact.get("location")),
        )

    submission_id = await persistence.create_submission(form_id=form.id, data=data)
    now_ms = int(time.time() * 1000) if now_ms is None else now_ms
    tracking_token = f"{submission_id}-{now_ms}"
    await persistence.link_submission(
        submission_id, lead_id=lead_id, booking_id=booking_id, tracking_token=tracking_token
    )
    data = {**data, "trackingToken": tracking_token}

    logger.info(
        "Stored submission %s for form %s (lead=%s, booking=%s)",
        submission_id,
        form.id,
        lead_id,
        booking_id,
    )
    return SubmissionResult(
        submission_id=submission_id, data=data, lead_id=lead_id, booking_id=booking_id
    )
