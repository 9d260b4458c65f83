"""Enrich submission data with lead details and derived name parts before rule processing."""

from __future__ import annotations

import time
from typing import Any, Mapping

from officiant.services.submission_metadata import mapped_contact
from officiant.types import SubmissionData


def split_full_name(name: str | None) -> tuple[str, str]:
    """'Jane van Doe' -> ('Jane', 'van Doe')."""
    parts = (name or "").split()
    if not parts:
        return "", ""
    return parts[0], " ".join(parts[1:])


def enhance_submission_data(
    data: SubmissionData,
    *,
    lead: Mapping[str, Any] | None = None,
    submission_id: str | None = None,
    form_id: str | None = None,
    now_ms: int | None = None,
) -> SubmissionData:
    """
    Return a copy of ``data`` with contact details and identifiers added.

    Submitted keys always win over lead values. ``firstName``/``lastName``
    are derived from the full name when the form didn't collect them.
    """
    enhanced: dict[str, Any] = dict(data)
    contact = mapped_contact(data)

    for key in ("name", "email", "phone", "firstName", "lastName"):
        if enhanced.get(key) in (None, "") and contact.get(key) not in (None, ""):
            enhanced[key] = contact[key]

    if lead:
        for key in ("name", "email", "phone"):
            if enhanced.get(key) in (None, "") and lead.get(key):
                enhanced[key] = lead[key]
        if lead.get("id") and not enhanced.get("leadId"):
            enhanced["leadId"] = str(lead["id"])

    first, last = split_full_name(enhanced.get("name") if isinstance(enhanced.get("name"), str) else None)
    if first and enhanced.get("firstName") in (None, ""):
        enhanced["firstName"] = first
    if last and enhanced.get("lastName") in (None, ""):
        enhanced["lastName"] = last

    if submission_id:
        enhanced.setdefault("submissionId", str(submission_id))
    if form_id:
        enhanced.setdefault("formId", str(form_id))
    enhanced.setdefault("timeStamp", now_ms if now_ms is not None else int(time.time() * 1000))
    return enhanced
