"""Side-structures computed once at submission time to speed up later lookups."""

from __future__ import annotations

from typing import Any

from officiant.services.definitions import FieldDefinition, FormDefinition
from officiant.services.field_resolver import MAPPED_FIELDS_KEY, SECTION_INFO_KEY
from officiant.types import SubmissionData

STANDARD_LABELS: dict[str, str] = {
    "first name": "firstName",
    "last name": "lastName",
    "surname": "lastName",
    "name": "name",
    "full name": "name",
    "your name": "name",
    "email": "email",
    "email address": "email",
    "e-mail": "email",
    "phone": "phone",
    "phone number": "phone",
    "telephone": "phone",
    "mobile": "phone",
}

STANDARD_FIELD_TYPES: dict[str, str] = {
    "email": "email",
    "tel": "phone",
    "phone": "phone",
}


def _display_key(field: FieldDefinition, value: Any, email_taken: bool) -> str | None:
    if field.mapping_key:
        return field.mapping_key
    label = (field.label or "").strip().lower()
    if label in STANDARD_LABELS:
        return STANDARD_LABELS[label]
    if field.field_type in STANDARD_FIELD_TYPES:
        return STANDARD_FIELD_TYPES[field.field_type]
    if field.stable_id and field.stable_id in STANDARD_LABELS.values():
        return field.stable_id
    if not email_taken and isinstance(value, str) and "@" in value:
        return "email"
    return None


def build_mapped_fields(form: FormDefinition, data: SubmissionData) -> dict[str, dict[str, Any]]:
    """
    Map field id -> {fieldId, value, label, stableId, displayKey} for every
    submitted field that has a semantic meaning.
    """
    mapped: dict[str, dict[str, Any]] = {}
    email_taken = False
    for field in form.fields:
        if field.id not in data:
            continue
        value = data[field.id]
        display_key = _display_key(field, value, email_taken)
        if display_key is None:
            continue
        email_taken = email_taken or display_key == "email"
        mapped[field.id] = {
            "fieldId": field.id,
            "value": value,
            "label": field.label,
            "stableId": field.stable_id,
            "displayKey": display_key,
        }
    return mapped


def build_section_info(form: FormDefinition) -> list[dict[str, Any]]:
    return [{"id": s.id, "fieldIds": list(s.field_ids)} for s in form.sections]


def attach_metadata(form: FormDefinition, data: SubmissionData) -> SubmissionData:
    """Return a copy of ``data`` with ``__mappedFields`` and ``__sectionInfo`` set."""
    enriched = dict(data)
    enriched[MAPPED_FIELDS_KEY] = build_mapped_fields(form, data)
    enriched[SECTION_INFO_KEY] = build_section_info(form)
    return enriched


def mapped_contact(data: SubmissionData) -> dict[str, Any]:
    """First value per display key from ``__mappedFields``."""
    contact: dict[str, Any] = {}
    mapped = data.get(MAPPED_FIELDS_KEY)
    if not isinstance(mapped, dict):
        return contact
    for entry in mapped.values():
        if isinstance(entry, dict) and entry.get("displayKey"):
            contact.setdefault(entry["displayKey"], entry.get("value"))
    return contact
