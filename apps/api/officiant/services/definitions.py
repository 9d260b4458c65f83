"""Storage-agnostic views of forms, templates and rules used by the email engine."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from officiant.db.enums import FieldMappingType, RecipientType


@dataclass(frozen=True)
class FieldDefinition:
    id: str
    label: str | None = None
    stable_id: str | None = None
    mapping_type: str | None = None
    custom_key: str | None = None
    field_type: str = "text"
    section_id: str | None = None

    @property
    def mapping_key(self) -> str | None:
        """Key used for mapped values: the custom key for custom mappings, else the type."""
        if self.mapping_type == FieldMappingType.CUSTOM.value:
            return self.custom_key or None
        return self.mapping_type


@dataclass(frozen=True)
class SectionDefinition:
    id: str
    title: str | None = None
    field_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class FormDefinition:
    id: str
    name: str = ""
    form_type: str = "inquiry"
    sections: tuple[SectionDefinition, ...] = ()
    fields: tuple[FieldDefinition, ...] = ()


@dataclass(frozen=True)
class TemplateDefinition:
    id: str
    name: str
    subject: str
    html_content: str
    text_content: str | None = None
    cc_emails: str | None = None
    bcc_emails: str | None = None


@dataclass(frozen=True)
class RuleDefinition:
    id: str
    form_id: str
    name: str
    conditions: Any = None
    recipient_type: str = RecipientType.STATIC.value
    recipient_email: str | None = None
    recipient_field: str | None = None
    cc_emails: str | None = None
    bcc_emails: str | None = None
    template: TemplateDefinition | None = None


def field_from_model(model: Any) -> FieldDefinition:
    mapping = model.mapping if isinstance(model.mapping, dict) else {}
    return FieldDefinition(
        id=str(model.id),
        label=model.label,
        stable_id=model.stable_id,
        mapping_type=mapping.get("type"),
        custom_key=mapping.get("customKey"),
        field_type=model.field_type,
        section_id=str(model.section_id),
    )


def form_from_model(model: Any) -> FormDefinition:
    sections: list[SectionDefinition] = []
    fields: list[FieldDefinition] = []
    for section in model.sections:
        section_fields = [field_from_model(f) for f in section.fields]
        fields.extend(section_fields)
        sections.append(
            SectionDefinition(
                id=str(section.id),
                title=section.title,
                field_ids=tuple(f.id for f in section_fields),
            )
        )
    return FormDefinition(
        id=str(model.id),
        name=model.name,
        form_type=model.form_type,
        sections=tuple(sections),
        fields=tuple(fields),
    )


def template_from_model(model: Any) -> TemplateDefinition:
    return TemplateDefinition(
        id=str(model.id),
        name=model.name,
        subject=model.subject,
        html_content=model.html_content,
        text_content=model.text_content,
        cc_emails=model.cc_emails,
        bcc_emails=model.bcc_emails,
    )


def rule_from_model(model: Any) -> RuleDefinition:
    return RuleDefinition(
        id=str(model.id),
        form_id=str(model.form_id),
        name=model.name,
        conditions=model.conditions,
        recipient_type=model.recipient_type,
        recipient_email=model.recipient_email,
        recipient_field=model.recipient_field,
        cc_emails=model.cc_emails,
        bcc_emails=model.bcc_emails,
        template=template_from_model(model.template) if model.template else None,
    )
