"""
Template variable substitution for rule emails.

Unresolved ``{{token}}`` placeholders are left in the output verbatim so
template authors can spot them in delivered mail.
"""

from __future__ import annotations

import html as html_module
import re
import time
from dataclasses import dataclass
from typing import Any, Mapping

from officiant.services.definitions import FieldDefinition, TemplateDefinition
from officiant.services.field_resolver import derive_lead_id, derive_tracking_token
from officiant.types import SubmissionData

VARIABLE_PATTERN = re.compile(r"\{\{([^{}]+)\}\}")
FIELD_TOKEN_PATTERN = re.compile(r"^field_(.+)$")

_UNRESOLVED = object()


@dataclass(frozen=True)
class RenderedEmail:
    subject: str
    html: str
    text: str
    unresolved: tuple[str, ...] = ()


def format_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if isinstance(value, (list, tuple)):
        return ", ".join(format_value(v) for v in value)
    return str(value)


def _special_key(name: str) -> str:
    return name.replace("_", "").lower()


def special_variables(
    data: Mapping[str, Any],
    form_id: str | None = None,
    now_ms: int | None = None,
) -> dict[str, str]:
    """
    Computed ``timestamp``, ``leadId`` and ``trackingToken`` values for one
    rendered email, keyed case-insensitively. ``leadId`` is absent when
    nothing in the submission identifies a lead.
    """
    now_ms = int(time.time() * 1000) if now_ms is None else now_ms
    values = {
        "timestamp": str(now_ms),
        "trackingtoken": derive_tracking_token(data, form_id or "", now_ms),
    }
    lead_id = derive_lead_id(data)
    if lead_id:
        values["leadid"] = lead_id
    return values


def lookup_variable(
    token: str,
    data: Mapping[str, Any],
    mapped_values: Mapping[str, Any],
    specials: Mapping[str, str] | None = None,
) -> Any:
    """Mapped values, the submission key, computed specials, then ``field_<id>``."""
    name = token.strip()
    if name in mapped_values:
        return mapped_values[name]
    if name in data and not name.startswith("__"):
        return data[name]
    if specials:
        special = specials.get(_special_key(name))
        if special is not None:
            return special
    match = FIELD_TOKEN_PATTERN.match(name)
    if match:
        key = f"field_{match.group(1).strip()}"
        if key in data:
            return data[key]
    return _UNRESOLVED


def render(
    template: str,
    data: Mapping[str, Any],
    mapped_values: Mapping[str, Any],
    *,
    escape: bool = False,
    specials: Mapping[str, str] | None = None,
) -> str:
    """Replace every resolvable ``{{token}}`` in ``template``."""
    if not template or "{{" not in template:
        return template

    def replace_var(match: re.Match) -> str:
        value = lookup_variable(match.group(1), data, mapped_values, specials)
        if value is _UNRESOLVED:
            return match.group(0)
        text = format_value(value)
        return html_module.escape(text) if escape else text

    return VARIABLE_PATTERN.sub(replace_var, template)


def extract_template_variables(*templates: str | None) -> list[str]:
    """Distinct placeholder names in order of first appearance."""
    seen: dict[str, None] = {}
    for template in templates:
        for match in VARIABLE_PATTERN.finditer(template or ""):
            seen.setdefault(match.group(1).strip(), None)
    return list(seen)


def find_unresolved_variables(
    data: Mapping[str, Any],
    mapped_values: Mapping[str, Any],
    *templates: str | None,
    specials: Mapping[str, str] | None = None,
) -> list[str]:
    return [
        name
        for name in extract_template_variables(*templates)
        if lookup_variable(name, data, mapped_values, specials) is _UNRESOLVED
    ]


def html_to_text(content: str) -> str:
    """Readable plain-text alternative for an HTML body."""
    text = re.sub(r"<(script|style)[^>]*>.*?</\1>", "", content, flags=re.DOTALL | re.I)
    text = re.sub(r"<br\s*/?>|</p>|</div>|</li>", "\n", text, flags=re.I)
    text = re.sub(r"<[^>]+>", " ", text)
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\s*\n\s*", "\n", text).strip()
    return html_module.unescape(text)


def render_email(
    template: TemplateDefinition,
    data: SubmissionData,
    mapped_values: Mapping[str, Any],
    *,
    form_id: str | None = None,
    now_ms: int | None = None,
) -> RenderedEmail:
    """
    Render subject, HTML and text bodies of a template.

    Values substituted into the HTML body are escaped. Newlines are stripped
    from the subject. The text body falls back to the HTML with tags removed.
    Computed variables are evaluated once so every part shows the same token.
    """
    specials = special_variables(data, form_id, now_ms)
    subject = render(template.subject, data, mapped_values, specials=specials)
    subject = re.sub(r"[\r\n]+", " ", subject).strip()
    html_body = render(template.html_content, data, mapped_values, escape=True, specials=specials)
    if template.text_content:
        text_body = render(template.text_content, data, mapped_values, specials=specials)
    else:
        text_body = html_to_text(html_body)
    return RenderedEmail(
        subject=subject,
        html=html_body,
        text=text_body,
        unresolved=tuple(
            find_unresolved_variables(
                data,
                mapped_values,
                template.subject,
                template.html_content,
                template.text_content,
                specials=specials,
            )
        ),
    )


def extract_mapped_values(
    fields: tuple[FieldDefinition, ...] | list[FieldDefinition],
    data: Mapping[str, Any],
) -> dict[str, Any]:
    """
    Collect submitted values of mapped fields keyed by mapping type, or by
    the custom key for custom mappings.
    """
    values: dict[str, Any] = {}
    for field in fields:
        key = field.mapping_key
        if not key or field.id not in data:
            continue
        value = data[field.id]
        if value is None or value == "":
            continue
        values.setdefault(key, value)
    return values
