"""Builders and fakes shared by the test modules."""
from dataclasses import dataclass, field
from typing import Any

import anyio

from officiant.db.enums import EmailStatus, EmailTransport
from officiant.services.definitions import (
    FieldDefinition,
    FormDefinition,
    RuleDefinition,
    SectionDefinition,
    TemplateDefinition,
)
from officiant.services.email_transport import OutboundEmail


# =============================================================================
# Builders
# =============================================================================

def make_form(form_id: str = "form-1", fields=(), form_type: str = "inquiry") -> FormDefinition:
    fields = tuple(fields)
    return FormDefinition(
        id=form_id,
        name="Wedding inquiry",
        form_type=form_type,
        sections=(SectionDefinition(id="section-1", title="Details", field_ids=tuple(f.id for f in fields)),),
        fields=fields,
    )


def make_template(**overrides) -> TemplateDefinition:
    values = {
        "id": "tpl-1",
        "name": "Thanks",
        "subject": "Thanks {{firstName}}",
        "html_content": "<p>Hello {{firstName}}</p>",
        "text_content": None,
    }
    values.update(overrides)
    return TemplateDefinition(**values)


def make_rule(rule_id: str = "rule-1", conditions=None, **overrides) -> RuleDefinition:
    values = {
        "id": rule_id,
        "form_id": "form-1",
        "name": f"Rule {rule_id}",
        "conditions": conditions if conditions is not None else [],
        "recipient_type": "static",
        "recipient_email": "owner@example.com",
        "template": make_template(),
    }
    values.update(overrides)
    return RuleDefinition(**values)


# =============================================================================
# Fakes
# =============================================================================

class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@dataclass
class FakePersistence:
    forms: dict[str, FormDefinition] = field(default_factory=dict)
    rules: dict[str, list[RuleDefinition]] = field(default_factory=dict)
    leads: dict[str, dict[str, Any]] = field(default_factory=dict)
    bookings: dict[str, dict[str, Any]] = field(default_factory=dict)
    submissions: dict[str, dict[str, Any]] = field(default_factory=dict)
    email_logs: dict[str, dict[str, Any]] = field(default_factory=dict)
    processing_logs: list = field(default_factory=list)
    get_form_calls: int = 0
    rules_delay: float = 0.0

    def add_form(self, form: FormDefinition) -> FormDefinition:
        self.forms[form.id] = form
        return form

    async def get_form(self, form_id: str):
        self.get_form_calls += 1
        return self.forms.get(str(form_id))

    async def get_active_rules(self, form_id: str):
        if self.rules_delay:
            await anyio.sleep(self.rules_delay)
        return list(self.rules.get(str(form_id), []))

    async def get_lead(self, lead_id: str):
        return self.leads.get(lead_id)

    async def get_submission(self, submission_id: str):
        return self.submissions.get(submission_id)

    async def create_lead(self, *, form_id, name, email, phone, source="form"):
        lead_id = f"lead-{len(self.leads) + 1}"
        self.leads[lead_id] = {"id": lead_id, "name": name, "email": email, "phone": phone}
        return lead_id

    async def create_booking(self, *, lead_id, event_date, location, notes=None):
        booking_id = f"booking-{len(self.bookings) + 1}"
        self.bookings[booking_id] = {"lead_id": lead_id, "event_date": event_date, "location": location}
        return booking_id

    async def create_submission(self, *, form_id, data):
        submission_id = f"sub-{len(self.submissions) + 1}"
        self.submissions[submission_id] = {
            "id": submission_id,
            "form_id": form_id,
            "data": data,
            "lead_id": None,
            "booking_id": None,
        }
        return submission_id

    async def link_submission(self, submission_id, *, lead_id=None, booking_id=None, tracking_token=None):
        stored = self.submissions[submission_id]
        stored["lead_id"] = lead_id
        stored["booking_id"] = booking_id
        if tracking_token:
            stored["data"] = {**stored["data"], "trackingToken": tracking_token}

    async def create_email_log(self, **fields):
        log_id = f"log-{len(self.email_logs) + 1}"
        self.email_logs[log_id] = {**fields, "status": EmailStatus.QUEUED}
        return log_id

    async def update_email_log(self, log_id, *, status, transport=None, error=None):
        self.email_logs[log_id].update(status=status, transport=transport, error=error)

    async def record_processing_logs(self, entries):
        self.processing_logs.extend(entries)


class FakeTransport:
    """Transport that raises queued errors before succeeding."""

    def __init__(self, name=EmailTransport.SMTP, errors=(), configured=True):
        self.name = name
        self.errors = list(errors)
        self._configured = configured
        self.sent: list[OutboundEmail] = []
        self.calls = 0

    @property
    def configured(self) -> bool:
        return self._configured

    async def send(self, message: OutboundEmail):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        self.sent.append(message)
        return f"{self.name.value}-{len(self.sent)}"


