"""
Persistence boundary for the email engine.

The engine only talks to ``PersistenceService``. ``SqlPersistenceService``
implements it on SQLAlchemy; blocking session work runs in worker threads
so callers can bound it with timeouts. A timed-out call is abandoned, not
killed, and may still finish in the background.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from functools import partial
from typing import Any, Callable, Protocol, TypeVar

import anyio
from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from officiant.db.enums import EmailStatus
from officiant.db.models import (
    Booking,
    EmailLog,
    EmailProcessingLog,
    EmailRule,
    Form,
    FormSection,
    FormSubmission,
    Lead,
)
from officiant.services.definitions import (
    FormDefinition,
    RuleDefinition,
    form_from_model,
    rule_from_model,
)
from officiant.services.processing_log import ProcessingLogEntry

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PersistenceService(Protocol):
    async def get_form(self, form_id: str) -> FormDefinition | None: ...

    async def get_active_rules(self, form_id: str) -> list[RuleDefinition]: ...

    async def get_lead(self, lead_id: str) -> dict[str, Any] | None: ...

    async def get_submission(self, submission_id: str) -> dict[str, Any] | None: ...

    async def create_lead(
        self,
        *,
        form_id: str,
        name: str | None,
        email: str | None,
        phone: str | None,
        source: str = "form",
    ) -> str: ...

    async def create_booking(
        self,
        *,
        lead_id: str | None,
        event_date: str | None,
        location: str | None,
        notes: str | None = None,
    ) -> str: ...

    async def create_submission(self, *, form_id: str, data: dict[str, Any]) -> str: ...

    async def link_submission(
        self,
        submission_id: str,
        *,
        lead_id: str | None = None,
        booking_id: str | None = None,
        tracking_token: str | None = None,
    ) -> None: ...

    async def create_email_log(
        self,
        *,
        form_id: str,
        submission_id: str | None,
        rule_id: str,
        template_id: str | None,
        correlation_id: str | None,
        recipient_email: str,
        subject: str,
        cc: list[str],
        bcc: list[str],
    ) -> str: ...

    async def update_email_log(
        self,
        log_id: str,
        *,
        status: EmailStatus,
        transport: str | None = None,
        error: str | None = None,
    ) -> None: ...

    async def record_processing_logs(self, entries: list[ProcessingLogEntry]) -> None: ...


def as_uuid(value: Any) -> uuid.UUID | None:
    if value is None or isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


class SqlPersistenceService:
    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        return await anyio.to_thread.run_sync(partial(fn, *args), abandon_on_cancel=True)

    # Reads

    async def get_form(self, form_id: str) -> FormDefinition | None:
        return await self._run(self._get_form, form_id)

    def _get_form(self, form_id: str) -> FormDefinition | None:
        key = as_uuid(form_id)
        if key is None:
            return None
        with self._session_factory() as db:
            form = db.scalar(
                select(Form)
                .where(Form.id == key)
                .options(selectinload(Form.sections).selectinload(FormSection.fields))
            )
            return form_from_model(form) if form else None

    async def get_active_rules(self, form_id: str) -> list[RuleDefinition]:
        return await self._run(self._get_active_rules, form_id)

    def _get_active_rules(self, form_id: str) -> list[RuleDefinition]:
        key = as_uuid(form_id)
        if key is None:
            return []
        with self._session_factory() as db:
            rules = db.scalars(
                select(EmailRule)
                .where(EmailRule.form_id == key, EmailRule.is_active.is_(True))
                .order_by(EmailRule.created_at, EmailRule.id)
            ).unique()
            return [rule_from_model(rule) for rule in rules]

    async def get_lead(self, lead_id: str) -> dict[str, Any] | None:
        return await self._run(self._get_lead, lead_id)

    def _get_lead(self, lead_id: str) -> dict[str, Any] | None:
        key = as_uuid(lead_id)
        if key is None:
            return None
        with self._session_factory() as db:
            lead = db.get(Lead, key)
            if lead is None:
                return None
            return {"id": str(lead.id), "name": lead.name, "email": lead.email, "phone": lead.phone}

    async def get_submission(self, submission_id: str) -> dict[str, Any] | None:
        return await self._run(self._get_submission, submission_id)

    def _get_submission(self, submission_id: str) -> dict[str, Any] | None:
        key = as_uuid(submission_id)
        if key is None:
            return None
        with self._session_factory() as db:
            submission = db.get(FormSubmission, key)
            if submission is None:
                return None
            return {
                "id": str(submission.id),
                "form_id": str(submission.form_id),
                "data": dict(submission.data or {}),
                "lead_id": str(submission.lead_id) if submission.lead_id else None,
            }

    # Writes

    def _add(self, instance: Any) -> str:
        with self._session_factory() as db:
            db.add(instance)
            db.commit()
            return str(instance.id)

    async def create_lead(
        self,
        *,
        form_id: str,
        name: str | None,
        email: str | None,
        phone: str | None,
        source: str = "form",
    ) -> str:
        lead = Lead(name=name, email=email, phone=phone, source=source, form_id=as_uuid(form_id))
        return await self._run(self._add, lead)

    async def create_booking(
        self,
        *,
        lead_id: str | None,
        event_date: str | None,
        location: str | None,
        notes: str | None = None,
    ) -> str:
        booking = Booking(
            lead_id=as_uuid(lead_id), event_date=event_date, location=location, notes=notes
        )
        return await self._run(self._add, booking)

    async def create_submission(self, *, form_id: str, data: dict[str, Any]) -> str:
        submission = FormSubmission(form_id=as_uuid(form_id), data=data)
        return await self._run(self._add, submission)

    async def link_submission(
        self,
        submission_id: str,
        *,
        lead_id: str | None = None,
        booking_id: str | None = None,
        tracking_token: str | None = None,
    ) -> None:
        """Attach the lead/booking and store the tracking token in the payload."""
        await self._run(
            self._link_submission, submission_id, lead_id, booking_id, tracking_token
        )

    def _link_submission(
        self,
        submission_id: str,
        lead_id: str | None,
        booking_id: str | None,
        tracking_token: str | None,
    ) -> None:
        with self._session_factory() as db:
            submission = db.get(FormSubmission, as_uuid(submission_id))
            if submission is None:
                logger.warning("Submission %s not found for linking", submission_id)
                return
            if lead_id:
                submission.lead_id = as_uuid(lead_id)
            if booking_id:
                submission.booking_id = as_uuid(booking_id)
            if tracking_token:
                # JSON columns only track reassignment.
                submission.data = {**(submission.data or {}), "trackingToken": tracking_token}
            db.commit()

    async def create_email_log(
        self,
        *,
        form_id: str,
        submission_id: str | None,
        rule_id: str,
        template_id: str | None,
        correlation_id: str | None,
        recipient_email: str,
        subject: str,
        cc: list[str],
        bcc: list[str],
    ) -> str:
        log = EmailLog(
            form_id=str(form_id),
            submission_id=str(submission_id) if submission_id else None,
            rule_id=str(rule_id),
            template_id=str(template_id) if template_id else None,
            correlation_id=correlation_id,
            recipient_email=recipient_email,
            subject=subject[:500],
            cc_recipients=list(cc) or None,
            bcc_recipients=list(bcc) or None,
            status=EmailStatus.QUEUED.value,
        )
        return await self._run(self._add, log)

    async def update_email_log(
        self,
        log_id: str,
        *,
        status: EmailStatus,
        transport: str | None = None,
        error: str | None = None,
    ) -> None:
        await self._run(self._update_email_log, log_id, status, transport, error)

    def _update_email_log(
        self, log_id: str, status: EmailStatus, transport: str | None, error: str | None
    ) -> None:
        with self._session_factory() as db:
            log = db.get(EmailLog, as_uuid(log_id))
            if log is None:
                logger.warning("Email log %s not found", log_id)
                return
            log.status = status.value
            log.transport = transport
            log.error = error[:2000] if error else None
            if status is EmailStatus.SENT:
                log.sent_at = datetime.now(timezone.utc)
            db.commit()

    async def record_processing_logs(self, entries: list[ProcessingLogEntry]) -> None:
        if entries:
            await self._run(self._record_processing_logs, entries)

    def _record_processing_logs(self, entries: list[ProcessingLogEntry]) -> None:
        with self._session_factory() as db:
            db.add_all(
                EmailProcessingLog(
                    correlation_id=entry.correlation_id,
                    level=entry.level.value,
                    message=entry.message,
                    source=entry.source,
                    form_id=entry.form_id,
                    submission_id=entry.submission_id,
                    rule_id=entry.rule_id,
                    details=entry.details,
                    created_at=entry.created_at,
                )
                for entry in entries
            )
            db.commit()
