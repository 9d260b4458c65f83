"""
Delivery of matched rules.

For each rule the dispatcher resolves the recipient and copy lists, renders
the template and sends through the primary transport, falling back to the
secondary transport when the primary is unavailable or keeps failing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping

from officiant.core.config import settings
from officiant.core.structured_logging import build_log_context
from officiant.db.enums import EmailTransport, RecipientType
from officiant.services.definitions import RuleDefinition
from officiant.services.email_errors import DeliveryTransientError, ErrorKind
from officiant.services.email_transport import (
    EmailTransportBackend,
    OutboundEmail,
    parse_address_list,
)
from officiant.services.field_reference import MISSING
from officiant.services.field_resolver import FieldResolver
from officiant.services.resend_transport import ResendTransport
from officiant.services.retry import RetryPolicy, attempt
from officiant.services.smtp_transport import SmtpTransport
from officiant.services.template_renderer import RenderedEmail, render_email
from officiant.types import SubmissionData

logger = logging.getLogger(__name__)

NO_RECIPIENT_ERROR = "No recipient email found"
NO_TRANSPORT_ERROR = "No email service available"


@dataclass(frozen=True)
class DeliveryResult:
    success: bool
    error: str | None = None
    error_kind: ErrorKind | None = None
    transport: EmailTransport | None = None
    message_id: str | None = None
    attempts: int = 0


@dataclass(frozen=True)
class PreparedEmail:
    recipient: str | None
    cc: tuple[str, ...] = ()
    bcc: tuple[str, ...] = ()
    rendered: RenderedEmail | None = None
    error: str | None = None
    error_kind: ErrorKind | None = None


@dataclass(frozen=True)
class DispatchOutcome:
    rule_id: str
    rule_name: str
    success: bool
    recipient: str | None = None
    cc: tuple[str, ...] = ()
    bcc: tuple[str, ...] = ()
    subject: str | None = None
    error: str | None = None
    error_kind: ErrorKind | None = None
    transport: EmailTransport | None = None
    message_id: str | None = None
    attempts: int = 0
    attempted_send: bool = False


def resolve_copy_lists(rule: RuleDefinition) -> tuple[tuple[str, ...], tuple[str, ...]]:
    """Rule-level CC/BCC override the template's; blank strings count as unset."""
    template = rule.template
    cc = (rule.cc_emails or "").strip() or (template.cc_emails if template else None)
    bcc = (rule.bcc_emails or "").strip() or (template.bcc_emails if template else None)
    return parse_address_list(cc), parse_address_list(bcc)


def _as_email(value: Any) -> str | None:
    if isinstance(value, (list, tuple)):
        value = next((v for v in value if isinstance(v, str) and "@" in v), None)
    if value is None or value is MISSING:
        return None
    email = str(value).strip()
    return email if "@" in email else None


class DeliveryDispatcher:
    def __init__(
        self,
        resolver: FieldResolver,
        primary: EmailTransportBackend | None = None,
        secondary: EmailTransportBackend | None = None,
        *,
        policy: RetryPolicy | None = None,
        fallback_enabled: bool = True,
    ) -> None:
        self.resolver = resolver
        self.primary = primary
        self.secondary = secondary
        self.policy = policy or RetryPolicy.from_settings()
        self.fallback_enabled = fallback_enabled

    @classmethod
    def from_settings(cls, resolver: FieldResolver) -> "DeliveryDispatcher":
        return cls(
            resolver,
            primary=SmtpTransport.from_settings(),
            secondary=ResendTransport.from_settings(),
            policy=RetryPolicy.from_settings(),
            fallback_enabled=settings.EMAIL_FALLBACK_ENABLED,
        )

    async def resolve_recipient(
        self, rule: RuleDefinition, form_id: str, data: SubmissionData
    ) -> str | None:
        """Static address on the rule, else the rule's recipient field, else nothing."""
        static = _as_email(rule.recipient_email)
        if static and rule.recipient_type != RecipientType.FIELD.value:
            return static
        if rule.recipient_field:
            value = await self.resolver.resolve(form_id, rule.recipient_field, data)
            email = _as_email(value)
            if email:
                return email
        return static

    async def prepare(
        self,
        rule: RuleDefinition,
        form_id: str,
        data: SubmissionData,
        mapped_values: Mapping[str, Any],
    ) -> PreparedEmail:
        """Work out recipients and render the template without sending."""
        if rule.template is None:
            return PreparedEmail(
                recipient=None,
                error="Rule has no template",
                error_kind=ErrorKind.NO_TEMPLATE,
            )
        recipient = await self.resolve_recipient(rule, form_id, data)
        cc, bcc = resolve_copy_lists(rule)
        if recipient is None:
            return PreparedEmail(
                recipient=None,
                cc=cc,
                bcc=bcc,
                error=NO_RECIPIENT_ERROR,
                error_kind=ErrorKind.NO_RECIPIENT,
            )
        return PreparedEmail(
            recipient=recipient,
            cc=cc,
            bcc=bcc,
            rendered=render_email(rule.template, data, mapped_values, form_id=form_id),
        )

    async def dispatch(
        self,
        rule: RuleDefinition,
        form_id: str,
        data: SubmissionData,
        mapped_values: Mapping[str, Any],
        *,
        idempotency_key: str | None = None,
        correlation_id: str | None = None,
    ) -> DispatchOutcome:
        prepared = await self.prepare(rule, form_id, data, mapped_values)
        return await self.deliver(
            rule,
            prepared,
            form_id=form_id,
            idempotency_key=idempotency_key,
            correlation_id=correlation_id,
        )

    async def deliver(
        self,
        rule: RuleDefinition,
        prepared: PreparedEmail,
        *,
        form_id: str | None = None,
        idempotency_key: str | None = None,
        correlation_id: str | None = None,
    ) -> DispatchOutcome:
        """Send an already prepared email and describe the outcome."""
        log_context = build_log_context(
            correlation_id=correlation_id, form_id=form_id, rule_id=rule.id
        )
        if prepared.error or prepared.rendered is None:
            logger.warning(
                "Rule %s not sent: %s", rule.name, prepared.error, extra=log_context
            )
            return DispatchOutcome(
                rule_id=rule.id,
                rule_name=rule.name,
                success=False,
                cc=prepared.cc,
                bcc=prepared.bcc,
                error=prepared.error,
                error_kind=prepared.error_kind,
            )

        rendered = prepared.rendered
        if rendered.unresolved:
            logger.info(
                "Rule %s has unresolved variables: %s",
                rule.name,
                ", ".join(rendered.unresolved),
                extra=log_context,
            )
        result = await self.send(
            prepared.recipient,
            rendered.subject,
            rendered.html,
            rendered.text,
            cc=prepared.cc,
            bcc=prepared.bcc,
            idempotency_key=idempotency_key,
        )
        if result.success:
            logger.info(
                "Rule %s sent via %s",
                rule.name,
                result.transport.value if result.transport else "-",
                extra=log_context,
            )
        else:
            logger.error("Rule %s failed: %s", rule.name, result.error, extra=log_context)
        return DispatchOutcome(
            rule_id=rule.id,
            rule_name=rule.name,
            success=result.success,
            recipient=prepared.recipient,
            cc=prepared.cc,
            bcc=prepared.bcc,
            subject=rendered.subject,
            error=result.error,
            error_kind=result.error_kind,
            transport=result.transport,
            message_id=result.message_id,
            attempts=result.attempts,
            attempted_send=True,
        )

    async def send(
        self,
        recipient: str | None,
        subject: str,
        html: str,
        text: str,
        cc: str | tuple[str, ...] | list[str] | None = None,
        bcc: str | tuple[str, ...] | list[str] | None = None,
        *,
        idempotency_key: str | None = None,
    ) -> DeliveryResult:
        """Send one message: primary with retries, then the secondary."""
        if not recipient or "@" not in recipient:
            return DeliveryResult(
                success=False,
                error=NO_RECIPIENT_ERROR if not recipient else f"Invalid recipient email: {recipient}",
                error_kind=ErrorKind.NO_RECIPIENT,
            )

        message = OutboundEmail(
            to=recipient.strip(),
            subject=subject,
            html=html,
            text=text,
            cc=parse_address_list(cc),
            bcc=parse_address_list(bcc),
            idempotency_key=idempotency_key,
        )

        transports = [t for t in (self.primary, self.secondary) if t is not None and t.configured]
        if not self.fallback_enabled:
            transports = transports[:1]
        if not transports:
            return DeliveryResult(
                success=False,
                error=NO_TRANSPORT_ERROR,
                error_kind=ErrorKind.DELIVERY_CONFIG,
            )

        result = DeliveryResult(success=False)
        total_attempts = 0
        for index, transport in enumerate(transports):
            outcome = await attempt(
                lambda: transport.send(message),
                self.policy,
                retry_on=(DeliveryTransientError,),
            )
            total_attempts += outcome.attempts
            if outcome.ok:
                return DeliveryResult(
                    success=True,
                    transport=transport.name,
                    message_id=outcome.value,
                    attempts=total_attempts,
                )
            error = outcome.error
            result = DeliveryResult(
                success=False,
                error=str(error),
                error_kind=error.kind if error else ErrorKind.DELIVERY_TRANSIENT,
                transport=transport.name,
                attempts=total_attempts,
            )
            if index + 1 < len(transports):
                logger.warning(
                    "%s delivery failed (%s), falling back", transport.name.value, error
                )
        return result
