"""
Email processing for form submissions.

``EmailRuleEngine.process_submission`` runs the whole pipeline for one
submission: enrich the payload, evaluate the form's active rules, then
render and send each matching rule. It never raises; every failure is
logged under the run's correlation id and reported in the summary.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any

from officiant.core.correlation import reset_correlation, start_correlation
from officiant.core.structured_logging import build_log_context
from officiant.db.enums import EmailStatus
from officiant.services.data_enhancer import enhance_submission_data
from officiant.services.delivery_dispatcher import DeliveryDispatcher, DispatchOutcome
from officiant.services.definitions import RuleDefinition
from officiant.services.email_errors import ErrorKind
from officiant.services.field_resolver import FieldResolver
from officiant.services.persistence import PersistenceService
from officiant.services.processing_log import ProcessingLog, ProcessingLogEntry
from officiant.services.resolution_cache import ResolutionCache
from officiant.services.rule_batch_processor import RuleBatchProcessor, RuleOutcome
from officiant.services.submission_metadata import mapped_contact
from officiant.services.template_renderer import extract_mapped_values
from officiant.types import SubmissionData

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessingSummary:
    correlation_id: str
    form_id: str
    submission_id: str | None = None
    rules_evaluated: int = 0
    rules_matched: int = 0
    sent: int = 0
    failed: int = 0
    outcomes: tuple[DispatchOutcome, ...] = ()
    logs: tuple[ProcessingLogEntry, ...] = ()
    error: str | None = None
    error_kind: ErrorKind | None = None

    @property
    def success(self) -> bool:
        return self.error is None and self.failed == 0


@dataclass(frozen=True)
class RulePreview:
    rule_id: str
    rule_name: str
    matched: bool
    details: tuple[dict[str, Any], ...] = ()
    error: str | None = None
    recipient: str | None = None
    cc: tuple[str, ...] = ()
    bcc: tuple[str, ...] = ()
    subject: str | None = None
    html: str | None = None
    text: str | None = None
    unresolved_variables: tuple[str, ...] = ()


class EmailRuleEngine:
    """Wires the resolver, batch processor and dispatcher around one cache."""

    def __init__(
        self,
        persistence: PersistenceService,
        *,
        resolver: FieldResolver | None = None,
        batch_processor: RuleBatchProcessor | None = None,
        dispatcher: DeliveryDispatcher | None = None,
    ) -> None:
        self.persistence = persistence
        self.resolver = resolver or FieldResolver(persistence, ResolutionCache())
        self.batch_processor = batch_processor or RuleBatchProcessor(persistence, self.resolver)
        self.dispatcher = dispatcher or DeliveryDispatcher.from_settings(self.resolver)

    def invalidate(self, form_id: str | None = None) -> None:
        self.resolver.invalidate(form_id)

    async def prepare_data(
        self,
        form_id: str,
        data: SubmissionData,
        *,
        submission_id: str | None = None,
        lead_id: str | None = None,
    ) -> tuple[SubmissionData, dict[str, Any]]:
        """Enriched payload plus the mapped values templates read first."""
        lead = None
        if lead_id:
            try:
                lead = await self.persistence.get_lead(lead_id)
            except Exception:
                logger.exception("Failed to load lead %s", lead_id)
        enhanced = enhance_submission_data(
            data, lead=lead, submission_id=submission_id, form_id=form_id
        )
        fields = await self.resolver.load_fields(form_id)
        mapped_values = extract_mapped_values(fields, enhanced)
        for key, value in mapped_contact(enhanced).items():
            if value not in (None, ""):
                mapped_values.setdefault(key, value)
        for key in ("firstName", "lastName"):
            if enhanced.get(key):
                mapped_values.setdefault(key, enhanced[key])
        return enhanced, mapped_values

    async def process_submission(
        self,
        form_id: str,
        data: SubmissionData,
        *,
        submission_id: str | None = None,
        lead_id: str | None = None,
        correlation_id: str | None = None,
    ) -> ProcessingSummary:
        form_id = str(form_id)
        correlation_id, token = start_correlation(correlation_id)
        log = ProcessingLog(correlation_id, form_id=form_id, submission_id=submission_id)
        try:
            summary = await self._process(
                form_id, data, log, submission_id=submission_id, lead_id=lead_id
            )
        except Exception as exc:
            logger.exception(
                "Email processing failed",
                extra=build_log_context(
                    correlation_id=correlation_id, form_id=form_id, submission_id=submission_id
                ),
            )
            log.error(f"Email processing failed: {exc}")
            summary = ProcessingSummary(
                correlation_id=correlation_id,
                form_id=form_id,
                submission_id=submission_id,
                error=str(exc),
                error_kind=ErrorKind.PROCESSING_ERROR,
            )
        finally:
            reset_correlation(token)

        try:
            await self.persistence.record_processing_logs(log.entries)
        except Exception:
            logger.exception("Failed to persist processing log %s", correlation_id)

        return replace(summary, logs=tuple(log.entries))

    async def _process(
        self,
        form_id: str,
        data: SubmissionData,
        log: ProcessingLog,
        *,
        submission_id: str | None,
        lead_id: str | None,
    ) -> ProcessingSummary:
        correlation_id = log.correlation_id
        log.info("Processing submission")
        enhanced, mapped_values = await self.prepare_data(
            form_id, data, submission_id=submission_id, lead_id=lead_id
        )

        evaluation = await self.batch_processor.evaluate_form(
            form_id, enhanced, correlation_id=correlation_id
        )
        if evaluation.error:
            log.error(evaluation.error, details={"errorKind": evaluation.error_kind.value})
            return ProcessingSummary(
                correlation_id=correlation_id,
                form_id=form_id,
                submission_id=submission_id,
                error=evaluation.error,
                error_kind=evaluation.error_kind,
            )

        for outcome in evaluation.outcomes:
            self._log_outcome(log, outcome)
        matching = evaluation.matching_rules
        log.info(
            f"{len(matching)} of {len(evaluation.outcomes)} rules matched",
            details={"matchedRuleIds": [rule.id for rule in matching]},
        )

        outcomes: list[DispatchOutcome] = []
        for rule in matching:
            outcome = await self._dispatch(rule, form_id, enhanced, mapped_values, log, submission_id)
            outcomes.append(outcome)

        sent = sum(1 for o in outcomes if o.success)
        return ProcessingSummary(
            correlation_id=correlation_id,
            form_id=form_id,
            submission_id=submission_id,
            rules_evaluated=len(evaluation.outcomes),
            rules_matched=len(matching),
            sent=sent,
            failed=len(outcomes) - sent,
            outcomes=tuple(outcomes),
        )

    @staticmethod
    def _log_outcome(log: ProcessingLog, outcome: RuleOutcome) -> None:
        details: dict[str, Any] = {"ruleName": outcome.rule.name, "batch": outcome.batch_index}
        if outcome.evaluation is not None:
            details["conditions"] = [d.to_dict() for d in outcome.evaluation.details]
        if outcome.error_kind is not None:
            details["errorKind"] = outcome.error_kind.value
        if outcome.error_kind in (
            ErrorKind.CONDITION_PARSE_ERROR,
            ErrorKind.RULE_ERROR,
            ErrorKind.BATCH_TIMEOUT,
        ):
            log.warning(f"Rule skipped: {outcome.error}", rule_id=outcome.rule.id, details=details)
        elif outcome.matched:
            log.info("Rule matched", rule_id=outcome.rule.id, details=details)
        else:
            log.info("Rule did not match", rule_id=outcome.rule.id, details=details)

    async def _dispatch(
        self,
        rule: RuleDefinition,
        form_id: str,
        data: SubmissionData,
        mapped_values: dict[str, Any],
        log: ProcessingLog,
        submission_id: str | None,
    ) -> DispatchOutcome:
        prepared = await self.dispatcher.prepare(rule, form_id, data, mapped_values)
        log_id = None
        if prepared.rendered is not None and prepared.recipient:
            try:
                log_id = await self.persistence.create_email_log(
                    form_id=form_id,
                    submission_id=submission_id,
                    rule_id=rule.id,
                    template_id=rule.template.id if rule.template else None,
                    correlation_id=log.correlation_id,
                    recipient_email=prepared.recipient,
                    subject=prepared.rendered.subject,
                    cc=list(prepared.cc),
                    bcc=list(prepared.bcc),
                )
            except Exception:
                logger.exception("Failed to create email log for rule %s", rule.id)

        outcome = await self.dispatcher.deliver(
            rule,
            prepared,
            form_id=form_id,
            idempotency_key=f"{submission_id}:{rule.id}" if submission_id else None,
            correlation_id=log.correlation_id,
        )

        if log_id:
            try:
                await self.persistence.update_email_log(
                    log_id,
                    status=EmailStatus.SENT if outcome.success else EmailStatus.FAILED,
                    transport=outcome.transport.value if outcome.transport else None,
                    error=outcome.error,
                )
            except Exception:
                logger.exception("Failed to update email log %s", log_id)

        details = {
            "recipient": outcome.recipient,
            "cc": list(outcome.cc),
            "bcc": list(outcome.bcc),
            "transport": outcome.transport.value if outcome.transport else None,
            "attempts": outcome.attempts,
        }
        if outcome.success:
            log.info("Email sent", rule_id=rule.id, details=details)
        else:
            details["errorKind"] = outcome.error_kind.value if outcome.error_kind else None
            log.error(f"Email failed: {outcome.error}", rule_id=rule.id, details=details)
        return outcome

    async def dry_run(self, form_id: str, data: SubmissionData) -> list[RulePreview]:
        """Evaluate every active rule and render matches without sending anything."""
        form_id = str(form_id)
        enhanced, mapped_values = await self.prepare_data(form_id, data)
        evaluation = await self.batch_processor.evaluate_form(form_id, enhanced)
        previews: list[RulePreview] = []
        for outcome in evaluation.outcomes:
            details = (
                tuple(d.to_dict() for d in outcome.evaluation.details)
                if outcome.evaluation
                else ()
            )
            if not outcome.matched:
                previews.append(
                    RulePreview(
                        rule_id=outcome.rule.id,
                        rule_name=outcome.rule.name,
                        matched=False,
                        details=details,
                        error=outcome.error,
                    )
                )
                continue
            prepared = await self.dispatcher.prepare(outcome.rule, form_id, enhanced, mapped_values)
            rendered = prepared.rendered
            previews.append(
                RulePreview(
                    rule_id=outcome.rule.id,
                    rule_name=outcome.rule.name,
                    matched=True,
                    details=details,
                    error=prepared.error,
                    recipient=prepared.recipient,
                    cc=prepared.cc,
                    bcc=prepared.bcc,
                    subject=rendered.subject if rendered else None,
                    html=rendered.html if rendered else None,
                    text=rendered.text if rendered else None,
                    unresolved_variables=rendered.unresolved if rendered else (),
                )
            )
        return previews
