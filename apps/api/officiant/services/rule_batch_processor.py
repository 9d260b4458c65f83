"""
Batched evaluation of a form's active email rules.

Rules are split into fixed-size batches. Within a batch the union of field
references used by all conditions is resolved once up front, then every
rule is evaluated concurrently against those shared values. Batches run
one after another under a timeout that scales with batch size; a batch
that runs out of time contributes no matches and later batches still run.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

import anyio

from officiant.core.config import settings
from officiant.core.structured_logging import build_log_context
from officiant.services.condition_evaluator import (
    Condition,
    ConditionEvaluator,
    EvaluationResult,
    parse_conditions,
)
from officiant.services.definitions import RuleDefinition
from officiant.services.email_errors import ConditionParseError, ErrorKind
from officiant.services.field_reference import FieldReference
from officiant.services.field_resolver import FieldResolver
from officiant.services.persistence import PersistenceService
from officiant.types import SubmissionData

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RuleOutcome:
    rule: RuleDefinition
    matched: bool
    evaluation: EvaluationResult | None = None
    error: str | None = None
    error_kind: ErrorKind | None = None
    batch_index: int = 0


@dataclass(frozen=True)
class FormEvaluation:
    form_id: str
    outcomes: tuple[RuleOutcome, ...] = ()
    error: str | None = None
    error_kind: ErrorKind | None = None
    timed_out_batches: tuple[int, ...] = field(default=())

    @property
    def matching_rules(self) -> list[RuleDefinition]:
        return [outcome.rule for outcome in self.outcomes if outcome.matched]


def chunk(rules: Sequence[RuleDefinition], size: int) -> list[list[RuleDefinition]]:
    size = max(1, size)
    return [list(rules[i : i + size]) for i in range(0, len(rules), size)]


class RuleBatchProcessor:
    def __init__(
        self,
        persistence: PersistenceService,
        resolver: FieldResolver,
        evaluator: ConditionEvaluator | None = None,
        *,
        batch_size: int | None = None,
        per_rule_timeout: float | None = None,
        batch_timeout_cap: float | None = None,
        fetch_timeout: float | None = None,
    ) -> None:
        self.persistence = persistence
        self.resolver = resolver
        self.evaluator = evaluator or ConditionEvaluator(resolver)
        self.batch_size = batch_size or settings.EMAIL_RULE_BATCH_SIZE
        self.per_rule_timeout = (
            settings.EMAIL_RULE_TIMEOUT_PER_RULE if per_rule_timeout is None else per_rule_timeout
        )
        self.batch_timeout_cap = (
            settings.EMAIL_BATCH_TIMEOUT_CAP if batch_timeout_cap is None else batch_timeout_cap
        )
        self.fetch_timeout = (
            settings.EMAIL_RULE_FETCH_TIMEOUT if fetch_timeout is None else fetch_timeout
        )

    def batch_timeout(self, batch_len: int) -> float:
        return min(self.per_rule_timeout * batch_len, self.batch_timeout_cap)

    async def process_form(
        self,
        form_id: str,
        data: SubmissionData,
        *,
        correlation_id: str | None = None,
    ) -> list[RuleDefinition]:
        """Return the active rules whose conditions match, in fetch order."""
        evaluation = await self.evaluate_form(form_id, data, correlation_id=correlation_id)
        return evaluation.matching_rules

    async def fetch_rules(
        self, form_id: str, *, correlation_id: str | None = None
    ) -> tuple[list[RuleDefinition], str | None, ErrorKind | None]:
        """Active rules for the form, or an empty list with the reason on timeout/failure."""
        log_context = build_log_context(correlation_id=correlation_id, form_id=form_id)
        try:
            with anyio.fail_after(self.fetch_timeout):
                rules = await self.persistence.get_active_rules(form_id)
        except TimeoutError:
            logger.error(
                "Fetching rules for form %s timed out after %ss",
                form_id,
                self.fetch_timeout,
                extra=log_context,
            )
            return [], "Rule fetch timed out", ErrorKind.RULE_FETCH_TIMEOUT
        except Exception as exc:
            logger.exception("Fetching rules for form %s failed", form_id, extra=log_context)
            return [], f"Rule fetch failed: {exc}", ErrorKind.PROCESSING_ERROR
        return list(rules), None, None

    async def evaluate_form(
        self,
        form_id: str,
        data: SubmissionData,
        *,
        correlation_id: str | None = None,
        rules: Sequence[RuleDefinition] | None = None,
    ) -> FormEvaluation:
        form_id = str(form_id)
        if rules is None:
            fetched, error, error_kind = await self.fetch_rules(
                form_id, correlation_id=correlation_id
            )
            if error:
                return FormEvaluation(form_id=form_id, error=error, error_kind=error_kind)
            rules = fetched

        outcomes: list[RuleOutcome] = []
        timed_out: list[int] = []
        for batch_index, batch in enumerate(chunk(rules, self.batch_size)):
            timeout = self.batch_timeout(len(batch))
            batch_outcomes: list[RuleOutcome | None] = [None] * len(batch)
            with anyio.move_on_after(timeout) as scope:
                await self._process_batch(
                    batch_index, batch, form_id, data, batch_outcomes, correlation_id
                )
            if scope.cancelled_caught:
                timed_out.append(batch_index)
                logger.warning(
                    "Rule batch %s timed out after %ss; %s rules skipped",
                    batch_index,
                    timeout,
                    len(batch),
                    extra=build_log_context(correlation_id=correlation_id, form_id=form_id),
                )
                outcomes.extend(
                    RuleOutcome(
                        rule=rule,
                        matched=False,
                        error=f"Batch timed out after {timeout}s",
                        error_kind=ErrorKind.BATCH_TIMEOUT,
                        batch_index=batch_index,
                    )
                    for rule in batch
                )
                continue
            outcomes.extend(o for o in batch_outcomes if o is not None)

        return FormEvaluation(
            form_id=form_id, outcomes=tuple(outcomes), timed_out_batches=tuple(timed_out)
        )

    async def _process_batch(
        self,
        batch_index: int,
        batch: list[RuleDefinition],
        form_id: str,
        data: SubmissionData,
        results: list[RuleOutcome | None],
        correlation_id: str | None,
    ) -> None:
        parsed: dict[int, list[Condition]] = {}
        for position, rule in enumerate(batch):
            try:
                parsed[position] = parse_conditions(rule.conditions)
            except ConditionParseError as exc:
                logger.warning(
                    "Rule %s has malformed conditions: %s",
                    rule.name,
                    exc,
                    extra=build_log_context(
                        correlation_id=correlation_id, form_id=form_id, rule_id=rule.id
                    ),
                )
                results[position] = RuleOutcome(
                    rule=rule,
                    matched=False,
                    error=str(exc),
                    error_kind=ErrorKind.CONDITION_PARSE_ERROR,
                    batch_index=batch_index,
                )

        references: dict[str, FieldReference] = {}
        for conditions in parsed.values():
            for condition in conditions:
                for ref in condition.references:
                    references.setdefault(ref.cache_key, ref)
        prefetched = await self.resolver.resolve_many(form_id, references.values(), data)

        async def evaluate_rule(position: int, rule: RuleDefinition) -> None:
            try:
                evaluation = await self.evaluator.evaluate(
                    parsed[position], form_id, data, prefetched=prefetched
                )
            except Exception as exc:
                logger.exception(
                    "Evaluating rule %s failed",
                    rule.name,
                    extra=build_log_context(
                        correlation_id=correlation_id, form_id=form_id, rule_id=rule.id
                    ),
                )
                results[position] = RuleOutcome(
                    rule=rule,
                    matched=False,
                    error=f"Rule evaluation failed: {exc}",
                    error_kind=ErrorKind.RULE_ERROR,
                    batch_index=batch_index,
                )
                return
            results[position] = RuleOutcome(
                rule=rule,
                matched=evaluation.matches,
                evaluation=evaluation,
                error=evaluation.error,
                error_kind=evaluation.error_kind,
                batch_index=batch_index,
            )

        async with anyio.create_task_group() as tg:
            for position, rule in enumerate(batch):
                if position in parsed:
                    tg.start_soon(evaluate_rule, position, rule)
