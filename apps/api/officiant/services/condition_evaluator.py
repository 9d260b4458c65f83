"""
Email rule condition evaluation.

All conditions must pass. Evaluation stops at the first failing condition,
so later conditions of a failed rule are never resolved.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Mapping

from officiant.db.enums import ConditionOperator
from officiant.services.email_errors import ConditionParseError, ErrorKind
from officiant.services.field_reference import MISSING, FieldReference, ReferenceKind
from officiant.services.field_resolver import FieldResolver
from officiant.types import SubmissionData

logger = logging.getLogger(__name__)

# Condition keys naming a field, in lookup order.
_REFERENCE_KEYS: tuple[tuple[str, ReferenceKind], ...] = (
    ("fieldId", ReferenceKind.IDENTIFIER),
    ("stableId", ReferenceKind.STABLE_ID),
    ("field", ReferenceKind.ANY),
    ("label", ReferenceKind.LABEL),
)


@dataclass(frozen=True)
class Condition:
    field: str
    operator: str
    value: Any = None
    references: tuple[FieldReference, ...] = ()


@dataclass(frozen=True)
class ConditionDetail:
    field: str
    operator: str
    expected_value: Any
    actual_value: Any
    result: bool
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "field": self.field,
            "operator": self.operator,
            "expectedValue": self.expected_value,
            "actualValue": None if self.actual_value is MISSING else self.actual_value,
            "result": self.result,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class EvaluationResult:
    matches: bool
    details: tuple[ConditionDetail, ...] = ()
    error: str | None = None
    error_kind: ErrorKind | None = None


def parse_conditions(raw: Any) -> list[Condition]:
    """
    Normalize stored conditions into ``Condition`` objects.

    Accepts a list of condition objects, a single object, or either of those
    encoded as a JSON string. ``None`` and empty values mean no conditions.

    Raises:
        ConditionParseError: the structure can't be interpreted as conditions
    """
    if raw is None or raw == "" or raw == []:
        return []
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ConditionParseError(f"Invalid conditions JSON: {exc.msg}") from exc
        if raw is None:
            return []
    if isinstance(raw, dict):
        raw = [raw]
    if not isinstance(raw, list):
        raise ConditionParseError(f"Conditions must be a list, got {type(raw).__name__}")

    conditions: list[Condition] = []
    for index, item in enumerate(raw):
        if not isinstance(item, dict):
            raise ConditionParseError(f"Condition {index} is not an object")
        operator = item.get("operator")
        if not isinstance(operator, str) or not operator:
            raise ConditionParseError(f"Condition {index} has no operator")
        references = tuple(
            FieldReference(str(item[key]), kind)
            for key, kind in _REFERENCE_KEYS
            if item.get(key) not in (None, "")
        )
        if not references:
            raise ConditionParseError(f"Condition {index} has no field reference")
        label = item.get("field") or references[0].value
        conditions.append(
            Condition(
                field=str(label),
                operator=operator,
                value=item.get("value"),
                references=references,
            )
        )
    return conditions


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return ", ".join(_as_text(v) for v in value)
    return str(value)


def _as_number(value: Any) -> float | None:
    try:
        return float(_as_text(value).strip())
    except (TypeError, ValueError):
        return None


def _is_empty(value: Any) -> bool:
    return value is MISSING or value is None or value == ""


def compare(operator: str, actual: Any, expected: Any) -> tuple[bool, str]:
    """
    Apply ``operator`` to a resolved value.

    Text operators compare lowercased string forms. ``greaterThan`` and
    ``lessThan`` compare as floats and fail on non-numeric input.
    """
    try:
        op = ConditionOperator(operator)
    except ValueError:
        return False, f"Unknown operator: {operator}"

    if op is ConditionOperator.EXISTS:
        return True, "field exists"
    if op is ConditionOperator.NOT_EXISTS:
        return False, "field exists"
    if op is ConditionOperator.IS_EMPTY:
        empty = _is_empty(actual)
        return empty, "value is empty" if empty else "value is not empty"
    if op is ConditionOperator.IS_NOT_EMPTY:
        empty = _is_empty(actual)
        return not empty, "value is empty" if empty else "value is not empty"

    if op in (ConditionOperator.GREATER_THAN, ConditionOperator.LESS_THAN):
        left, right = _as_number(actual), _as_number(expected)
        if left is None or right is None:
            return False, "non-numeric value"
        if op is ConditionOperator.GREATER_THAN:
            return left > right, f"{left} > {right}"
        return left < right, f"{left} < {right}"

    left = _as_text(actual).lower()
    right = _as_text(expected).lower()
    if op is ConditionOperator.EQUALS:
        result = left == right
    elif op is ConditionOperator.NOT_EQUALS:
        result = left != right
    elif op is ConditionOperator.CONTAINS:
        result = right in left
    elif op is ConditionOperator.NOT_CONTAINS:
        result = right not in left
    elif op is ConditionOperator.STARTS_WITH:
        result = left.startswith(right)
    else:
        result = left.endswith(right)
    return result, f"'{left}' {op.value} '{right}'"


class ConditionEvaluator:
    def __init__(self, resolver: FieldResolver) -> None:
        self.resolver = resolver

    async def evaluate(
        self,
        conditions: Any,
        form_id: str,
        data: SubmissionData,
        prefetched: Mapping[str, Any] | None = None,
    ) -> EvaluationResult:
        """
        Evaluate conditions with AND semantics, stopping at the first failure.

        ``conditions`` may be parsed ``Condition`` objects or the raw stored
        value. ``prefetched`` maps ``FieldReference.cache_key`` to values
        already resolved for this submission.
        """
        if conditions and all(isinstance(c, Condition) for c in conditions):
            parsed = list(conditions)
        else:
            try:
                parsed = parse_conditions(conditions)
            except ConditionParseError as exc:
                logger.warning("Skipping malformed conditions: %s", exc)
                return EvaluationResult(
                    matches=False,
                    error=str(exc),
                    error_kind=ErrorKind.CONDITION_PARSE_ERROR,
                )

        if not parsed:
            return EvaluationResult(matches=True)

        details: list[ConditionDetail] = []
        for condition in parsed:
            actual = await self._lookup(condition, form_id, data, prefetched or {})
            if actual is MISSING:
                details.append(
                    ConditionDetail(
                        field=condition.field,
                        operator=condition.operator,
                        expected_value=condition.value,
                        actual_value=MISSING,
                        result=False,
                        reason=f"Field not found: {condition.field}",
                    )
                )
                return EvaluationResult(
                    matches=False,
                    details=tuple(details),
                    error_kind=ErrorKind.RESOLUTION_MISS,
                )

            result, reason = compare(condition.operator, actual, condition.value)
            details.append(
                ConditionDetail(
                    field=condition.field,
                    operator=condition.operator,
                    expected_value=condition.value,
                    actual_value=actual,
                    result=result,
                    reason=reason,
                )
            )
            if not result:
                return EvaluationResult(matches=False, details=tuple(details))

        return EvaluationResult(matches=True, details=tuple(details))

    async def _lookup(
        self,
        condition: Condition,
        form_id: str,
        data: SubmissionData,
        prefetched: Mapping[str, Any],
    ) -> Any:
        for ref in condition.references:
            if ref.cache_key in prefetched:
                value = prefetched[ref.cache_key]
            else:
                value = await self.resolver.resolve(form_id, ref, data)
            if value is not MISSING:
                return value
        return MISSING
