"""Tests for rule condition evaluation."""

import pytest

from officiant.services.condition_evaluator import (
    ConditionEvaluator,
    compare,
    parse_conditions,
)
from officiant.services.definitions import FieldDefinition
from officiant.services.email_errors import ConditionParseError, ErrorKind
from officiant.services.field_reference import MISSING, ReferenceKind
from officiant.services.field_resolver import FieldResolver
from officiant.services.resolution_cache import ResolutionCache
from support import FakeClock, make_form


def _evaluator(persistence):
    return ConditionEvaluator(FieldResolver(persistence, ResolutionCache(ttl=300, clock=FakeClock())))


@pytest.mark.asyncio
async def test_empty_conditions_match(persistence):
    evaluator = _evaluator(persistence)

    for conditions in (None, [], "", "[]"):
        result = await evaluator.evaluate(conditions, "form-1", {})
        assert result.matches is True
        assert result.details == ()


@pytest.mark.asyncio
async def test_stable_id_condition_matches(persistence):
    persistence.add_form(make_form(fields=[FieldDefinition(id="f1", stable_id="email")]))
    evaluator = _evaluator(persistence)

    result = await evaluator.evaluate(
        [{"field": "email", "operator": "equals", "value": "a@b.com"}],
        "form-1",
        {"f1": "a@b.com"},
    )

    assert result.matches is True
    assert result.details[0].actual_value == "a@b.com"


@pytest.mark.asyncio
async def test_missing_field_fails_with_reason(persistence):
    evaluator = _evaluator(persistence)

    result = await evaluator.evaluate(
        [{"field": "status", "operator": "equals", "value": "gold"}],
        "form-1",
        {"f1": "x"},
    )

    assert result.matches is False
    assert result.error_kind is ErrorKind.RESOLUTION_MISS
    assert "not found" in result.details[0].reason
    assert result.details[0].to_dict()["actualValue"] is None


@pytest.mark.asyncio
async def test_missing_field_fails_not_exists_too(persistence):
    evaluator = _evaluator(persistence)

    result = await evaluator.evaluate(
        [{"field": "status", "operator": "notExists"}], "form-1", {}
    )

    assert result.matches is False


@pytest.mark.asyncio
async def test_fail_fast_stops_before_later_conditions(persistence):
    class CountingResolver(FieldResolver):
        seen: list[str] = []

        async def resolve(self, form_id, reference, data):
            self.seen.append(str(reference))
            return await super().resolve(form_id, reference, data)

    resolver = CountingResolver(persistence, ResolutionCache(ttl=300, clock=FakeClock()))
    resolver.seen = []
    evaluator = ConditionEvaluator(resolver)

    result = await evaluator.evaluate(
        [
            {"field": "tier", "operator": "equals", "value": "gold"},
            {"field": "city", "operator": "equals", "value": "Austin"},
            {"field": "guests", "operator": "greaterThan", "value": 50},
        ],
        "form-1",
        {"tier": "silver", "city": "Austin", "guests": "80"},
    )

    assert result.matches is False
    assert len(result.details) == 1
    assert resolver.seen == ["tier"]


@pytest.mark.asyncio
async def test_all_conditions_must_pass(persistence):
    evaluator = _evaluator(persistence)
    data = {"tier": "Gold", "guests": "120", "notes": ""}

    result = await evaluator.evaluate(
        [
            {"field": "tier", "operator": "equals", "value": "gold"},
            {"field": "guests", "operator": "greaterThan", "value": "100"},
            {"field": "notes", "operator": "isEmpty"},
        ],
        "form-1",
        data,
    )

    assert result.matches is True
    assert [d.result for d in result.details] == [True, True, True]


@pytest.mark.asyncio
async def test_conditions_stored_as_json_string(persistence):
    evaluator = _evaluator(persistence)

    result = await evaluator.evaluate(
        '{"field": "tier", "operator": "contains", "value": "old"}', "form-1", {"tier": "Gold"}
    )

    assert result.matches is True


@pytest.mark.asyncio
async def test_malformed_conditions_do_not_match(persistence):
    evaluator = _evaluator(persistence)

    result = await evaluator.evaluate("{not json", "form-1", {})

    assert result.matches is False
    assert result.error_kind is ErrorKind.CONDITION_PARSE_ERROR


@pytest.mark.asyncio
async def test_prefetched_values_are_used(persistence):
    evaluator = _evaluator(persistence)
    conditions = parse_conditions([{"field": "tier", "operator": "equals", "value": "gold"}])
    key = conditions[0].references[0].cache_key

    result = await evaluator.evaluate(conditions, "form-1", {}, prefetched={key: "GOLD"})

    assert result.matches is True


def test_parse_conditions_collects_references_in_lookup_order():
    [condition] = parse_conditions(
        [{"field": "Email", "fieldId": "f1", "stableId": "email", "operator": "equals"}]
    )

    assert [r.kind for r in condition.references] == [
        ReferenceKind.IDENTIFIER,
        ReferenceKind.STABLE_ID,
        ReferenceKind.ANY,
    ]


@pytest.mark.parametrize(
    "raw",
    [42, ["not-a-dict"], [{"field": "x"}], [{"operator": "equals"}]],
)
def test_parse_conditions_rejects_bad_structures(raw):
    with pytest.raises(ConditionParseError):
        parse_conditions(raw)


@pytest.mark.parametrize(
    "operator,actual,expected,result",
    [
        ("equals", "Gold", "gold", True),
        ("equals", 5, "5", True),
        ("notEquals", "a", "b", True),
        ("contains", "Garden Wedding", "garden", True),
        ("notContains", "Garden", "beach", True),
        ("startsWith", "Saturday", "sat", True),
        ("endsWith", "Saturday", "DAY", True),
        ("greaterThan", "10", 5, True),
        ("greaterThan", "ten", 5, False),
        ("lessThan", "3.5", "4", True),
        ("isEmpty", None, None, True),
        ("isEmpty", "", None, True),
        ("isNotEmpty", "x", None, True),
        ("isNotEmpty", None, None, False),
        ("exists", "", None, True),
        ("notExists", "x", None, False),
        ("equals", True, "true", True),
    ],
)
def test_compare(operator, actual, expected, result):
    assert compare(operator, actual, expected)[0] is result


def test_unknown_operator_is_false_with_reason():
    result, reason = compare("matchesRegex", "x", "x")

    assert result is False
    assert "Unknown operator" in reason


def test_missing_sentinel_is_falsy():
    assert not MISSING
