"""Tests for batched rule evaluation."""

import anyio
import pytest

from officiant.services.condition_evaluator import ConditionEvaluator
from officiant.services.email_errors import ErrorKind
from officiant.services.field_resolver import FieldResolver
from officiant.services.resolution_cache import ResolutionCache
from officiant.services.rule_batch_processor import RuleBatchProcessor, chunk
from support import FakeClock, make_rule

GOLD = [{"field": "tier", "operator": "equals", "value": "gold"}]
SLOW = [{"field": "slow", "operator": "exists"}]


class SlowEvaluator(ConditionEvaluator):
    """Sleeps on rules that reference the 'slow' field."""

    async def evaluate(self, conditions, form_id, data, prefetched=None):
        if any(c.field == "slow" for c in conditions):
            await anyio.sleep(10)
        return await super().evaluate(conditions, form_id, data, prefetched)


def _resolver(persistence):
    return FieldResolver(persistence, ResolutionCache(ttl=300, clock=FakeClock()))


def _processor(persistence, evaluator_cls=ConditionEvaluator, **kwargs):
    resolver = _resolver(persistence)
    return RuleBatchProcessor(
        persistence,
        resolver,
        evaluator_cls(resolver),
        batch_size=kwargs.pop("batch_size", 5),
        per_rule_timeout=kwargs.pop("per_rule_timeout", 1.0),
        batch_timeout_cap=kwargs.pop("batch_timeout_cap", 5.0),
        fetch_timeout=kwargs.pop("fetch_timeout", 1.0),
    )


@pytest.mark.asyncio
async def test_returns_matching_rules_in_fetch_order(persistence):
    persistence.rules["form-1"] = [
        make_rule("r1", GOLD),
        make_rule("r2", [{"field": "tier", "operator": "equals", "value": "silver"}]),
        make_rule("r3", []),
        make_rule("r4", GOLD),
    ]
    processor = _processor(persistence, batch_size=2)

    matching = await processor.process_form("form-1", {"tier": "gold"})

    assert [r.id for r in matching] == ["r1", "r3", "r4"]


@pytest.mark.asyncio
async def test_timed_out_batch_contributes_no_matches(persistence):
    rules = [make_rule(f"r{i}", SLOW if 6 <= i <= 10 else GOLD) for i in range(1, 13)]
    persistence.rules["form-1"] = rules
    processor = _processor(persistence, SlowEvaluator, per_rule_timeout=0.05, batch_timeout_cap=0.2)

    evaluation = await processor.evaluate_form("form-1", {"tier": "gold", "slow": "yes"})

    assert [r.id for r in evaluation.matching_rules] == ["r1", "r2", "r3", "r4", "r5", "r11", "r12"]
    assert evaluation.timed_out_batches == (1,)
    timed_out = [o for o in evaluation.outcomes if o.error_kind is ErrorKind.BATCH_TIMEOUT]
    assert [o.rule.id for o in timed_out] == ["r6", "r7", "r8", "r9", "r10"]


def test_batch_timeout_scales_and_caps(persistence):
    processor = _processor(persistence, per_rule_timeout=3.0, batch_timeout_cap=15.0)

    assert processor.batch_timeout(2) == 6.0
    assert processor.batch_timeout(5) == 15.0
    assert processor.batch_timeout(7) == 15.0


def test_chunk_sizes():
    rules = [make_rule(f"r{i}") for i in range(12)]
    assert [len(batch) for batch in chunk(rules, 5)] == [5, 5, 2]


@pytest.mark.asyncio
async def test_rule_fetch_timeout_yields_empty_result(persistence):
    persistence.rules["form-1"] = [make_rule("r1")]
    persistence.rules_delay = 1.0
    processor = _processor(persistence, fetch_timeout=0.05)

    evaluation = await processor.evaluate_form("form-1", {})

    assert evaluation.matching_rules == []
    assert evaluation.error_kind is ErrorKind.RULE_FETCH_TIMEOUT


@pytest.mark.asyncio
async def test_rule_exception_is_isolated(persistence):
    class ExplodingEvaluator(ConditionEvaluator):
        async def evaluate(self, conditions, form_id, data, prefetched=None):
            if any(c.field == "boom" for c in conditions):
                raise RuntimeError("kaboom")
            return await super().evaluate(conditions, form_id, data, prefetched)

    persistence.rules["form-1"] = [
        make_rule("r1", [{"field": "boom", "operator": "exists"}]),
        make_rule("r2", GOLD),
    ]
    processor = _processor(persistence, ExplodingEvaluator)

    evaluation = await processor.evaluate_form("form-1", {"tier": "gold", "boom": 1})

    assert [r.id for r in evaluation.matching_rules] == ["r2"]
    assert evaluation.outcomes[0].error_kind is ErrorKind.RULE_ERROR


@pytest.mark.asyncio
async def test_malformed_conditions_only_skip_that_rule(persistence):
    persistence.rules["form-1"] = [make_rule("r1", "{broken"), make_rule("r2", GOLD)]
    processor = _processor(persistence)

    evaluation = await processor.evaluate_form("form-1", {"tier": "gold"})

    assert [r.id for r in evaluation.matching_rules] == ["r2"]
    assert evaluation.outcomes[0].error_kind is ErrorKind.CONDITION_PARSE_ERROR


@pytest.mark.asyncio
async def test_shared_references_resolved_once_per_batch(persistence):
    class CountingResolver(FieldResolver):
        def __init__(self, *args, **kwargs):
            super().__init__(*args, **kwargs)
            self.calls = []

        async def resolve_many(self, form_id, references, data):
            references = list(references)
            self.calls.append(sorted(r.value for r in references))
            return await super().resolve_many(form_id, references, data)

    resolver = CountingResolver(persistence, ResolutionCache(ttl=300, clock=FakeClock()))
    persistence.rules["form-1"] = [
        make_rule("r1", GOLD),
        make_rule("r2", GOLD + [{"field": "city", "operator": "equals", "value": "Austin"}]),
        make_rule("r3", GOLD),
    ]
    processor = RuleBatchProcessor(persistence, resolver, batch_size=5)

    matching = await processor.process_form("form-1", {"tier": "gold", "city": "Austin"})

    assert len(matching) == 3
    assert resolver.calls == [["city", "tier"]]
