"""End-to-end tests for submission email processing with fakes."""

import pytest

from officiant.core.correlation import get_correlation_id
from officiant.db.enums import EmailStatus, EmailTransport
from officiant.services.definitions import FieldDefinition
from officiant.services.delivery_dispatcher import DeliveryDispatcher
from officiant.services.email_errors import DeliveryTransientError, ErrorKind
from officiant.services.email_processing_service import EmailRuleEngine
from officiant.services.field_resolver import FieldResolver
from officiant.services.resolution_cache import ResolutionCache
from officiant.services.retry import RetryPolicy
from officiant.services.rule_batch_processor import RuleBatchProcessor
from officiant.services.submission_metadata import attach_metadata
from support import FakeClock, FakeTransport, make_form, make_rule, make_template

FORM = make_form(
    fields=[
        FieldDefinition(id="f1", label="Full Name"),
        FieldDefinition(id="f2", stable_id="clientEmail", mapping_type="email"),
        FieldDefinition(id="f3", stable_id="package"),
    ]
)


def _engine(persistence, primary, secondary=None, **batch_kwargs):
    resolver = FieldResolver(persistence, ResolutionCache(ttl=300, clock=FakeClock()))
    return EmailRuleEngine(
        persistence,
        resolver=resolver,
        batch_processor=RuleBatchProcessor(persistence, resolver, **batch_kwargs),
        dispatcher=DeliveryDispatcher(
            resolver, primary, secondary, policy=RetryPolicy(max_retries=1, base_delay=0)
        ),
    )


def _submission():
    return attach_metadata(FORM, {"f1": "Jane Doe", "f2": "jane@example.com", "f3": "Gold"})


@pytest.mark.asyncio
async def test_matching_rules_are_sent_and_logged(persistence):
    persistence.add_form(FORM)
    persistence.rules["form-1"] = [
        make_rule(
            "client",
            [{"field": "package", "operator": "equals", "value": "gold"}],
            recipient_type="field",
            recipient_email=None,
            recipient_field="clientEmail",
            template=make_template(subject="Hi {{firstName}}", html_content="<p>{{name}} for {{email}}</p>"),
        ),
        make_rule("silver", [{"field": "package", "operator": "equals", "value": "silver"}]),
    ]
    primary = FakeTransport()
    engine = _engine(persistence, primary)

    summary = await engine.process_submission("form-1", _submission(), submission_id="sub-1")

    assert summary.success
    assert (summary.rules_evaluated, summary.rules_matched, summary.sent) == (2, 1, 1)
    [message] = primary.sent
    assert message.to == "jane@example.com"
    assert message.subject == "Hi Jane"
    assert message.html == "<p>Jane Doe for jane@example.com</p>"
    assert message.idempotency_key == "sub-1:client"

    [log] = persistence.email_logs.values()
    assert log["status"] is EmailStatus.SENT
    assert log["transport"] == EmailTransport.SMTP.value
    assert log["correlation_id"] == summary.correlation_id

    assert persistence.processing_logs
    assert {e.correlation_id for e in persistence.processing_logs} == {summary.correlation_id}
    assert get_correlation_id() is None


@pytest.mark.asyncio
async def test_delivery_failure_is_reported_not_raised(persistence):
    persistence.add_form(FORM)
    persistence.rules["form-1"] = [make_rule("r1"), make_rule("r2")]
    primary = FakeTransport(errors=[DeliveryTransientError("down")] * 2)
    engine = _engine(persistence, primary)

    summary = await engine.process_submission("form-1", _submission(), submission_id="sub-1")

    assert summary.sent == 1
    assert summary.failed == 1
    assert summary.outcomes[0].error_kind is ErrorKind.DELIVERY_TRANSIENT
    statuses = [log["status"] for log in persistence.email_logs.values()]
    assert statuses == [EmailStatus.FAILED, EmailStatus.SENT]


@pytest.mark.asyncio
async def test_missing_recipient_continues_with_next_rule(persistence):
    persistence.add_form(FORM)
    persistence.rules["form-1"] = [
        make_rule("r1", recipient_type="field", recipient_email=None, recipient_field="partnerEmail"),
        make_rule("r2"),
    ]
    primary = FakeTransport()
    engine = _engine(persistence, primary)

    summary = await engine.process_submission("form-1", {"f1": "Jane"})

    assert [o.error_kind for o in summary.outcomes] == [ErrorKind.NO_RECIPIENT, None]
    assert len(primary.sent) == 1
    assert len(persistence.email_logs) == 1


@pytest.mark.asyncio
async def test_rule_fetch_timeout_is_logged(persistence):
    persistence.add_form(FORM)
    persistence.rules["form-1"] = [make_rule("r1")]
    persistence.rules_delay = 1.0
    engine = _engine(persistence, FakeTransport(), fetch_timeout=0.05)

    summary = await engine.process_submission("form-1", _submission())

    assert summary.error_kind is ErrorKind.RULE_FETCH_TIMEOUT
    assert summary.sent == 0
    assert any(e.level.value == "error" for e in summary.logs)


@pytest.mark.asyncio
async def test_unexpected_errors_never_escape(persistence):
    class BrokenProcessor(RuleBatchProcessor):
        async def evaluate_form(self, *args, **kwargs):
            raise RuntimeError("database exploded")

    persistence.add_form(FORM)
    resolver = FieldResolver(persistence)
    engine = EmailRuleEngine(
        persistence,
        resolver=resolver,
        batch_processor=BrokenProcessor(persistence, resolver),
        dispatcher=DeliveryDispatcher(resolver, FakeTransport()),
    )

    summary = await engine.process_submission("form-1", {}, correlation_id="corr-1")

    assert summary.error_kind is ErrorKind.PROCESSING_ERROR
    assert summary.correlation_id == "corr-1"
    assert persistence.processing_logs[-1].message.startswith("Email processing failed")


@pytest.mark.asyncio
async def test_dry_run_renders_without_sending(persistence):
    persistence.add_form(FORM)
    persistence.rules["form-1"] = [
        make_rule("r1", [{"field": "package", "operator": "equals", "value": "gold"}]),
        make_rule("r2", [{"field": "venue", "operator": "exists"}]),
    ]
    primary = FakeTransport()
    engine = _engine(persistence, primary)

    previews = await engine.dry_run("form-1", _submission())

    assert [p.matched for p in previews] == [True, False]
    assert previews[0].subject == "Thanks Jane"
    assert previews[0].recipient == "owner@example.com"
    assert previews[1].details[0]["reason"] == "Field not found: venue"
    assert primary.calls == 0
    assert persistence.email_logs == {}
