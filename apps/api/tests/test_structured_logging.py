"""Tests for structured logging helpers."""

import logging

from officiant.core.correlation import get_correlation_id, reset_correlation, start_correlation
from officiant.core.structured_logging import CorrelationIdFilter, build_log_context


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord("officiant", logging.INFO, __file__, 1, "message", None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_build_log_context_drops_empty_identifiers():
    context = build_log_context(correlation_id="email-1", form_id=None, rule_id=42)

    assert context == {"correlation_id": "email-1", "rule_id": "42"}


def test_filter_uses_active_correlation_id():
    correlation_id, token = start_correlation()
    try:
        record = _record()
        assert CorrelationIdFilter().filter(record) is True
        assert record.correlation_id == correlation_id
        assert correlation_id.startswith("email-")
    finally:
        reset_correlation(token)
    assert get_correlation_id() is None


def test_filter_keeps_explicit_correlation_id():
    _, token = start_correlation("email-active")
    try:
        record = _record(correlation_id="email-explicit")
        CorrelationIdFilter().filter(record)
    finally:
        reset_correlation(token)

    assert record.correlation_id == "email-explicit"


def test_filter_placeholder_outside_a_run():
    record = _record()
    CorrelationIdFilter().filter(record)

    assert record.correlation_id == "-"
