"""Structured logging helpers for the email processing path."""

import logging
from typing import Any

from officiant.core.correlation import get_correlation_id

LOG_FORMAT = "%(asctime)s [%(levelname)s] [%(correlation_id)s] %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def build_log_context(
    *,
    correlation_id: str | None = None,
    form_id: str | None = None,
    submission_id: str | None = None,
    rule_id: str | None = None,
    template_id: str | None = None,
) -> dict[str, Any]:
    """Return a log context dict with only the populated identifiers."""
    context: dict[str, Any] = {}
    if correlation_id:
        context["correlation_id"] = correlation_id
    if form_id:
        context["form_id"] = str(form_id)
    if submission_id:
        context["submission_id"] = str(submission_id)
    if rule_id:
        context["rule_id"] = str(rule_id)
    if template_id:
        context["template_id"] = str(template_id)
    return context


class CorrelationIdFilter(logging.Filter):
    """Stamp the active correlation id on records that don't carry one."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "correlation_id", None):
            record.correlation_id = get_correlation_id() or "-"
        return True


def configure_logging(level: str | int = logging.INFO) -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, CorrelationIdFilter) for f in handler.filters):
            handler.addFilter(CorrelationIdFilter())
