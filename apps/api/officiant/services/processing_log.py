"""Per-run processing log: mirrored to ``logging`` and persisted at the end of a run."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from officiant.core.structured_logging import build_log_context
from officiant.db.enums import ProcessingLogLevel

logger = logging.getLogger(__name__)

_LEVELS = {
    ProcessingLogLevel.INFO: logging.INFO,
    ProcessingLogLevel.WARNING: logging.WARNING,
    ProcessingLogLevel.ERROR: logging.ERROR,
}


@dataclass(frozen=True)
class ProcessingLogEntry:
    level: ProcessingLogLevel
    message: str
    correlation_id: str
    source: str
    form_id: str | None = None
    submission_id: str | None = None
    rule_id: str | None = None
    details: dict[str, Any] | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "level": self.level.value,
            "message": self.message,
            "correlationId": self.correlation_id,
            "source": self.source,
            "formId": self.form_id,
            "submissionId": self.submission_id,
            "ruleId": self.rule_id,
            "details": self.details,
            "timestamp": self.created_at.isoformat(),
        }


class ProcessingLog:
    """Collects entries for one correlation id."""

    def __init__(
        self,
        correlation_id: str,
        *,
        source: str = "email_processor",
        form_id: str | None = None,
        submission_id: str | None = None,
    ) -> None:
        self.correlation_id = correlation_id
        self.source = source
        self.form_id = form_id
        self.submission_id = submission_id
        self.entries: list[ProcessingLogEntry] = []

    def _add(
        self,
        level: ProcessingLogLevel,
        message: str,
        *,
        rule_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> ProcessingLogEntry:
        entry = ProcessingLogEntry(
            level=level,
            message=message,
            correlation_id=self.correlation_id,
            source=self.source,
            form_id=self.form_id,
            submission_id=self.submission_id,
            rule_id=rule_id,
            details=details,
        )
        self.entries.append(entry)
        logger.log(
            _LEVELS[level],
            message,
            extra=build_log_context(
                correlation_id=self.correlation_id,
                form_id=self.form_id,
                submission_id=self.submission_id,
                rule_id=rule_id,
            ),
        )
        return entry

    def info(self, message: str, **kwargs: Any) -> ProcessingLogEntry:
        return self._add(ProcessingLogLevel.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs: Any) -> ProcessingLogEntry:
        return self._add(ProcessingLogLevel.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs: Any) -> ProcessingLogEntry:
        return self._add(ProcessingLogLevel.ERROR, message, **kwargs)
