"""Per-run correlation id for email processing."""

import uuid
from contextvars import ContextVar, Token


_CORRELATION_ID: ContextVar[str | None] = ContextVar("email_correlation_id", default=None)


def new_correlation_id() -> str:
    return f"email-{uuid.uuid4().hex[:12]}"


def start_correlation(correlation_id: str | None = None) -> tuple[str, Token]:
    """Bind a correlation id to the current context and return it with its reset token."""
    value = correlation_id or new_correlation_id()
    return value, _CORRELATION_ID.set(value)


def reset_correlation(token: Token) -> None:
    _CORRELATION_ID.reset(token)


def get_correlation_id() -> str | None:
    return _CORRELATION_ID.get()
