"""Bounded retry with exponential backoff for outbound sends."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, TypeVar

import anyio

from officiant.core.config import settings
from officiant.services.email_errors import DeliveryError, DeliveryTransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """``max_retries`` extra attempts after the first, waiting ``base_delay * 2**(n-1)``."""

    max_retries: int = 1
    base_delay: float = 0.5
    max_delay: float = 8.0

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_retries=settings.EMAIL_MAX_RETRIES,
            base_delay=settings.EMAIL_RETRY_BASE_DELAY,
        )

    @property
    def max_attempts(self) -> int:
        return max(0, self.max_retries) + 1

    def delay_for(self, retry_number: int) -> float:
        """Delay before retry ``retry_number`` (1-based)."""
        return min(self.max_delay, self.base_delay * (2 ** (retry_number - 1)))


@dataclass(frozen=True)
class AttemptResult(Generic[T]):
    value: T | None
    error: DeliveryError | None
    attempts: int

    @property
    def ok(self) -> bool:
        return self.error is None


async def attempt(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    retry_on: tuple[type[BaseException], ...] = (DeliveryTransientError,),
    sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
) -> AttemptResult[T]:
    """
    Run ``fn`` until it succeeds or the policy is exhausted.

    Only ``retry_on`` errors are retried. Any ``DeliveryError`` is returned
    in the result; other exceptions propagate.
    """
    error: DeliveryError | None = None
    for attempt_number in range(1, policy.max_attempts + 1):
        try:
            value = await fn()
        except DeliveryError as exc:
            error = exc
            if not isinstance(exc, retry_on) or attempt_number >= policy.max_attempts:
                return AttemptResult(value=None, error=exc, attempts=attempt_number)
            delay = policy.delay_for(attempt_number)
            logger.warning(
                "Send attempt %s/%s failed, retrying in %.2fs: %s",
                attempt_number,
                policy.max_attempts,
                delay,
                exc,
            )
            if delay:
                await sleep(delay)
            continue
        return AttemptResult(value=value, error=None, attempts=attempt_number)
    return AttemptResult(value=None, error=error, attempts=policy.max_attempts)
