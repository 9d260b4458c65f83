"""Tests for the send retry policy."""

import pytest

from officiant.services.email_errors import DeliveryConfigError, DeliveryTransientError
from officiant.services.retry import RetryPolicy, attempt


def _recording_sleep(delays):
    async def sleep(seconds):
        delays.append(seconds)

    return sleep


@pytest.mark.asyncio
async def test_retries_transient_errors_with_exponential_backoff():
    calls = {"count": 0}
    delays = []

    async def fn():
        calls["count"] += 1
        if calls["count"] < 3:
            raise DeliveryTransientError("timeout")
        return "ok"

    result = await attempt(fn, RetryPolicy(max_retries=2, base_delay=0.5), sleep=_recording_sleep(delays))

    assert result.ok
    assert result.value == "ok"
    assert result.attempts == 3
    assert delays == [0.5, 1.0]


@pytest.mark.asyncio
async def test_default_policy_makes_two_attempts():
    calls = {"count": 0}

    async def fn():
        calls["count"] += 1
        raise DeliveryTransientError("down")

    result = await attempt(fn, RetryPolicy(), sleep=_recording_sleep([]))

    assert not result.ok
    assert calls["count"] == 2
    assert isinstance(result.error, DeliveryTransientError)


@pytest.mark.asyncio
async def test_config_errors_fail_fast():
    calls = {"count": 0}

    async def fn():
        calls["count"] += 1
        raise DeliveryConfigError("missing credentials")

    result = await attempt(fn, RetryPolicy(max_retries=3), sleep=_recording_sleep([]))

    assert calls["count"] == 1
    assert result.attempts == 1
    assert str(result.error) == "missing credentials"


@pytest.mark.asyncio
async def test_unexpected_errors_propagate():
    async def fn():
        raise KeyError("bug")

    with pytest.raises(KeyError):
        await attempt(fn, RetryPolicy(), sleep=_recording_sleep([]))


def test_delay_is_capped():
    policy = RetryPolicy(max_retries=10, base_delay=1.0, max_delay=4.0)
    assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 4.0]
