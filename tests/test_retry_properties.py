"""Property-based tests for retry logic with exponential backoff."""

import asyncio
from unittest.mock import patch

import pytest
import structlog
from hypothesis import given, settings, strategies as st

from todosync.remote.errors import RateLimitedError, TransientNetworkError, UnauthorizedError
from todosync.utils.retry import async_exponential_backoff_retry, exponential_backoff_retry

log = structlog.stdlib.get_logger()


@given(
    st.integers(min_value=1, max_value=5),
    st.floats(min_value=0.01, max_value=2.0),
)
@settings(max_examples=30, deadline=None)
def test_property_exponential_backoff_behavior(num_failures: int, base_delay: float):
    """Property: Exponential backoff behavior.

    For any run of transient failures, each wait doubles the previous one
    until the ceiling is reached.
    """
    log.info(
        "test_property_exponential_backoff_behavior",
        num_failures=num_failures,
        base_delay=base_delay,
    )

    call_count = 0

    @exponential_backoff_retry(
        max_retries=num_failures,
        base_delay=base_delay,
        max_delay=10.0,
        exceptions=(TransientNetworkError,),
    )
    def failing_function():
        nonlocal call_count
        call_count += 1
        if call_count <= num_failures:
            raise TransientNetworkError(f"Simulated failure {call_count}")
        return "success"

    with patch("todosync.utils.retry.time.sleep") as sleep:
        result = failing_function()

    assert result == "success"
    assert call_count == num_failures + 1

    delays = [c.args[0] for c in sleep.call_args_list]
    assert delays == [min(base_delay * (2**i), 10.0) for i in range(num_failures)]


@given(st.integers(min_value=0, max_value=10))
@settings(max_examples=30, deadline=None)
def test_exponential_backoff_max_retries(max_retries: int):
    """Retries stop after ``max_retries`` and the last error propagates."""
    log.info("test_exponential_backoff_max_retries", max_retries=max_retries)

    call_count = 0

    @exponential_backoff_retry(
        max_retries=max_retries,
        base_delay=0.01,
        max_delay=1.0,
        exceptions=(TransientNetworkError,),
    )
    def always_failing_function():
        nonlocal call_count
        call_count += 1
        raise TransientNetworkError("Always fails")

    with patch("todosync.utils.retry.time.sleep"):
        with pytest.raises(TransientNetworkError):
            always_failing_function()

    assert call_count == max_retries + 1


def test_retry_after_overrides_backoff():
    attempts = []

    @exponential_backoff_retry(max_retries=2, base_delay=1.0, exceptions=(TransientNetworkError,))
    def rate_limited():
        attempts.append(1)
        if len(attempts) == 1:
            raise RateLimitedError("slow down", retry_after=12)
        return "ok"

    with patch("todosync.utils.retry.time.sleep") as sleep:
        assert rate_limited() == "ok"
    sleep.assert_called_once_with(12.0)


def test_non_matching_errors_are_not_retried():
    calls = []

    @exponential_backoff_retry(max_retries=3, base_delay=0, exceptions=(TransientNetworkError,))
    def unauthorized():
        calls.append(1)
        raise UnauthorizedError("expired", status_code=401)

    with pytest.raises(UnauthorizedError):
        unauthorized()
    assert len(calls) == 1


@given(st.integers(min_value=0, max_value=4))
@settings(max_examples=20, deadline=None)
def test_property_async_retry_matches_sync_schedule(num_failures: int):
    """Property: the coroutine variant retries the same number of times with the same waits."""
    log.info("test_property_async_retry_matches_sync_schedule", num_failures=num_failures)
    call_count = 0
    waits: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        waits.append(seconds)

    @async_exponential_backoff_retry(
        max_retries=num_failures, base_delay=0.5, max_delay=4.0, exceptions=(TransientNetworkError,)
    )
    async def flaky():
        nonlocal call_count
        call_count += 1
        if call_count <= num_failures:
            raise TransientNetworkError("blip")
        return call_count

    with patch("todosync.utils.retry.asyncio.sleep", fake_sleep):
        result = asyncio.run(flaky())

    assert result == num_failures + 1
    assert waits == [min(0.5 * (2**i), 4.0) for i in range(num_failures)]
