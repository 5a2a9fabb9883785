"""Tests for the bounded retry helper."""

import pytest

from appforge.core.retry import RetryConfig, retry_with_backoff

pytestmark = pytest.mark.asyncio

FAST = RetryConfig(max_attempts=3, backoff_base=0.0, backoff_max=0.0)


class TestRetryWithBackoff:
    """Tests for retry_with_backoff."""

    async def test_returns_first_success(self):
        calls = 0

        async def fn() -> str:
            nonlocal calls
            calls += 1
            return "ok"

        assert await retry_with_backoff(fn, FAST) == "ok"
        assert calls == 1

    async def test_retries_until_success(self):
        """Retryable failures are retried within max_attempts."""
        calls = 0

        async def fn() -> str:
            nonlocal calls
            calls += 1
            if calls < 3:
                raise LookupError("not yet")
            return "ok"

        assert await retry_with_backoff(fn, FAST) == "ok"
        assert calls == 3

    async def test_raises_after_exhaustion(self):
        """The last error propagates once attempts are used up."""
        calls = 0

        async def fn() -> str:
            nonlocal calls
            calls += 1
            raise LookupError("never")

        with pytest.raises(LookupError):
            await retry_with_backoff(fn, FAST)
        assert calls == 3

    async def test_non_retryable_propagates_immediately(self):
        """Exceptions outside retryable_exceptions are not retried."""
        config = RetryConfig(max_attempts=3, backoff_base=0.0, retryable_exceptions=(LookupError,))
        calls = 0

        async def fn_value() -> str:
            nonlocal calls
            calls += 1
            raise ValueError("boom")

        with pytest.raises(ValueError):
            await retry_with_backoff(fn_value, config)
        assert calls == 1

    async def test_delay_is_capped(self):
        config = RetryConfig(backoff_base=1.0, backoff_max=2.0)
        assert config.delay_for(0) == 1.0
        assert config.delay_for(5) == 2.0
