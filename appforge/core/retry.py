"""Bounded retry helper for short follow-up lookups against remote APIs.

Used where a remote system is eventually consistent with a call we just made,
e.g. a workflow run that becomes visible a few seconds after its dispatch.
"""

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

from appforge.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_attempts: int = 3
    initial_delay: float = 0.0
    backoff_base: float = 1.0
    backoff_max: float = 5.0
    jitter: bool = False
    retryable_exceptions: tuple[type[Exception], ...] = field(default_factory=lambda: (Exception,))

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the given zero-based failed attempt."""
        delay = min(self.backoff_base * (2**attempt), self.backoff_max)
        if self.jitter:
            delay *= 0.5 + random.random()
        return delay


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    operation_name: str = "operation",
) -> T:
    """
    Execute an async function, retrying retryable failures with backoff.

    The total wall time is bounded by ``initial_delay`` plus the sum of
    ``delay_for(attempt)`` over ``max_attempts - 1`` attempts.

    Args:
        fn: Async function to execute (no arguments)
        config: Retry configuration, uses defaults if not provided
        operation_name: Name for logging purposes

    Returns:
        Result of fn()

    Raises:
        Exception: The last retryable exception if all attempts are exhausted
    """
    config = config or RetryConfig()

    if config.initial_delay > 0:
        await asyncio.sleep(config.initial_delay)

    for attempt in range(config.max_attempts):
        try:
            return await fn()
        except config.retryable_exceptions as e:
            if attempt + 1 >= config.max_attempts:
                logger.bind(
                    operation=operation_name,
                    attempts=config.max_attempts,
                    error=str(e),
                ).warning("retry_exhausted")
                raise

            delay = config.delay_for(attempt)
            logger.bind(
                operation=operation_name,
                attempt=attempt + 1,
                max_attempts=config.max_attempts,
                delay_seconds=round(delay, 2),
                error=str(e),
            ).debug("retry_attempt")
            await asyncio.sleep(delay)

    raise RuntimeError(f"{operation_name}: retry loop exited without a result")
