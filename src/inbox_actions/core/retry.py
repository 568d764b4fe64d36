"""Bounded retry with exponential backoff for mailbox backends.

Only throttling (RateLimitExceeded) and transient network failures are
retried. Everything else, including ReconnectRequiredError, propagates on the
first occurrence.

Usage:
    from inbox_actions.core.retry import RetryPolicy, call_with_retry

    policy = RetryPolicy(max_attempts=3, delays=(1.0, 2.0, 4.0))
    data = await call_with_retry(lambda: client.fetch(...), policy, operation="list")
"""

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from inbox_actions.core.errors import RateLimitExceeded, TransientNetworkError
from inbox_actions.core.logging import get_logger

if TYPE_CHECKING:
    from inbox_actions.config_schema import RetryConfig

logger = get_logger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_DELAYS = (1.0, 2.0, 4.0)

RETRYABLE_ERRORS = (RateLimitExceeded, TransientNetworkError)


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to try, and how long to wait in between.

    Attributes:
        max_attempts: Total attempts, including the first one
        delays: Backoff delay per retry; the last value repeats
        jitter: Fractional jitter applied to every delay (0.2 means ±20%)
        max_retry_after: Cap on server-provided Retry-After values
    """

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    delays: tuple[float, ...] = DEFAULT_RETRY_DELAYS
    jitter: float = 0.2
    max_retry_after: float = 60.0

    @classmethod
    def from_config(cls, config: "RetryConfig") -> "RetryPolicy":
        return cls(
            max_attempts=config.max_attempts,
            delays=tuple(config.backoff_delays),
            max_retry_after=config.max_retry_after_seconds,
        )

    def delay_for(self, retry_index: int, error: Exception) -> float:
        """Delay before retry number retry_index (0-based).

        A Retry-After hint from the server wins over the backoff table.
        """
        if isinstance(error, RateLimitExceeded) and error.retry_after is not None:
            base_delay = min(max(error.retry_after, 0.0), self.max_retry_after)
        elif retry_index < len(self.delays):
            base_delay = self.delays[retry_index]
        else:
            base_delay = self.delays[-1] if self.delays else 0.0

        if self.jitter:
            base_delay += base_delay * self.jitter * (2 * random.random() - 1)
        return max(base_delay, 0.0)


async def call_with_retry[T](
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    operation_name: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run operation, retrying throttled and transient failures.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt
        policy: Retry bounds and delays
        operation_name: Label used in log lines
        sleep: Injectable sleep (tests pass a recorder)

    Returns:
        Whatever the first successful attempt returns

    Raises:
        RateLimitExceeded, TransientNetworkError: When attempts are exhausted
        Any other exception raised by operation, unchanged
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except RETRYABLE_ERRORS as e:
            if attempt >= policy.max_attempts:
                logger.warning(
                    "retries_exhausted",
                    operation=operation_name,
                    attempts=attempt,
                    error_type=type(e).__name__,
                )
                raise

            delay = policy.delay_for(attempt - 1, e)
            logger.warning(
                "retrying_after_error",
                operation=operation_name,
                attempt=attempt,
                max_attempts=policy.max_attempts,
                error_type=type(e).__name__,
                delay=round(delay, 2),
            )
            await sleep(delay)
