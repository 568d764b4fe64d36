"""Client-side token bucket for outgoing mailbox API calls.

Each HTTP client owns its own bucket, so two users syncing at the same time
never share throttling state.

Default rates:
- Gmail: 10 requests per second, burst of 10
- Microsoft Graph: 10 requests per second, burst of 10
"""

import asyncio
import time

from inbox_actions.core.errors import RateLimitExceeded
from inbox_actions.core.logging import get_logger

logger = get_logger(__name__)

# Never block a single call longer than this waiting for the local bucket
MAX_BUCKET_WAIT_SECONDS = 20.0


class TokenBucket:
    """Token bucket rate limiter.

    Tokens are added at a fixed rate and each request consumes one. If the
    bucket is empty the caller waits until a token becomes available.

    Example:
        limiter = TokenBucket(rate=10.0, capacity=10)

        async def call_api():
            await limiter.consume()
            ...
    """

    def __init__(
        self,
        rate: float = 1.0,
        capacity: int = 1,
        initial_tokens: float | None = None,
        max_wait: float = MAX_BUCKET_WAIT_SECONDS,
    ):
        """Initialize a token bucket rate limiter.

        Args:
            rate: Token refill rate per second
            capacity: Maximum number of tokens in the bucket
            initial_tokens: Initial number of tokens (defaults to capacity)
            max_wait: Longest wait tolerated before raising RateLimitExceeded
        """
        self.rate = rate
        self.capacity = capacity
        self.tokens: float = capacity if initial_tokens is None else initial_tokens
        self.max_wait = max_wait
        self.last_refill = time.monotonic()
        self.lock = asyncio.Lock()

    async def consume(self, tokens: int = 1) -> bool:
        """Consume tokens from the bucket, waiting if needed.

        Args:
            tokens: Number of tokens to consume

        Returns:
            True if tokens were consumed

        Raises:
            RateLimitExceeded: If the wait would exceed max_wait
        """
        if tokens > self.capacity:
            raise RateLimitExceeded(
                f"Requested tokens ({tokens}) exceed bucket capacity ({self.capacity})"
            )

        async with self.lock:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return True

            required_tokens = tokens - self.tokens
            wait_time = required_tokens / self.rate

            if wait_time > self.max_wait:
                logger.warning(
                    "Rate limit would require excessive wait",
                    wait_time=wait_time,
                    tokens_needed=required_tokens,
                )
                raise RateLimitExceeded(
                    f"Rate limit exceeded, would require {wait_time:.2f}s wait",
                    retry_after=wait_time,
                )

            # Sleep while holding the lock so waiters are served in order
            logger.debug(
                "Waiting for token bucket refill",
                wait_time=wait_time,
                tokens_needed=required_tokens,
            )
            await asyncio.sleep(wait_time)
            self._refill()
            self.tokens = max(self.tokens - tokens, 0.0)
            return True

    def _refill(self) -> None:
        """Refill tokens based on elapsed time."""
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)
        self.last_refill = now
