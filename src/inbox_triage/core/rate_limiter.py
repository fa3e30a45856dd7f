"""Token bucket rate limiter for classifier calls.

The batch retriage processor is the only bulk caller of the classification
service, so it owns one bucket per run and consumes a token before each call.
Together with a concurrency cap this bounds both the call rate and the number
of in-flight requests.

Usage:
    from inbox_triage.core.rate_limiter import TokenBucket

    limiter = TokenBucket.per_minute(30)
    await limiter.consume()  # waits if the bucket is empty
"""

import asyncio
import time

from inbox_triage.core.errors import RateLimitExceeded
from inbox_triage.core.logging import get_logger

logger = get_logger(__name__)

# Longest a single consume() will sleep before giving up
MAX_WAIT_SECONDS = 20.0


class TokenBucket:
    """Token bucket rate limiter.

    Tokens are added at a fixed rate and each request consumes one. If no
    tokens are available the request is delayed until one becomes available.

    Example:
        limiter = TokenBucket(rate=1.0, capacity=1)

        async def call_classifier():
            await limiter.consume()
            ...
    """

    def __init__(
        self,
        rate: float = 1.0,
        capacity: int = 1,
        initial_tokens: float | None = None,
        max_wait: float = MAX_WAIT_SECONDS,
    ):
        """Initialize a token bucket rate limiter.

        Args:
            rate: Token refill rate per second
            capacity: Maximum number of tokens in the bucket
            initial_tokens: Initial number of tokens (defaults to capacity)
            max_wait: Longest wait in seconds before raising RateLimitExceeded
        """
        if rate <= 0:
            raise ValueError("Token bucket rate must be positive")
        self.rate = rate
        self.capacity = capacity
        self.tokens = float(capacity if initial_tokens is None else initial_tokens)
        self.max_wait = max_wait
        self.last_refill = time.monotonic()
        self.lock = asyncio.Lock()

    @classmethod
    def per_minute(cls, requests_per_minute: int, burst: int = 1) -> "TokenBucket":
        """Build a bucket allowing ``requests_per_minute`` with a small burst.

        The wait limit always covers one full refill interval, so a low rate
        slows callers down instead of failing them.
        """
        rate = requests_per_minute / 60.0
        return cls(
            rate=rate,
            capacity=max(1, burst),
            max_wait=max(MAX_WAIT_SECONDS, 1.0 / rate + 1.0),
        )

    async def consume(self, tokens: int = 1) -> bool:
        """Consume tokens from the bucket, waiting if needed.

        Args:
            tokens: Number of tokens to consume

        Returns:
            True if tokens were consumed

        Raises:
            RateLimitExceeded: If tokens cannot be consumed within max_wait
        """
        if tokens > self.capacity:
            logger.error(
                "rate_limit_tokens_exceed_capacity",
                tokens=tokens,
                capacity=self.capacity,
            )
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
                    "rate_limit_wait_too_long",
                    wait_time=wait_time,
                    tokens_needed=required_tokens,
                )
                raise RateLimitExceeded(f"Rate limit exceeded, would require {wait_time:.2f}s wait")

            # Sleep while holding the lock so waiters are served in order
            logger.debug("rate_limit_waiting", wait_time=wait_time)
            await asyncio.sleep(wait_time)

            self._refill()
            self.tokens = max(0.0, self.tokens - tokens)
            return True

    def _refill(self) -> None:
        """Refill tokens based on elapsed time."""
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)
        self.last_refill = now
