"""Token bucket rate limiting for outbound API calls.

Two buckets are used by the sync pipeline:
- gmail_api: consumed synchronously by GmailClient before every HTTP request
  (the client runs inside a worker thread)
- claude_api: consumed asynchronously by FactExtractor before every
  extraction call

Gmail enforces per-user quota units; 5 requests per second keeps a
100-message sync comfortably inside it. Claude limits depend on the
account tier, so its rate is configurable.
"""

import asyncio
import threading
import time

from jobtracker.core.errors import RateLimitExceeded
from jobtracker.core.logging import get_logger

logger = get_logger(__name__)

# Longest a caller may be asked to wait before we give up
MAX_WAIT_SECONDS = 20.0


class TokenBucket:
    """Token bucket rate limiter.

    Tokens refill continuously at ``rate`` per second up to ``capacity``.
    Each call consumes one or more tokens and waits when the bucket is
    empty. Waits longer than MAX_WAIT_SECONDS raise RateLimitExceeded
    instead of blocking.
    """

    def __init__(
        self,
        rate: float = 1.0,
        capacity: int = 1,
        initial_tokens: int | None = None,
    ):
        """Initialize a token bucket.

        Args:
            rate: Token refill rate per second
            capacity: Maximum number of tokens in the bucket
            initial_tokens: Initial number of tokens (defaults to capacity)
        """
        self.rate = rate
        self.capacity = capacity
        self.tokens = capacity if initial_tokens is None else initial_tokens
        self.last_refill = time.time()
        self.lock = asyncio.Lock()
        self.sync_lock = threading.Lock()

    def _check_request(self, tokens: int) -> None:
        if tokens > self.capacity:
            logger.error(
                "Attempted to consume more tokens than bucket capacity",
                tokens=tokens,
                capacity=self.capacity,
            )
            raise RateLimitExceeded(
                f"Requested tokens ({tokens}) exceed bucket capacity ({self.capacity})"
            )

    def _wait_time(self, tokens: int) -> float:
        """Return seconds to wait for ``tokens``; 0 when they were taken now."""
        self._refill()
        if self.tokens >= tokens:
            self.tokens -= tokens
            return 0.0

        required_tokens = tokens - self.tokens
        wait_time = required_tokens / self.rate
        if wait_time > MAX_WAIT_SECONDS:
            logger.warning(
                "Rate limit would require excessive wait",
                wait_time=wait_time,
                tokens_needed=required_tokens,
            )
            raise RateLimitExceeded(f"Rate limit exceeded, would require {wait_time:.2f}s wait")
        return wait_time

    def _take_after_wait(self, tokens: int) -> None:
        self._refill()
        if self.tokens < tokens:
            logger.error(
                "Failed to get enough tokens even after waiting",
                tokens=self.tokens,
                required=tokens,
            )
            raise RateLimitExceeded("Failed to get enough tokens even after waiting")
        self.tokens -= tokens

    async def consume(self, tokens: int = 1) -> bool:
        """Consume tokens from the bucket, awaiting a refill if needed.

        Raises:
            RateLimitExceeded: If tokens cannot be consumed even after waiting
        """
        self._check_request(tokens)

        async with self.lock:
            wait_time = self._wait_time(tokens)
        if wait_time == 0.0:
            return True

        # Lock is released while sleeping so other consumers can check
        logger.debug("Waiting for token bucket refill", wait_time=wait_time)
        await asyncio.sleep(wait_time)

        async with self.lock:
            self._take_after_wait(tokens)
        return True

    def consume_sync(self, tokens: int = 1) -> bool:
        """Thread-safe blocking version of consume() for worker threads.

        Raises:
            RateLimitExceeded: If tokens cannot be consumed even after waiting
        """
        self._check_request(tokens)

        with self.sync_lock:
            wait_time = self._wait_time(tokens)
        if wait_time == 0.0:
            return True

        logger.debug("Waiting for token bucket refill (sync)", wait_time=wait_time)
        time.sleep(wait_time)

        with self.sync_lock:
            self._take_after_wait(tokens)
        return True

    def _refill(self) -> None:
        """Refill tokens based on elapsed time."""
        now = time.time()
        elapsed = now - self.last_refill
        self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)
        self.last_refill = now


# Process-wide buckets, one per external service
_buckets: dict[str, TokenBucket] = {}


def get_bucket(name: str = "default", rate: float = 1.0, capacity: int = 1) -> TokenBucket:
    """Get or create the named token bucket.

    Rate and capacity only apply when the bucket is created.
    """
    if name not in _buckets:
        _buckets[name] = TokenBucket(rate=rate, capacity=capacity)

    return _buckets[name]


def reset_buckets() -> None:
    """Drop all buckets. Primarily for testing."""
    _buckets.clear()
