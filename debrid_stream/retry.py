"""
Retry Logic and Rate Limiting for Debrid-Stream
Provides resilient provider calls with exponential backoff and per-client request budgets.
"""

import asyncio
import logging
import random
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Awaitable, TypeVar

from .exceptions import ProviderTransientError, RateLimitExceededError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = True
    jitter_factor: float = 0.5  # Random factor 0.5-1.5x

    # One first attempt plus three retries of the same availability batch
    availability_max_attempts: int = 4


def is_transient(error: Exception) -> bool:
    """True for errors worth another attempt: timeouts and dropped connections."""
    return isinstance(error, (ProviderTransientError, ConnectionError, TimeoutError, asyncio.TimeoutError))


class RetryHandler:
    """
    Handle retries with exponential backoff.
    Provides configurable retry logic for provider operations.
    """

    def __init__(self, config: RetryConfig = None):
        self.config = config or RetryConfig()

    async def with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_id: str = None,
        max_attempts: int = None,
        should_retry: Callable[[Exception], bool] = None,
    ) -> T:
        """
        Execute operation with retry logic.

        Args:
            operation: Async callable to execute
            operation_id: Name used in log messages (optional)
            max_attempts: Override max attempts (optional)
            should_retry: Custom function to determine if error is retryable

        Returns:
            Result from operation

        Raises:
            Last exception if all retries fail
        """
        max_attempts = max_attempts or self.config.max_attempts
        operation_id = operation_id or f"op_{id(operation)}"
        should_retry = should_retry or is_transient

        for attempt in range(1, max_attempts + 1):
            try:
                result = await operation()
            except Exception as e:
                if not should_retry(e):
                    logger.debug(
                        f"Operation {operation_id} failed with non-retryable error: {e}"
                    )
                    raise

                if attempt >= max_attempts:
                    logger.warning(
                        f"Operation {operation_id} failed after {attempt} attempts: {e}"
                    )
                    raise

                delay = self._calculate_delay(attempt)
                logger.warning(
                    f"Operation {operation_id} failed (attempt {attempt}/{max_attempts}), "
                    f"retrying in {delay:.1f}s: {e}"
                )
                await asyncio.sleep(delay)
                continue

            if attempt > 1:
                logger.info(f"Operation {operation_id} succeeded on attempt {attempt}")
            return result

    def _calculate_delay(self, attempt: int) -> float:
        """Calculate delay with exponential backoff and optional jitter."""
        delay = self.config.initial_delay * (
            self.config.exponential_base ** (attempt - 1)
        )
        delay = min(delay, self.config.max_delay)

        if self.config.jitter:
            jitter = 1.0 + (random.random() * 2 - 1) * self.config.jitter_factor
            delay = delay * jitter

        return max(0.0, delay)


class RateLimiter:
    """
    Token bucket rate limiter.
    """

    def __init__(
        self,
        rate: float = 10.0,  # requests per second
        burst: int = 20,     # max burst size
    ):
        self.rate = rate
        self.burst = burst
        self._tokens = float(burst)
        self._last_update = time.monotonic()

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self._last_update
        self._last_update = now
        self._tokens = min(float(self.burst), self._tokens + elapsed * self.rate)

    def try_acquire(self) -> bool:
        """Take a token without waiting. Returns False when the bucket is empty."""
        self._refill()
        if self._tokens >= 1.0:
            self._tokens -= 1.0
            return True
        return False

    @property
    def idle(self) -> bool:
        """True once the bucket has refilled completely."""
        self._refill()
        return self._tokens >= self.burst


class ClientRateLimiter:
    """
    One token bucket per client key (usually the client IP).
    Full buckets are dropped once the table exceeds max_clients.
    """

    def __init__(self, rate: float, burst: int, max_clients: int = 10000):
        self.rate = rate
        self.burst = burst
        self.max_clients = max_clients
        self._buckets: "OrderedDict[str, RateLimiter]" = OrderedDict()

    def allow(self, client_key: str) -> bool:
        """Consume one request from the client's budget."""
        bucket = self._buckets.get(client_key)
        if bucket is None:
            self._prune()
            bucket = RateLimiter(rate=self.rate, burst=self.burst)
            self._buckets[client_key] = bucket
        else:
            self._buckets.move_to_end(client_key)

        allowed = bucket.try_acquire()
        if not allowed:
            logger.info(f"Rate limit exceeded for client {client_key}")
        return allowed

    def check(self, client_key: str) -> None:
        """
        Like allow, but raises when the budget is spent.

        Raises:
            RateLimitExceededError: the client has no request left
        """
        if not self.allow(client_key):
            raise RateLimitExceededError(client_key)

    def _prune(self) -> None:
        if len(self._buckets) < self.max_clients:
            return
        for key in [k for k, b in self._buckets.items() if b.idle]:
            del self._buckets[key]
        while len(self._buckets) >= self.max_clients:
            self._buckets.popitem(last=False)
