"""
Tests for retry logic and rate limiting (retry.py).
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from debrid_stream.exceptions import (
    BadTokenError,
    ProviderTransientError,
    RateLimitExceededError,
)
from debrid_stream.retry import (
    ClientRateLimiter,
    RateLimiter,
    RetryConfig,
    RetryHandler,
    is_transient,
)


class TestRetryConfig:
    """Test RetryConfig dataclass."""

    def test_default_values(self):
        """Test default configuration values."""
        config = RetryConfig()
        assert config.max_attempts == 3
        assert config.initial_delay == 1.0
        assert config.max_delay == 60.0
        assert config.exponential_base == 2.0
        assert config.jitter is True
        assert config.availability_max_attempts == 4


class TestRetryHandler:
    """Test RetryHandler class."""

    @pytest.fixture
    def handler(self, retry_config):
        return RetryHandler(retry_config)

    @pytest.mark.asyncio
    async def test_successful_operation(self, handler):
        """Test operation that succeeds on first try."""
        operation = AsyncMock(return_value="success")

        result = await handler.with_retry(operation, "test_op")

        assert result == "success"
        assert operation.call_count == 1

    @pytest.mark.asyncio
    async def test_retry_on_transient_error(self, handler):
        """Test transient provider errors are retried."""
        operation = AsyncMock(side_effect=[
            ProviderTransientError("Real-Debrid HTTP 504 for /torrents", status=504),
            "success",
        ])

        result = await handler.with_retry(operation, "test_op")

        assert result == "success"
        assert operation.call_count == 2

    @pytest.mark.asyncio
    async def test_max_attempts_exceeded(self, handler):
        """Test the last error is raised once attempts run out."""
        operation = AsyncMock(side_effect=ProviderTransientError("timed out"))

        with pytest.raises(ProviderTransientError):
            await handler.with_retry(operation, "test_op")

        assert operation.call_count == 3

    @pytest.mark.asyncio
    async def test_max_attempts_override(self, handler):
        """Test max_attempts overrides the configured count."""
        operation = AsyncMock(side_effect=ProviderTransientError("timed out"))

        with pytest.raises(ProviderTransientError):
            await handler.with_retry(operation, "availability", max_attempts=4)

        assert operation.call_count == 4

    @pytest.mark.asyncio
    async def test_bad_token_is_not_retried(self, handler):
        """Test authentication failures fail immediately."""
        operation = AsyncMock(side_effect=BadTokenError("Real-Debrid error: bad_token", code=8))

        with pytest.raises(BadTokenError):
            await handler.with_retry(operation, "test_op")

        assert operation.call_count == 1

    @pytest.mark.asyncio
    async def test_custom_should_retry(self, handler):
        """Test a custom predicate decides what is retried."""
        operation = AsyncMock(side_effect=[ValueError("first"), "success"])

        result = await handler.with_retry(
            operation,
            "test_op",
            should_retry=lambda e: isinstance(e, ValueError),
        )

        assert result == "success"



class TestIsTransient:
    """Test error classification."""

    def test_transient_provider_error(self):
        assert is_transient(ProviderTransientError("HTTP 502", status=502))

    def test_connection_and_timeout_errors(self):
        assert is_transient(ConnectionError("refused"))
        assert is_transient(asyncio.TimeoutError())

    def test_bad_token(self):
        assert not is_transient(BadTokenError("Real-Debrid error: bad_token", code=8))

    def test_plain_error(self):
        assert not is_transient(ValueError("timed out"))


class TestDelayCalculation:
    """Test backoff delays."""

    def test_exponential_backoff_no_jitter(self):
        """Test delays double without jitter."""
        handler = RetryHandler(RetryConfig(initial_delay=1.0, exponential_base=2.0, jitter=False))

        assert handler._calculate_delay(1) == 1.0
        assert handler._calculate_delay(2) == 2.0
        assert handler._calculate_delay(3) == 4.0

    def test_max_delay_cap(self):
        """Test delays are capped."""
        handler = RetryHandler(RetryConfig(initial_delay=10.0, max_delay=15.0, jitter=False))

        assert handler._calculate_delay(3) == 15.0

    def test_jitter_stays_in_range(self):
        """Test jitter keeps delays within the jitter factor."""
        handler = RetryHandler(RetryConfig(initial_delay=1.0, jitter=True, jitter_factor=0.5))

        delays = [handler._calculate_delay(1) for _ in range(50)]

        assert all(0.5 <= d <= 1.5 for d in delays)


class TestRateLimiter:
    """Test the token bucket."""

    def test_try_acquire_until_empty(self):
        """Test the burst is spent then requests are refused."""
        limiter = RateLimiter(rate=0.001, burst=2)

        assert limiter.try_acquire()
        assert limiter.try_acquire()
        assert not limiter.try_acquire()

    def test_refills_over_time(self):
        """Test an empty bucket refills at the configured rate."""
        limiter = RateLimiter(rate=1000.0, burst=1)
        assert limiter.try_acquire()

        limiter._last_update -= 1.0

        assert limiter.idle
        assert limiter.try_acquire()


class TestClientRateLimiter:
    """Test per-client budgets."""

    def test_clients_have_separate_budgets(self):
        """Test one client running out does not affect another."""
        limiter = ClientRateLimiter(rate=0.001, burst=1)

        assert limiter.allow("10.0.0.1")
        assert not limiter.allow("10.0.0.1")
        assert limiter.allow("10.0.0.2")

    def test_check_raises(self):
        """Test check raises once the budget is spent."""
        limiter = ClientRateLimiter(rate=0.001, burst=1)
        limiter.check("10.0.0.1")

        with pytest.raises(RateLimitExceededError) as exc_info:
            limiter.check("10.0.0.1")
        assert exc_info.value.client_key == "10.0.0.1"

    def test_table_is_bounded(self):
        """Test the oldest clients are dropped once the table is full."""
        limiter = ClientRateLimiter(rate=0.001, burst=5, max_clients=3)

        for n in range(5):
            limiter.allow(f"10.0.0.{n}")

        assert len(limiter._buckets) <= 3
