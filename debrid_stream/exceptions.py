"""
Custom exception hierarchy for Debrid-Stream.
Provides specific exception types for provider, resolution and admission errors.
"""

from typing import Any


class DebridStreamError(Exception):
    """Base exception for all Debrid-Stream errors."""

    def __init__(self, message: str, details: str | None = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


# Configuration errors
class ConfigurationError(DebridStreamError):
    """Raised when there's a configuration problem."""

    pass


# Provider errors
class ProviderError(DebridStreamError):
    """Base exception for debrid provider API errors."""

    def __init__(
        self,
        message: str,
        code: int | None = None,
        status: int | None = None,
        payload: Any = None,
    ):
        super().__init__(message)
        self.code = code
        self.status = status
        self.payload = payload


class ProviderTransientError(ProviderError):
    """Raised on timeouts, DNS failures and gateway errors. Safe to retry."""

    pass


class MalformedResponseError(ProviderError):
    """Raised when the provider returns an empty or non-JSON body."""

    pass


class AuthenticationError(DebridStreamError):
    """Raised when the provider rejects the account credentials."""

    pass


class BadTokenError(ProviderError, AuthenticationError):
    """Raised when the provider reports an invalid or expired API key."""

    def __init__(self, message: str = "Bad token", **kwargs):
        super().__init__(message, **kwargs)


class AccessDeniedError(ProviderError):
    """Raised when the account is not allowed to perform the operation."""

    pass


class LinkConsumedError(ProviderError):
    """Raised when a provider link was already used or has expired."""

    pass


# Resolution errors
class ResolveFailedError(DebridStreamError):
    """Raised when a torrent could not be resolved for an unclassified reason."""

    def __init__(
        self,
        info_hash: str,
        file_index: int | None,
        message: str | None = None,
        payload: Any = None,
    ):
        super().__init__(
            message or f"Failed resolving {info_hash} [{file_index}]",
            details=str(payload) if payload is not None else None,
        )
        self.info_hash = info_hash
        self.file_index = file_index
        self.payload = payload


class FileSelectionError(DebridStreamError):
    """Raised when the files of a remote job cannot be selected."""

    def __init__(self, job_id: str, message: str | None = None, opening: bool = False):
        super().__init__(message or f"Failed file selection for job {job_id}")
        self.job_id = job_id
        self.opening = opening


# Validation errors
class ValidationError(DebridStreamError):
    """Raised when input validation fails."""

    pass


class InvalidHashError(ValidationError):
    """Raised when a torrent info hash is invalid."""

    def __init__(self, info_hash: str, message: str | None = None):
        super().__init__(message or f"Invalid info hash: {info_hash}")
        self.info_hash = info_hash


# Resilience errors
class SchedulerRejectedError(DebridStreamError):
    """Raised when the scheduler wait queue is full."""

    def __init__(self, max_concurrent: int, high_water: int):
        super().__init__(
            "Scheduler queue is full",
            details=f"max_concurrent={max_concurrent}, high_water={high_water}",
        )
        self.max_concurrent = max_concurrent
        self.high_water = high_water


class RateLimitExceededError(DebridStreamError):
    """Raised when a client exceeds its request budget."""

    def __init__(self, client_key: str):
        super().__init__(f"Rate limit exceeded for {client_key}")
        self.client_key = client_key


# Cache errors
class CacheStoreError(DebridStreamError):
    """Base exception for cache backend errors."""

    pass
