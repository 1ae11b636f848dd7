"""
Response Cache for Debrid-Stream
Wraps expensive computations with outcome-dependent TTLs and advertises staleness metadata.
"""

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Union

from .exceptions import CacheStoreError
from .storage import CacheStore

logger = logging.getLogger(__name__)

STREAM_TTL = 4 * 60 * 60  # 4 hours
STREAM_EMPTY_TTL = 30 * 60  # 30 minutes
RESOLVED_URL_TTL = 60  # 1 minute

CACHE_MAX_AGE = 4 * 60 * 60  # 4 hours
CACHE_MAX_AGE_EMPTY = 60  # 60 seconds
STALE_REVALIDATE_AGE = 4 * 60 * 60  # 4 hours
STALE_ERROR_AGE = 7 * 24 * 60 * 60  # 7 days

TtlPolicy = Union[float, Callable[[Any], float]]


def stream_ttl_policy(
    ttl: float = STREAM_TTL,
    empty_ttl: float = STREAM_EMPTY_TTL,
) -> Callable[[Any], float]:
    """Empty results are kept briefly in case they came from timeouts or failures."""
    def policy(streams: Any) -> float:
        return ttl if streams else empty_ttl
    return policy


class ResponseCache:
    """
    Memoizes async computations in a cache store.

    A hit returns the stored value without calling compute. Concurrent misses
    on one key each compute and the last write wins. With enabled=False every
    call passes straight through to compute.
    """

    def __init__(
        self,
        store: Optional[CacheStore],
        key_prefix: str,
        ttl: TtlPolicy,
        enabled: bool = True,
        ignore_errors: bool = True,
    ):
        self._store = store
        self.key_prefix = key_prefix
        self.ttl = ttl
        self.enabled = enabled and store is not None
        self.ignore_errors = ignore_errors
        self._hits = 0
        self._misses = 0

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}:{key}"

    def _ttl_for(self, value: Any, ttl: Optional[TtlPolicy]) -> float:
        policy = self.ttl if ttl is None else ttl
        return policy(value) if callable(policy) else policy

    async def get(self, key: str) -> Optional[Any]:
        if not self.enabled:
            return None
        try:
            return await self._store.get(self._key(key))
        except CacheStoreError as e:
            if not self.ignore_errors:
                raise
            logger.warning(f"Cache read failed for {key}: {e}")
            return None

    async def set(self, key: str, value: Any, ttl: Optional[TtlPolicy] = None) -> None:
        if not self.enabled:
            return
        try:
            await self._store.set(self._key(key), value, self._ttl_for(value, ttl))
        except CacheStoreError as e:
            if not self.ignore_errors:
                raise
            logger.warning(f"Cache write failed for {key}: {e}")

    async def wrap(
        self,
        key: str,
        compute: Callable[[], Awaitable[Any]],
        ttl: Optional[TtlPolicy] = None,
        should_cache: Optional[Callable[[Any], bool]] = None,
    ) -> Any:
        """
        Return the cached value for key, computing and storing it on a miss.

        Args:
            key: Cache key inside this cache's namespace
            compute: Async callable producing the value
            ttl: Override the cache's TTL policy (seconds or callable on the value)
            should_cache: Predicate deciding whether a computed value is stored
        """
        if not self.enabled:
            return await compute()

        cached = await self.get(key)
        if cached is not None:
            self._hits += 1
            return cached

        self._misses += 1
        value = await compute()
        if value is not None and (should_cache is None or should_cache(value)):
            await self.set(key, value, ttl)
        return value

    def get_stats(self) -> dict:
        return {
            "prefix": self.key_prefix,
            "enabled": self.enabled,
            "hits": self._hits,
            "misses": self._misses,
        }


@dataclass
class StreamResponse:
    """A stream list with the freshness hints advertised to clients."""
    streams: List[dict]
    cache_max_age: int
    stale_revalidate: int
    stale_error: int

    def to_dict(self) -> dict:
        return {
            "streams": self.streams,
            "cacheMaxAge": self.cache_max_age,
            "staleRevalidate": self.stale_revalidate,
            "staleError": self.stale_error,
        }


def stream_response(
    streams: List[dict],
    cache_max_age: int = CACHE_MAX_AGE,
    cache_max_age_empty: int = CACHE_MAX_AGE_EMPTY,
) -> StreamResponse:
    return StreamResponse(
        streams=streams,
        cache_max_age=cache_max_age if streams else cache_max_age_empty,
        stale_revalidate=STALE_REVALIDATE_AGE,
        stale_error=STALE_ERROR_AGE,
    )
