"""
Stream Engine
Owns the caches, scheduler and resolver for one provider and exposes the resolution entry points.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

from .availability import (
    AVAILABILITY_EMPTY_TTL,
    AVAILABILITY_TTL,
    AvailabilityCache,
    BatchAvailabilityClient,
    TorrentDescriptor,
)
from .magnet import normalize_info_hash
from .provider import DebridProvider
from .resolver import ResolveResult, TorrentLifecycleResolver
from .response_cache import (
    RESOLVED_URL_TTL,
    STREAM_EMPTY_TTL,
    STREAM_TTL,
    ResponseCache,
    stream_ttl_policy,
)
from .retry import RetryHandler
from .scheduler import AdmissionScheduler
from .storage import RESOLVED_URL_KEY_PREFIX, STREAM_KEY_PREFIX, CacheStore, MemoryCacheStore

logger = logging.getLogger(__name__)


class StreamEngine:
    """
    Wires one provider to its caches and the admission scheduler.

    Resolved URLs live in a process-local store even when the shared store is
    durable: they are short lived and bound to the requesting account.
    """

    def __init__(
        self,
        provider: DebridProvider,
        store: CacheStore,
        scheduler: Optional[AdmissionScheduler] = None,
        resolver: Optional[TorrentLifecycleResolver] = None,
        retry_handler: Optional[RetryHandler] = None,
        resolved_url_store: Optional[CacheStore] = None,
        no_cache: bool = False,
        stream_ttl: float = STREAM_TTL,
        stream_empty_ttl: float = STREAM_EMPTY_TTL,
        resolved_url_ttl: float = RESOLVED_URL_TTL,
        availability_ttl: float = AVAILABILITY_TTL,
        availability_empty_ttl: float = AVAILABILITY_EMPTY_TTL,
    ):
        self.provider = provider
        self.store = store
        self.no_cache = no_cache
        self.scheduler = scheduler or AdmissionScheduler()
        self.resolver = resolver or TorrentLifecycleResolver(provider, retry_handler=retry_handler)
        self.availability = BatchAvailabilityClient(
            provider,
            AvailabilityCache(
                store,
                ttl=availability_ttl,
                empty_ttl=availability_empty_ttl,
                enabled=not no_cache,
            ),
            retry_handler=retry_handler,
        )
        self.stream_cache = ResponseCache(
            store,
            STREAM_KEY_PREFIX,
            stream_ttl_policy(stream_ttl, stream_empty_ttl),
            enabled=not no_cache,
        )
        self._resolved_url_store = resolved_url_store or MemoryCacheStore()
        self.resolved_url_cache = ResponseCache(
            self._resolved_url_store,
            RESOLVED_URL_KEY_PREFIX,
            resolved_url_ttl,
            enabled=not no_cache,
        )

    async def initialize(self) -> None:
        await self.store.initialize()
        await self._resolved_url_store.initialize()
        logger.info(
            f"Stream engine ready for {self.provider.key} "
            f"(max_concurrent={self.scheduler.max_concurrent}, "
            f"high_water={self.scheduler.high_water}, no_cache={self.no_cache})"
        )

    async def close(self) -> None:
        await self.provider.close()
        await self._resolved_url_store.close()
        await self.store.close()

    async def resolve_stream(
        self,
        info_hash: str,
        file_index: Optional[int],
        api_key: str,
        cached_file_id_hint: Optional[str] = None,
        client_ip: Optional[str] = None,
    ) -> ResolveResult:
        """
        Resolve a torrent file through the scheduler.

        Direct URLs are memoized per account for a minute; pending reasons
        are returned uncached so the client can poll.

        Raises:
            SchedulerRejectedError: the scheduler is saturated
            AuthenticationError: the provider rejected api_key
            ResolveFailedError: any unclassified provider failure
        """
        info_hash = normalize_info_hash(info_hash)
        key = f"{self.provider.key}:{api_key}:{info_hash}:{file_index}"

        async def compute() -> ResolveResult:
            return await self.scheduler.schedule(
                lambda: self.resolver.resolve(
                    info_hash,
                    file_index,
                    api_key,
                    cached_file_id_hint=cached_file_id_hint,
                    client_ip=client_ip,
                )
            )

        return await self.resolved_url_cache.wrap(
            key,
            compute,
            should_cache=lambda result: isinstance(result, str),
        )

    async def list_cached_availability(
        self,
        descriptors: Iterable[TorrentDescriptor],
        api_key: str,
    ) -> Dict[str, dict]:
        return await self.availability.get_cached_streams(descriptors, api_key)

    async def wrap_list(self, request_key: str, compute: Callable[[], Awaitable[Any]]) -> Any:
        """Memoize a stream list computation under request_key."""
        return await self.stream_cache.wrap(request_key, compute)

    async def get_stats(self) -> dict:
        return {
            "provider": self.provider.key,
            "no_cache": self.no_cache,
            "scheduler": self.scheduler.get_stats(),
            "stream_cache": self.stream_cache.get_stats(),
            "resolved_url_cache": self.resolved_url_cache.get_stats(),
            "store": await self.store.get_stats(),
        }
