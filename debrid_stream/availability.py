"""
Instant Availability for Debrid-Stream
Caches which torrents a provider already holds and refreshes missing hashes in concurrent batches.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence

from .exceptions import (
    BadTokenError,
    CacheStoreError,
    MalformedResponseError,
    ProviderError,
)
from .extensions import is_video
from .provider import DebridProvider
from .retry import RetryHandler
from .storage import AVAILABILITY_KEY_PREFIX, CacheStore

logger = logging.getLogger(__name__)

AVAILABILITY_TTL = 8 * 60 * 60  # 8 hours
AVAILABILITY_EMPTY_TTL = 30 * 60  # 30 minutes
MAX_BATCH_SIZE = 150

# hash -> cached file-id groups; None marks a hash whose availability is unknown
AvailabilityMap = Dict[str, Optional[List[List[str]]]]


@dataclass
class TorrentDescriptor:
    """A torrent candidate as requested by a client."""
    info_hash: str
    file_index: Optional[int] = None
    cached_file_id_hint: Optional[str] = None


def collapse_cached_groups(copies: Iterable[Dict[str, str]]) -> List[List[str]]:
    """
    Reduce the provider's cached copies of one torrent to file-id groups.

    Copies holding any non-video file are dropped, since the provider would
    pack them into an archive. Groups are ordered largest first and a later
    group is kept only when it holds an id missing from the first one.
    """
    groups = [
        list(copy.keys())
        for copy in copies
        if copy and all(is_video(name) for name in copy.values())
    ]
    groups.sort(key=len, reverse=True)
    if not groups:
        return []
    first = set(groups[0])
    return [
        group for index, group in enumerate(groups)
        if index == 0 or any(file_id not in first for file_id in group)
    ]


def cached_file_ids(file_index: Optional[int], groups: Optional[List[List[str]]]) -> List[str]:
    """Pick the group holding the requested file, or the largest group when no file is requested."""
    if not groups:
        return []
    if file_index is None:
        return groups[0]
    wire_id = str(file_index + 1)
    return next((group for group in groups if wire_id in group), [])


def chunked(items: Sequence[str], size: int) -> List[List[str]]:
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


class AvailabilityCache:
    """Per-hash cached file groups kept in the shared cache store."""

    def __init__(
        self,
        store: CacheStore,
        ttl: float = AVAILABILITY_TTL,
        empty_ttl: float = AVAILABILITY_EMPTY_TTL,
        enabled: bool = True,
    ):
        self._store = store
        self.ttl = ttl
        self.empty_ttl = empty_ttl
        self.enabled = enabled

    @staticmethod
    def _key(info_hash: str) -> str:
        return f"{AVAILABILITY_KEY_PREFIX}:{info_hash}"

    async def get_cached(self, hashes: Iterable[str]) -> Dict[str, List[List[str]]]:
        """Return the stored records for hashes. Never touches the provider."""
        if not self.enabled:
            return {}
        keys = {self._key(h): h for h in hashes}
        try:
            found = await self._store.mget(keys)
        except CacheStoreError as e:
            logger.warning(f"Availability cache read failed: {e}")
            return {}
        return {keys[key]: groups for key, groups in found.items()}

    async def put(self, results: Dict[str, List[List[str]]]) -> None:
        if not self.enabled:
            return
        for info_hash, groups in results.items():
            ttl = self.ttl if groups else self.empty_ttl
            try:
                await self._store.set(self._key(info_hash), groups, ttl)
            except CacheStoreError as e:
                logger.warning(f"Availability cache write failed for {info_hash}: {e}")


class BatchAvailabilityClient:
    """
    Fetches instant availability for hashes missing from the cache.

    Batches run concurrently and are joined before merging: one failed batch
    turns every missing hash of the call into "unknown".
    """

    def __init__(
        self,
        provider: DebridProvider,
        cache: AvailabilityCache,
        retry_handler: Optional[RetryHandler] = None,
        max_batch_size: int = MAX_BATCH_SIZE,
    ):
        self._provider = provider
        self._cache = cache
        self._retry_handler = retry_handler or RetryHandler()
        self.max_batch_size = max_batch_size

    async def get_cached(self, hashes: Iterable[str]) -> Dict[str, List[List[str]]]:
        return await self._cache.get_cached(hashes)

    async def refresh(self, hashes: Sequence[str], api_key: str) -> AvailabilityMap:
        """
        Return availability for hashes, querying the provider only for cache misses.

        Raises BadTokenError when the provider rejects the key. Any other
        exhausted failure is logged and leaves the missing hashes as None.
        """
        hashes = list(dict.fromkeys(h.lower() for h in hashes))
        results: AvailabilityMap = dict(await self._cache.get_cached(hashes))
        missing = [h for h in hashes if h not in results]
        if not missing:
            return results

        batch_sizes = [self.max_batch_size]
        reduced = max(1, self.max_batch_size // 10)
        if reduced < self.max_batch_size:
            batch_sizes.append(reduced)

        fetched = None
        failure: Optional[Exception] = None
        for batch_size in batch_sizes:
            try:
                fetched = await self._fetch_all(missing, api_key, batch_size)
                break
            except BadTokenError:
                raise
            except MalformedResponseError as e:
                failure = e
                logger.info(
                    f"Malformed {self._provider.key} availability response [{missing[0]}] "
                    f"with batch size {batch_size}"
                )
            except ProviderError as e:
                failure = e
                break

        if fetched is None:
            logger.warning(
                f"Failed {self._provider.key} cached [{missing[0]}] torrent availability "
                f"request for {len(missing)} hashes: {failure}"
            )
            results.update({h: None for h in missing})
            return results

        await self._cache.put(fetched)
        results.update(fetched)
        return results

    async def _fetch_all(self, hashes: List[str], api_key: str, batch_size: int) -> Dict[str, List[List[str]]]:
        batches = chunked(hashes, batch_size)
        responses = await asyncio.gather(
            *(self._fetch_batch(batch, api_key) for batch in batches),
            return_exceptions=True,
        )
        errors = [r for r in responses if isinstance(r, BaseException)]
        if errors:
            raise next((e for e in errors if isinstance(e, BadTokenError)), errors[0])

        merged: Dict[str, List[List[str]]] = {}
        for response in responses:
            for info_hash, copies in response.items():
                merged[info_hash] = collapse_cached_groups(copies)
        return merged

    async def _fetch_batch(self, batch: List[str], api_key: str) -> Dict[str, List[Dict[str, str]]]:
        return await self._retry_handler.with_retry(
            lambda: self._provider.instant_availability(api_key, batch),
            operation_id=f"{self._provider.key}_availability",
            max_attempts=self._retry_handler.config.availability_max_attempts,
        )

    async def get_cached_streams(
        self,
        descriptors: Iterable[TorrentDescriptor],
        api_key: str,
    ) -> Dict[str, dict]:
        """
        Tag each candidate with its cached state and resolve URL template.

        The template is "<api_key>/<info_hash>/<cached ids|null>/<file_index|null>";
        "cached" is None when availability could not be determined.
        """
        descriptors = list(descriptors)
        available = await self.refresh([d.info_hash for d in descriptors], api_key)
        tagged = {}
        for descriptor in descriptors:
            info_hash = descriptor.info_hash.lower()
            groups = available.get(info_hash)
            ids = cached_file_ids(descriptor.file_index, groups)
            hint = ",".join(ids) if ids else "null"
            file_index = "null" if descriptor.file_index is None else descriptor.file_index
            tagged[info_hash] = {
                "cached": None if groups is None else bool(ids),
                "url": f"{api_key}/{info_hash}/{hint}/{file_index}",
            }
        return tagged
