"""
Cache Store Backends for Debrid-Stream
Key-value storage with TTL expiry: an in-memory map and an SQLite document store.
"""

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Optional

import aiosqlite

from .exceptions import CacheStoreError, ConfigurationError

logger = logging.getLogger(__name__)

GLOBAL_KEY_PREFIX = "debrid-stream"
STREAM_KEY_PREFIX = f"{GLOBAL_KEY_PREFIX}|stream"
RESOLVED_URL_KEY_PREFIX = f"{GLOBAL_KEY_PREFIX}|resolved"
AVAILABILITY_KEY_PREFIX = f"{GLOBAL_KEY_PREFIX}|availability"


@dataclass
class CacheEntry:
    """A stored value with its time to live."""
    key: str
    value: Any
    ttl: float
    created_at: float

    @property
    def expires_at(self) -> float:
        return self.created_at + self.ttl

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class CacheStore(ABC):
    """
    Key-value store with per-entry TTL.
    Writers race with last-write-wins semantics; there are no cross-key transactions.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock

    async def initialize(self) -> None:
        """Prepare the backend. Safe to call more than once."""

    async def close(self) -> None:
        """Release backend resources."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Return the live value for key, or None."""

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: float) -> None:
        """Store value under key for ttl seconds, overwriting any previous entry."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove key if present."""

    @abstractmethod
    async def clear(self, prefix: str = "") -> int:
        """Remove every entry whose key starts with prefix. Returns count removed."""

    @abstractmethod
    async def purge_expired(self) -> int:
        """Drop expired entries. Returns count removed."""

    @abstractmethod
    async def get_stats(self) -> Dict[str, Any]:
        """Get entry counts per namespace."""

    async def mget(self, keys: Iterable[str]) -> Dict[str, Any]:
        """Return {key: value} for the keys that are present and live."""
        found = {}
        for key in keys:
            value = await self.get(key)
            if value is not None:
                found[key] = value
        return found


def _namespace(key: str) -> str:
    return key.split(":", 1)[0]


class MemoryCacheStore(CacheStore):
    """In-process dict store. Expired entries are evicted on read and by purge_expired."""

    def __init__(self, max_entries: int = 100000, clock: Callable[[], float] = time.time):
        super().__init__(clock)
        self.max_entries = max_entries
        self._entries: Dict[str, CacheEntry] = {}

    async def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            self._entries.pop(key, None)
            return None
        return entry.value

    async def set(self, key: str, value: Any, ttl: float) -> None:
        if len(self._entries) >= self.max_entries and key not in self._entries:
            await self.purge_expired()
            if len(self._entries) >= self.max_entries:
                # dicts keep insertion order, so this drops the oldest write
                self._entries.pop(next(iter(self._entries)))
        self._entries.pop(key, None)
        self._entries[key] = CacheEntry(key=key, value=value, ttl=ttl, created_at=self._clock())

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def clear(self, prefix: str = "") -> int:
        keys = [k for k in self._entries if k.startswith(prefix)]
        for key in keys:
            del self._entries[key]
        return len(keys)

    async def purge_expired(self) -> int:
        now = self._clock()
        expired = [k for k, e in self._entries.items() if e.is_expired(now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    async def get_stats(self) -> Dict[str, Any]:
        counts: Dict[str, int] = {}
        for key in self._entries:
            ns = _namespace(key)
            counts[ns] = counts.get(ns, 0) + 1
        return {"backend": "memory", "entries": len(self._entries), "namespaces": counts}


SCHEMA = """
CREATE TABLE IF NOT EXISTS cache_entries (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    ttl REAL NOT NULL,
    created_at REAL NOT NULL,
    expires_at REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_cache_expires ON cache_entries(expires_at);
"""


class SqliteCacheStore(CacheStore):
    """
    Durable store backed by SQLite.
    Values are serialized as JSON; expired rows are ignored on read and removed by purge_expired.
    """

    def __init__(self, db_path: str = "debrid_cache.db", clock: Callable[[], float] = time.time):
        super().__init__(clock)
        self.db_path = db_path
        self._lock = asyncio.Lock()
        self._initialized = False

    async def initialize(self) -> None:
        """Create database and tables if they don't exist."""
        async with self._lock:
            if self._initialized:
                return

            db_dir = Path(self.db_path).parent
            if db_dir and str(db_dir) != ".":
                db_dir.mkdir(parents=True, exist_ok=True)

            try:
                async with aiosqlite.connect(self.db_path) as db:
                    await db.executescript(SCHEMA)
                    await db.commit()
            except aiosqlite.Error as e:
                raise CacheStoreError("Failed to initialize cache database", details=str(e)) from e

            self._initialized = True
            logger.info(f"Cache store initialized: {self.db_path}")

    async def close(self) -> None:
        self._initialized = False

    async def get(self, key: str) -> Optional[Any]:
        found = await self.mget([key])
        return found.get(key)

    async def mget(self, keys: Iterable[str]) -> Dict[str, Any]:
        keys = list(keys)
        if not keys:
            return {}
        placeholders = ",".join("?" for _ in keys)
        try:
            async with aiosqlite.connect(self.db_path) as db:
                async with db.execute(
                    f"SELECT key, value FROM cache_entries WHERE key IN ({placeholders}) AND expires_at > ?",
                    (*keys, self._clock()),
                ) as cursor:
                    rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise CacheStoreError("Failed reading cache entries", details=str(e)) from e
        return {row[0]: json.loads(row[1]) for row in rows}

    async def set(self, key: str, value: Any, ttl: float) -> None:
        now = self._clock()
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("""
                    INSERT OR REPLACE INTO cache_entries (key, value, ttl, created_at, expires_at)
                    VALUES (?, ?, ?, ?, ?)
                """, (key, json.dumps(value), ttl, now, now + ttl))
                await db.commit()
        except aiosqlite.Error as e:
            raise CacheStoreError(f"Failed writing cache entry {key}", details=str(e)) from e

    async def delete(self, key: str) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
            await db.commit()

    async def clear(self, prefix: str = "") -> int:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "DELETE FROM cache_entries WHERE substr(key, 1, ?) = ?",
                (len(prefix), prefix),
            )
            await db.commit()
            return cursor.rowcount

    async def purge_expired(self) -> int:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "DELETE FROM cache_entries WHERE expires_at <= ?", (self._clock(),)
            )
            await db.commit()
            count = cursor.rowcount
        if count:
            logger.debug(f"Purged {count} expired cache entries")
        return count

    async def get_stats(self) -> Dict[str, Any]:
        counts: Dict[str, int] = {}
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT key FROM cache_entries") as cursor:
                async for row in cursor:
                    ns = _namespace(row[0])
                    counts[ns] = counts.get(ns, 0) + 1
        return {
            "backend": "sqlite",
            "path": self.db_path,
            "entries": sum(counts.values()),
            "namespaces": counts,
        }


def create_cache_store(backend: str, db_path: Optional[str] = None) -> CacheStore:
    """Build the configured store backend."""
    if backend == "memory":
        return MemoryCacheStore()
    if backend == "sqlite":
        return SqliteCacheStore(db_path or "debrid_cache.db")
    raise ConfigurationError(f"Unknown cache backend: {backend}")
