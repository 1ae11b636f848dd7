"""
Stream List Service
Turns a catalog id into a ranked, cached stream list tagged with debrid availability.
"""

import json
import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from .availability import TorrentDescriptor
from .engine import StreamEngine
from .exceptions import ConfigurationError
from .response_cache import StreamResponse, stream_response

logger = logging.getLogger(__name__)

IMDB_ID_PATTERN = re.compile(r"tt\d+", re.IGNORECASE)
KITSU_ID_PATTERN = re.compile(r"kitsu:\d+", re.IGNORECASE)
IMDB_MOVIE_PATTERN = re.compile(r"^tt\d+$")
IMDB_EPISODE_PATTERN = re.compile(r"^tt\d+:\d+:\d+$")
KITSU_PATTERN = re.compile(r"^kitsu:\d+(?::\d+)?$", re.IGNORECASE)

MOVIE = "movie"
SERIES = "series"
ANIME = "anime"

MAX_CATALOG_IDS = 5000


class CatalogRepository(Protocol):
    """
    Torrent records known for a title.

    Records are dicts carrying at least infoHash, fileIndex, seeders,
    uploadDate and title.
    """

    async def get_imdb_movie_entries(self, imdb_id: str) -> List[dict]:
        ...

    async def get_imdb_series_entries(self, imdb_id: str, season: int, episode: int) -> List[dict]:
        ...

    async def get_kitsu_movie_entries(self, kitsu_id: str) -> List[dict]:
        ...

    async def get_kitsu_series_entries(self, kitsu_id: str, episode: int) -> List[dict]:
        ...

    async def get_ids(
        self,
        content_type: str,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
    ) -> List[str]:
        ...


class InMemoryCatalogRepository:
    """
    Repository over a list of records, optionally loaded from a JSON file.

    Besides the stream fields, records carry their torrent type (movie, series
    or anime), imdbId or kitsuId and, for episodes, season and episode numbers.
    """

    def __init__(self, records: Optional[List[dict]] = None):
        self._records = list(records or [])

    @classmethod
    def from_json_file(cls, path: str) -> "InMemoryCatalogRepository":
        with open(path, encoding="utf-8") as f:
            records = json.load(f)
        if not isinstance(records, list):
            raise ConfigurationError(f"Catalog file {path} must hold a list of records")
        logger.info(f"Loaded {len(records)} catalog records from {path}")
        return cls(records)

    def __len__(self) -> int:
        return len(self._records)

    @staticmethod
    def _matches(record: dict, field: str, value: Any) -> bool:
        if value is None:
            return record.get(field) is None
        return record.get(field) is not None and str(record[field]) == str(value)

    def _select(self, **criteria) -> List[dict]:
        return [
            record for record in self._records
            if all(self._matches(record, field, value) for field, value in criteria.items())
        ]

    async def get_imdb_movie_entries(self, imdb_id: str) -> List[dict]:
        return self._select(imdbId=imdb_id, season=None, episode=None)

    async def get_imdb_series_entries(self, imdb_id: str, season: int, episode: int) -> List[dict]:
        return self._select(imdbId=imdb_id, season=season, episode=episode)

    async def get_kitsu_movie_entries(self, kitsu_id: str) -> List[dict]:
        return self._select(kitsuId=kitsu_id, episode=None)

    async def get_kitsu_series_entries(self, kitsu_id: str, episode: int) -> List[dict]:
        return self._select(kitsuId=kitsu_id, episode=episode)

    async def get_ids(
        self,
        content_type: str,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
    ) -> List[str]:
        """
        Ids of the titles with seeded torrents of content_type, most seeded first.

        Anime titles are listed by kitsuId, the others by imdbId. Series only
        count records of a specific episode. The upload date range applies
        when both bounds are given.
        """
        id_field = "kitsuId" if content_type == ANIME else "imdbId"
        date_range = None
        if start_date and end_date:
            date_range = (_upload_timestamp(start_date), _upload_timestamp(end_date))

        top_seeders: Dict[str, int] = {}
        for record in self._records:
            seeders = record.get("seeders") or 0
            if seeders <= 0 or record.get("type") != content_type or record.get(id_field) is None:
                continue
            if content_type == SERIES and (record.get("season") is None or record.get("episode") is None):
                continue
            if date_range and not date_range[0] <= _upload_timestamp(record.get("uploadDate")) <= date_range[1]:
                continue
            title_id = str(record[id_field])
            top_seeders[title_id] = max(top_seeders.get(title_id, 0), seeders)

        return sorted(top_seeders, key=top_seeders.get, reverse=True)[:MAX_CATALOG_IDS]


def _upload_timestamp(value: Any) -> float:
    if isinstance(value, datetime):
        return value.timestamp()
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()
        except ValueError:
            return 0.0
    return 0.0


def rank_records(records: List[dict]) -> List[dict]:
    """Order records by seeders, newest upload first among equals."""
    return sorted(
        records,
        key=lambda r: (r.get("seeders") or 0, _upload_timestamp(r.get("uploadDate"))),
        reverse=True,
    )


def to_stream_info(record: dict) -> dict:
    stream = {
        "title": record.get("title") or record.get("infoHash", ""),
        "infoHash": record["infoHash"].lower(),
    }
    if record.get("fileIndex") is not None:
        stream["fileIdx"] = record["fileIndex"]
    return stream


class StreamListService:
    """Serves stream lists through the engine's stream cache and scheduler."""

    def __init__(self, engine: StreamEngine, repository: CatalogRepository, base_url: str = ""):
        self._engine = engine
        self._repository = repository
        self.base_url = base_url.rstrip("/")

    async def get_streams(
        self,
        content_type: str,
        stream_id: str,
        api_key: Optional[str] = None,
    ) -> StreamResponse:
        """
        Build the stream list for a catalog id.

        Raises:
            ValueError: content_type is neither movie nor series
            SchedulerRejectedError: the scheduler is saturated
            BadTokenError: the provider rejected api_key while tagging
        """
        if not IMDB_ID_PATTERN.search(stream_id) and not KITSU_ID_PATTERN.search(stream_id):
            return stream_response([])

        async def compute() -> List[dict]:
            records = await self._engine.scheduler.schedule(
                lambda: self._fetch_records(content_type, stream_id)
            )
            return [to_stream_info(record) for record in rank_records(records)]

        streams = await self._engine.wrap_list(stream_id, compute)
        logger.debug(f"Found {len(streams)} streams for {content_type} {stream_id}")

        if api_key and streams:
            streams = await self._apply_availability(streams, api_key)
        return stream_response(streams)

    async def _fetch_records(self, content_type: str, stream_id: str) -> List[dict]:
        if content_type == MOVIE:
            return await self._movie_records(stream_id)
        if content_type == SERIES:
            return await self._series_records(stream_id)
        raise ValueError(f"Unsupported content type: {content_type}")

    async def _series_records(self, stream_id: str) -> List[dict]:
        parts = stream_id.split(":")
        if IMDB_EPISODE_PATTERN.match(stream_id):
            return await self._repository.get_imdb_series_entries(parts[0], int(parts[1]), int(parts[2]))
        if KITSU_PATTERN.match(stream_id):
            if len(parts) > 2:
                return await self._repository.get_kitsu_series_entries(parts[1], int(parts[2]))
            return await self._repository.get_kitsu_movie_entries(parts[1])
        return []

    async def _movie_records(self, stream_id: str) -> List[dict]:
        if IMDB_MOVIE_PATTERN.match(stream_id):
            return await self._repository.get_imdb_movie_entries(stream_id)
        if KITSU_PATTERN.match(stream_id):
            return await self._series_records(stream_id)
        return []

    async def _apply_availability(self, streams: List[dict], api_key: str) -> List[dict]:
        descriptors = [
            TorrentDescriptor(info_hash=s["infoHash"], file_index=s.get("fileIdx"))
            for s in streams
            if s.get("infoHash")
        ]
        tagged: Dict[str, dict] = await self._engine.list_cached_availability(descriptors, api_key)
        provider_key = self._engine.provider.key

        result = []
        for stream in streams:
            info = tagged.get(stream.get("infoHash", ""))
            if info is None:
                result.append(stream)
                continue
            debrid_stream = {
                key: value for key, value in stream.items()
                if key not in ("infoHash", "fileIdx")
            }
            debrid_stream["url"] = f"{self.base_url}/{provider_key}/{info['url']}"
            debrid_stream["cached"] = info["cached"]
            result.append(debrid_stream)
        return result
