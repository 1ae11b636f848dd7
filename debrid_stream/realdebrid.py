"""
Real-Debrid Client
Provides the debrid provider capability set over the Real-Debrid REST API.
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Sequence

import aiohttp

from .exceptions import (
    AccessDeniedError,
    BadTokenError,
    LinkConsumedError,
    MalformedResponseError,
    ProviderError,
    ProviderTransientError,
)
from .provider import DebridProvider, JobStatus, RemoteTorrentJob, TorrentFile, UnrestrictedLink

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.real-debrid.com/rest/1.0"


class RealDebridClient(DebridProvider):
    """
    Client for the Real-Debrid API.

    API Documentation: https://api.real-debrid.com/
    One client serves every account; the API key travels with each call.
    """

    key = "realdebrid"

    STATUS_MAP = {
        "magnet_error": JobStatus.MAGNET_ERROR,
        "error": JobStatus.ERRED,
        "virus": JobStatus.ERRED,
        "magnet_conversion": JobStatus.OPENING,
        "waiting_files_selection": JobStatus.WAITING_SELECTION,
        "queued": JobStatus.DOWNLOADING,
        "downloading": JobStatus.DOWNLOADING,
        "compressing": JobStatus.DOWNLOADING,
        "uploading": JobStatus.DOWNLOADING,
        "downloaded": JobStatus.READY,
        # the links of a dead torrent were already generated and still unrestrict
        "dead": JobStatus.READY,
    }

    ERROR_CODES = {
        8: BadTokenError,
        9: AccessDeniedError,
        19: LinkConsumedError,
        20: AccessDeniedError,
    }

    TRANSIENT_HTTP_STATUSES = (502, 503, 504)

    def __init__(self, base_url: str = DEFAULT_BASE_URL, timeout: float = 30.0):
        self._base_url = base_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def close(self) -> None:
        """Close the client connection."""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _request(
        self,
        method: str,
        path: str,
        api_key: str,
        data: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> Any:
        """Make a request to the Real-Debrid API and decode the JSON body."""
        session = await self._get_session()
        url = f"{self._base_url}{path}"
        headers = {"Authorization": f"Bearer {api_key}"}

        try:
            async with session.request(method, url, data=data, params=params, headers=headers) as response:
                status = response.status
                body = await response.text()
        except asyncio.TimeoutError as e:
            raise ProviderTransientError(f"Real-Debrid request timed out: {method} {path}") from e
        except aiohttp.ClientConnectionError as e:
            raise ProviderTransientError(f"Real-Debrid connection failed: {e}") from e
        except aiohttp.ClientError as e:
            raise ProviderError(f"Real-Debrid request failed: {e}") from e

        payload: Any = None
        if body:
            try:
                payload = json.loads(body)
            except ValueError:
                if status < 400:
                    raise MalformedResponseError(
                        f"Real-Debrid returned non JSON response for {path}",
                        status=status,
                        payload=body[:200],
                    )
                payload = body

        if status >= 400:
            if status in self.TRANSIENT_HTTP_STATUSES:
                raise ProviderTransientError(
                    f"Real-Debrid HTTP {status} for {path}", status=status, payload=payload
                )
            code = payload.get("error_code") if isinstance(payload, dict) else None
            message = payload.get("error") if isinstance(payload, dict) else None
            logger.debug(f"Real-Debrid {method} {path} failed: HTTP {status}, code {code}")
            raise self.error_for(
                code,
                f"Real-Debrid error: {message or f'HTTP {status}'}",
                status=status,
                payload=payload,
            )

        return payload

    def _parse_job(self, item: dict) -> RemoteTorrentJob:
        raw_status = item.get("status", "")
        return RemoteTorrentJob(
            id=str(item.get("id", "")),
            status=self.map_status(raw_status),
            hash=(item.get("hash") or "").lower(),
            files=[
                TorrentFile(
                    id=int(f["id"]),
                    path=f.get("path", ""),
                    bytes=int(f.get("bytes") or 0),
                    selected=bool(f.get("selected")),
                )
                for f in item.get("files") or []
            ],
            links=list(item.get("links") or []),
            filename=item.get("filename", ""),
            raw_status=raw_status,
            added=item.get("added"),
        )

    async def list_jobs(self, api_key: str, page: int = 1, page_size: int = 100) -> List[RemoteTorrentJob]:
        result = await self._request(
            "GET", "/torrents", api_key, params={"page": page, "limit": page_size}
        )
        if not result:
            return []
        if not isinstance(result, list):
            raise MalformedResponseError("Real-Debrid torrent list is not a list", payload=result)
        return [self._parse_job(item) for item in result if item]

    async def add_magnet(self, api_key: str, magnet_link: str) -> str:
        result = await self._request(
            "POST", "/torrents/addMagnet", api_key, data={"magnet": magnet_link}
        )
        if not isinstance(result, dict) or not result.get("id"):
            raise MalformedResponseError("Real-Debrid did not return a torrent id", payload=result)
        logger.debug(f"Added magnet to Real-Debrid as job {result['id']}")
        return str(result["id"])

    async def select_files(self, api_key: str, job_id: str, file_ids: Sequence[Any]) -> None:
        files = ",".join(str(file_id) for file_id in file_ids)
        await self._request(
            "POST", f"/torrents/selectFiles/{job_id}", api_key, data={"files": files}
        )
        logger.debug(f"Selected files [{files}] on Real-Debrid job {job_id}")

    async def job_info(self, api_key: str, job_id: str) -> RemoteTorrentJob:
        result = await self._request("GET", f"/torrents/info/{job_id}", api_key)
        if not isinstance(result, dict):
            raise MalformedResponseError(f"Real-Debrid returned no info for job {job_id}", payload=result)
        return self._parse_job(result)

    async def instant_availability(self, api_key: str, hashes: Sequence[str]) -> Dict[str, List[Dict[str, str]]]:
        path = "/torrents/instantAvailability/" + "/".join(hashes)
        result = await self._request("GET", path, api_key)
        if not isinstance(result, dict):
            # large batches sometimes come back as an empty body
            raise MalformedResponseError(
                f"Real-Debrid returned malformed availability for {len(hashes)} hashes",
                payload=result,
            )

        availability: Dict[str, List[Dict[str, str]]] = {h.lower(): [] for h in hashes}
        for info_hash, hoster_results in result.items():
            copies = []
            if isinstance(hoster_results, dict):
                for variants in hoster_results.values():
                    for variant in variants or []:
                        if isinstance(variant, dict):
                            copies.append({
                                str(file_id): (info or {}).get("filename", "")
                                for file_id, info in variant.items()
                            })
            availability[info_hash.lower()] = copies
        return availability

    async def unrestrict(self, api_key: str, link: str) -> UnrestrictedLink:
        result = await self._request("POST", "/unrestrict/link", api_key, data={"link": link})
        if not isinstance(result, dict) or not result.get("download"):
            raise MalformedResponseError("Real-Debrid did not return a download link", payload=result)
        return UnrestrictedLink(
            download=result["download"],
            filename=result.get("filename", ""),
            mime_type=result.get("mimeType"),
            streamable=bool(result.get("streamable")),
        )
