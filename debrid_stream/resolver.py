"""
Torrent Lifecycle Resolver
Drives a provider torrent job from submission to a direct link, or to a pending reason
the client can show while it retries later.
"""

import asyncio
import inspect
import logging
from enum import Enum
from typing import Awaitable, Callable, List, Optional, TypeVar, Union

from .exceptions import (
    AccessDeniedError,
    AuthenticationError,
    DebridStreamError,
    FileSelectionError,
    LinkConsumedError,
    ProviderError,
    ProviderTransientError,
    ResolveFailedError,
)
from .extensions import is_archive, is_video
from .logging_config import LogContext
from .magnet import build_magnet_link, normalize_info_hash
from .provider import DebridProvider, JobStatus, RemoteTorrentJob
from .retry import RetryHandler

logger = logging.getLogger(__name__)

T = TypeVar("T")

MIN_VIDEO_SIZE = 5 * 1024 * 1024  # 5 MB
RECENT_JOBS_PAGE_SIZE = 100
OPEN_POLL_INTERVAL = 2.0
OPEN_MAX_POLLS = 15
MAX_STATE_TRANSITIONS = 8

_EMPTY_HINTS = ("", "null", "undefined")


class PendingReason(Enum):
    """Non-URL outcome of a resolve attempt."""
    DOWNLOADING = "downloading"
    OPENING_FAILED = "failed_opening"
    DOWNLOAD_FAILED = "failed_download"
    ACCESS_DENIED = "failed_access"
    UNSUPPORTED_ARCHIVE = "failed_rar"
    UNEXPECTED_FAILURE = "failed_unexpected"


ResolveResult = Union[str, PendingReason]
MagnetBuilder = Callable[[str], Union[str, Awaitable[str]]]


def parse_cached_file_hint(hint: Optional[str]) -> List[str]:
    """Split a "5,6" hint into wire ids. Placeholders and malformed hints yield []."""
    if hint is None or hint.strip().lower() in _EMPTY_HINTS:
        return []
    ids = [part.strip() for part in hint.split(",") if part.strip()]
    if not all(part.isdigit() for part in ids):
        logger.debug(f"Ignoring malformed cached file hint: {hint}")
        return []
    return ids


class TorrentLifecycleResolver:
    """
    Locates or creates the remote job for a torrent and drives it by status.

    Job snapshots are never trusted beyond one resolve call: every decision is
    taken on a freshly read job.
    """

    def __init__(
        self,
        provider: DebridProvider,
        magnet_builder: MagnetBuilder = build_magnet_link,
        poll_interval: float = OPEN_POLL_INTERVAL,
        max_polls: int = OPEN_MAX_POLLS,
        min_video_size: int = MIN_VIDEO_SIZE,
        page_size: int = RECENT_JOBS_PAGE_SIZE,
        retry_handler: Optional[RetryHandler] = None,
    ):
        self._provider = provider
        self._retry_handler = retry_handler or RetryHandler()
        self._magnet_builder = magnet_builder
        self.poll_interval = poll_interval
        self.max_polls = max_polls
        self.min_video_size = min_video_size
        self.page_size = page_size

    @property
    def provider_key(self) -> str:
        return self._provider.key

    async def resolve(
        self,
        info_hash: str,
        file_index: Optional[int],
        api_key: str,
        cached_file_id_hint: Optional[str] = None,
        client_ip: Optional[str] = None,
    ) -> ResolveResult:
        """
        Resolve a torrent file to a direct URL.

        Returns the URL or a PendingReason. Authentication errors propagate
        unchanged; unclassified failures raise ResolveFailedError.
        """
        info_hash = normalize_info_hash(info_hash)
        key = self._provider.key

        with LogContext(provider=key, info_hash=info_hash, file_index=file_index, client_ip=client_ip):
            logger.info(f"Unrestricting {key} {info_hash} [{file_index}]")
            try:
                return await self._resolve(info_hash, file_index, api_key, cached_file_id_hint)
            except AccessDeniedError:
                logger.info(f"Access denied to {key} {info_hash} [{file_index}]")
                return PendingReason.ACCESS_DENIED
            except (AuthenticationError, ResolveFailedError):
                raise
            except DebridStreamError as e:
                logger.error(f"Failed {key} adding torrent {info_hash} [{file_index}]: {e}")
                raise ResolveFailedError(
                    info_hash,
                    file_index,
                    message=f"Failed {key} adding torrent {info_hash} [{file_index}]",
                    payload=getattr(e, "payload", None) or str(e),
                ) from e

    async def _resolve(
        self,
        info_hash: str,
        file_index: Optional[int],
        api_key: str,
        cached_file_id_hint: Optional[str],
    ) -> ResolveResult:
        key = self._provider.key
        job = await self._locate_or_create(info_hash, file_index, api_key, cached_file_id_hint)
        recreated = False

        for _ in range(MAX_STATE_TRANSITIONS):
            with LogContext(job_id=job.id):
                status = job.status

                if status is JobStatus.READY:
                    try:
                        return await self._unrestrict(job, info_hash, file_index, api_key)
                    except LinkConsumedError:
                        if recreated:
                            raise
                        logger.info(f"Link of {key} job {job.id} was consumed, recreating {info_hash}")
                        recreated = True
                        try:
                            job = await self._recreate_job(info_hash, file_index, api_key)
                        except FileSelectionError as e:
                            return self._recreation_failed(e, info_hash, file_index)
                        continue

                if status is JobStatus.DOWNLOADING:
                    logger.info(f"Downloading to {key} {info_hash} [{file_index}]...")
                    return PendingReason.DOWNLOADING

                if status is JobStatus.MAGNET_ERROR:
                    logger.info(f"Failed {key} opening torrent {info_hash} [{file_index}] due to magnet error")
                    return PendingReason.OPENING_FAILED

                if status is JobStatus.ERRED:
                    if recreated:
                        logger.info(f"Recreated {key} job {job.id} failed again for {info_hash} [{file_index}]")
                        return PendingReason.DOWNLOAD_FAILED
                    logger.info(f"Retry failed download in {key} {info_hash} [{file_index}]...")
                    recreated = True
                    try:
                        job = await self._recreate_job(info_hash, file_index, api_key)
                    except FileSelectionError as e:
                        return self._recreation_failed(e, info_hash, file_index)
                    continue

                if status is JobStatus.OPENING:
                    job = await self._poll_opening(job, api_key)
                    if job.status is JobStatus.OPENING:
                        logger.info(f"{key} job {job.id} is still opening after {self.max_polls} polls")
                        return PendingReason.OPENING_FAILED
                    continue

                if status is JobStatus.WAITING_SELECTION:
                    logger.info(f"Trying to select files on {key} {info_hash} [{file_index}]...")
                    try:
                        await self._select_files(job, file_index, api_key)
                    except (AuthenticationError, AccessDeniedError):
                        raise
                    except (FileSelectionError, ProviderError) as e:
                        logger.info(f"Failed {key} opening torrent {info_hash} [{file_index}]: {e}")
                        return PendingReason.OPENING_FAILED
                    logger.info(f"Downloading to {key} {info_hash} [{file_index}]...")
                    return PendingReason.DOWNLOADING

                raise ResolveFailedError(
                    info_hash,
                    file_index,
                    message=f"Unexpected {key} job status for {info_hash} [{file_index}]",
                    payload={"job_id": job.id, "status": job.raw_status},
                )

        raise ResolveFailedError(
            info_hash,
            file_index,
            message=f"{key} job for {info_hash} [{file_index}] did not settle",
            payload={"job_id": job.id, "status": job.raw_status},
        )

    def _recreation_failed(
        self,
        error: FileSelectionError,
        info_hash: str,
        file_index: Optional[int],
    ) -> PendingReason:
        logger.info(f"Recreated {self._provider.key} job for {info_hash} [{file_index}] failed: {error}")
        return PendingReason.OPENING_FAILED if error.opening else PendingReason.DOWNLOAD_FAILED

    async def _call(self, operation: Callable[[], Awaitable[T]], name: str) -> T:
        """Run one provider call, retrying timeouts and dropped connections."""
        return await self._retry_handler.with_retry(
            operation,
            operation_id=f"{self._provider.key}_{name}",
            should_retry=lambda e: isinstance(e, ProviderTransientError),
        )

    async def _locate_or_create(
        self,
        info_hash: str,
        file_index: Optional[int],
        api_key: str,
        cached_file_id_hint: Optional[str],
    ) -> RemoteTorrentJob:
        try:
            job_id = await self._find_job(info_hash, file_index, api_key)
        except AuthenticationError:
            raise
        except ProviderError as e:
            logger.warning(f"Failed listing {self._provider.key} jobs for {info_hash}: {e}")
            job_id = None

        if job_id is None:
            job_id = await self._create_job(info_hash, api_key, parse_cached_file_hint(cached_file_id_hint))
        else:
            logger.debug(f"Reusing {self._provider.key} job {job_id} for {info_hash}")

        return await self._job_info(api_key, job_id)

    async def _job_info(self, api_key: str, job_id: str) -> RemoteTorrentJob:
        return await self._call(lambda: self._provider.job_info(api_key, job_id), "job_info")

    async def _find_job(self, info_hash: str, file_index: Optional[int], api_key: str) -> Optional[str]:
        """Pick the best non-erred job for info_hash on the most recent page."""
        jobs = await self._call(
            lambda: self._provider.list_jobs(api_key, page=1, page_size=self.page_size), "list_jobs"
        )
        matches = [job for job in jobs if job.hash.lower() == info_hash and not job.is_erred]
        if not matches:
            return None
        if len(matches) == 1:
            return matches[0].id

        infos = await asyncio.gather(*(self._job_info(api_key, job.id) for job in matches))
        wire_id = None if file_index is None else file_index + 1
        fitting = [
            info for info in infos
            if wire_id is None or any(f.id == wire_id and f.selected for f in info.files)
        ]
        # stable sort keeps the most recent job first among equals
        fitting.sort(key=lambda info: len(info.links), reverse=True)
        return (fitting[0] if fitting else matches[0]).id

    async def _create_job(self, info_hash: str, api_key: str, file_ids: List[str]) -> str:
        magnet_link = self._magnet_builder(info_hash)
        if inspect.isawaitable(magnet_link):
            magnet_link = await magnet_link

        job_id = await self._call(lambda: self._provider.add_magnet(api_key, magnet_link), "add_magnet")
        logger.info(f"Added {info_hash} to {self._provider.key} as job {job_id}")
        if file_ids:
            await self._call(lambda: self._provider.select_files(api_key, job_id, file_ids), "select_files")
            logger.info(f"Selected cached files [{','.join(file_ids)}] on {self._provider.key} job {job_id}")
        return job_id

    async def _recreate_job(self, info_hash: str, file_index: Optional[int], api_key: str) -> RemoteTorrentJob:
        """Submit a fresh job for info_hash and select the requested file on it."""
        job_id = await self._create_job(info_hash, api_key, [])
        job = await self._job_info(api_key, job_id)
        if job.status in (JobStatus.OPENING, JobStatus.WAITING_SELECTION):
            await self._select_files(job, file_index, api_key)
            job = await self._job_info(api_key, job_id)
        return job

    async def _poll_opening(self, job: RemoteTorrentJob, api_key: str) -> RemoteTorrentJob:
        for _ in range(self.max_polls):
            if job.status is not JobStatus.OPENING:
                break
            await asyncio.sleep(self.poll_interval)
            job = await self._job_info(api_key, job.id)
        return job

    async def _select_files(self, job: RemoteTorrentJob, file_index: Optional[int], api_key: str) -> None:
        if job.status is JobStatus.OPENING:
            job = await self._poll_opening(job, api_key)
        if job.status is not JobStatus.WAITING_SELECTION or not job.files:
            raise FileSelectionError(
                job.id,
                f"Job {job.id} is not waiting for file selection ({job.raw_status})",
                opening=job.status is JobStatus.OPENING,
            )

        if file_index is not None:
            file_ids = [file_index + 1]
        else:
            file_ids = [
                f.id for f in job.files
                if is_video(f.path) and f.bytes > self.min_video_size
            ]
        if not file_ids:
            raise FileSelectionError(job.id, f"Job {job.id} has no video files to select")

        await self._call(lambda: self._provider.select_files(api_key, job.id, file_ids), "select_files")

    async def _unrestrict(
        self,
        job: RemoteTorrentJob,
        info_hash: str,
        file_index: Optional[int],
        api_key: str,
    ) -> ResolveResult:
        key = self._provider.key
        selected = job.selected_files

        target = job.find_file(file_index + 1) if file_index is not None else None
        if target is None and selected:
            target = max(selected, key=lambda f: f.bytes)

        if target is None or not target.selected:
            logger.info(f"Target {key} file is not downloaded in job {job.id}, recreating {info_hash}")
            try:
                await self._recreate_job(info_hash, file_index, api_key)
            except FileSelectionError as e:
                return self._recreation_failed(e, info_hash, file_index)
            return PendingReason.DOWNLOADING

        if len(job.links) == 1:
            file_link = job.links[0]
        else:
            rank = selected.index(target)
            file_link = job.links[rank] if rank < len(job.links) else None

        if not file_link:
            raise ResolveFailedError(
                info_hash,
                file_index,
                message=f"No {key} links found for {info_hash} [{file_index}]",
                payload={"job_id": job.id, "links": job.links},
            )

        unrestricted = await self._call(lambda: self._provider.unrestrict(api_key, file_link), "unrestrict")
        if is_archive(unrestricted.download) or is_archive(unrestricted.filename):
            logger.info(f"{key} returned an archive for {info_hash} [{file_index}]")
            return PendingReason.UNSUPPORTED_ARCHIVE

        logger.info(f"Unrestricted {key} {info_hash} [{file_index}] to {unrestricted.download}")
        return unrestricted.download
