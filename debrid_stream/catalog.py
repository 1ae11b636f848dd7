"""
Debrid Catalog
Lists the downloaded jobs of an account and the playable files inside one job.
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from .exceptions import AuthenticationError, ProviderError
from .extensions import is_video
from .provider import DebridProvider, JobStatus, RemoteTorrentJob

logger = logging.getLogger(__name__)

CATALOG_PAGE_SIZE = 100
CATALOG_MAX_PAGES = 5


def _released(added: Optional[str], offset_ms: int) -> Optional[str]:
    if not added:
        return None
    try:
        base = datetime.fromisoformat(added.replace("Z", "+00:00"))
    except ValueError:
        return None
    return (base + timedelta(milliseconds=offset_ms)).isoformat()


class DebridCatalog:
    """Read-only views over a provider account."""

    def __init__(
        self,
        provider: DebridProvider,
        page_size: int = CATALOG_PAGE_SIZE,
        max_pages: int = CATALOG_MAX_PAGES,
    ):
        self._provider = provider
        self.page_size = page_size
        self.max_pages = max_pages

    async def _all_jobs(self, api_key: str) -> List[RemoteTorrentJob]:
        jobs: List[RemoteTorrentJob] = []
        for page in range(1, self.max_pages + 1):
            try:
                page_jobs = await self._provider.list_jobs(api_key, page=page, page_size=self.page_size)
            except AuthenticationError:
                raise
            except ProviderError as e:
                if page == 1:
                    raise
                logger.warning(f"Stopped listing {self._provider.key} jobs at page {page}: {e}")
                break
            jobs.extend(page_jobs)
            if len(page_jobs) < self.page_size:
                break
        return jobs

    async def list_ready_jobs(self, api_key: str, skip: int = 0) -> List[dict]:
        """Return catalog entries for the downloaded jobs of the account."""
        if skip > 0:
            return []
        jobs = await self._all_jobs(api_key)
        return [
            {
                "id": f"{self._provider.key}:{job.id}",
                "type": "other",
                "name": job.filename,
            }
            for job in jobs
            if job.status is JobStatus.READY
        ]

    async def get_job_meta(self, api_key: str, job_id: str) -> dict:
        """Describe the selected video files of a job with their resolve URL templates."""
        job = await self._provider.job_info(api_key, job_id)
        videos = []
        for index, file in enumerate(f for f in job.selected_files if is_video(f.path)):
            video = {
                "id": f"{self._provider.key}:{job.id}:{file.id}",
                "title": file.path.lstrip("/"),
                "streams": [{"url": f"/{self._provider.key}/{api_key}/{job.hash}/null/{file.id - 1}"}],
            }
            released = _released(job.added, index)
            if released:
                video["released"] = released
            videos.append(video)

        return {
            "id": f"{self._provider.key}:{job.id}",
            "type": "other",
            "name": job.filename,
            "infoHash": job.hash,
            "videos": videos,
        }
