"""
Pytest configuration and shared fixtures.
"""

import copy
import re
from typing import Dict, List, Optional

import pytest

from debrid_stream.provider import (
    DebridProvider,
    JobStatus,
    RemoteTorrentJob,
    TorrentFile,
    UnrestrictedLink,
)

HASH_A = "a" * 40
HASH_B = "b" * 40
HASH_C = "c" * 40
API_KEY = "test-api-key"

MB = 1024 * 1024


# ============================================================================
# Fake Provider
# ============================================================================

class FakeProvider(DebridProvider):
    """
    In-memory provider account recording every call.

    New jobs start in the next status of new_job_statuses (WAITING_SELECTION
    when empty) with the files registered in torrent_files. Selecting files
    moves a job to status_after_select. status_scripts[job_id] overrides the
    status returned by successive job_info calls. errors[name] fails every
    call to name, errors_once[name] fails the next calls once each.
    """

    key = "fake"

    def __init__(self):
        self.jobs: Dict[str, RemoteTorrentJob] = {}
        self.order: List[str] = []
        self.calls: List[tuple] = []
        self.torrent_files: Dict[str, List[TorrentFile]] = {}
        self.new_job_statuses: List[JobStatus] = []
        self.status_after_select = JobStatus.DOWNLOADING
        self.status_scripts: Dict[str, List[JobStatus]] = {}
        self.availability: Dict[str, List[Dict[str, str]]] = {}
        self.availability_errors: List[Exception] = []
        self.unrestricted: Dict[str, str] = {}
        self.unrestrict_errors: Dict[str, List[Exception]] = {}
        self.errors: Dict[str, Exception] = {}
        self.errors_once: Dict[str, List[Exception]] = {}
        self.closed = False
        self._next_id = 1

    def calls_to(self, name: str) -> List[tuple]:
        return [call[1:] for call in self.calls if call[0] == name]

    def add_job(
        self,
        info_hash: str,
        status: JobStatus,
        files: Optional[List[TorrentFile]] = None,
        links: Optional[List[str]] = None,
        filename: str = "Some.Movie.2020.1080p",
        added: Optional[str] = None,
    ) -> RemoteTorrentJob:
        job_id = f"JOB{self._next_id}"
        self._next_id += 1
        job = RemoteTorrentJob(
            id=job_id,
            status=status,
            hash=info_hash,
            files=list(files or []),
            links=list(links or []),
            filename=filename,
            raw_status=status.value,
            added=added,
        )
        self.jobs[job_id] = job
        self.order.insert(0, job_id)
        return job

    def _raise_if_failing(self, name: str) -> None:
        if name in self.errors:
            raise self.errors[name]
        pending = self.errors_once.get(name)
        if pending:
            raise pending.pop(0)

    async def close(self) -> None:
        self.closed = True

    async def list_jobs(self, api_key: str, page: int = 1, page_size: int = 100) -> List[RemoteTorrentJob]:
        self.calls.append(("list_jobs", page, page_size))
        self._raise_if_failing("list_jobs")
        start = (page - 1) * page_size
        return [
            RemoteTorrentJob(
                id=job.id,
                status=job.status,
                hash=job.hash,
                filename=job.filename,
                raw_status=job.raw_status,
                added=job.added,
            )
            for job in (self.jobs[job_id] for job_id in self.order[start:start + page_size])
        ]

    async def add_magnet(self, api_key: str, magnet_link: str) -> str:
        self.calls.append(("add_magnet", magnet_link))
        self._raise_if_failing("add_magnet")
        info_hash = re.search(r"btih:([0-9a-f]{40})", magnet_link).group(1)
        status = self.new_job_statuses.pop(0) if self.new_job_statuses else JobStatus.WAITING_SELECTION
        files = [copy.copy(f) for f in self.torrent_files.get(info_hash, [])]
        return self.add_job(info_hash, status, files=files).id

    async def select_files(self, api_key: str, job_id: str, file_ids) -> None:
        self.calls.append(("select_files", job_id, list(file_ids)))
        self._raise_if_failing("select_files")
        job = self.jobs[job_id]
        wanted = {int(file_id) for file_id in file_ids}
        for f in job.files:
            f.selected = f.id in wanted
        job.status = self.status_after_select
        job.raw_status = job.status.value

    async def job_info(self, api_key: str, job_id: str) -> RemoteTorrentJob:
        self.calls.append(("job_info", job_id))
        self._raise_if_failing("job_info")
        job = self.jobs[job_id]
        script = self.status_scripts.get(job_id)
        if script:
            job.status = script.pop(0)
            job.raw_status = job.status.value
        return copy.deepcopy(job)

    async def instant_availability(self, api_key: str, hashes) -> Dict[str, List[Dict[str, str]]]:
        self.calls.append(("instant_availability", list(hashes)))
        if self.availability_errors:
            raise self.availability_errors.pop(0)
        return {h: copy.deepcopy(self.availability.get(h, [])) for h in hashes}

    async def unrestrict(self, api_key: str, link: str) -> UnrestrictedLink:
        self.calls.append(("unrestrict", link))
        pending = self.unrestrict_errors.get(link)
        if pending:
            raise pending.pop(0)
        download = self.unrestricted.get(link, f"https://download.example.com/{link.rsplit('/', 1)[-1]}.mkv")
        return UnrestrictedLink(download=download, filename=download.rsplit("/", 1)[-1])


def video_file(file_id: int, name: str = None, size: int = 700 * MB, selected: bool = False) -> TorrentFile:
    return TorrentFile(id=file_id, path=f"/{name or f'Episode.{file_id}.mkv'}", bytes=size, selected=selected)


@pytest.fixture
def provider():
    """Create an empty fake provider account."""
    return FakeProvider()


# ============================================================================
# Cache Store Fixtures
# ============================================================================

class FakeClock:
    """Manually advanced clock for TTL tests."""

    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store(clock):
    """Create an in-memory cache store on a manual clock."""
    from debrid_stream.storage import MemoryCacheStore

    return MemoryCacheStore(clock=clock)


@pytest.fixture
def temp_db_path(tmp_path):
    """Create a temporary database path."""
    return str(tmp_path / "cache.db")


# ============================================================================
# Retry Fixtures
# ============================================================================

@pytest.fixture
def retry_config():
    """Create a retry config with fast settings for tests."""
    from debrid_stream.retry import RetryConfig

    return RetryConfig(
        max_attempts=3,
        initial_delay=0.001,  # Fast for tests
        max_delay=0.01,
        jitter=False,
    )


@pytest.fixture
def retry_handler(retry_config):
    """Create a retry handler for tests."""
    from debrid_stream.retry import RetryHandler

    return RetryHandler(retry_config)


# ============================================================================
# Engine Fixtures
# ============================================================================

@pytest.fixture
def resolver(provider, retry_handler):
    """Create a resolver that does not wait between polls."""
    from debrid_stream.resolver import TorrentLifecycleResolver

    return TorrentLifecycleResolver(provider, poll_interval=0, max_polls=3, retry_handler=retry_handler)


@pytest.fixture
def engine(provider, memory_store, resolver, retry_handler):
    """Create a stream engine over the fake provider."""
    from debrid_stream.engine import StreamEngine
    from debrid_stream.scheduler import AdmissionScheduler

    return StreamEngine(
        provider,
        memory_store,
        scheduler=AdmissionScheduler(max_concurrent=2, high_water=2),
        resolver=resolver,
        retry_handler=retry_handler,
    )
