"""
Debrid Provider Capability Interface
Closed job status set, remote job model, and the per-provider mapping tables.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Type

from .exceptions import ProviderError


class JobStatus(Enum):
    """Lifecycle status of a remote torrent job."""
    MAGNET_ERROR = "magnet_error"
    ERRED = "erred"
    OPENING = "opening"
    WAITING_SELECTION = "waiting_selection"
    DOWNLOADING = "downloading"
    READY = "ready"
    UNKNOWN = "unknown"


@dataclass
class TorrentFile:
    """A file inside a remote job. Ids are 1-based as on the wire."""
    id: int
    path: str
    bytes: int
    selected: bool


@dataclass
class RemoteTorrentJob:
    """A torrent job owned by the provider account."""
    id: str
    status: JobStatus
    hash: str
    files: List[TorrentFile] = field(default_factory=list)
    links: List[str] = field(default_factory=list)
    filename: str = ""
    raw_status: str = ""
    added: Optional[str] = None

    @property
    def is_erred(self) -> bool:
        return self.status in (JobStatus.ERRED, JobStatus.MAGNET_ERROR)

    @property
    def selected_files(self) -> List[TorrentFile]:
        return [f for f in self.files if f.selected]

    def find_file(self, file_id: int) -> Optional[TorrentFile]:
        return next((f for f in self.files if f.id == file_id), None)


@dataclass
class UnrestrictedLink:
    """Direct download link produced by the provider."""
    download: str
    filename: str = ""
    mime_type: Optional[str] = None
    streamable: bool = False


class DebridProvider(ABC):
    """
    Capability set of one debrid provider.

    Subclasses fill STATUS_MAP (raw status string -> JobStatus) and
    ERROR_CODES (numeric provider code -> ProviderError subclass).
    """

    key: str = ""
    STATUS_MAP: Dict[str, JobStatus] = {}
    ERROR_CODES: Dict[int, Type[ProviderError]] = {}

    def map_status(self, raw_status: Optional[str]) -> JobStatus:
        return self.STATUS_MAP.get(raw_status or "", JobStatus.UNKNOWN)

    def error_for(
        self,
        code: Optional[int],
        message: str,
        status: Optional[int] = None,
        payload: Any = None,
    ) -> ProviderError:
        """Build the exception type mapped to a provider error code."""
        error_cls = self.ERROR_CODES.get(code, ProviderError)
        return error_cls(message, code=code, status=status, payload=payload)

    async def close(self) -> None:
        """Release network resources."""

    @abstractmethod
    async def list_jobs(self, api_key: str, page: int = 1, page_size: int = 100) -> List[RemoteTorrentJob]:
        """List account jobs, most recent first. Entries may lack files and links."""

    @abstractmethod
    async def add_magnet(self, api_key: str, magnet_link: str) -> str:
        """Submit a magnet and return the new job id."""

    @abstractmethod
    async def select_files(self, api_key: str, job_id: str, file_ids: Sequence[Any]) -> None:
        """Select the given 1-based file ids for download."""

    @abstractmethod
    async def job_info(self, api_key: str, job_id: str) -> RemoteTorrentJob:
        """Fetch full job info including files and links."""

    @abstractmethod
    async def instant_availability(self, api_key: str, hashes: Sequence[str]) -> Dict[str, List[Dict[str, str]]]:
        """
        Return, per requested hash, the cached copies the provider holds.

        Each copy maps a file id (string) to the file name. Hashes with no
        cached copy map to an empty list.
        """

    @abstractmethod
    async def unrestrict(self, api_key: str, link: str) -> UnrestrictedLink:
        """Turn a provider hoster link into a direct download link."""
