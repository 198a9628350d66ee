"""
Contracts for the collaborators the core depends on.

Everything in ``ingest`` talks to persistence, object storage, the encoding
engine and the notification channel through these protocols. Concrete
implementations live in ``ingest.repositories``, ``ingest.storage``,
``worker.engine`` and ``worker.notifications``; tests substitute in-memory
doubles.
"""

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import (
    Any,
    AsyncContextManager,
    Awaitable,
    Callable,
    List,
    Optional,
    Protocol,
    Sequence,
)

from config import QualityPreset
from ingest.enums import QualityStatus, VideoStatus
from ingest.models import QualityInput, User, Video, VideoQuality

# =============================================================================
# Persistence
# =============================================================================


class UserRepository(Protocol):
    async def find_by_id(self, user_id: str) -> Optional[User]: ...


class VideoRepository(Protocol):
    def transaction(self) -> AsyncContextManager[Any]: ...

    async def find_by_id(self, video_id: str) -> Optional[Video]: ...

    async def find_by_id_include_deleted(self, video_id: str) -> Optional[Video]: ...

    async def find_by_id_for_update(self, video_id: str) -> Optional[Video]: ...

    async def find_by_status(self, status: VideoStatus, limit: int = 100) -> List[Video]: ...

    async def find_pending_processing(self, limit: int = 10) -> List[Video]: ...

    async def find_failed_for_retry(self, max_retries: int = 3) -> List[Video]: ...

    async def find_deleted_older_than(self, days: int, limit: int = 100) -> List[Video]: ...

    async def find_orphans(self, older_than_hours: int, limit: int = 100) -> List[Video]: ...

    async def count_by_uploader(self, user_id: str) -> int: ...

    async def has_associated_post(self, video_id: str) -> bool: ...

    async def save(self, video: Video) -> Video: ...

    async def update(self, video_id: str, **fields: Any) -> Video: ...

    async def update_status(
        self, video_id: str, status: VideoStatus, error_message: Optional[str] = None
    ) -> Video: ...

    async def soft_delete(self, video_id: str) -> None: ...

    async def restore(self, video_id: str) -> Video: ...

    async def hard_delete(self, video_id: str) -> None: ...


class VideoQualityRepository(Protocol):
    async def create_batch(self, inputs: Sequence[QualityInput]) -> List[VideoQuality]: ...

    async def upsert_batch(self, inputs: Sequence[QualityInput]) -> List[VideoQuality]: ...

    async def find_by_video_id(self, video_id: str) -> List[VideoQuality]: ...

    async def find_by_video_and_quality(self, video_id: str, quality_name: str) -> Optional[VideoQuality]: ...

    async def find_by_status(self, status: QualityStatus, limit: int = 100) -> List[VideoQuality]: ...

    async def find_ready_for_retry(self, limit: int = 50) -> List[VideoQuality]: ...

    async def find_stale_encoding(self, older_than: datetime, limit: int = 100) -> List[VideoQuality]: ...

    async def update(self, video_id: str, quality_name: str, **fields: Any) -> VideoQuality: ...

    async def increment_retry_count(self, video_id: str, quality_name: str) -> int: ...

    async def has_minimum_qualities(self, video_id: str, min_count: int = 2) -> bool: ...

    async def count_ready_qualities(self, video_id: str) -> int: ...

    async def delete_by_video_id(self, video_id: str) -> int: ...


# =============================================================================
# Object storage
# =============================================================================


class StorageGateway(Protocol):
    async def generate_upload_url(self, bucket: str, key: str, content_type: str, expires_in: int) -> str: ...

    async def generate_download_url(self, bucket: str, key: str, expires_in: int) -> str: ...

    async def object_exists(self, bucket: str, key: str) -> bool: ...

    async def get_object(self, bucket: str, key: str) -> bytes: ...

    async def download_file(self, bucket: str, key: str, local_path: Path) -> None: ...

    async def upload_file(self, local_path: Path, bucket: str, key: str, content_type: Optional[str] = None) -> None: ...

    async def delete_object(self, bucket: str, key: str) -> None: ...

    async def delete_objects(self, bucket: str, keys: Sequence[str]) -> int: ...

    async def list_objects(self, bucket: str, prefix: str) -> List[str]: ...

    async def delete_prefix(self, bucket: str, prefix: str) -> int: ...


# =============================================================================
# Encoding engine
# =============================================================================


@dataclass
class VideoMetadata:
    """Probe result for a source file."""

    duration: float
    width: int
    height: int
    codec: str
    bitrate: Optional[int] = None
    fps: Optional[float] = None
    file_size: Optional[int] = None
    format: Optional[str] = None


@dataclass
class EncodingProgress:
    """Progress callback payload."""

    quality: str
    percent: float
    frames: Optional[int] = None
    timemark: Optional[str] = None


@dataclass
class VariantPlaylist:
    """A successfully encoded quality: its playlist and segment files on local disk."""

    quality: str
    playlist_path: Path
    segment_paths: List[Path] = field(default_factory=list)

    @property
    def segment_count(self) -> int:
        return len(self.segment_paths)


@dataclass
class FailedQuality:
    quality: str
    error: str


@dataclass
class HLSResult:
    """Outcome of encoding a set of qualities; each quality succeeds or fails on its own."""

    master_playlist_path: Optional[Path]
    variant_playlists: List[VariantPlaylist] = field(default_factory=list)
    failed_qualities: List[FailedQuality] = field(default_factory=list)
    encoding_time: float = 0.0  # seconds


ProgressCallback = Callable[[EncodingProgress], Awaitable[None]]
# Awaited right before a quality's encode starts; raising aborts the remaining encodes
QualityStartCallback = Callable[[QualityPreset], Awaitable[None]]


class EncodingEngine(Protocol):
    async def extract_metadata(self, path: Path) -> VideoMetadata: ...

    async def generate_thumbnail(self, path: Path, output_path: Path, timestamp: float) -> None: ...

    async def encode_to_hls(
        self,
        path: Path,
        output_dir: Path,
        qualities: Sequence[QualityPreset],
        on_progress: Optional[ProgressCallback] = None,
        duration: Optional[float] = None,
        on_quality_start: Optional[QualityStartCallback] = None,
    ) -> HLSResult: ...


# =============================================================================
# Notifications
# =============================================================================


@dataclass
class VideoNotification:
    """Payload delivered to the uploader when a video changes state."""

    video_id: str
    user_id: str
    video_title: Optional[str] = None
    thumbnail_url: Optional[str] = None
    hls_url: Optional[str] = None
    available_qualities: List[str] = field(default_factory=list)
    failed_qualities: List[str] = field(default_factory=list)
    error_message: Optional[str] = None
    quality_name: Optional[str] = None


class NotificationService(Protocol):
    """Fire-and-forget: implementations must not raise."""

    async def notify_video_ready(self, data: VideoNotification) -> None: ...

    async def notify_video_partial_ready(self, data: VideoNotification) -> None: ...

    async def notify_video_failed(self, data: VideoNotification) -> None: ...

    async def notify_quality_retry_failed(self, data: VideoNotification) -> None: ...
