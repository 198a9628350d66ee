"""
Domain records for videos, quality variants and uploader accounts.

Rows fetched through the ``databases`` library are mapped into these
dataclasses by the repositories so the rest of the code never touches raw
records. Datetimes are always normalised to UTC on the way in.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Mapping, Optional

from config import DEFAULT_RETRY_PRIORITY, QUALITY_PRESETS
from ingest.common import decode_name_list, ensure_utc
from ingest.enums import QualityStatus, VideoStatus

_PRIORITY_BY_NAME = {preset.name: preset.retry_priority for preset in QUALITY_PRESETS}


def retry_priority_for(quality_name: str) -> int:
    """Static retry priority for a quality tier (lower resolution = retried first)."""
    return _PRIORITY_BY_NAME.get(quality_name, DEFAULT_RETRY_PRIORITY)


@dataclass
class User:
    """Account state consulted by the upload policy."""

    id: str
    is_active: bool
    email_verified: bool

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "User":
        return cls(
            id=row["id"],
            is_active=bool(row["is_active"]),
            email_verified=bool(row["email_verified"]),
        )


@dataclass
class Video:
    """One uploaded asset and its processing lifecycle."""

    id: str
    uploader_id: str
    original_filename: str
    file_size: int
    mime_type: str
    status: VideoStatus = VideoStatus.UPLOADING
    post_id: Optional[str] = None
    duration: Optional[float] = None
    width: Optional[int] = None
    height: Optional[int] = None
    codec: Optional[str] = None
    bitrate: Optional[int] = None
    raw_file_path: Optional[str] = None
    hls_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    available_qualities: List[str] = field(default_factory=list)
    retry_count: int = 0
    error_message: Optional[str] = None
    uploaded_at: Optional[datetime] = None
    processing_completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Video":
        return cls(
            id=row["id"],
            uploader_id=row["uploader_id"],
            post_id=row["post_id"],
            original_filename=row["original_filename"],
            file_size=row["file_size"],
            mime_type=row["mime_type"],
            status=VideoStatus(row["status"]),
            duration=row["duration"],
            width=row["width"],
            height=row["height"],
            codec=row["codec"],
            bitrate=row["bitrate"],
            raw_file_path=row["raw_file_path"],
            hls_url=row["hls_url"],
            thumbnail_url=row["thumbnail_url"],
            available_qualities=decode_name_list(row["available_qualities"]),
            retry_count=row["retry_count"] or 0,
            error_message=row["error_message"],
            uploaded_at=ensure_utc(row["uploaded_at"]),
            processing_completed_at=ensure_utc(row["processing_completed_at"]),
            created_at=ensure_utc(row["created_at"]),
            updated_at=ensure_utc(row["updated_at"]),
            deleted_at=ensure_utc(row["deleted_at"]),
        )


@dataclass
class VideoQuality:
    """One (video, quality name) rendition with its own status and retry state."""

    video_id: str
    quality_name: str
    retry_priority: int
    status: QualityStatus = QualityStatus.PENDING
    id: Optional[int] = None
    playlist_path: Optional[str] = None
    segment_count: Optional[int] = None
    retry_count: int = 0
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def is_retry_exhausted(self, max_retries: int) -> bool:
        """True once a failed quality has used its whole retry budget."""
        return self.status == QualityStatus.FAILED and self.retry_count >= max_retries

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "VideoQuality":
        return cls(
            id=row["id"],
            video_id=row["video_id"],
            quality_name=row["quality_name"],
            status=QualityStatus(row["status"]),
            playlist_path=row["playlist_path"],
            segment_count=row["segment_count"],
            retry_count=row["retry_count"] or 0,
            retry_priority=row["retry_priority"],
            error_message=row["error_message"],
            started_at=ensure_utc(row["started_at"]),
            completed_at=ensure_utc(row["completed_at"]),
            created_at=ensure_utc(row["created_at"]),
            updated_at=ensure_utc(row["updated_at"]),
        )


@dataclass
class QualityInput:
    """Input for create_batch / upsert_batch."""

    video_id: str
    quality_name: str
    status: QualityStatus = QualityStatus.PENDING
    retry_priority: Optional[int] = None

    def resolved_priority(self) -> int:
        if self.retry_priority is not None:
            return self.retry_priority
        return retry_priority_for(self.quality_name)
