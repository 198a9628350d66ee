"""
Centralized enums for status values used throughout the application.
Using str-based enums for database compatibility.
"""

from enum import Enum


class VideoStatus(str, Enum):
    """Lifecycle status of an uploaded video."""

    UPLOADING = "uploading"
    UPLOADED = "uploaded"
    PROCESSING = "processing"
    READY = "ready"
    PARTIAL_READY = "partial_ready"  # Some but not all qualities succeeded
    FAILED = "failed"
    CANCELLED = "cancelled"


class QualityStatus(str, Enum):
    """Status values for a single quality variant of a video."""

    PENDING = "pending"
    ENCODING = "encoding"
    READY = "ready"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobState(str, Enum):
    """States of a job held in a Redis job queue."""

    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DELAYED = "delayed"


class NotificationType(str, Enum):
    """User-facing notification kinds emitted by the encoding pipeline."""

    VIDEO_READY = "video_ready"
    VIDEO_PARTIAL_READY = "video_partial_ready"
    VIDEO_FAILED = "video_failed"
    QUALITY_FAILED = "quality_failed"
