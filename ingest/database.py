"""
Table definitions for videos, their quality variants, and the account-state view.

The ``Database`` handle is created explicitly with ``create_database()`` and
handed to the repositories; nothing in this module holds a live connection.
"""

from datetime import datetime, timezone

import sqlalchemy as sa
from databases import Database

metadata = sa.MetaData()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Narrow view of the account table owned by the auth domain; only the fields
# the upload policy reads.
users = sa.Table(
    "users",
    metadata,
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("is_active", sa.Boolean, nullable=False, default=True),
    sa.Column("email_verified", sa.Boolean, nullable=False, default=False),
    sa.Column("created_at", sa.DateTime(timezone=True), default=_utcnow),
)

videos = sa.Table(
    "videos",
    metadata,
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("uploader_id", sa.String(36), nullable=False),
    sa.Column("post_id", sa.String(36), nullable=True),  # Set once the video is attached to a post
    sa.Column("original_filename", sa.String(255), nullable=False),
    sa.Column("file_size", sa.BigInteger, nullable=False),
    sa.Column("mime_type", sa.String(100), nullable=False),
    sa.Column(
        "status",
        sa.String(20),
        sa.CheckConstraint(
            "status IN ('uploading', 'uploaded', 'processing', 'ready', 'partial_ready', 'failed', 'cancelled')",
            name="ck_videos_status",
        ),
        nullable=False,
        default="uploading",
    ),
    sa.Column("duration", sa.Float, nullable=True),  # seconds
    sa.Column("width", sa.Integer, nullable=True),
    sa.Column("height", sa.Integer, nullable=True),
    sa.Column("codec", sa.String(50), nullable=True),
    sa.Column("bitrate", sa.BigInteger, nullable=True),  # bits per second
    sa.Column("raw_file_path", sa.String(512), nullable=True),  # "bucket/key"
    sa.Column("hls_url", sa.String(1024), nullable=True),
    sa.Column("thumbnail_url", sa.String(1024), nullable=True),
    sa.Column("available_qualities", sa.Text, nullable=False, default="[]"),  # JSON list of names
    sa.Column("retry_count", sa.Integer, nullable=False, default=0),
    sa.Column("error_message", sa.Text, nullable=True),
    sa.Column("uploaded_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("processing_completed_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, default=_utcnow),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow),
    sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),  # Soft-delete timestamp (NULL = not deleted)
    sa.Index("ix_videos_status", "status"),
    sa.Index("ix_videos_uploader_id", "uploader_id"),
    sa.Index("ix_videos_deleted_at", "deleted_at"),
)

video_qualities = sa.Table(
    "video_qualities",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("video_id", sa.String(36), sa.ForeignKey("videos.id", ondelete="CASCADE"), nullable=False),
    sa.Column("quality_name", sa.String(10), nullable=False),  # 360p, 480p, 720p, 1080p
    sa.Column(
        "status",
        sa.String(20),
        sa.CheckConstraint(
            "status IN ('pending', 'encoding', 'ready', 'failed', 'cancelled')",
            name="ck_video_qualities_status",
        ),
        nullable=False,
        default="pending",
    ),
    sa.Column("playlist_path", sa.String(512), nullable=True),
    sa.Column("segment_count", sa.Integer, nullable=True),
    sa.Column(
        "retry_count",
        sa.Integer,
        sa.CheckConstraint("retry_count >= 0 AND retry_count <= 3", name="ck_video_qualities_retry_count"),
        nullable=False,
        default=0,
    ),
    sa.Column("retry_priority", sa.Integer, nullable=False),  # Lower = retried first
    sa.Column("error_message", sa.Text, nullable=True),
    sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, default=_utcnow),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow),
    sa.UniqueConstraint("video_id", "quality_name", name="uq_video_qualities_video_quality"),
    sa.Index("ix_video_qualities_video_id", "video_id"),
    sa.Index("ix_video_qualities_retry", "status", "retry_count", "retry_priority"),
)


def create_database(url: str) -> Database:
    """Build a ``databases.Database`` for the given URL (PostgreSQL or SQLite)."""
    return Database(url)


def create_tables(url: str) -> None:
    """Create all tables (synchronous, used by the CLI and tests)."""
    engine = sa.create_engine(url)
    try:
        metadata.create_all(engine)
    finally:
        engine.dispose()
