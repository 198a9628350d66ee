"""
Database-backed repositories for users, videos and video qualities.

Built on SQLAlchemy Core expressions executed through the async ``databases``
library, so the same code runs on PostgreSQL (production) and SQLite (tests).
Writes go through ``execute_with_retry`` to ride out lock contention.

Every mutation is a single-row statement scoped by ``video_id`` or
``(video_id, quality_name)``; aggregate questions ("are all qualities
resolved?") always re-query instead of trusting cached counts.
"""

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

import sqlalchemy as sa
from databases import Database

from config import MAX_QUALITY_RETRIES
from ingest.common import encode_name_list, utcnow
from ingest.database import users, video_qualities, videos
from ingest.db_retry import (
    execute_query_with_retry,
    fetch_all_with_retry,
    fetch_one_with_retry,
)
from ingest.enums import QualityStatus, VideoStatus
from ingest.errors import NoFieldsToUpdateError, RecordNotFoundError
from ingest.models import QualityInput, User, Video, VideoQuality

logger = logging.getLogger(__name__)

_VIDEO_COLUMNS = frozenset(c.name for c in videos.columns)
_QUALITY_COLUMNS = frozenset(c.name for c in video_qualities.columns)


def _to_db_values(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Convert enums and quality-name lists into column values."""
    values = {}
    for key, value in fields.items():
        if isinstance(value, Enum):
            value = value.value
        elif key == "available_qualities" and value is not None and not isinstance(value, str):
            value = encode_name_list(value)
        values[key] = value
    return values


class DatabaseUserRepository:
    """Read-only view of uploader account state."""

    def __init__(self, database: Database):
        self._database = database

    async def find_by_id(self, user_id: str) -> Optional[User]:
        row = await fetch_one_with_retry(self._database, users.select().where(users.c.id == user_id))
        return User.from_row(row) if row else None


class DatabaseVideoRepository:
    """Persistence for Video rows, including soft-delete and restore."""

    def __init__(self, database: Database):
        self._database = database

    def transaction(self):
        """Open a transaction; repository calls made in the same task join it."""
        return self._database.transaction()

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def find_by_id(self, video_id: str) -> Optional[Video]:
        """Find a non-deleted video."""
        query = videos.select().where(videos.c.id == video_id, videos.c.deleted_at.is_(None))
        row = await fetch_one_with_retry(self._database, query)
        return Video.from_row(row) if row else None

    async def find_by_id_include_deleted(self, video_id: str) -> Optional[Video]:
        row = await fetch_one_with_retry(self._database, videos.select().where(videos.c.id == video_id))
        return Video.from_row(row) if row else None

    async def find_by_id_for_update(self, video_id: str) -> Optional[Video]:
        """
        Fetch a non-deleted video and lock its row until the transaction ends.

        PostgreSQL renders ``FOR UPDATE``; SQLite ignores it (its writers are
        already serialized by the database lock).
        """
        query = (
            videos.select()
            .where(videos.c.id == video_id, videos.c.deleted_at.is_(None))
            .with_for_update()
        )
        row = await self._database.fetch_one(query)
        return Video.from_row(row) if row else None

    async def find_by_status(self, status: VideoStatus, limit: int = 100) -> List[Video]:
        query = (
            videos.select()
            .where(videos.c.status == status.value, videos.c.deleted_at.is_(None))
            .order_by(videos.c.created_at.desc())
            .limit(limit)
        )
        rows = await fetch_all_with_retry(self._database, query)
        return [Video.from_row(row) for row in rows]

    async def find_pending_processing(self, limit: int = 10) -> List[Video]:
        """Videos still uploading or processing that have retry budget left."""
        query = (
            videos.select()
            .where(
                videos.c.status.in_([VideoStatus.UPLOADING.value, VideoStatus.PROCESSING.value]),
                videos.c.retry_count < MAX_QUALITY_RETRIES,
                videos.c.deleted_at.is_(None),
            )
            .order_by(videos.c.created_at.asc())
            .limit(limit)
        )
        rows = await fetch_all_with_retry(self._database, query)
        return [Video.from_row(row) for row in rows]

    async def find_failed_for_retry(self, max_retries: int = 3) -> List[Video]:
        query = (
            videos.select()
            .where(
                videos.c.status == VideoStatus.FAILED.value,
                videos.c.retry_count < max_retries,
                videos.c.deleted_at.is_(None),
            )
            .order_by(videos.c.updated_at.asc())
        )
        rows = await fetch_all_with_retry(self._database, query)
        return [Video.from_row(row) for row in rows]

    async def find_deleted_older_than(self, days: int, limit: int = 100) -> List[Video]:
        """Soft-deleted videos whose deletion timestamp is older than ``days``."""
        cutoff = utcnow() - timedelta(days=days)
        query = (
            videos.select()
            .where(videos.c.deleted_at.isnot(None), videos.c.deleted_at < cutoff)
            .order_by(videos.c.deleted_at.asc())
            .limit(limit)
        )
        rows = await fetch_all_with_retry(self._database, query)
        return [Video.from_row(row) for row in rows]

    async def find_orphans(self, older_than_hours: int, limit: int = 100) -> List[Video]:
        """Videos whose upload was never confirmed within ``older_than_hours``."""
        cutoff = utcnow() - timedelta(hours=older_than_hours)
        query = (
            videos.select()
            .where(
                videos.c.status == VideoStatus.UPLOADING.value,
                videos.c.created_at < cutoff,
                videos.c.deleted_at.is_(None),
            )
            .order_by(videos.c.created_at.asc())
            .limit(limit)
        )
        rows = await fetch_all_with_retry(self._database, query)
        return [Video.from_row(row) for row in rows]

    async def count_by_uploader(self, user_id: str) -> int:
        query = (
            sa.select(sa.func.count().label("total"))
            .select_from(videos)
            .where(videos.c.uploader_id == user_id, videos.c.deleted_at.is_(None))
        )
        row = await fetch_one_with_retry(self._database, query)
        return int(row["total"]) if row else 0

    async def has_associated_post(self, video_id: str) -> bool:
        query = sa.select(videos.c.post_id).where(videos.c.id == video_id)
        row = await fetch_one_with_retry(self._database, query)
        return bool(row and row["post_id"])

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    async def save(self, video: Video) -> Video:
        """Insert a new video or overwrite every column of an existing one."""
        now = utcnow()
        values = _to_db_values(
            {
                "id": video.id,
                "uploader_id": video.uploader_id,
                "post_id": video.post_id,
                "original_filename": video.original_filename,
                "file_size": video.file_size,
                "mime_type": video.mime_type,
                "status": video.status,
                "duration": video.duration,
                "width": video.width,
                "height": video.height,
                "codec": video.codec,
                "bitrate": video.bitrate,
                "raw_file_path": video.raw_file_path,
                "hls_url": video.hls_url,
                "thumbnail_url": video.thumbnail_url,
                "available_qualities": video.available_qualities,
                "retry_count": video.retry_count,
                "error_message": video.error_message,
                "uploaded_at": video.uploaded_at,
                "processing_completed_at": video.processing_completed_at,
                "created_at": video.created_at or now,
                "updated_at": now,
                "deleted_at": video.deleted_at,
            }
        )

        async with self._database.transaction():
            existing = await self._database.fetch_one(
                sa.select(videos.c.id).where(videos.c.id == video.id)
            )
            if existing:
                values.pop("id")
                values.pop("created_at")
                await self._database.execute(videos.update().where(videos.c.id == video.id).values(**values))
            else:
                await self._database.execute(videos.insert().values(**values))

        saved = await self.find_by_id_include_deleted(video.id)
        return saved

    async def update(self, video_id: str, **fields: Any) -> Video:
        """
        Update selected columns of a video.

        Raises:
            NoFieldsToUpdateError: If no fields were given
            ValueError: If a field is not a video column
            RecordNotFoundError: If the video does not exist
        """
        if not fields:
            raise NoFieldsToUpdateError("No fields to update")
        unknown = set(fields) - _VIDEO_COLUMNS
        if unknown:
            raise ValueError(f"Unknown video fields: {sorted(unknown)}")

        values = _to_db_values(fields)
        values["updated_at"] = utcnow()

        existing = await fetch_one_with_retry(
            self._database, sa.select(videos.c.id).where(videos.c.id == video_id)
        )
        if not existing:
            raise RecordNotFoundError(f"Video {video_id} not found")

        await execute_query_with_retry(
            self._database, videos.update().where(videos.c.id == video_id).values(**values)
        )
        return await self.find_by_id_include_deleted(video_id)

    async def update_status(
        self, video_id: str, status: VideoStatus, error_message: Optional[str] = None
    ) -> Video:
        fields: Dict[str, Any] = {"status": status}
        if error_message is not None:
            fields["error_message"] = error_message
        return await self.update(video_id, **fields)

    async def soft_delete(self, video_id: str) -> None:
        await self.update(video_id, deleted_at=utcnow())

    async def restore(self, video_id: str) -> Video:
        """Clear the soft-delete marker, leaving the status untouched."""
        return await self.update(video_id, deleted_at=None)

    async def hard_delete(self, video_id: str) -> None:
        """Permanently remove a video and its quality rows."""
        async with self._database.transaction():
            # Explicit child delete so SQLite (foreign keys off by default) matches
            # PostgreSQL's ON DELETE CASCADE.
            await self._database.execute(video_qualities.delete().where(video_qualities.c.video_id == video_id))
            await self._database.execute(videos.delete().where(videos.c.id == video_id))


class DatabaseVideoQualityRepository:
    """Persistence for per-quality rows (one per video and quality name)."""

    def __init__(self, database: Database):
        self._database = database

    def _insert(self):
        """Dialect-specific INSERT that supports ON CONFLICT."""
        if self._database.url.dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        else:
            from sqlalchemy.dialects.sqlite import insert
        return insert(video_qualities)

    @staticmethod
    def _row_values(item: QualityInput, now: datetime) -> Dict[str, Any]:
        return {
            "video_id": item.video_id,
            "quality_name": item.quality_name,
            "status": item.status.value,
            "retry_priority": item.resolved_priority(),
            "retry_count": 0,
            "started_at": now if item.status == QualityStatus.ENCODING else None,
            "created_at": now,
            "updated_at": now,
        }

    async def create_batch(self, inputs: Sequence[QualityInput]) -> List[VideoQuality]:
        """Insert one row per input. Fails on duplicates; see ``upsert_batch``."""
        if not inputs:
            return []
        now = utcnow()
        async with self._database.transaction():
            for item in inputs:
                await self._database.execute(video_qualities.insert().values(**self._row_values(item, now)))
        return await self.find_by_video_id(inputs[0].video_id)

    async def upsert_batch(self, inputs: Sequence[QualityInput]) -> List[VideoQuality]:
        """
        Insert or reset rows keyed on (video_id, quality_name).

        Re-running a whole-video job must not duplicate rows, so existing rows get
        their status, timestamps and error reset. retry_priority and
        retry_count are left alone: the priority is fixed for the tier and the
        retry budget belongs to the quality, not to a job run.
        """
        if not inputs:
            return []
        now = utcnow()
        async with self._database.transaction():
            for item in inputs:
                stmt = self._insert().values(**self._row_values(item, now))
                stmt = stmt.on_conflict_do_update(
                    index_elements=["video_id", "quality_name"],
                    set_={
                        "status": stmt.excluded.status,
                        "started_at": stmt.excluded.started_at,
                        "completed_at": None,
                        "error_message": None,
                        "updated_at": now,
                    },
                )
                await self._database.execute(stmt)
        video_ids = {item.video_id for item in inputs}
        results: List[VideoQuality] = []
        for video_id in sorted(video_ids):
            results.extend(await self.find_by_video_id(video_id))
        return results

    async def find_by_video_id(self, video_id: str) -> List[VideoQuality]:
        query = (
            video_qualities.select()
            .where(video_qualities.c.video_id == video_id)
            .order_by(video_qualities.c.retry_priority.asc())
        )
        rows = await fetch_all_with_retry(self._database, query)
        return [VideoQuality.from_row(row) for row in rows]

    async def find_by_video_and_quality(self, video_id: str, quality_name: str) -> Optional[VideoQuality]:
        query = video_qualities.select().where(
            video_qualities.c.video_id == video_id,
            video_qualities.c.quality_name == quality_name,
        )
        row = await fetch_one_with_retry(self._database, query)
        return VideoQuality.from_row(row) if row else None

    async def find_by_status(self, status: QualityStatus, limit: int = 100) -> List[VideoQuality]:
        query = (
            video_qualities.select()
            .where(video_qualities.c.status == status.value)
            .order_by(video_qualities.c.created_at.asc())
            .limit(limit)
        )
        rows = await fetch_all_with_retry(self._database, query)
        return [VideoQuality.from_row(row) for row in rows]

    async def find_ready_for_retry(self, limit: int = 50) -> List[VideoQuality]:
        """Failed qualities with retry budget left, cheapest renditions first."""
        query = (
            video_qualities.select()
            .where(
                video_qualities.c.status == QualityStatus.FAILED.value,
                video_qualities.c.retry_count < MAX_QUALITY_RETRIES,
            )
            .order_by(video_qualities.c.retry_priority.asc(), video_qualities.c.created_at.asc())
            .limit(limit)
        )
        rows = await fetch_all_with_retry(self._database, query)
        return [VideoQuality.from_row(row) for row in rows]

    async def find_stale_encoding(self, older_than: datetime, limit: int = 100) -> List[VideoQuality]:
        """Qualities that entered ``encoding`` before ``older_than`` and never finished."""
        query = (
            video_qualities.select()
            .where(
                video_qualities.c.status == QualityStatus.ENCODING.value,
                sa.func.coalesce(video_qualities.c.started_at, video_qualities.c.updated_at) < older_than,
            )
            .order_by(video_qualities.c.retry_priority.asc())
            .limit(limit)
        )
        rows = await fetch_all_with_retry(self._database, query)
        return [VideoQuality.from_row(row) for row in rows]

    async def update(self, video_id: str, quality_name: str, **fields: Any) -> VideoQuality:
        """
        Update selected columns of one quality row.

        Raises:
            NoFieldsToUpdateError: If no fields were given
            ValueError: If a field is not a quality column (or is retry_priority)
            RecordNotFoundError: If the row does not exist
        """
        if not fields:
            raise NoFieldsToUpdateError("No fields to update")
        unknown = set(fields) - _QUALITY_COLUMNS
        if unknown:
            raise ValueError(f"Unknown video quality fields: {sorted(unknown)}")
        if "retry_priority" in fields:
            raise ValueError("retry_priority is fixed at creation")

        current = await self.find_by_video_and_quality(video_id, quality_name)
        if current is None:
            raise RecordNotFoundError(f"Video quality {video_id}/{quality_name} not found")

        values = _to_db_values(fields)
        values["updated_at"] = utcnow()
        await execute_query_with_retry(
            self._database,
            video_qualities.update()
            .where(
                video_qualities.c.video_id == video_id,
                video_qualities.c.quality_name == quality_name,
            )
            .values(**values),
        )
        return await self.find_by_video_and_quality(video_id, quality_name)

    async def increment_retry_count(self, video_id: str, quality_name: str) -> int:
        """Atomically add one to retry_count (never beyond the cap) and return the new value."""
        current = await self.find_by_video_and_quality(video_id, quality_name)
        if current is None:
            raise RecordNotFoundError(f"Video quality {video_id}/{quality_name} not found")

        await execute_query_with_retry(
            self._database,
            video_qualities.update()
            .where(
                video_qualities.c.video_id == video_id,
                video_qualities.c.quality_name == quality_name,
            )
            .values(
                retry_count=sa.case(
                    (video_qualities.c.retry_count < MAX_QUALITY_RETRIES, video_qualities.c.retry_count + 1),
                    else_=video_qualities.c.retry_count,
                ),
                updated_at=utcnow(),
            ),
        )
        updated = await self.find_by_video_and_quality(video_id, quality_name)
        return updated.retry_count

    async def count_ready_qualities(self, video_id: str) -> int:
        query = (
            sa.select(sa.func.count().label("total"))
            .select_from(video_qualities)
            .where(
                video_qualities.c.video_id == video_id,
                video_qualities.c.status == QualityStatus.READY.value,
            )
        )
        row = await fetch_one_with_retry(self._database, query)
        return int(row["total"]) if row else 0

    async def has_minimum_qualities(self, video_id: str, min_count: int = 2) -> bool:
        return await self.count_ready_qualities(video_id) >= min_count

    async def delete_by_video_id(self, video_id: str) -> int:
        """Remove every quality row of a video; returns how many rows existed."""
        existing = await self.find_by_video_id(video_id)
        if existing:
            await execute_query_with_retry(
                self._database, video_qualities.delete().where(video_qualities.c.video_id == video_id)
            )
        return len(existing)
