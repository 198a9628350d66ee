"""
In-memory doubles for the collaborators used by the ingest core and workers.

Each double implements the matching protocol from ``ingest.contracts`` (or the
subset of Redis commands ``RedisJobQueue`` issues) and records enough state
for assertions.
"""

import copy
import dataclasses
import fnmatch
from contextlib import asynccontextmanager
from datetime import timedelta
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from config import MAX_QUALITY_RETRIES, QualityPreset
from ingest.common import utcnow
from ingest.contracts import (
    EncodingProgress,
    FailedQuality,
    HLSResult,
    VariantPlaylist,
    VideoMetadata,
    VideoNotification,
)
from ingest.enums import QualityStatus, VideoStatus
from ingest.errors import NoFieldsToUpdateError, RecordNotFoundError, StorageError
from ingest.models import QualityInput, User, Video, VideoQuality

_VIDEO_FIELDS = {f.name for f in dataclasses.fields(Video)}
_QUALITY_FIELDS = {f.name for f in dataclasses.fields(VideoQuality)}


# =============================================================================
# Repositories
# =============================================================================


class FakeUserRepository:
    def __init__(self, users: Sequence[User] = ()):
        self.users = {u.id: u for u in users}

    def add(self, user_id: str, is_active: bool = True, email_verified: bool = True) -> User:
        user = User(id=user_id, is_active=is_active, email_verified=email_verified)
        self.users[user_id] = user
        return user

    async def find_by_id(self, user_id: str) -> Optional[User]:
        return self.users.get(user_id)


class FakeVideoQualityRepository:
    def __init__(self):
        self.rows: Dict[Tuple[str, str], VideoQuality] = {}
        self._next_id = 1

    def _copy(self, row: VideoQuality) -> VideoQuality:
        return copy.deepcopy(row)

    def _sorted(self, rows) -> List[VideoQuality]:
        return [self._copy(r) for r in sorted(rows, key=lambda r: (r.retry_priority, r.created_at, r.id))]

    def add(self, video_id: str, quality_name: str, **fields: Any) -> VideoQuality:
        """Seed a row directly (test setup)."""
        now = utcnow()
        row = VideoQuality(
            id=self._next_id,
            video_id=video_id,
            quality_name=quality_name,
            retry_priority=QualityInput(video_id, quality_name).resolved_priority(),
            created_at=now,
            updated_at=now,
        )
        self._next_id += 1
        for key, value in fields.items():
            setattr(row, key, value)
        self.rows[(video_id, quality_name)] = row
        return self._copy(row)

    async def create_batch(self, inputs: Sequence[QualityInput]) -> List[VideoQuality]:
        for item in inputs:
            if (item.video_id, item.quality_name) in self.rows:
                raise ValueError(f"Duplicate quality {item.video_id}/{item.quality_name}")
            self.add(
                item.video_id,
                item.quality_name,
                status=item.status,
                retry_priority=item.resolved_priority(),
                started_at=utcnow() if item.status == QualityStatus.ENCODING else None,
            )
        return await self.find_by_video_id(inputs[0].video_id) if inputs else []

    async def upsert_batch(self, inputs: Sequence[QualityInput]) -> List[VideoQuality]:
        for item in inputs:
            row = self.rows.get((item.video_id, item.quality_name))
            if row is None:
                await self.create_batch([item])
                continue
            row.status = item.status
            row.started_at = utcnow() if item.status == QualityStatus.ENCODING else None
            row.completed_at = None
            row.error_message = None
            row.updated_at = utcnow()
        results: List[VideoQuality] = []
        for video_id in sorted({i.video_id for i in inputs}):
            results.extend(await self.find_by_video_id(video_id))
        return results

    async def find_by_video_id(self, video_id: str) -> List[VideoQuality]:
        return self._sorted(r for r in self.rows.values() if r.video_id == video_id)

    async def find_by_video_and_quality(self, video_id: str, quality_name: str) -> Optional[VideoQuality]:
        row = self.rows.get((video_id, quality_name))
        return self._copy(row) if row else None

    async def find_by_status(self, status: QualityStatus, limit: int = 100) -> List[VideoQuality]:
        rows = sorted((r for r in self.rows.values() if r.status == status), key=lambda r: r.created_at)
        return [self._copy(r) for r in rows[:limit]]

    async def find_ready_for_retry(self, limit: int = 50) -> List[VideoQuality]:
        rows = [
            r for r in self.rows.values()
            if r.status == QualityStatus.FAILED and r.retry_count < MAX_QUALITY_RETRIES
        ]
        return self._sorted(rows)[:limit]

    async def find_stale_encoding(self, older_than, limit: int = 100) -> List[VideoQuality]:
        rows = [
            r for r in self.rows.values()
            if r.status == QualityStatus.ENCODING and (r.started_at or r.updated_at) < older_than
        ]
        return self._sorted(rows)[:limit]

    async def update(self, video_id: str, quality_name: str, **fields: Any) -> VideoQuality:
        if not fields:
            raise NoFieldsToUpdateError("No fields to update")
        unknown = set(fields) - _QUALITY_FIELDS
        if unknown:
            raise ValueError(f"Unknown video quality fields: {sorted(unknown)}")
        if "retry_priority" in fields:
            raise ValueError("retry_priority is fixed at creation")
        row = self.rows.get((video_id, quality_name))
        if row is None:
            raise RecordNotFoundError(f"Video quality {video_id}/{quality_name} not found")
        for key, value in fields.items():
            setattr(row, key, value)
        row.updated_at = utcnow()
        return self._copy(row)

    async def increment_retry_count(self, video_id: str, quality_name: str) -> int:
        row = self.rows.get((video_id, quality_name))
        if row is None:
            raise RecordNotFoundError(f"Video quality {video_id}/{quality_name} not found")
        row.retry_count = min(row.retry_count + 1, MAX_QUALITY_RETRIES)
        return row.retry_count

    async def count_ready_qualities(self, video_id: str) -> int:
        return sum(1 for r in self.rows.values() if r.video_id == video_id and r.status == QualityStatus.READY)

    async def has_minimum_qualities(self, video_id: str, min_count: int = 2) -> bool:
        return await self.count_ready_qualities(video_id) >= min_count

    async def delete_by_video_id(self, video_id: str) -> int:
        keys = [k for k in self.rows if k[0] == video_id]
        for key in keys:
            del self.rows[key]
        return len(keys)


class FakeVideoRepository:
    def __init__(self, qualities: Optional[FakeVideoQualityRepository] = None):
        self.videos: Dict[str, Video] = {}
        self.post_ids: Dict[str, str] = {}
        self._qualities = qualities
        self.transactions = 0
        self.fail_hard_delete: set = set()

    @asynccontextmanager
    async def transaction(self):
        self.transactions += 1
        yield

    def add(self, video_id: str = "video-1", uploader_id: str = "user-1", **fields: Any) -> Video:
        """Seed a video directly (test setup)."""
        now = utcnow()
        video = Video(
            id=video_id,
            uploader_id=uploader_id,
            original_filename=fields.pop("original_filename", "clip.mp4"),
            file_size=fields.pop("file_size", 50 * 1024 * 1024),
            mime_type=fields.pop("mime_type", "video/mp4"),
            raw_file_path=fields.pop("raw_file_path", f"videos-raw/{video_id}.mp4"),
            created_at=fields.pop("created_at", now),
            updated_at=now,
        )
        for key, value in fields.items():
            setattr(video, key, value)
        self.videos[video_id] = video
        return copy.deepcopy(video)

    def get(self, video_id: str) -> Optional[Video]:
        video = self.videos.get(video_id)
        return copy.deepcopy(video) if video else None

    async def find_by_id(self, video_id: str) -> Optional[Video]:
        video = self.videos.get(video_id)
        if video is None or video.is_deleted:
            return None
        return copy.deepcopy(video)

    async def find_by_id_include_deleted(self, video_id: str) -> Optional[Video]:
        return self.get(video_id)

    async def find_by_id_for_update(self, video_id: str) -> Optional[Video]:
        return await self.find_by_id(video_id)

    async def find_by_status(self, status: VideoStatus, limit: int = 100) -> List[Video]:
        rows = [v for v in self.videos.values() if v.status == status and not v.is_deleted]
        return [copy.deepcopy(v) for v in rows[:limit]]

    async def find_pending_processing(self, limit: int = 10) -> List[Video]:
        rows = [
            v for v in self.videos.values()
            if v.status in (VideoStatus.UPLOADING, VideoStatus.PROCESSING)
            and v.retry_count < MAX_QUALITY_RETRIES
            and not v.is_deleted
        ]
        return [copy.deepcopy(v) for v in rows[:limit]]

    async def find_failed_for_retry(self, max_retries: int = 3) -> List[Video]:
        rows = [
            v for v in self.videos.values()
            if v.status == VideoStatus.FAILED and v.retry_count < max_retries and not v.is_deleted
        ]
        return [copy.deepcopy(v) for v in rows]

    async def find_deleted_older_than(self, days: int, limit: int = 100) -> List[Video]:
        cutoff = utcnow() - timedelta(days=days)
        rows = sorted(
            (v for v in self.videos.values() if v.deleted_at is not None and v.deleted_at < cutoff),
            key=lambda v: v.deleted_at,
        )
        return [copy.deepcopy(v) for v in rows[:limit]]

    async def find_orphans(self, older_than_hours: int, limit: int = 100) -> List[Video]:
        cutoff = utcnow() - timedelta(hours=older_than_hours)
        rows = [
            v for v in self.videos.values()
            if v.status == VideoStatus.UPLOADING and v.created_at < cutoff and not v.is_deleted
        ]
        return [copy.deepcopy(v) for v in rows[:limit]]

    async def count_by_uploader(self, user_id: str) -> int:
        return sum(1 for v in self.videos.values() if v.uploader_id == user_id and not v.is_deleted)

    async def has_associated_post(self, video_id: str) -> bool:
        video = self.videos.get(video_id)
        return bool(video and video.post_id)

    async def save(self, video: Video) -> Video:
        stored = copy.deepcopy(video)
        stored.created_at = stored.created_at or utcnow()
        stored.updated_at = utcnow()
        self.videos[video.id] = stored
        return copy.deepcopy(stored)

    async def update(self, video_id: str, **fields: Any) -> Video:
        if not fields:
            raise NoFieldsToUpdateError("No fields to update")
        unknown = set(fields) - _VIDEO_FIELDS
        if unknown:
            raise ValueError(f"Unknown video fields: {sorted(unknown)}")
        video = self.videos.get(video_id)
        if video is None:
            raise RecordNotFoundError(f"Video {video_id} not found")
        for key, value in fields.items():
            setattr(video, key, value)
        video.updated_at = utcnow()
        return copy.deepcopy(video)

    async def update_status(self, video_id: str, status: VideoStatus, error_message: Optional[str] = None) -> Video:
        fields: Dict[str, Any] = {"status": status}
        if error_message is not None:
            fields["error_message"] = error_message
        return await self.update(video_id, **fields)

    async def soft_delete(self, video_id: str) -> None:
        await self.update(video_id, deleted_at=utcnow())

    async def restore(self, video_id: str) -> Video:
        return await self.update(video_id, deleted_at=None)

    async def hard_delete(self, video_id: str) -> None:
        if video_id in self.fail_hard_delete:
            raise RuntimeError(f"database unavailable while deleting {video_id}")
        self.videos.pop(video_id, None)
        if self._qualities is not None:
            await self._qualities.delete_by_video_id(video_id)


# =============================================================================
# Object storage
# =============================================================================


class FakeStorage:
    """Dict-backed object store keyed on (bucket, key)."""

    def __init__(self):
        self.objects: Dict[Tuple[str, str], bytes] = {}
        self.calls: List[Tuple[str, str, str]] = []
        self.fail_delete_prefixes: set = set()  # keys/prefixes whose deletion raises

    def put(self, bucket: str, key: str, data: bytes = b"data") -> None:
        self.objects[(bucket, key)] = data

    def keys(self, bucket: str) -> List[str]:
        return sorted(k for b, k in self.objects if b == bucket)

    def _check_delete(self, bucket: str, key: str) -> None:
        for prefix in self.fail_delete_prefixes:
            if key.startswith(prefix):
                raise StorageError(f"Failed to delete {bucket}/{key}: AccessDenied")

    async def generate_upload_url(self, bucket: str, key: str, content_type: str, expires_in: int) -> str:
        self.calls.append(("generate_upload_url", bucket, key))
        return f"https://storage.test/{bucket}/{key}?X-Amz-Expires={expires_in}&upload=1"

    async def generate_download_url(self, bucket: str, key: str, expires_in: int) -> str:
        self.calls.append(("generate_download_url", bucket, key))
        return f"https://storage.test/{bucket}/{key}?X-Amz-Expires={expires_in}"

    async def object_exists(self, bucket: str, key: str) -> bool:
        self.calls.append(("object_exists", bucket, key))
        return (bucket, key) in self.objects

    async def get_object(self, bucket: str, key: str) -> bytes:
        self.calls.append(("get_object", bucket, key))
        if (bucket, key) not in self.objects:
            raise StorageError(f"NoSuchKey: {bucket}/{key}")
        return self.objects[(bucket, key)]

    async def download_file(self, bucket: str, key: str, local_path: Path) -> None:
        self.calls.append(("download_file", bucket, key))
        data = await self.get_object(bucket, key)
        local_path.parent.mkdir(parents=True, exist_ok=True)
        local_path.write_bytes(data)

    async def upload_file(self, local_path: Path, bucket: str, key: str, content_type: Optional[str] = None) -> None:
        self.calls.append(("upload_file", bucket, key))
        self.objects[(bucket, key)] = Path(local_path).read_bytes()

    async def delete_object(self, bucket: str, key: str) -> None:
        self.calls.append(("delete_object", bucket, key))
        self._check_delete(bucket, key)
        self.objects.pop((bucket, key), None)

    async def delete_objects(self, bucket: str, keys: Sequence[str]) -> int:
        for key in keys:
            await self.delete_object(bucket, key)
        return len(keys)

    async def list_objects(self, bucket: str, prefix: str) -> List[str]:
        self.calls.append(("list_objects", bucket, prefix))
        return [k for k in self.keys(bucket) if k.startswith(prefix)]

    async def delete_prefix(self, bucket: str, prefix: str) -> int:
        self.calls.append(("delete_prefix", bucket, prefix))
        self._check_delete(bucket, prefix)
        keys = [k for k in self.keys(bucket) if k.startswith(prefix)]
        for key in keys:
            self.objects.pop((bucket, key), None)
        return len(keys)

    def mutations(self) -> List[Tuple[str, str, str]]:
        return [c for c in self.calls if c[0] in ("delete_object", "delete_prefix", "upload_file")]


# =============================================================================
# Encoding engine
# =============================================================================


class FakeEncodingEngine:
    """
    Scripted engine: ``fail_times[quality]`` encodes of that quality fail
    before it starts succeeding.
    """

    def __init__(self, metadata: Optional[VideoMetadata] = None, fail_times: Optional[Dict[str, int]] = None):
        self.metadata = metadata or VideoMetadata(duration=60.0, width=1920, height=1080, codec="h264", bitrate=5_000_000)
        self.fail_times = dict(fail_times or {})
        self.encoded: List[str] = []
        self.metadata_error: Optional[Exception] = None
        self.thumbnail_error: Optional[Exception] = None
        # Awaited with the quality name before each encode starts
        self.before_quality: Optional[Callable[[str], Awaitable[None]]] = None

    async def extract_metadata(self, path: Path) -> VideoMetadata:
        if self.metadata_error is not None:
            raise self.metadata_error
        return self.metadata

    async def generate_thumbnail(self, path: Path, output_path: Path, timestamp: float) -> None:
        if self.thumbnail_error is not None:
            raise self.thumbnail_error
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_bytes(b"jpeg")

    async def encode_to_hls(
        self,
        path: Path,
        output_dir: Path,
        qualities: Sequence[QualityPreset],
        on_progress=None,
        duration: Optional[float] = None,
        on_quality_start=None,
    ) -> HLSResult:
        output_dir.mkdir(parents=True, exist_ok=True)
        result = HLSResult(master_playlist_path=None)
        for quality in qualities:
            if self.before_quality:
                await self.before_quality(quality.name)
            if on_quality_start:
                await on_quality_start(quality)
            self.encoded.append(quality.name)
            if on_progress:
                await on_progress(EncodingProgress(quality=quality.name, percent=50, frames=10, timemark="00:00:30"))
            if self.fail_times.get(quality.name, 0) > 0:
                self.fail_times[quality.name] -= 1
                (output_dir / f"{quality.name}_0000.ts").write_bytes(b"partial")
                result.failed_qualities.append(
                    FailedQuality(quality=quality.name, error=f"FFmpeg encode {quality.name} exited with code 1")
                )
                continue
            segments = []
            for i in range(2):
                segment = output_dir / f"{quality.name}_{i:04d}.ts"
                segment.write_bytes(b"ts")
                segments.append(segment)
            playlist = output_dir / f"{quality.name}.m3u8"
            playlist.write_text("#EXTM3U\n")
            result.variant_playlists.append(
                VariantPlaylist(quality=quality.name, playlist_path=playlist, segment_paths=segments)
            )
        if result.variant_playlists:
            master = output_dir / "master.m3u8"
            master.write_text("#EXTM3U\n")
            result.master_playlist_path = master
        result.encoding_time = 1.0
        return result


# =============================================================================
# Notifications
# =============================================================================


class RecordingNotifier:
    def __init__(self):
        self.calls: List[Tuple[str, VideoNotification]] = []

    def of(self, kind: str) -> List[VideoNotification]:
        return [data for name, data in self.calls if name == kind]

    async def notify_video_ready(self, data: VideoNotification) -> None:
        self.calls.append(("ready", data))

    async def notify_video_partial_ready(self, data: VideoNotification) -> None:
        self.calls.append(("partial_ready", data))

    async def notify_video_failed(self, data: VideoNotification) -> None:
        self.calls.append(("failed", data))

    async def notify_quality_retry_failed(self, data: VideoNotification) -> None:
        self.calls.append(("quality_failed", data))


# =============================================================================
# Redis
# =============================================================================


class FakeRedis:
    """
    Minimal in-memory stand-in for ``redis.asyncio.Redis`` with
    ``decode_responses=True``, covering the commands the job queue issues.
    """

    def __init__(self):
        self.strings: Dict[str, str] = {}
        self.hashes: Dict[str, Dict[str, str]] = {}
        self.zsets: Dict[str, Dict[str, float]] = {}
        self.sets: Dict[str, set] = {}
        self.published: List[Tuple[str, str]] = []

    # strings
    async def incr(self, key: str) -> int:
        value = int(self.strings.get(key, "0")) + 1
        self.strings[key] = str(value)
        return value

    # hashes
    async def hsetnx(self, key: str, field: str, value: Any) -> int:
        h = self.hashes.setdefault(key, {})
        if field in h:
            return 0
        h[field] = str(value)
        return 1

    async def hset(self, key: str, field: Optional[str] = None, value: Any = None, mapping: Optional[dict] = None) -> int:
        h = self.hashes.setdefault(key, {})
        added = 0
        items = dict(mapping or {})
        if field is not None:
            items[field] = value
        for k, v in items.items():
            if k not in h:
                added += 1
            h[k] = str(v)
        return added

    async def hget(self, key: str, field: str) -> Optional[str]:
        return self.hashes.get(key, {}).get(field)

    async def hgetall(self, key: str) -> Dict[str, str]:
        return dict(self.hashes.get(key, {}))

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        h = self.hashes.setdefault(key, {})
        value = int(h.get(field, "0")) + amount
        h[field] = str(value)
        return value

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            for store in (self.strings, self.hashes, self.zsets, self.sets):
                if key in store:
                    del store[key]
                    removed += 1
        return removed

    # sorted sets
    async def zadd(self, key: str, mapping: Dict[str, float]) -> int:
        z = self.zsets.setdefault(key, {})
        added = sum(1 for m in mapping if m not in z)
        z.update({m: float(s) for m, s in mapping.items()})
        return added

    async def zrem(self, key: str, *members: str) -> int:
        z = self.zsets.get(key, {})
        removed = 0
        for member in members:
            if member in z:
                del z[member]
                removed += 1
        return removed

    async def zpopmin(self, key: str, count: int = 1) -> List[Tuple[str, float]]:
        z = self.zsets.get(key, {})
        ordered = sorted(z.items(), key=lambda item: (item[1], item[0]))[:count]
        for member, _ in ordered:
            del z[member]
        return ordered

    async def zrangebyscore(self, key: str, min_score, max_score) -> List[str]:
        low = float("-inf") if min_score == "-inf" else float(min_score)
        high = float("inf") if max_score == "+inf" else float(max_score)
        z = self.zsets.get(key, {})
        return [m for m, s in sorted(z.items(), key=lambda item: (item[1], item[0])) if low <= s <= high]

    async def zcard(self, key: str) -> int:
        return len(self.zsets.get(key, {}))

    async def zscore(self, key: str, member: str) -> Optional[float]:
        return self.zsets.get(key, {}).get(member)

    # sets
    async def sadd(self, key: str, *members: str) -> int:
        s = self.sets.setdefault(key, set())
        added = sum(1 for m in members if m not in s)
        s.update(members)
        return added

    async def srem(self, key: str, *members: str) -> int:
        s = self.sets.get(key, set())
        removed = sum(1 for m in members if m in s)
        s.difference_update(members)
        return removed

    async def scard(self, key: str) -> int:
        return len(self.sets.get(key, set()))

    async def smembers(self, key: str) -> set:
        return set(self.sets.get(key, set()))

    # pub/sub
    async def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, message))
        return 0

    async def aclose(self) -> None:
        pass

    def keys_matching(self, pattern: str) -> List[str]:
        all_keys = set(self.strings) | set(self.hashes) | set(self.zsets) | set(self.sets)
        return sorted(k for k in all_keys if fnmatch.fnmatch(k, pattern))
