"""Tests for the scheduled maintenance sweeps."""

from datetime import timedelta

import pytest

from ingest.cleanup import (
    CleanupOrphanVideos,
    CleanupTrashVideos,
    RequeueFailedQualities,
    SweepStaleEncodings,
)
from ingest.common import utcnow
from ingest.encoding_queue import EncodingJobData
from ingest.enums import JobState, QualityStatus, VideoStatus
from ingest.errors import ErrorCode


def _days_ago(days: int):
    return utcnow() - timedelta(days=days)


class TestCleanupTrashVideos:
    """Tests for CleanupTrashVideos."""

    @pytest.mark.asyncio
    async def test_dry_run_counts_without_deleting(self, videos, storage):
        """Should report a video deleted 31 days ago without touching it."""
        videos.add("v1", status=VideoStatus.READY, deleted_at=_days_ago(31))
        storage.put("videos-raw", "v1.mp4")

        result = await CleanupTrashVideos(videos, storage).execute(retention_days=30, dry_run=True)

        assert result.value["total_expired"] == 1
        assert result.value["permanently_deleted"] == 0
        assert result.value["dry_run"] is True
        assert videos.get("v1") is not None
        assert storage.mutations() == []

    @pytest.mark.asyncio
    async def test_purges_expired_videos_only(self, videos, qualities, storage):
        videos.add("old", deleted_at=_days_ago(31), raw_file_path="videos-raw/old.mp4")
        videos.add("recent", deleted_at=_days_ago(5))
        videos.add("live")
        qualities.add("old", "720p", status=QualityStatus.READY)
        storage.put("videos-raw", "old.mp4")
        storage.put("videos-encoded", "old/master.m3u8")
        storage.put("videos-encoded", "old/720p.m3u8")
        storage.put("thumbnails", "old/thumbnail.jpg")

        result = await CleanupTrashVideos(videos, storage).execute(retention_days=30)

        assert result.value["deleted_video_ids"] == ["old"]
        assert videos.get("old") is None
        assert videos.get("recent") is not None
        assert videos.get("live") is not None
        assert await qualities.find_by_video_id("old") == []
        assert storage.objects == {}

    @pytest.mark.asyncio
    async def test_storage_failure_isolated_per_video(self, videos, storage):
        """Should keep a video whose objects could not be removed and carry on."""
        videos.add("bad", deleted_at=_days_ago(40))
        videos.add("good", deleted_at=_days_ago(35))
        storage.fail_delete_prefixes.add("bad/")

        result = await CleanupTrashVideos(videos, storage).execute(retention_days=30)

        assert result.success
        assert result.value["deleted_video_ids"] == ["good"]
        assert result.value["failed_video_ids"] == ["bad"]
        assert videos.get("bad") is not None
        assert videos.get("good") is None

    @pytest.mark.asyncio
    async def test_database_failure_isolated_per_video(self, videos, storage):
        videos.add("bad", deleted_at=_days_ago(40))
        videos.add("good", deleted_at=_days_ago(35))
        videos.fail_hard_delete.add("bad")

        result = await CleanupTrashVideos(videos, storage).execute(retention_days=30)

        assert result.value["permanently_deleted"] == 1
        assert result.value["failed_video_ids"] == ["bad"]

    @pytest.mark.asyncio
    async def test_batch_size_limits_selection(self, videos, storage):
        for i in range(3):
            videos.add(f"v{i}", deleted_at=_days_ago(40 + i))

        result = await CleanupTrashVideos(videos, storage).execute(retention_days=30, batch_size=2)

        assert result.value["total_expired"] == 2

    @pytest.mark.asyncio
    async def test_selection_failure(self, videos, storage):
        async def broken(days, limit):
            raise ConnectionError("db down")

        videos.find_deleted_older_than = broken

        result = await CleanupTrashVideos(videos, storage).execute()

        assert result.error_code == ErrorCode.CLEANUP_ERROR


class TestCleanupOrphanVideos:
    """Tests for CleanupOrphanVideos."""

    @pytest.mark.asyncio
    async def test_removes_stale_uploads(self, videos, storage, encoding_queue):
        old = utcnow() - timedelta(hours=30)
        videos.add("orphan", status=VideoStatus.UPLOADING, created_at=old, raw_file_path="videos-raw/orphan.mp4")
        videos.add("fresh", status=VideoStatus.UPLOADING)
        videos.add("done", status=VideoStatus.READY, created_at=old)
        storage.put("videos-raw", "orphan.mp4")
        await encoding_queue.add_encoding_job(EncodingJobData("orphan", "videos-raw/orphan.mp4"))

        result = await CleanupOrphanVideos(videos, storage, encoding_queue).execute(orphan_age_hours=24)

        assert result.value["cleaned_video_ids"] == ["orphan"]
        assert videos.get("orphan") is None
        assert videos.get("fresh") is not None
        assert videos.get("done") is not None
        assert storage.keys("videos-raw") == []
        assert await encoding_queue.get_job_by_video_id("orphan") is None

    @pytest.mark.asyncio
    async def test_dry_run(self, videos, storage, encoding_queue):
        videos.add("orphan", status=VideoStatus.UPLOADING, created_at=utcnow() - timedelta(hours=30))

        result = await CleanupOrphanVideos(videos, storage, encoding_queue).execute(dry_run=True)

        assert result.value["total_orphans"] == 1
        assert result.value["cleaned_up"] == 0
        assert videos.get("orphan") is not None

    @pytest.mark.asyncio
    async def test_failure_reported(self, videos, storage, encoding_queue):
        videos.add("orphan", status=VideoStatus.UPLOADING, created_at=utcnow() - timedelta(hours=30))
        storage.fail_delete_prefixes.add("orphan/")

        result = await CleanupOrphanVideos(videos, storage, encoding_queue).execute()

        assert result.value["failed_video_ids"] == ["orphan"]
        assert videos.get("orphan") is not None


class TestSweepStaleEncodings:
    """Tests for SweepStaleEncodings."""

    @pytest.mark.asyncio
    async def test_stale_quality_resubmitted(self, videos, qualities, failure_handler, retry_queue):
        videos.add("v1", status=VideoStatus.PROCESSING, raw_file_path="videos-raw/v1.mp4")
        qualities.add("v1", "720p", status=QualityStatus.ENCODING, started_at=utcnow() - timedelta(hours=2))
        qualities.add("v1", "360p", status=QualityStatus.ENCODING, started_at=utcnow())

        result = await SweepStaleEncodings(qualities, failure_handler, retry_queue).execute(stale_after_seconds=1800)

        assert result.value["total_stale"] == 1
        assert result.value["resubmitted"] == ["v1/720p"]
        row = await qualities.find_by_video_and_quality("v1", "720p")
        assert row.status == QualityStatus.FAILED
        assert row.retry_count == 1
        assert row.error_message == "Video processing timed out."
        status = await retry_queue.get_job_status("retry-v1-720p")
        assert status.state == JobState.WAITING

    @pytest.mark.asyncio
    async def test_stale_quality_out_of_budget_resolves_video(
        self, videos, qualities, notifier, failure_handler, retry_queue
    ):
        """Should let the video reach a terminal status instead of hanging in processing."""
        videos.add("v1", status=VideoStatus.PROCESSING)
        qualities.add("v1", "720p", status=QualityStatus.ENCODING, retry_count=2, started_at=_days_ago(1))
        qualities.add("v1", "360p", status=QualityStatus.READY)

        result = await SweepStaleEncodings(qualities, failure_handler, retry_queue).execute()

        assert result.value["exhausted"] == ["v1/720p"]
        assert videos.get("v1").status == VideoStatus.PARTIAL_READY
        assert len(notifier.of("quality_failed")) == 1
        assert await retry_queue.get_job_status("retry-v1-720p") is None

    @pytest.mark.asyncio
    async def test_recovers_stalled_jobs_first(self, qualities, failure_handler, retry_queue, encoding_queue):
        class StalledQueue:
            def __init__(self):
                self.calls = []

            async def recover_stalled(self, max_silence_ms):
                self.calls.append(max_silence_ms)
                return 2

        stalled = StalledQueue()

        result = await SweepStaleEncodings(qualities, failure_handler, retry_queue, [stalled]).execute(
            stale_after_seconds=20_000, stalled_after_seconds=120
        )

        assert stalled.calls == [120_000]
        assert result.value["recovered_jobs"] == 2
        assert result.value["total_stale"] == 0


class TestRequeueFailedQualities:
    """Tests for RequeueFailedQualities."""

    @pytest.mark.asyncio
    async def test_requeues_failed_with_budget(self, videos, qualities, retry_queue):
        videos.add("v1", status=VideoStatus.PARTIAL_READY, raw_file_path="videos-raw/v1.mp4")
        qualities.add("v1", "720p", status=QualityStatus.FAILED, retry_count=1)
        qualities.add("v1", "1080p", status=QualityStatus.FAILED, retry_count=3)
        qualities.add("v1", "360p", status=QualityStatus.READY)

        result = await RequeueFailedQualities(videos, qualities, retry_queue).execute()

        assert result.value["total_candidates"] == 1
        assert result.value["queued"] == ["v1/720p"]
        job = await retry_queue.queue.get_job("retry-v1-720p")
        assert job.priority == 3
        assert job.data["retry_count"] == 1

    @pytest.mark.asyncio
    async def test_skips_cancelled_and_deleted_videos(self, videos, qualities, retry_queue):
        videos.add("cancelled", status=VideoStatus.CANCELLED)
        videos.add("trashed", status=VideoStatus.PROCESSING, deleted_at=utcnow())
        qualities.add("cancelled", "720p", status=QualityStatus.FAILED, retry_count=1)
        qualities.add("trashed", "720p", status=QualityStatus.FAILED, retry_count=1)

        result = await RequeueFailedQualities(videos, qualities, retry_queue).execute()

        assert sorted(result.value["skipped"]) == ["cancelled/720p", "trashed/720p"]
        assert (await retry_queue.get_queue_stats())["waiting"] == 0

    @pytest.mark.asyncio
    async def test_does_not_duplicate_pending_retry(self, videos, qualities, retry_queue):
        videos.add("v1", status=VideoStatus.PROCESSING)
        qualities.add("v1", "720p", status=QualityStatus.FAILED, retry_count=1)
        requeue = RequeueFailedQualities(videos, qualities, retry_queue)

        await requeue.execute()
        await requeue.execute()

        assert (await retry_queue.get_queue_stats())["waiting"] == 1
