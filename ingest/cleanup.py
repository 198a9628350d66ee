"""
Scheduled maintenance sweeps.

- CleanupTrashVideos: purge soft-deleted videos past the retention window
- CleanupOrphanVideos: purge uploads that were never confirmed
- SweepStaleEncodings: fail qualities stuck in ``encoding``
- RequeueFailedQualities: re-submit failed qualities that still have budget

Each sweep handles videos one at a time. A failure on one video is logged and
reported in the result; the rest of the batch still runs. Only a failure to
select the batch fails the sweep as a whole.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Sequence

from config import (
    CLEANUP_BATCH_SIZE,
    ORPHAN_AGE_HOURS,
    QUALITY_STALE_TIMEOUT,
    READY_FOR_RETRY_LIMIT,
    STALLED_JOB_TIMEOUT,
    TRASH_RETENTION_DAYS,
)
from ingest.common import utcnow
from ingest.contracts import StorageGateway, VideoQualityRepository, VideoRepository
from ingest.encoding_queue import EncodingJobQueue
from ingest.enums import VideoStatus
from ingest.errors import ErrorCode
from ingest.job_queue import RedisJobQueue
from ingest.metrics import (
    CLEANUP_DELETIONS_TOTAL,
    CLEANUP_FAILURES_TOTAL,
    RETRY_JOBS_QUEUED_TOTAL,
    STALE_QUALITIES_TOTAL,
)
from ingest.result import Result
from ingest.retry_queue import QualityRetryJobData, QualityRetryQueue
from ingest.storage import purge_video_objects
from ingest.video_status import QualityFailureHandler

logger = logging.getLogger(__name__)

STALE_ENCODING_ERROR = "Encoding timed out"


class CleanupTrashVideos:
    """Permanently delete videos that have been in the trash longer than the retention window."""

    def __init__(self, videos: VideoRepository, storage: StorageGateway):
        self._videos = videos
        self._storage = storage

    async def execute(
        self,
        retention_days: int = TRASH_RETENTION_DAYS,
        batch_size: int = CLEANUP_BATCH_SIZE,
        dry_run: bool = False,
    ) -> Result[Dict[str, Any]]:
        try:
            expired = await self._videos.find_deleted_older_than(retention_days, batch_size)
        except Exception:
            logger.exception("Failed to select expired trash videos")
            return Result.fail(ErrorCode.CLEANUP_ERROR, "Failed to select expired videos")

        if dry_run:
            logger.info(f"Trash cleanup dry run: {len(expired)} video(s) past {retention_days} day(s)")
            return Result.ok(
                {
                    "total_expired": len(expired),
                    "permanently_deleted": 0,
                    "deleted_video_ids": [],
                    "failed_video_ids": [],
                    "dry_run": True,
                }
            )

        deleted: List[str] = []
        failed: List[str] = []
        for video in expired:
            try:
                await purge_video_objects(self._storage, video.id, video.raw_file_path)
                await self._videos.hard_delete(video.id)
                deleted.append(video.id)
            except Exception as e:
                logger.error(f"Failed to purge trashed video {video.id}: {e}")
                failed.append(video.id)

        CLEANUP_DELETIONS_TOTAL.labels(sweep="trash").inc(len(deleted))
        CLEANUP_FAILURES_TOTAL.labels(sweep="trash").inc(len(failed))
        logger.info(f"Trash cleanup: {len(deleted)} deleted, {len(failed)} failed of {len(expired)} expired")
        return Result.ok(
            {
                "total_expired": len(expired),
                "permanently_deleted": len(deleted),
                "deleted_video_ids": deleted,
                "failed_video_ids": failed,
                "dry_run": False,
            }
        )


class CleanupOrphanVideos:
    """Remove videos whose upload was never confirmed, with anything they left in storage."""

    def __init__(self, videos: VideoRepository, storage: StorageGateway, encoding_queue: EncodingJobQueue):
        self._videos = videos
        self._storage = storage
        self._encoding_queue = encoding_queue

    async def execute(
        self,
        orphan_age_hours: int = ORPHAN_AGE_HOURS,
        batch_size: int = CLEANUP_BATCH_SIZE,
        dry_run: bool = False,
    ) -> Result[Dict[str, Any]]:
        try:
            orphans = await self._videos.find_orphans(orphan_age_hours, batch_size)
        except Exception:
            logger.exception("Failed to select orphaned uploads")
            return Result.fail(ErrorCode.CLEANUP_ERROR, "Failed to select orphaned videos")

        if dry_run:
            logger.info(f"Orphan cleanup dry run: {len(orphans)} upload(s) older than {orphan_age_hours}h")
            return Result.ok(
                {
                    "total_orphans": len(orphans),
                    "cleaned_up": 0,
                    "cleaned_video_ids": [],
                    "failed_video_ids": [],
                    "dry_run": True,
                }
            )

        cleaned: List[str] = []
        failed: List[str] = []
        for video in orphans:
            try:
                await self._encoding_queue.cancel_video_jobs(video.id)
                await purge_video_objects(self._storage, video.id, video.raw_file_path)
                await self._videos.hard_delete(video.id)
                cleaned.append(video.id)
            except Exception as e:
                logger.error(f"Failed to clean up orphaned video {video.id}: {e}")
                failed.append(video.id)

        CLEANUP_DELETIONS_TOTAL.labels(sweep="orphans").inc(len(cleaned))
        CLEANUP_FAILURES_TOTAL.labels(sweep="orphans").inc(len(failed))
        logger.info(f"Orphan cleanup: {len(cleaned)} removed, {len(failed)} failed of {len(orphans)}")
        return Result.ok(
            {
                "total_orphans": len(orphans),
                "cleaned_up": len(cleaned),
                "cleaned_video_ids": cleaned,
                "failed_video_ids": failed,
                "dry_run": False,
            }
        )


class SweepStaleEncodings:
    """
    Fail qualities that have sat in ``encoding`` longer than the stale timeout.

    A quality enters ``encoding`` when its own ffmpeg run starts, and the
    default stale timeout is never shorter than the longest allowed ffmpeg
    run, so only encodes whose worker died are swept. Each stale quality is recorded
    as a failure, so it is resubmitted while it has retry budget and otherwise
    resolved, letting its video reach a terminal status. Queue jobs whose
    heartbeat went quiet are recovered first so a resubmission is not blocked
    by a dead worker's job id.
    """

    def __init__(
        self,
        qualities: VideoQualityRepository,
        failure_handler: QualityFailureHandler,
        retry_queue: QualityRetryQueue,
        stalled_queues: Sequence[RedisJobQueue] = (),
    ):
        self._qualities = qualities
        self._failure_handler = failure_handler
        self._retry_queue = retry_queue
        self._stalled_queues = stalled_queues

    async def execute(
        self,
        stale_after_seconds: int = QUALITY_STALE_TIMEOUT,
        limit: int = CLEANUP_BATCH_SIZE,
        stalled_after_seconds: int = STALLED_JOB_TIMEOUT,
    ) -> Result[Dict[str, Any]]:
        recovered_jobs = 0
        try:
            for queue in self._stalled_queues:
                recovered_jobs += await queue.recover_stalled(stalled_after_seconds * 1000)
            stale = await self._qualities.find_stale_encoding(
                utcnow() - timedelta(seconds=stale_after_seconds), limit
            )
        except Exception:
            logger.exception("Failed to select stale encodings")
            return Result.fail(ErrorCode.CLEANUP_ERROR, "Failed to select stale encodings")

        resubmitted: List[str] = []
        exhausted: List[str] = []
        failed: List[str] = []
        for quality in stale:
            label = f"{quality.video_id}/{quality.quality_name}"
            try:
                retry = await self._failure_handler.record_failure(
                    quality.video_id, quality.quality_name, STALE_ENCODING_ERROR
                )
                if retry is not None:
                    await self._retry_queue.add_retry_job(retry)
                    RETRY_JOBS_QUEUED_TOTAL.labels(quality=quality.quality_name).inc()
                    resubmitted.append(label)
                else:
                    exhausted.append(label)
            except Exception as e:
                logger.error(f"Failed to sweep stale quality {label}: {e}")
                failed.append(label)

        STALE_QUALITIES_TOTAL.inc(len(stale))
        if stale or recovered_jobs:
            logger.info(
                f"Stale sweep: {len(stale)} stale quality(ies), {len(resubmitted)} resubmitted, "
                f"{len(exhausted)} exhausted, {recovered_jobs} stalled job(s) recovered"
            )
        return Result.ok(
            {
                "total_stale": len(stale),
                "resubmitted": resubmitted,
                "exhausted": exhausted,
                "failed": failed,
                "recovered_jobs": recovered_jobs,
            }
        )


class RequeueFailedQualities:
    """
    Re-submit failed qualities that still have retry budget.

    Retry job ids are deterministic, so qualities that already have a pending
    retry are not duplicated. This picks up any resubmission lost between a
    job completing and its retry being added.
    """

    def __init__(
        self,
        videos: VideoRepository,
        qualities: VideoQualityRepository,
        retry_queue: QualityRetryQueue,
    ):
        self._videos = videos
        self._qualities = qualities
        self._retry_queue = retry_queue

    async def execute(self, limit: int = READY_FOR_RETRY_LIMIT) -> Result[Dict[str, Any]]:
        try:
            candidates = await self._qualities.find_ready_for_retry(limit)
        except Exception:
            logger.exception("Failed to select qualities ready for retry")
            return Result.fail(ErrorCode.CLEANUP_ERROR, "Failed to select qualities for retry")

        queued: List[str] = []
        skipped: List[str] = []
        failed: List[str] = []
        for quality in candidates:
            label = f"{quality.video_id}/{quality.quality_name}"
            try:
                video = await self._videos.find_by_id(quality.video_id)
                if video is None or video.status == VideoStatus.CANCELLED or not video.raw_file_path:
                    skipped.append(label)
                    continue
                await self._retry_queue.add_retry_job(
                    QualityRetryJobData(
                        video_id=quality.video_id,
                        quality_name=quality.quality_name,
                        raw_file_path=video.raw_file_path,
                        retry_count=quality.retry_count,
                        priority=quality.retry_priority,
                    )
                )
                RETRY_JOBS_QUEUED_TOTAL.labels(quality=quality.quality_name).inc()
                queued.append(label)
            except Exception as e:
                logger.error(f"Failed to re-queue quality {label}: {e}")
                failed.append(label)

        if candidates:
            logger.info(f"Requeue: {len(queued)} queued, {len(skipped)} skipped, {len(failed)} failed")
        return Result.ok(
            {
                "total_candidates": len(candidates),
                "queued": queued,
                "skipped": skipped,
                "failed": failed,
            }
        )
