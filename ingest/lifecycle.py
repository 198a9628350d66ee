"""
Per-video lifecycle use cases: restore from trash, delete, and status lookup.
"""

import logging
from typing import Any, Dict, Optional

from config import MIN_QUALITIES_FOR_PLAYBACK
from ingest.common import utcnow
from ingest.contracts import StorageGateway, VideoQualityRepository, VideoRepository
from ingest.encoding_queue import EncodingJobData, EncodingJobQueue
from ingest.enums import JobState, QualityStatus, VideoStatus
from ingest.errors import ErrorCode
from ingest.result import Result
from ingest.retry_queue import QualityRetryQueue
from ingest.storage import purge_video_objects, split_storage_path
from ingest.video_state import can_transition
from ingest.video_status import failed_quality_names, ready_quality_names

logger = logging.getLogger(__name__)

# Statuses of videos that never finished ingesting and can be re-encoded on restore
REQUEUE_ON_RESTORE = frozenset({VideoStatus.UPLOADED, VideoStatus.CANCELLED})

# Quality rows whose encode is still owed when the video is deleted
_UNFINISHED_QUALITIES = frozenset({QualityStatus.PENDING, QualityStatus.ENCODING})


class RestoreVideo:
    """Undo a soft delete, re-queueing encoding for videos that never finished."""

    def __init__(self, videos: VideoRepository, storage: StorageGateway, encoding_queue: EncodingJobQueue):
        self._videos = videos
        self._storage = storage
        self._encoding_queue = encoding_queue

    async def execute(self, video_id: str) -> Result[Dict[str, Any]]:
        try:
            video = await self._videos.find_by_id_include_deleted(video_id)
            if video is None:
                return Result.fail(ErrorCode.NOT_FOUND, "Video not found")
            if not video.is_deleted:
                return Result.fail(ErrorCode.VALIDATION_ERROR, "Video is not deleted")

            video = await self._videos.restore(video_id)
        except Exception:
            logger.exception(f"Failed to restore video {video_id}")
            return Result.fail(ErrorCode.INTERNAL_ERROR, "Failed to restore video")

        requeued = False
        if video.status in REQUEUE_ON_RESTORE and video.raw_file_path:
            requeued = await self._requeue(video.id, video.raw_file_path)

        status = VideoStatus.UPLOADED if requeued else video.status
        logger.info(f"Restored video {video_id} (status {status.value}, requeued={requeued})")
        return Result.ok(
            {
                "video_id": video_id,
                "status": status.value,
                "requeued": requeued,
                "message": "Video restored and queued for encoding" if requeued else "Video restored",
            }
        )

    async def _requeue(self, video_id: str, raw_file_path: str) -> bool:
        """Re-submit encoding if the raw upload still exists. Failures keep the restore."""
        try:
            bucket, key = split_storage_path(raw_file_path)
            if not await self._storage.object_exists(bucket, key):
                logger.info(f"Raw upload of restored video {video_id} is gone, not re-encoding")
                return False
            await self._encoding_queue.add_encoding_job(
                EncodingJobData(video_id=video_id, raw_file_path=raw_file_path)
            )
            await self._videos.update_status(video_id, VideoStatus.UPLOADED)
            return True
        except Exception as e:
            logger.warning(f"Failed to re-queue restored video {video_id}: {e}")
            return False


class DeleteVideo:
    """
    Delete a video on behalf of its uploader.

    Videos attached to a post are soft deleted (recoverable until the trash
    sweep purges them); unattached videos are removed immediately. A video
    that is still ingesting is cancelled first, so a worker mid-encode stops
    and a later restore re-queues it.
    """

    def __init__(
        self,
        videos: VideoRepository,
        qualities: VideoQualityRepository,
        storage: StorageGateway,
        encoding_queue: EncodingJobQueue,
        retry_queue: QualityRetryQueue,
    ):
        self._videos = videos
        self._qualities = qualities
        self._storage = storage
        self._encoding_queue = encoding_queue
        self._retry_queue = retry_queue

    async def execute(self, video_id: str, user_id: str) -> Result[Dict[str, Any]]:
        try:
            video = await self._videos.find_by_id(video_id)
            if video is None:
                return Result.fail(ErrorCode.NOT_FOUND, "Video not found")
            if video.uploader_id != user_id:
                return Result.fail(ErrorCode.FORBIDDEN, "Video belongs to another user")

            await self._encoding_queue.cancel_video_jobs(video_id)
            qualities = await self._qualities.find_by_video_id(video_id)
            for quality in qualities:
                await self._retry_queue.cancel_quality(video_id, quality.quality_name)

            if can_transition(video.status, VideoStatus.CANCELLED):
                await self._videos.update_status(video_id, VideoStatus.CANCELLED)
                for quality in qualities:
                    if quality.status in _UNFINISHED_QUALITIES:
                        await self._qualities.update(
                            video_id, quality.quality_name, status=QualityStatus.CANCELLED, completed_at=utcnow()
                        )

            soft_deleted = await self._videos.has_associated_post(video_id)
            if soft_deleted:
                await self._videos.soft_delete(video_id)
            else:
                await purge_video_objects(self._storage, video_id, video.raw_file_path)
                await self._videos.hard_delete(video_id)
        except Exception:
            logger.exception(f"Failed to delete video {video_id}")
            return Result.fail(ErrorCode.INTERNAL_ERROR, "Failed to delete video")

        logger.info(f"Deleted video {video_id} ({'soft' if soft_deleted else 'hard'})")
        return Result.ok({"video_id": video_id, "soft_deleted": soft_deleted})


def _progress_for(status: VideoStatus, job_progress: Optional[int]) -> int:
    if status == VideoStatus.UPLOADING:
        return 0
    if status == VideoStatus.UPLOADED:
        return 10
    if status == VideoStatus.PROCESSING:
        return job_progress if job_progress else 50
    if status in (VideoStatus.READY, VideoStatus.PARTIAL_READY):
        return 100
    return 0


class GetVideoStatus:
    """Processing status of a video as shown to its uploader."""

    def __init__(
        self,
        videos: VideoRepository,
        qualities: VideoQualityRepository,
        encoding_queue: EncodingJobQueue,
    ):
        self._videos = videos
        self._qualities = qualities
        self._encoding_queue = encoding_queue

    async def execute(self, video_id: str, user_id: str) -> Result[Dict[str, Any]]:
        try:
            video = await self._videos.find_by_id(video_id)
            if video is None:
                return Result.fail(ErrorCode.NOT_FOUND, "Video not found")
            if video.uploader_id != user_id:
                return Result.fail(ErrorCode.FORBIDDEN, "Video belongs to another user")

            qualities = await self._qualities.find_by_video_id(video_id)

            job_progress = None
            if video.status == VideoStatus.PROCESSING:
                job = await self._encoding_queue.get_job_by_video_id(video_id)
                if job and job.state == JobState.ACTIVE:
                    job_progress = job.progress

            playable = await self._qualities.has_minimum_qualities(video_id, MIN_QUALITIES_FOR_PLAYBACK)
        except Exception:
            logger.exception(f"Failed to read status of video {video_id}")
            return Result.fail(ErrorCode.INTERNAL_ERROR, "Failed to read video status")

        return Result.ok(
            {
                "video_id": video.id,
                "status": video.status.value,
                "progress": _progress_for(video.status, job_progress),
                "qualities": [
                    {
                        "name": q.quality_name,
                        "status": q.status.value,
                        "retry_count": q.retry_count,
                        "error": q.error_message,
                    }
                    for q in qualities
                ],
                "available_qualities": ready_quality_names(qualities),
                "failed_qualities": failed_quality_names(qualities),
                "hls_url": video.hls_url,
                "thumbnail_url": video.thumbnail_url,
                "playable": playable,
                "error_message": video.error_message,
            }
        )
