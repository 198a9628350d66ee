"""
Aggregate video status from its quality rows.

``derive_video_status`` is the single rule for turning a set of per-quality
outcomes into a video status. ``VideoStatusReconciler`` applies it inside a
transaction that holds the video row lock, so two qualities finishing at the
same time cannot both read a stale aggregate. ``QualityFailureHandler`` records
a failed encode against the retry budget and decides whether to resubmit.

Notifications are sent after the status write commits and only when the
status actually changed, so every transition notifies exactly once. A failed
notification never rolls back the transition.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from config import DELETE_RAW_ON_READY, ERROR_DETAIL_MAX_LENGTH, MAX_QUALITY_RETRIES
from ingest.common import utcnow
from ingest.contracts import (
    NotificationService,
    StorageGateway,
    VideoNotification,
    VideoQualityRepository,
    VideoRepository,
)
from ingest.enums import QualityStatus, VideoStatus
from ingest.errors import sanitize_error_message, truncate_error
from ingest.metrics import (
    QUALITY_OUTCOMES_TOTAL,
    RETRIES_EXHAUSTED_TOTAL,
    VIDEO_STATUS_TRANSITIONS_TOTAL,
)
from ingest.models import Video, VideoQuality
from ingest.retry_queue import QualityRetryJobData
from ingest.storage import split_storage_path
from ingest.video_state import can_transition, is_playable, is_terminal

logger = logging.getLogger(__name__)


def is_resolved(quality: VideoQuality, max_retries: int = MAX_QUALITY_RETRIES) -> bool:
    """A quality is resolved once nothing more will happen to it automatically."""
    if quality.status in (QualityStatus.READY, QualityStatus.CANCELLED):
        return True
    return quality.is_retry_exhausted(max_retries)


def derive_video_status(
    qualities: Sequence[VideoQuality], max_retries: int = MAX_QUALITY_RETRIES
) -> Optional[VideoStatus]:
    """
    Derive a video's status from its quality rows.

    Returns:
        None when there are no rows yet, otherwise:
        - READY when every quality is ready
        - PARTIAL_READY when all are resolved and at least one is ready, or
          while retries are pending with at least one ready and one failed
        - FAILED when all are resolved and none is ready
        - PROCESSING otherwise
    """
    if not qualities:
        return None

    ready = sum(1 for q in qualities if q.status == QualityStatus.READY)
    if ready == len(qualities):
        return VideoStatus.READY

    if all(is_resolved(q, max_retries) for q in qualities):
        return VideoStatus.PARTIAL_READY if ready else VideoStatus.FAILED

    failed = any(q.status == QualityStatus.FAILED for q in qualities)
    if ready and failed:
        # Playable at reduced quality while the failed ones are retried
        return VideoStatus.PARTIAL_READY

    return VideoStatus.PROCESSING


def ready_quality_names(qualities: Sequence[VideoQuality]) -> List[str]:
    """Names of ready qualities, lowest retry priority first."""
    ready = [q for q in qualities if q.status == QualityStatus.READY]
    return [q.quality_name for q in sorted(ready, key=lambda q: (q.retry_priority, q.quality_name))]


def failed_quality_names(qualities: Sequence[VideoQuality]) -> List[str]:
    failed = [q for q in qualities if q.status == QualityStatus.FAILED]
    return [q.quality_name for q in sorted(failed, key=lambda q: (q.retry_priority, q.quality_name))]


def build_notification(
    video: Video,
    qualities: Sequence[VideoQuality] = (),
    error_message: Optional[str] = None,
    quality_name: Optional[str] = None,
) -> VideoNotification:
    return VideoNotification(
        video_id=video.id,
        user_id=video.uploader_id,
        video_title=video.original_filename,
        thumbnail_url=video.thumbnail_url,
        hls_url=video.hls_url,
        available_qualities=ready_quality_names(qualities),
        failed_qualities=failed_quality_names(qualities),
        error_message=error_message,
        quality_name=quality_name,
    )


@dataclass
class ReconcileResult:
    video_id: str
    previous_status: VideoStatus
    status: VideoStatus
    available_qualities: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return self.previous_status != self.status


class VideoStatusReconciler:
    """Recompute and persist a video's status after any quality update."""

    def __init__(
        self,
        videos: VideoRepository,
        qualities: VideoQualityRepository,
        notifier: NotificationService,
        storage: Optional[StorageGateway] = None,
        max_retries: int = MAX_QUALITY_RETRIES,
        delete_raw_on_ready: bool = DELETE_RAW_ON_READY,
    ):
        self._videos = videos
        self._qualities = qualities
        self._notifier = notifier
        self._storage = storage
        self._max_retries = max_retries
        self._delete_raw_on_ready = delete_raw_on_ready

    async def reconcile(self, video_id: str) -> Optional[ReconcileResult]:
        """
        Re-derive and store the status of one video.

        Returns:
            The outcome, or None if the video is missing, deleted or has no
            quality rows yet
        """
        async with self._videos.transaction():
            video = await self._videos.find_by_id_for_update(video_id)
            if video is None:
                logger.debug(f"Skipping reconcile of missing or deleted video {video_id}")
                return None

            qualities = await self._qualities.find_by_video_id(video_id)
            derived = derive_video_status(qualities, self._max_retries)
            if derived is None:
                return None

            previous = video.status
            if not can_transition(previous, derived):
                logger.warning(
                    f"Video {video_id}: derived status {derived.value} not reachable from "
                    f"{previous.value}, leaving it unchanged"
                )
                return ReconcileResult(video_id, previous, previous, list(video.available_qualities))

            available = ready_quality_names(qualities) if is_playable(derived) else []
            fields = {}
            if derived != previous:
                fields["status"] = derived
            if available != video.available_qualities:
                fields["available_qualities"] = available
            if is_terminal(derived) and derived != previous:
                fields["processing_completed_at"] = utcnow()
            if fields:
                video = await self._videos.update(video_id, **fields)

        result = ReconcileResult(video_id, previous, derived, available)
        if result.changed:
            VIDEO_STATUS_TRANSITIONS_TOTAL.labels(status=derived.value).inc()
            logger.info(f"Video {video_id}: {previous.value} -> {derived.value} (available: {available})")
            await self._notify_transition(video, qualities, derived)
            if derived == VideoStatus.READY:
                await self._release_raw_file(video)
        return result

    async def _notify_transition(
        self, video: Video, qualities: Sequence[VideoQuality], status: VideoStatus
    ) -> None:
        data = build_notification(video, qualities, error_message=video.error_message)
        try:
            if status == VideoStatus.READY:
                await self._notifier.notify_video_ready(data)
            elif status == VideoStatus.PARTIAL_READY:
                await self._notifier.notify_video_partial_ready(data)
            elif status == VideoStatus.FAILED:
                await self._notifier.notify_video_failed(data)
        except Exception as e:
            logger.warning(f"Notification for video {video.id} ({status.value}) failed: {e}")

    async def _release_raw_file(self, video: Video) -> None:
        """Delete the source upload once every quality is ready, if configured."""
        if not self._delete_raw_on_ready or not self._storage or not video.raw_file_path:
            return
        try:
            bucket, key = split_storage_path(video.raw_file_path)
            await self._storage.delete_object(bucket, key)
            await self._videos.update(video.id, raw_file_path=None)
            logger.info(f"Deleted raw upload of video {video.id}")
        except Exception as e:
            logger.warning(f"Failed to delete raw upload of video {video.id}: {e}")


class QualityFailureHandler:
    """Record a failed quality encode and decide whether it gets another attempt."""

    def __init__(
        self,
        videos: VideoRepository,
        qualities: VideoQualityRepository,
        notifier: NotificationService,
        reconciler: VideoStatusReconciler,
        max_retries: int = MAX_QUALITY_RETRIES,
    ):
        self._videos = videos
        self._qualities = qualities
        self._notifier = notifier
        self._reconciler = reconciler
        self._max_retries = max_retries

    async def record_failure(
        self,
        video_id: str,
        quality_name: str,
        error: str,
        raw_file_path: Optional[str] = None,
    ) -> Optional[QualityRetryJobData]:
        """
        Mark a quality failed and consume one unit of its retry budget.

        Returns:
            The retry job to submit while budget remains, otherwise None
        """
        quality = await self._qualities.find_by_video_and_quality(video_id, quality_name)
        if quality is None:
            logger.warning(f"Failure reported for unknown quality {video_id}/{quality_name}")
            return None
        if quality.status == QualityStatus.READY:
            logger.info(f"Ignoring late failure for ready quality {video_id}/{quality_name}")
            return None

        message = truncate_error(
            sanitize_error_message(error, context=f"video_id={video_id} quality={quality_name}"),
            ERROR_DETAIL_MAX_LENGTH,
        )
        already_exhausted = quality.retry_count >= self._max_retries
        await self._qualities.update(
            video_id,
            quality_name,
            status=QualityStatus.FAILED,
            error_message=message,
            completed_at=utcnow(),
        )
        QUALITY_OUTCOMES_TOTAL.labels(quality=quality_name, outcome="failed").inc()

        if already_exhausted:
            await self._reconciler.reconcile(video_id)
            return None

        retry_count = await self._qualities.increment_retry_count(video_id, quality_name)
        video = await self._videos.find_by_id_include_deleted(video_id)

        if retry_count < self._max_retries:
            await self._reconciler.reconcile(video_id)
            source = raw_file_path or (video.raw_file_path if video else None)
            if not source:
                logger.warning(f"No raw file for {video_id}/{quality_name}, cannot resubmit")
                return None
            logger.info(
                f"Quality {video_id}/{quality_name} failed "
                f"(attempt {retry_count}/{self._max_retries}), will retry"
            )
            return QualityRetryJobData(
                video_id=video_id,
                quality_name=quality_name,
                raw_file_path=source,
                retry_count=retry_count,
                priority=quality.retry_priority,
            )

        logger.warning(f"Quality {video_id}/{quality_name} exhausted {self._max_retries} attempts: {message}")
        RETRIES_EXHAUSTED_TOTAL.labels(quality=quality_name).inc()
        if video is not None:
            try:
                await self._notifier.notify_quality_retry_failed(
                    build_notification(video, error_message=message, quality_name=quality_name)
                )
            except Exception as e:
                logger.warning(f"Quality failure notification for {video_id}/{quality_name} failed: {e}")
        await self._reconciler.reconcile(video_id)
        return None
