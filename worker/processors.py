"""
Job handlers for the encoding queue and the quality retry queue.

Handlers are driven by ``worker.consumer.QueueConsumer``:

    process(job, progress)          -> result stored on the completed job
    on_completed(job, result)       -> runs after the job is marked completed
    on_failed(job, error, final)    -> runs after a delivery failed

Transient errors (storage, queue, engine crashes) propagate out of
``process`` and are redelivered by the queue with backoff. Semantic encode
failures are recorded on the quality row against its retry budget, and the
partial output is copied to the debug bucket.

A video deleted while it encodes is noticed before each quality starts; the
job then stops and its unfinished qualities are marked cancelled.
"""

import logging
import shutil
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from config import (
    ARCHIVE_FAILED_ARTIFACTS,
    ENCODED_BUCKET,
    ERROR_SUMMARY_MAX_LENGTH,
    FAILED_DEBUG_BUCKET,
    MAX_QUALITY_RETRIES,
    MAX_VIDEO_DURATION,
    QUALITY_PRESETS,
    THUMBNAIL_BUCKET,
    WORK_DIR,
    QualityPreset,
)
from ingest.common import utcnow
from ingest.contracts import (
    EncodingEngine,
    EncodingProgress,
    NotificationService,
    StorageGateway,
    VariantPlaylist,
    VideoQualityRepository,
    VideoRepository,
)
from ingest.encoding_queue import EncodingJobData, EncodingJobQueue
from ingest.enums import QualityStatus, VideoStatus
from ingest.errors import (
    EncodingCancelledError,
    EncodingRejectedError,
    sanitize_error_message,
    truncate_error,
)
from ingest.job_queue import Job
from ingest.metrics import (
    ENCODING_JOB_DURATION_SECONDS,
    ENCODING_JOBS_TOTAL,
    QUALITY_OUTCOMES_TOTAL,
    RETRY_JOBS_QUEUED_TOTAL,
)
from ingest.models import QualityInput
from ingest.retry_queue import QualityRetryJobData, QualityRetryQueue
from ingest.storage import (
    build_storage_path,
    master_playlist_key,
    public_url,
    split_storage_path,
    thumbnail_key,
)
from ingest.video_status import QualityFailureHandler, VideoStatusReconciler, build_notification
from ingest.video_state import can_transition
from worker.engine import segment_files, select_qualities, variant_playlist_name, write_master_playlist

logger = logging.getLogger(__name__)

ProgressReporter = Callable[[int], Awaitable[None]]

_PRESETS_BY_NAME = {preset.name: preset for preset in QUALITY_PRESETS}

# Qualities a (re)delivered whole-video job still owns. Ready rows are done and
# failed rows belong to the retry queue.
_ENCODABLE_STATUSES = (QualityStatus.PENDING, QualityStatus.ENCODING)

# A restored video also re-encodes the qualities cancelled by its deletion.
_REENCODE_STATUSES = _ENCODABLE_STATUSES + (QualityStatus.CANCELLED,)


def preset_for(quality_name: str) -> Optional[QualityPreset]:
    return _PRESETS_BY_NAME.get(quality_name)


def _source_path(work_dir: Path, raw_file_path: str) -> Path:
    suffix = Path(raw_file_path).suffix or ".mp4"
    return work_dir / f"source{suffix}"


async def upload_variant(storage: StorageGateway, video_id: str, variant: VariantPlaylist) -> str:
    """Upload a variant playlist with its segments; returns the playlist's storage path."""
    for segment in variant.segment_paths:
        await storage.upload_file(segment, ENCODED_BUCKET, f"{video_id}/{segment.name}", "video/mp2t")
    key = f"{video_id}/{variant.playlist_path.name}"
    await storage.upload_file(variant.playlist_path, ENCODED_BUCKET, key, "application/vnd.apple.mpegurl")
    return build_storage_path(ENCODED_BUCKET, key)


async def publish_master_playlist(
    storage: StorageGateway, video_id: str, quality_names: Iterable[str], output_dir: Path
) -> Optional[str]:
    """
    Write and upload a master playlist listing ``quality_names``.

    Returns:
        Public URL of the master playlist, or None if no known quality is given
    """
    presets = [p for p in (preset_for(n) for n in quality_names) if p is not None]
    if not presets:
        return None
    path = write_master_playlist(output_dir, presets)
    key = master_playlist_key(video_id)
    await storage.upload_file(path, ENCODED_BUCKET, key, "application/vnd.apple.mpegurl")
    return public_url(ENCODED_BUCKET, key)


def _error_summary(error: Any) -> str:
    return truncate_error(str(error) or error.__class__.__name__, ERROR_SUMMARY_MAX_LENGTH)


async def archive_failed_artifacts(
    storage: StorageGateway, video_id: str, quality_name: str, output_dir: Path
) -> int:
    """
    Copy whatever a failed encode left behind to the debug bucket.

    Files land under ``<video_id>/<quality>/<timestamp_ms>/<file>``. Upload
    errors are logged and never raised.

    Returns:
        Number of files archived
    """
    files = segment_files(output_dir, quality_name)
    playlist = output_dir / variant_playlist_name(quality_name)
    if playlist.exists():
        files.append(playlist)
    if not files:
        return 0

    prefix = f"{video_id}/{quality_name}/{int(time.time() * 1000)}"
    archived = 0
    for path in files:
        try:
            await storage.upload_file(path, FAILED_DEBUG_BUCKET, f"{prefix}/{path.name}", "application/octet-stream")
            archived += 1
        except Exception as e:
            logger.warning(f"Could not archive {path.name} of failed {video_id}/{quality_name}: {e}")
    logger.info(f"Archived {archived} file(s) of failed {video_id}/{quality_name} to {FAILED_DEBUG_BUCKET}/{prefix}")
    return archived


async def ensure_not_cancelled(videos: VideoRepository, video_id: str) -> None:
    """Raise EncodingCancelledError once the video is deleted or cancelled."""
    video = await videos.find_by_id(video_id)
    if video is None or video.status == VideoStatus.CANCELLED:
        raise EncodingCancelledError(f"Video {video_id} was deleted or cancelled during encoding")


class EncodingJobProcessor:
    """Encodes every selected quality of a newly confirmed video."""

    def __init__(
        self,
        videos: VideoRepository,
        qualities: VideoQualityRepository,
        storage: StorageGateway,
        engine: EncodingEngine,
        retry_queue: QualityRetryQueue,
        failure_handler: QualityFailureHandler,
        reconciler: VideoStatusReconciler,
        notifier: NotificationService,
        work_dir: Path = WORK_DIR,
        encoding_queue: Optional[EncodingJobQueue] = None,
    ):
        self._videos = videos
        self._qualities = qualities
        self._storage = storage
        self._engine = engine
        self._retry_queue = retry_queue
        self._failure_handler = failure_handler
        self._reconciler = reconciler
        self._notifier = notifier
        self._work_dir = Path(work_dir)
        self._encoding_queue = encoding_queue

    async def process(self, job: Job, progress: Optional[ProgressReporter] = None) -> Dict[str, Any]:
        data = EncodingJobData.from_dict(job.data)
        video_id = data.video_id

        video = await self._videos.find_by_id(video_id)
        if video is None or video.status == VideoStatus.CANCELLED:
            logger.info(f"Skipping encoding of video {video_id}: missing, deleted or cancelled")
            ENCODING_JOBS_TOTAL.labels(status="skipped").inc()
            return {"video_id": video_id, "skipped": True}
        if not can_transition(video.status, VideoStatus.PROCESSING):
            logger.info(f"Skipping encoding of video {video_id}: already {video.status.value}")
            ENCODING_JOBS_TOTAL.labels(status="skipped").inc()
            return {"video_id": video_id, "skipped": True}
        if video.status != VideoStatus.PROCESSING:
            await self._videos.update_status(video_id, VideoStatus.PROCESSING)

        work = self._work_dir / f"encode-{video_id}"
        try:
            source = _source_path(work, data.raw_file_path)
            bucket, key = split_storage_path(data.raw_file_path)
            await self._storage.download_file(bucket, key, source)

            try:
                metadata = await self._engine.extract_metadata(source)
                if metadata.duration > MAX_VIDEO_DURATION:
                    raise EncodingRejectedError(
                        f"Video duration {metadata.duration:.0f}s exceeds maximum duration of {MAX_VIDEO_DURATION}s"
                    )
            except EncodingRejectedError as e:
                await self._reject(video_id, str(e))
                ENCODING_JOBS_TOTAL.labels(status="rejected").inc()
                return {"video_id": video_id, "rejected": True, "error": _error_summary(e)}

            await self._videos.update(
                video_id,
                duration=metadata.duration,
                width=metadata.width,
                height=metadata.height,
                codec=metadata.codec,
                bitrate=metadata.bitrate,
            )

            thumbnail_url = await self._make_thumbnail(video_id, source, work, metadata.duration)

            existing = {q.quality_name: q for q in await self._qualities.find_by_video_id(video_id)}
            presets = [
                p
                for p in select_qualities(metadata.height)
                if p.name not in existing or existing[p.name].status in _REENCODE_STATUSES
            ]
            if presets:
                await self._qualities.upsert_batch(
                    [QualityInput(video_id, p.name, status=QualityStatus.PENDING) for p in presets]
                )

            percents: Dict[str, float] = {p.name: 0.0 for p in presets}

            async def on_progress(update: EncodingProgress) -> None:
                percents[update.quality] = update.percent
                if progress and percents:
                    await progress(int(sum(percents.values()) / len(percents)))

            async def on_quality_start(preset: QualityPreset) -> None:
                await self._ensure_still_processing(video_id)
                await self._qualities.update(video_id, preset.name, status=QualityStatus.ENCODING, started_at=utcnow())

            output_dir = work / "hls"
            try:
                result = await self._engine.encode_to_hls(
                    source,
                    output_dir,
                    presets,
                    on_progress=on_progress,
                    duration=metadata.duration,
                    on_quality_start=on_quality_start,
                )
                await self._ensure_still_processing(video_id)
            except EncodingCancelledError as e:
                return await self._stop_cancelled(data, str(e))
            ENCODING_JOB_DURATION_SECONDS.observe(result.encoding_time)

            ready: List[str] = []
            for variant in result.variant_playlists:
                playlist_path = await upload_variant(self._storage, video_id, variant)
                await self._qualities.update(
                    video_id,
                    variant.quality,
                    status=QualityStatus.READY,
                    playlist_path=playlist_path,
                    segment_count=variant.segment_count,
                    error_message=None,
                    completed_at=utcnow(),
                )
                QUALITY_OUTCOMES_TOTAL.labels(quality=variant.quality, outcome="ready").inc()
                ready.append(variant.quality)

            fields: Dict[str, Any] = {}
            if thumbnail_url:
                fields["thumbnail_url"] = thumbnail_url
            if ready:
                all_ready = [q.quality_name for q in existing.values() if q.status == QualityStatus.READY] + ready
                hls_url = await publish_master_playlist(self._storage, video_id, all_ready, output_dir)
                if hls_url:
                    fields["hls_url"] = hls_url
            if fields:
                await self._videos.update(video_id, **fields)

            failed: List[str] = []
            for failure in result.failed_qualities:
                if ARCHIVE_FAILED_ARTIFACTS:
                    await archive_failed_artifacts(self._storage, video_id, failure.quality, output_dir)
                retry = await self._failure_handler.record_failure(
                    video_id, failure.quality, failure.error, data.raw_file_path
                )
                if retry is not None:
                    await self._retry_queue.add_retry_job(retry)
                    RETRY_JOBS_QUEUED_TOTAL.labels(quality=failure.quality).inc()
                failed.append(failure.quality)

            await self._reconciler.reconcile(video_id)
        finally:
            shutil.rmtree(work, ignore_errors=True)

        ENCODING_JOBS_TOTAL.labels(status="completed").inc()
        logger.info(f"Encoded video {video_id}: ready={ready} failed={failed}")
        return {"video_id": video_id, "ready": ready, "failed": failed}

    async def _make_thumbnail(self, video_id: str, source: Path, work: Path, duration: float) -> Optional[str]:
        """Generate and upload the thumbnail. A missing thumbnail never fails the encode."""
        thumb = work / "thumbnail.jpg"
        try:
            await self._engine.generate_thumbnail(source, thumb, min(2.0, duration * 0.1))
        except Exception as e:
            logger.warning(f"Thumbnail generation failed for video {video_id}: {e}")
            return None
        key = thumbnail_key(video_id)
        await self._storage.upload_file(thumb, THUMBNAIL_BUCKET, key, "image/jpeg")
        return public_url(THUMBNAIL_BUCKET, key)

    async def _ensure_still_processing(self, video_id: str) -> None:
        """A delete or a restore moves the video out of processing; either way this delivery is stale."""
        video = await self._videos.find_by_id(video_id)
        if video is None or video.status != VideoStatus.PROCESSING:
            raise EncodingCancelledError(f"Video {video_id} was deleted or restored during encoding")

    async def _stop_cancelled(self, data: EncodingJobData, reason: str) -> Dict[str, Any]:
        video_id = data.video_id
        await self._cancel_unfinished(video_id)
        logger.info(f"Stopped encoding video {video_id}: {reason}")
        ENCODING_JOBS_TOTAL.labels(status="cancelled").inc()
        outcome: Dict[str, Any] = {"video_id": video_id, "cancelled": True}
        video = await self._videos.find_by_id(video_id)
        if video is not None and video.status == VideoStatus.UPLOADED:
            # Restored while this job still held the id; submitted from on_completed
            outcome["resubmit"] = data.to_dict()
        return outcome

    async def _cancel_unfinished(self, video_id: str) -> None:
        for quality in await self._qualities.find_by_video_id(video_id):
            if quality.status in _ENCODABLE_STATUSES:
                await self._qualities.update(
                    video_id, quality.quality_name, status=QualityStatus.CANCELLED, completed_at=utcnow()
                )

    async def _reject(self, video_id: str, error: str) -> None:
        """Fail a video whose source can never be encoded."""
        message = sanitize_error_message(error, context=f"video_id={video_id}")
        video = await self._videos.update(
            video_id,
            status=VideoStatus.FAILED,
            error_message=message,
            processing_completed_at=utcnow(),
        )
        logger.warning(f"Rejected video {video_id}: {error}")
        try:
            await self._notifier.notify_video_failed(build_notification(video, error_message=message))
        except Exception as e:
            logger.warning(f"Failure notification for video {video_id} failed: {e}")

    async def on_completed(self, job: Job, result: Any) -> None:
        if not isinstance(result, dict) or not result.get("resubmit") or self._encoding_queue is None:
            return
        await self._encoding_queue.add_encoding_job(EncodingJobData.from_dict(result["resubmit"]))
        logger.info(f"Re-queued encoding of restored video {result['video_id']}")

    async def on_failed(self, job: Job, error: str, final: bool) -> None:
        """
        Once queue attempts run out, hand unfinished qualities to the retry
        budget; a video that never got quality rows is failed outright.
        """
        if not final:
            return
        ENCODING_JOBS_TOTAL.labels(status="errored").inc()
        data = EncodingJobData.from_dict(job.data)
        qualities = await self._qualities.find_by_video_id(data.video_id)
        unfinished = [q for q in qualities if q.status in _ENCODABLE_STATUSES]

        if not qualities:
            video = await self._videos.find_by_id(data.video_id)
            if video is not None and can_transition(video.status, VideoStatus.FAILED):
                await self._reject(data.video_id, error)
            return

        for quality in unfinished:
            retry = await self._failure_handler.record_failure(
                data.video_id, quality.quality_name, error, data.raw_file_path
            )
            if retry is not None:
                await self._retry_queue.add_retry_job(retry)
                RETRY_JOBS_QUEUED_TOTAL.labels(quality=quality.quality_name).inc()
        await self._reconciler.reconcile(data.video_id)


class QualityRetryProcessor:
    """Re-encodes one failed quality without touching the others."""

    def __init__(
        self,
        videos: VideoRepository,
        qualities: VideoQualityRepository,
        storage: StorageGateway,
        engine: EncodingEngine,
        retry_queue: QualityRetryQueue,
        failure_handler: QualityFailureHandler,
        reconciler: VideoStatusReconciler,
        work_dir: Path = WORK_DIR,
        max_retries: int = MAX_QUALITY_RETRIES,
    ):
        self._videos = videos
        self._qualities = qualities
        self._storage = storage
        self._engine = engine
        self._retry_queue = retry_queue
        self._failure_handler = failure_handler
        self._reconciler = reconciler
        self._work_dir = Path(work_dir)
        self._max_retries = max_retries

    async def process(self, job: Job, progress: Optional[ProgressReporter] = None) -> Dict[str, Any]:
        data = QualityRetryJobData.from_dict(job.data)
        video_id, name = data.video_id, data.quality_name
        outcome: Dict[str, Any] = {"video_id": video_id, "quality": name}

        quality = await self._qualities.find_by_video_and_quality(video_id, name)
        if quality is None or quality.status == QualityStatus.READY or quality.is_retry_exhausted(self._max_retries):
            logger.info(f"Skipping retry of {video_id}/{name}: missing, ready or exhausted")
            return {**outcome, "skipped": True}
        video = await self._videos.find_by_id(video_id)
        if video is None or video.status == VideoStatus.CANCELLED:
            logger.info(f"Skipping retry of {video_id}/{name}: video deleted or cancelled")
            return {**outcome, "skipped": True}
        preset = preset_for(name)
        if preset is None:
            logger.warning(f"Skipping retry of {video_id}/{name}: unknown quality")
            return {**outcome, "skipped": True}

        raw_file_path = data.raw_file_path or video.raw_file_path
        await self._qualities.update(
            video_id, name, status=QualityStatus.ENCODING, started_at=utcnow(), completed_at=None
        )

        work = self._work_dir / f"retry-{video_id}-{name}"
        try:
            source = _source_path(work, raw_file_path)
            bucket, key = split_storage_path(raw_file_path)
            await self._storage.download_file(bucket, key, source)

            try:
                metadata = await self._engine.extract_metadata(source)
            except EncodingRejectedError as e:
                return await self._record_semantic_failure(outcome, raw_file_path, str(e))

            async def on_progress(update: EncodingProgress) -> None:
                if progress:
                    await progress(int(update.percent))

            async def on_quality_start(started: QualityPreset) -> None:
                await ensure_not_cancelled(self._videos, video_id)

            output_dir = work / "hls"
            try:
                result = await self._engine.encode_to_hls(
                    source,
                    output_dir,
                    [preset],
                    on_progress=on_progress,
                    duration=metadata.duration,
                    on_quality_start=on_quality_start,
                )
                await ensure_not_cancelled(self._videos, video_id)
            except EncodingCancelledError as e:
                if await self._qualities.find_by_video_and_quality(video_id, name) is not None:
                    await self._qualities.update(video_id, name, status=QualityStatus.CANCELLED, completed_at=utcnow())
                logger.info(f"Stopped retry of {video_id}/{name}: {e}")
                return {**outcome, "cancelled": True}
            if result.failed_qualities or not result.variant_playlists:
                error = result.failed_qualities[0].error if result.failed_qualities else "No output produced"
                if ARCHIVE_FAILED_ARTIFACTS:
                    await archive_failed_artifacts(self._storage, video_id, name, output_dir)
                return await self._record_semantic_failure(outcome, raw_file_path, error)

            variant = result.variant_playlists[0]
            playlist_path = await upload_variant(self._storage, video_id, variant)

            ready_names = [
                q.quality_name
                for q in await self._qualities.find_by_video_id(video_id)
                if q.status == QualityStatus.READY
            ]
            hls_url = await publish_master_playlist(self._storage, video_id, ready_names + [name], output_dir)

            await self._qualities.update(
                video_id,
                name,
                status=QualityStatus.READY,
                playlist_path=playlist_path,
                segment_count=variant.segment_count,
                error_message=None,
                completed_at=utcnow(),
            )
            QUALITY_OUTCOMES_TOTAL.labels(quality=name, outcome="ready").inc()
            if hls_url and hls_url != video.hls_url:
                await self._videos.update(video_id, hls_url=hls_url)

            await self._reconciler.reconcile(video_id)
        finally:
            shutil.rmtree(work, ignore_errors=True)

        logger.info(f"Retry of {video_id}/{name} succeeded (retry_count={quality.retry_count})")
        return {**outcome, "ready": True}

    async def _record_semantic_failure(
        self, outcome: Dict[str, Any], raw_file_path: str, error: str
    ) -> Dict[str, Any]:
        retry = await self._failure_handler.record_failure(
            outcome["video_id"], outcome["quality"], error, raw_file_path
        )
        result = {**outcome, "ready": False, "error": _error_summary(error)}
        if retry is not None:
            # Submitted from on_completed, once this job no longer holds the id
            result["resubmit"] = retry.to_dict()
        return result

    async def on_completed(self, job: Job, result: Any) -> None:
        if not isinstance(result, dict) or not result.get("resubmit"):
            return
        retry = QualityRetryJobData.from_dict(result["resubmit"])
        await self._retry_queue.add_retry_job(retry)
        RETRY_JOBS_QUEUED_TOTAL.labels(quality=retry.quality_name).inc()

    async def on_failed(self, job: Job, error: str, final: bool) -> None:
        """Count a retry whose queue attempts all crashed as one semantic failure."""
        if not final:
            return
        data = QualityRetryJobData.from_dict(job.data)
        retry = await self._failure_handler.record_failure(
            data.video_id, data.quality_name, error, data.raw_file_path
        )
        if retry is not None:
            await self._retry_queue.add_retry_job(retry)
            RETRY_JOBS_QUEUED_TOTAL.labels(quality=data.quality_name).inc()
