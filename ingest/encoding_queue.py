"""
Whole-video encoding queue.

A thin dispatch layer over ``RedisJobQueue``: one job per video, keyed
``video-<videoId>`` so a video never has two encoding jobs in flight. The
worker that drains it (``worker.processors.EncodingJobProcessor``) does the
probing, per-quality bookkeeping and retry fan-out.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from config import (
    COMPLETED_JOB_RETENTION_SECONDS,
    ENCODING_QUEUE_ATTEMPTS,
    ENCODING_QUEUE_BACKOFF_MS,
)
from ingest.enums import JobState
from ingest.job_queue import Job, JobOptions, RedisJobQueue

logger = logging.getLogger(__name__)

ENCODING_QUEUE_NAME = "video-encoding"
ENCODING_JOB_NAME = "encode-video"


def encoding_job_id(video_id: str) -> str:
    return f"video-{video_id}"


@dataclass
class EncodingJobData:
    video_id: str
    raw_file_path: str

    def to_dict(self) -> Dict[str, Any]:
        return {"video_id": self.video_id, "raw_file_path": self.raw_file_path}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EncodingJobData":
        return cls(video_id=data["video_id"], raw_file_path=data["raw_file_path"])


@dataclass
class JobStatus:
    """Status snapshot of a queued job, as reported to callers."""

    id: str
    state: JobState
    progress: int = 0
    failed_reason: Optional[str] = None
    attempts_made: int = 0
    timestamp: Optional[int] = None
    processed_on: Optional[int] = None
    finished_on: Optional[int] = None

    @classmethod
    def from_job(cls, job: Job) -> "JobStatus":
        return cls(
            id=job.id,
            state=job.state,
            progress=job.progress,
            failed_reason=job.failed_reason,
            attempts_made=job.attempts_made,
            timestamp=job.timestamp,
            processed_on=job.processed_on,
            finished_on=job.finished_on,
        )


class EncodingJobQueue:
    """Queue of whole-video encoding jobs."""

    def __init__(self, queue: RedisJobQueue):
        self.queue = queue

    async def add_encoding_job(self, data: EncodingJobData) -> str:
        job_id = await self.queue.add(
            ENCODING_JOB_NAME,
            data.to_dict(),
            JobOptions(
                job_id=encoding_job_id(data.video_id),
                attempts=ENCODING_QUEUE_ATTEMPTS,
                backoff_ms=ENCODING_QUEUE_BACKOFF_MS,
            ),
        )
        logger.info(f"Queued encoding job {job_id} for video {data.video_id}")
        return job_id

    async def get_job_status(self, job_id: str) -> Optional[JobStatus]:
        job = await self.queue.get_job(job_id)
        return JobStatus.from_job(job) if job else None

    async def get_job_by_video_id(self, video_id: str) -> Optional[JobStatus]:
        return await self.get_job_status(encoding_job_id(video_id))

    async def cancel_job(self, job_id: str) -> bool:
        """Cancel a waiting or delayed job. Active jobs run to completion."""
        return await self.queue.cancel(job_id)

    async def cancel_video_jobs(self, video_id: str) -> bool:
        return await self.cancel_job(encoding_job_id(video_id))

    async def retry_job(self, job_id: str) -> JobStatus:
        """Re-queue a failed job (raises JobNotFoundError / InvalidJobStateError)."""
        job = await self.queue.retry_job(job_id)
        logger.info(f"Re-queued failed encoding job {job_id}")
        return JobStatus.from_job(job)

    async def get_queue_stats(self) -> Dict[str, int]:
        return await self.queue.get_counts()

    async def clean_completed_jobs(self, grace_seconds: int = COMPLETED_JOB_RETENTION_SECONDS) -> int:
        return await self.queue.clean(JobState.COMPLETED, grace_seconds * 1000)

    async def close(self) -> None:
        await self.queue.close()
