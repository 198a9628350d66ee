"""
Quality retry queue.

Failed qualities are retried one at a time, without touching the qualities
that already succeeded. Two retry budgets compose here:

- Queue attempts (``RETRY_QUEUE_ATTEMPTS`` with exponential backoff from
  ``RETRY_QUEUE_BACKOFF_MS``) absorb worker crashes and infrastructure errors.
- The ``retry_count`` column on the quality row counts semantic encode
  failures and is checked against ``MAX_QUALITY_RETRIES`` before a quality is
  ever resubmitted.

Job ids are ``retry-<videoId>-<qualityName>``, so a quality has at most one
outstanding retry job. Priority is the quality's ``retry_priority``: lower
resolutions are dequeued first because one ready rendition makes the video
playable.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from config import RETRY_QUEUE_ATTEMPTS, RETRY_QUEUE_BACKOFF_MS
from ingest.encoding_queue import JobStatus
from ingest.job_queue import JobOptions, RedisJobQueue

logger = logging.getLogger(__name__)

RETRY_QUEUE_NAME = "quality-retry"
RETRY_JOB_NAME = "retry-quality"


def retry_job_id(video_id: str, quality_name: str) -> str:
    return f"retry-{video_id}-{quality_name}"


@dataclass
class QualityRetryJobData:
    video_id: str
    quality_name: str
    raw_file_path: str
    retry_count: int
    priority: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "video_id": self.video_id,
            "quality_name": self.quality_name,
            "raw_file_path": self.raw_file_path,
            "retry_count": self.retry_count,
            "priority": self.priority,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QualityRetryJobData":
        return cls(
            video_id=data["video_id"],
            quality_name=data["quality_name"],
            raw_file_path=data["raw_file_path"],
            retry_count=int(data.get("retry_count", 0)),
            priority=int(data.get("priority", 0)),
        )

    @property
    def job_id(self) -> str:
        return retry_job_id(self.video_id, self.quality_name)


class QualityRetryQueue:
    """Priority-ordered queue of single-quality retry jobs."""

    def __init__(self, queue: RedisJobQueue):
        self.queue = queue

    async def add_retry_job(self, data: QualityRetryJobData) -> str:
        """
        Enqueue a retry for one quality.

        Adding a retry for a quality that already has one waiting, delayed or
        active returns the existing job id instead of creating a second job.
        """
        job_id = await self.queue.add(
            RETRY_JOB_NAME,
            data.to_dict(),
            JobOptions(
                job_id=data.job_id,
                priority=data.priority,
                attempts=RETRY_QUEUE_ATTEMPTS,
                backoff_ms=RETRY_QUEUE_BACKOFF_MS,
            ),
        )
        logger.info(
            f"Queued retry {job_id} (retry_count={data.retry_count}, priority={data.priority})"
        )
        return job_id

    async def get_job_status(self, job_id: str) -> Optional[JobStatus]:
        job = await self.queue.get_job(job_id)
        return JobStatus.from_job(job) if job else None

    async def cancel_job(self, job_id: str) -> bool:
        """
        Cancel a retry that has not started.

        Returns False for active jobs: an encode in flight is never interrupted.
        """
        cancelled = await self.queue.cancel(job_id)
        if not cancelled:
            logger.debug(f"Retry job {job_id} not cancelled (unknown, active or finished)")
        return cancelled

    async def cancel_quality(self, video_id: str, quality_name: str) -> bool:
        return await self.cancel_job(retry_job_id(video_id, quality_name))

    async def retry_job(self, job_id: str) -> JobStatus:
        job = await self.queue.retry_job(job_id)
        return JobStatus.from_job(job)

    async def get_queue_stats(self) -> Dict[str, int]:
        return await self.queue.get_counts()

    async def close(self) -> None:
        await self.queue.close()
