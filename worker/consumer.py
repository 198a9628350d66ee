"""
Queue consumer loop.

Drains one ``RedisJobQueue`` with one handler. For every claimed job:

    process -> complete -> on_completed
    process raises -> fail -> on_failed(final=attempts exhausted)

``on_completed`` runs after the job is marked completed, so a handler can
re-add a job with the same deterministic id from there. While a handler runs,
the consumer refreshes the job heartbeat so long encodes are not mistaken for
stalled ones.
"""

import asyncio
import contextlib
import logging
from typing import Any, Optional, Protocol

from config import JOB_HEARTBEAT_INTERVAL, WORKER_POLL_INTERVAL
from ingest.enums import JobState
from ingest.job_queue import Job, RedisJobQueue

logger = logging.getLogger(__name__)


class JobHandler(Protocol):
    async def process(self, job: Job, progress=None) -> Any: ...

    async def on_completed(self, job: Job, result: Any) -> None: ...

    async def on_failed(self, job: Job, error: str, final: bool) -> None: ...


class QueueConsumer:
    """Single consumer of a queue; run several for concurrency."""

    def __init__(
        self,
        queue: RedisJobQueue,
        handler: JobHandler,
        poll_interval: float = WORKER_POLL_INTERVAL,
        name: Optional[str] = None,
        heartbeat_interval: float = JOB_HEARTBEAT_INTERVAL,
    ):
        self.queue = queue
        self.handler = handler
        self.poll_interval = poll_interval
        self.heartbeat_interval = heartbeat_interval
        self.name = name or queue.name
        self.processed = 0
        self.failed = 0

    async def run_once(self) -> bool:
        """
        Claim and handle at most one job.

        Returns:
            True if a job was handled, False if the queue was empty
        """
        job = await self.queue.claim()
        if job is None:
            return False

        async def progress(percent: int) -> None:
            try:
                await self.queue.update_progress(job, percent)
            except Exception as e:
                logger.debug(f"[{self.name}] Failed to record progress for {job.id}: {e}")

        logger.info(f"[{self.name}] Processing job {job.id} (attempt {job.attempts_made + 1}/{job.attempts})")
        try:
            result = await self._process(job, progress)
        except Exception as e:
            error = str(e) or e.__class__.__name__
            logger.exception(f"[{self.name}] Job {job.id} failed: {error}")
            self.failed += 1
            state = await self.queue.fail(job, error)
            try:
                await self.handler.on_failed(job, error, state == JobState.FAILED)
            except Exception:
                logger.exception(f"[{self.name}] Failure hook for job {job.id} raised")
            return True

        await self.queue.complete(job, result)
        self.processed += 1
        try:
            await self.handler.on_completed(job, result)
        except Exception:
            # Lost resubmissions are picked up again by the requeue sweep
            logger.exception(f"[{self.name}] Completion hook for job {job.id} raised")
        return True

    async def _process(self, job: Job, progress) -> Any:
        beat = asyncio.create_task(self._keep_alive(job))
        try:
            return await self.handler.process(job, progress)
        finally:
            beat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await beat

    async def _keep_alive(self, job: Job) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self.queue.heartbeat(job)
            except Exception as e:
                logger.debug(f"[{self.name}] Heartbeat for {job.id} failed: {e}")

    async def run(self, stop_event: asyncio.Event) -> None:
        """Poll until ``stop_event`` is set. An in-flight job always finishes first."""
        logger.info(f"[{self.name}] Consumer started")
        while not stop_event.is_set():
            try:
                handled = await self.run_once()
            except Exception as e:
                logger.error(f"[{self.name}] Queue error: {e}")
                handled = False
            if handled:
                continue
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
        logger.info(f"[{self.name}] Consumer stopped ({self.processed} processed, {self.failed} failed)")
