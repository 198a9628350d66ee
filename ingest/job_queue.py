"""
Redis-backed job queue shared by the encoding queue and the quality retry queue.

Each queue keeps its jobs in Redis under ``<prefix>:queue:<name>``:

- ``job:<id>``  hash holding the job payload, options and state
- ``waiting``   sorted set, score = priority then insertion order (lowest first)
- ``delayed``   sorted set, score = epoch ms at which the job becomes runnable
- ``active``    set of claimed job ids
- ``completed`` / ``failed``  sorted sets, score = finish time (for cleaning)
- ``events``    pub/sub channel with completion / failure events

Guarantees:
- Job ids are deterministic when the caller supplies one. Adding a job whose id
  is already waiting, delayed or active is a no-op that returns the existing
  id; a finished job with the same id is replaced.
- Claiming pops the waiting set with ZPOPMIN, so exactly one worker gets a job.
- Cancelling removes the job from the waiting/delayed set with ZREM; if a
  worker claimed it first the ZREM misses and cancellation is rejected.
- A failed delivery is redelivered after ``backoff_ms * 2**(attempt-1)`` until
  the job's attempts are used up, then it moves to ``failed``.

The Redis client is passed in (``decode_responses=True`` is expected) rather
than looked up from a module-level singleton.
"""

import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

import redis.asyncio as aioredis

from config import (
    REDIS_KEY_PREFIX,
    REDIS_SOCKET_CONNECT_TIMEOUT,
    REDIS_SOCKET_TIMEOUT,
)
from ingest.enums import JobState
from ingest.errors import InvalidJobStateError, JobNotFoundError

logger = logging.getLogger(__name__)

# Waiting-set score = priority * PRIORITY_SCALE + sequence, kept below 2**53
PRIORITY_SCALE = 10**9
MAX_PRIORITY = 2**21

PENDING_STATES = (JobState.WAITING, JobState.DELAYED, JobState.ACTIVE)
FINISHED_STATES = (JobState.COMPLETED, JobState.FAILED)


def create_redis(url: str) -> aioredis.Redis:
    """Build an asyncio Redis client with string responses."""
    return aioredis.from_url(
        url,
        socket_timeout=REDIS_SOCKET_TIMEOUT,
        socket_connect_timeout=REDIS_SOCKET_CONNECT_TIMEOUT,
        decode_responses=True,
    )


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class JobOptions:
    """Per-job delivery options."""

    job_id: Optional[str] = None
    priority: int = 0  # Lower = dequeued first
    attempts: int = 1
    backoff_ms: int = 0  # Exponential: backoff_ms, 2x, 4x, ...

    def __post_init__(self) -> None:
        if not 0 <= self.priority <= MAX_PRIORITY:
            raise ValueError(f"priority must be between 0 and {MAX_PRIORITY}, got {self.priority}")
        if self.attempts < 1:
            raise ValueError(f"attempts must be at least 1, got {self.attempts}")
        if self.backoff_ms < 0:
            raise ValueError(f"backoff_ms must not be negative, got {self.backoff_ms}")


@dataclass
class Job:
    """A job as stored in Redis."""

    id: str
    name: str
    data: Dict[str, Any]
    state: JobState = JobState.WAITING
    priority: int = 0
    attempts: int = 1
    attempts_made: int = 0
    backoff_ms: int = 0
    progress: int = 0
    failed_reason: Optional[str] = None
    return_value: Any = None
    timestamp: int = field(default_factory=_now_ms)
    processed_on: Optional[int] = None
    heartbeat_on: Optional[int] = None
    finished_on: Optional[int] = None

    def to_hash(self) -> Dict[str, str]:
        """Convert to Redis hash format (all string values)."""
        return {
            "id": self.id,
            "name": self.name,
            "data": json.dumps(self.data),
            "state": self.state.value,
            "priority": str(self.priority),
            "attempts": str(self.attempts),
            "attempts_made": str(self.attempts_made),
            "backoff_ms": str(self.backoff_ms),
            "progress": str(self.progress),
            "failed_reason": self.failed_reason or "",
            "return_value": json.dumps(self.return_value),
            "timestamp": str(self.timestamp),
            "processed_on": str(self.processed_on or ""),
            "heartbeat_on": str(self.heartbeat_on or ""),
            "finished_on": str(self.finished_on or ""),
        }

    @classmethod
    def from_hash(cls, data: Dict[str, str]) -> "Job":
        """Create from a Redis hash."""

        def _opt_int(value: Optional[str]) -> Optional[int]:
            return int(value) if value else None

        return_value = None
        if data.get("return_value"):
            try:
                return_value = json.loads(data["return_value"])
            except (TypeError, ValueError):
                return_value = None

        return cls(
            id=data["id"],
            name=data.get("name", ""),
            data=json.loads(data.get("data") or "{}"),
            state=JobState(data.get("state", JobState.WAITING.value)),
            priority=int(data.get("priority") or 0),
            attempts=int(data.get("attempts") or 1),
            attempts_made=int(data.get("attempts_made") or 0),
            backoff_ms=int(data.get("backoff_ms") or 0),
            progress=int(data.get("progress") or 0),
            failed_reason=data.get("failed_reason") or None,
            return_value=return_value,
            timestamp=int(data.get("timestamp") or 0),
            processed_on=_opt_int(data.get("processed_on")),
            heartbeat_on=_opt_int(data.get("heartbeat_on")),
            finished_on=_opt_int(data.get("finished_on")),
        )

    def next_backoff_ms(self) -> int:
        """Delay before the next delivery, based on attempts already made."""
        if self.attempts_made <= 0:
            return 0
        return self.backoff_ms * (2 ** (self.attempts_made - 1))


class RedisJobQueue:
    """A named, priority-ordered job queue with bounded delivery attempts."""

    def __init__(self, redis: aioredis.Redis, name: str, prefix: str = REDIS_KEY_PREFIX):
        self._redis = redis
        self.name = name
        self._base = f"{prefix}:queue:{name}"

    # -------------------------------------------------------------------------
    # Key helpers
    # -------------------------------------------------------------------------

    def _job_key(self, job_id: str) -> str:
        return f"{self._base}:job:{job_id}"

    @property
    def _waiting_key(self) -> str:
        return f"{self._base}:waiting"

    @property
    def _delayed_key(self) -> str:
        return f"{self._base}:delayed"

    @property
    def _active_key(self) -> str:
        return f"{self._base}:active"

    @property
    def _completed_key(self) -> str:
        return f"{self._base}:completed"

    @property
    def _failed_key(self) -> str:
        return f"{self._base}:failed"

    @property
    def _seq_key(self) -> str:
        return f"{self._base}:seq"

    @property
    def events_channel(self) -> str:
        return f"{self._base}:events"

    async def _enqueue_waiting(self, job_id: str, priority: int) -> None:
        seq = await self._redis.incr(self._seq_key)
        await self._redis.zadd(self._waiting_key, {job_id: priority * PRIORITY_SCALE + seq})

    async def _publish(self, event: str, job_id: str, **extra: Any) -> None:
        """Publish a queue event. Event delivery is best effort."""
        message = {"event": event, "queue": self.name, "job_id": job_id, "timestamp": _now_ms(), **extra}
        try:
            await self._redis.publish(self.events_channel, json.dumps(message, default=str))
        except Exception as e:
            logger.debug(f"Failed to publish {event} event for {self.name}/{job_id}: {e}")

    async def _discard(self, job_id: str) -> None:
        await self._redis.zrem(self._completed_key, job_id)
        await self._redis.zrem(self._failed_key, job_id)
        await self._redis.delete(self._job_key(job_id))

    # -------------------------------------------------------------------------
    # Producer API
    # -------------------------------------------------------------------------

    async def add(self, name: str, data: Dict[str, Any], options: Optional[JobOptions] = None) -> str:
        """
        Add a job to the queue.

        Args:
            name: Job name (informational)
            data: JSON-serializable payload
            options: Delivery options; ``job_id`` makes the add idempotent

        Returns:
            The job id (the existing one if the job was already pending)
        """
        options = options or JobOptions()
        job_id = options.job_id or uuid.uuid4().hex
        key = self._job_key(job_id)

        existing_state = await self._redis.hget(key, "state")
        if existing_state in (JobState.COMPLETED.value, JobState.FAILED.value):
            # Finished jobs do not block a new job with the same id
            await self._discard(job_id)

        # HSETNX on the state field is the exclusivity check: only one add can
        # create the hash for a given id.
        created = await self._redis.hsetnx(key, "state", JobState.WAITING.value)
        if not created:
            logger.debug(f"Job {self.name}/{job_id} already pending, not adding a duplicate")
            return job_id

        job = Job(
            id=job_id,
            name=name,
            data=data,
            priority=options.priority,
            attempts=options.attempts,
            backoff_ms=options.backoff_ms,
        )
        await self._redis.hset(key, mapping=job.to_hash())
        await self._enqueue_waiting(job_id, job.priority)
        await self._publish("waiting", job_id)
        logger.debug(f"Added job {self.name}/{job_id} (priority {job.priority})")
        return job_id

    async def get_job(self, job_id: str) -> Optional[Job]:
        raw = await self._redis.hgetall(self._job_key(job_id))
        if not raw or "id" not in raw:
            return None
        return Job.from_hash(raw)

    async def get_state(self, job_id: str) -> Optional[JobState]:
        state = await self._redis.hget(self._job_key(job_id), "state")
        return JobState(state) if state else None

    async def cancel(self, job_id: str) -> bool:
        """
        Remove a job that has not been claimed yet.

        Returns:
            True if the job was removed, False if it is unknown, active or finished
        """
        state = await self.get_state(job_id)
        if state not in (JobState.WAITING, JobState.DELAYED):
            return False

        removed = await self._redis.zrem(self._waiting_key, job_id)
        if not removed:
            removed = await self._redis.zrem(self._delayed_key, job_id)
        if not removed:
            # A worker claimed it between the state read and the ZREM
            return False

        await self._redis.delete(self._job_key(job_id))
        await self._publish("removed", job_id)
        logger.info(f"Cancelled job {self.name}/{job_id}")
        return True

    async def retry_job(self, job_id: str) -> Job:
        """
        Move a failed job back to waiting with a fresh attempt budget.

        Raises:
            JobNotFoundError: If the job does not exist
            InvalidJobStateError: If the job is not in the failed state
        """
        job = await self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found in {self.name}")
        if job.state != JobState.FAILED:
            raise InvalidJobStateError(f"Job {job_id} is {job.state.value}, only failed jobs can be retried")

        key = self._job_key(job_id)
        await self._redis.zrem(self._failed_key, job_id)
        await self._redis.hset(
            key,
            mapping={
                "state": JobState.WAITING.value,
                "attempts_made": "0",
                "failed_reason": "",
                "finished_on": "",
                "processed_on": "",
                "heartbeat_on": "",
            },
        )
        await self._enqueue_waiting(job_id, job.priority)
        await self._publish("waiting", job_id)
        return await self.get_job(job_id)

    # -------------------------------------------------------------------------
    # Consumer API
    # -------------------------------------------------------------------------

    async def _promote_delayed(self) -> int:
        """Move delayed jobs whose backoff has elapsed back to waiting."""
        due = await self._redis.zrangebyscore(self._delayed_key, "-inf", _now_ms())
        promoted = 0
        for job_id in due:
            # ZREM decides the race between concurrent promoters
            if not await self._redis.zrem(self._delayed_key, job_id):
                continue
            priority = await self._redis.hget(self._job_key(job_id), "priority")
            if priority is None:
                continue
            await self._redis.hset(self._job_key(job_id), "state", JobState.WAITING.value)
            await self._enqueue_waiting(job_id, int(priority))
            promoted += 1
        return promoted

    async def claim(self) -> Optional[Job]:
        """
        Claim the next runnable job (lowest priority value first).

        Returns:
            The claimed job in ``active`` state, or None if nothing is runnable
        """
        await self._promote_delayed()

        popped = await self._redis.zpopmin(self._waiting_key, 1)
        if not popped:
            return None
        job_id = popped[0][0]
        key = self._job_key(job_id)

        raw = await self._redis.hgetall(key)
        if not raw or "id" not in raw:
            logger.warning(f"Claimed job {self.name}/{job_id} has no data, dropping it")
            return None

        now = _now_ms()
        await self._redis.hset(
            key, mapping={"state": JobState.ACTIVE.value, "processed_on": str(now), "heartbeat_on": str(now)}
        )
        await self._redis.sadd(self._active_key, job_id)
        job = Job.from_hash(raw)
        job.state = JobState.ACTIVE
        job.processed_on = now
        job.heartbeat_on = now
        await self._publish("active", job_id)
        return job

    async def update_progress(self, job: Job, progress: int) -> None:
        progress = max(0, min(100, int(progress)))
        job.progress = progress
        job.heartbeat_on = _now_ms()
        await self._redis.hset(
            self._job_key(job.id), mapping={"progress": str(progress), "heartbeat_on": str(job.heartbeat_on)}
        )
        await self._publish("progress", job.id, progress=progress)

    async def heartbeat(self, job: Job) -> None:
        """Mark an active job as still being worked on."""
        job.heartbeat_on = _now_ms()
        await self._redis.hset(self._job_key(job.id), "heartbeat_on", str(job.heartbeat_on))

    async def complete(self, job: Job, result: Any = None) -> None:
        """Mark an active job completed."""
        now = _now_ms()
        await self._redis.hset(
            self._job_key(job.id),
            mapping={
                "state": JobState.COMPLETED.value,
                "finished_on": str(now),
                "progress": "100",
                "return_value": json.dumps(result, default=str),
            },
        )
        await self._redis.srem(self._active_key, job.id)
        await self._redis.zadd(self._completed_key, {job.id: now})
        job.state = JobState.COMPLETED
        job.finished_on = now
        job.return_value = result
        await self._publish("completed", job.id, return_value=result)

    async def fail(self, job: Job, error: str) -> JobState:
        """
        Record a failed delivery.

        Returns:
            ``DELAYED`` if the job will be redelivered, ``FAILED`` once attempts are exhausted
        """
        key = self._job_key(job.id)
        job.attempts_made = await self._redis.hincrby(key, "attempts_made", 1)
        job.failed_reason = error
        await self._redis.srem(self._active_key, job.id)

        if job.attempts_made < job.attempts:
            delay = job.next_backoff_ms()
            await self._redis.hset(key, mapping={"state": JobState.DELAYED.value, "failed_reason": error})
            await self._redis.zadd(self._delayed_key, {job.id: _now_ms() + delay})
            job.state = JobState.DELAYED
            logger.info(
                f"Job {self.name}/{job.id} failed (attempt {job.attempts_made}/{job.attempts}), "
                f"retrying in {delay / 1000:.1f}s: {error}"
            )
            await self._publish("delayed", job.id, failed_reason=error, delay_ms=delay)
            return JobState.DELAYED

        now = _now_ms()
        await self._redis.hset(
            key,
            mapping={"state": JobState.FAILED.value, "failed_reason": error, "finished_on": str(now)},
        )
        await self._redis.zadd(self._failed_key, {job.id: now})
        job.state = JobState.FAILED
        job.finished_on = now
        logger.warning(f"Job {self.name}/{job.id} failed permanently after {job.attempts_made} attempt(s): {error}")
        await self._publish("failed", job.id, failed_reason=error)
        return JobState.FAILED

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    async def get_counts(self) -> Dict[str, int]:
        """Queue depth per state."""
        return {
            JobState.WAITING.value: await self._redis.zcard(self._waiting_key),
            JobState.ACTIVE.value: await self._redis.scard(self._active_key),
            JobState.COMPLETED.value: await self._redis.zcard(self._completed_key),
            JobState.FAILED.value: await self._redis.zcard(self._failed_key),
            JobState.DELAYED.value: await self._redis.zcard(self._delayed_key),
        }

    async def clean(self, state: JobState, grace_ms: int) -> int:
        """
        Drop finished jobs older than ``grace_ms``.

        Args:
            state: ``COMPLETED`` or ``FAILED``
            grace_ms: Keep jobs that finished more recently than this

        Returns:
            Number of jobs removed
        """
        if state not in FINISHED_STATES:
            raise ValueError(f"Only finished jobs can be cleaned, got {state.value}")
        set_key = self._completed_key if state == JobState.COMPLETED else self._failed_key
        job_ids: List[str] = await self._redis.zrangebyscore(set_key, "-inf", _now_ms() - grace_ms)
        removed = 0
        for job_id in job_ids:
            if await self._redis.zrem(set_key, job_id):
                await self._redis.delete(self._job_key(job_id))
                removed += 1
        if removed:
            logger.info(f"Cleaned {removed} {state.value} job(s) from {self.name}")
        return removed

    async def recover_stalled(self, max_silence_ms: int) -> int:
        """
        Fail active jobs whose last heartbeat is older than ``max_silence_ms``.

        Live consumers refresh the heartbeat while they work, so only jobs of a
        worker that died mid-job go quiet; failing them here hands them back to
        the normal backoff/redelivery path.

        Returns:
            Number of stalled jobs recovered
        """
        cutoff = _now_ms() - max_silence_ms
        recovered = 0
        for job_id in await self._redis.smembers(self._active_key):
            job = await self.get_job(job_id)
            if job is None:
                await self._redis.srem(self._active_key, job_id)
                continue
            last_seen = job.heartbeat_on or job.processed_on or 0
            if job.state != JobState.ACTIVE or last_seen > cutoff:
                continue
            logger.warning(f"Job {self.name}/{job_id} stalled (last heartbeat {last_seen}), failing it")
            await self.fail(job, "Job stalled: worker stopped responding")
            recovered += 1
        return recovered

    async def listen_events(self) -> AsyncIterator[Dict[str, Any]]:
        """
        Async generator yielding queue events (waiting, active, progress,
        completed, delayed, failed, removed).

        Raises:
            Exception: On connection errors (caller should handle reconnection)
        """
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(self.events_channel)
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    yield json.loads(message.get("data") or "{}")
                except json.JSONDecodeError:
                    logger.debug(f"Invalid JSON in queue event: {message}")
        finally:
            try:
                await pubsub.unsubscribe(self.events_channel)
                await pubsub.aclose()
            except Exception as e:
                logger.debug(f"Error closing queue event subscription: {e}")

    async def close(self) -> None:
        """Release queue resources. The Redis client itself belongs to the caller."""
        logger.debug(f"Queue {self.name} closed")
