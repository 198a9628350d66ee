"""
Worker entry point.

Runs ``WORKER_CONCURRENCY`` consumers on each of the two queues plus a
periodic maintenance loop (stale-encoding sweep, failed-quality requeue and
queue depth gauges). SIGTERM/SIGINT stop claiming new jobs; in-flight jobs
finish before the process exits.

Usage:
    python -m worker.main
"""

import asyncio
import logging
import signal
from dataclasses import dataclass, field
from typing import List, Optional

import redis.asyncio as aioredis
from databases import Database
from prometheus_client import start_http_server

from config import (
    DATABASE_URL,
    LOG_LEVEL,
    REDIS_URL,
    STALE_SWEEP_INTERVAL,
    WORK_DIR,
    WORKER_CONCURRENCY,
    WORKER_METRICS_PORT,
)
from ingest.cleanup import RequeueFailedQualities, SweepStaleEncodings
from ingest.database import create_database
from ingest.encoding_queue import ENCODING_QUEUE_NAME, EncodingJobQueue
from ingest.job_queue import RedisJobQueue, create_redis
from ingest.metrics import record_queue_depth
from ingest.repositories import DatabaseVideoQualityRepository, DatabaseVideoRepository
from ingest.retry_queue import RETRY_QUEUE_NAME, QualityRetryQueue
from ingest.storage import S3StorageGateway
from ingest.video_status import QualityFailureHandler, VideoStatusReconciler
from worker.consumer import QueueConsumer
from worker.engine import FFmpegEncodingEngine
from worker.notifications import WebhookNotificationService
from worker.processors import EncodingJobProcessor, QualityRetryProcessor

logger = logging.getLogger(__name__)


@dataclass
class WorkerContext:
    """Everything the worker needs, built once at startup."""

    database: Database
    redis: aioredis.Redis
    encoding_queue: EncodingJobQueue
    retry_queue: QualityRetryQueue
    notifier: WebhookNotificationService
    encoding_processor: EncodingJobProcessor
    retry_processor: QualityRetryProcessor
    sweep_stale: SweepStaleEncodings
    requeue_failed: RequeueFailedQualities
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)

    async def close(self) -> None:
        await self.notifier.drain()
        await self.encoding_queue.close()
        await self.retry_queue.close()
        await self.redis.aclose()
        await self.database.disconnect()


async def build_worker_context(
    database_url: str = DATABASE_URL,
    redis_url: str = REDIS_URL,
    redis: Optional[aioredis.Redis] = None,
) -> WorkerContext:
    database = create_database(database_url)
    await database.connect()
    redis = redis or create_redis(redis_url)

    videos = DatabaseVideoRepository(database)
    qualities = DatabaseVideoQualityRepository(database)
    storage = S3StorageGateway()
    engine = FFmpegEncodingEngine()
    notifier = WebhookNotificationService()

    encoding_jobs = RedisJobQueue(redis, ENCODING_QUEUE_NAME)
    retry_jobs = RedisJobQueue(redis, RETRY_QUEUE_NAME)
    encoding_queue = EncodingJobQueue(encoding_jobs)
    retry_queue = QualityRetryQueue(retry_jobs)

    reconciler = VideoStatusReconciler(videos, qualities, notifier, storage)
    failure_handler = QualityFailureHandler(videos, qualities, notifier, reconciler)

    return WorkerContext(
        database=database,
        redis=redis,
        encoding_queue=encoding_queue,
        retry_queue=retry_queue,
        notifier=notifier,
        encoding_processor=EncodingJobProcessor(
            videos, qualities, storage, engine, retry_queue, failure_handler, reconciler, notifier, WORK_DIR,
            encoding_queue=encoding_queue,
        ),
        retry_processor=QualityRetryProcessor(
            videos, qualities, storage, engine, retry_queue, failure_handler, reconciler, WORK_DIR
        ),
        sweep_stale=SweepStaleEncodings(qualities, failure_handler, retry_queue, [encoding_jobs, retry_jobs]),
        requeue_failed=RequeueFailedQualities(videos, qualities, retry_queue),
    )


async def maintenance_loop(ctx: WorkerContext, interval: float = STALE_SWEEP_INTERVAL) -> None:
    """Periodic stale sweep and requeue. Errors are logged; the loop keeps going."""
    while not ctx.stop_event.is_set():
        try:
            await ctx.sweep_stale.execute()
            await ctx.requeue_failed.execute()
            record_queue_depth(ENCODING_QUEUE_NAME, await ctx.encoding_queue.get_queue_stats())
            record_queue_depth(RETRY_QUEUE_NAME, await ctx.retry_queue.get_queue_stats())
        except Exception as e:
            logger.error(f"Maintenance pass failed: {e}")
        try:
            await asyncio.wait_for(ctx.stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()

    def handler(sig, frame):
        logger.info(f"{signal.Signals(sig).name} received, finishing current jobs and shutting down...")
        loop.call_soon_threadsafe(stop_event.set)

    signal.signal(signal.SIGTERM, handler)
    signal.signal(signal.SIGINT, handler)


async def run_worker(ctx: Optional[WorkerContext] = None, concurrency: int = WORKER_CONCURRENCY) -> None:
    ctx = ctx or await build_worker_context()
    _install_signal_handlers(ctx.stop_event)

    consumers: List[QueueConsumer] = []
    for i in range(concurrency):
        consumers.append(
            QueueConsumer(ctx.encoding_queue.queue, ctx.encoding_processor, name=f"{ENCODING_QUEUE_NAME}-{i}")
        )
        consumers.append(QueueConsumer(ctx.retry_queue.queue, ctx.retry_processor, name=f"{RETRY_QUEUE_NAME}-{i}"))

    logger.info(f"Worker started with {concurrency} consumer(s) per queue")
    try:
        await asyncio.gather(
            *(consumer.run(ctx.stop_event) for consumer in consumers),
            maintenance_loop(ctx),
        )
    finally:
        await ctx.close()
        logger.info("Worker stopped")


def main() -> None:
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    if WORKER_METRICS_PORT:
        start_http_server(WORKER_METRICS_PORT)
        logger.info(f"Metrics served on port {WORKER_METRICS_PORT}")
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
