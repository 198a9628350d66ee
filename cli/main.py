#!/usr/bin/env python3
"""
Reelhouse CLI - maintenance commands for the ingest pipeline.

Meant to be run from cron or by an operator:

    reelhouse init-db
    reelhouse cleanup-trash --retention-days 30 --dry-run
    reelhouse cleanup-orphans --age-hours 24
    reelhouse sweep-stale
    reelhouse requeue-failed
    reelhouse queue-stats
    reelhouse retry-job quality-retry retry-<videoId>-720p
"""

import argparse
import asyncio
import logging
import sys
from dataclasses import dataclass
from typing import Any, Dict, Iterable

import redis.asyncio as aioredis
from databases import Database
from rich.console import Console
from rich.table import Table

from config import (
    CLEANUP_BATCH_SIZE,
    DATABASE_URL,
    LOG_LEVEL,
    ORPHAN_AGE_HOURS,
    QUALITY_STALE_TIMEOUT,
    READY_FOR_RETRY_LIMIT,
    REDIS_URL,
    TRASH_RETENTION_DAYS,
)
from ingest.cleanup import (
    CleanupOrphanVideos,
    CleanupTrashVideos,
    RequeueFailedQualities,
    SweepStaleEncodings,
)
from ingest.database import create_database, create_tables
from ingest.encoding_queue import ENCODING_QUEUE_NAME, EncodingJobQueue
from ingest.errors import InvalidJobStateError, JobNotFoundError
from ingest.job_queue import RedisJobQueue, create_redis
from ingest.repositories import DatabaseVideoQualityRepository, DatabaseVideoRepository
from ingest.result import Result
from ingest.retry_queue import RETRY_QUEUE_NAME, QualityRetryQueue
from ingest.storage import S3StorageGateway
from ingest.video_status import QualityFailureHandler, VideoStatusReconciler
from worker.notifications import WebhookNotificationService

console = Console()


def positive_int(value: str) -> int:
    """Argparse type converter that validates positive integers."""
    i = int(value)
    if i <= 0:
        raise argparse.ArgumentTypeError(f"must be a positive integer, got {i}")
    return i


class CLIError(Exception):
    """Raised for errors that should end the command with a message."""

    pass


@dataclass
class CLIContext:
    database: Database
    redis: aioredis.Redis
    videos: DatabaseVideoRepository
    qualities: DatabaseVideoQualityRepository
    storage: S3StorageGateway
    encoding_queue: EncodingJobQueue
    retry_queue: QualityRetryQueue
    failure_handler: QualityFailureHandler

    def queue_by_name(self, name: str) -> RedisJobQueue:
        if name == ENCODING_QUEUE_NAME:
            return self.encoding_queue.queue
        if name == RETRY_QUEUE_NAME:
            return self.retry_queue.queue
        raise CLIError(f"Unknown queue {name!r} (expected {ENCODING_QUEUE_NAME} or {RETRY_QUEUE_NAME})")

    async def close(self) -> None:
        await self.redis.aclose()
        await self.database.disconnect()


async def build_context(database_url: str = DATABASE_URL, redis_url: str = REDIS_URL) -> CLIContext:
    database = create_database(database_url)
    await database.connect()
    redis = create_redis(redis_url)

    videos = DatabaseVideoRepository(database)
    qualities = DatabaseVideoQualityRepository(database)
    storage = S3StorageGateway()
    notifier = WebhookNotificationService()
    reconciler = VideoStatusReconciler(videos, qualities, notifier, storage)

    return CLIContext(
        database=database,
        redis=redis,
        videos=videos,
        qualities=qualities,
        storage=storage,
        encoding_queue=EncodingJobQueue(RedisJobQueue(redis, ENCODING_QUEUE_NAME)),
        retry_queue=QualityRetryQueue(RedisJobQueue(redis, RETRY_QUEUE_NAME)),
        failure_handler=QualityFailureHandler(videos, qualities, notifier, reconciler),
    )


async def _with_context(action) -> Any:
    ctx = await build_context()
    try:
        return await action(ctx)
    finally:
        await ctx.close()


def _unwrap(result: Result) -> Dict[str, Any]:
    if not result.success:
        raise CLIError(f"{result.error.code.value}: {result.error.message}")
    return result.value


def _print_summary(title: str, rows: Dict[str, Any]) -> None:
    table = Table(title=title)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    for key, value in rows.items():
        if isinstance(value, (list, tuple)):
            value = ", ".join(str(v) for v in value) or "-"
        table.add_row(key, str(value))
    console.print(table)


def _print_ids(title: str, ids: Iterable[str], style: str) -> None:
    ids = list(ids)
    if not ids:
        return
    table = Table(title=title)
    table.add_column("ID", style=style)
    for video_id in ids:
        table.add_row(video_id)
    console.print(table)


def _run(coro_factory) -> None:
    try:
        asyncio.run(_with_context(coro_factory))
    except CLIError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    except Exception as e:
        console.print(f"[red]Unexpected error:[/red] {e}")
        sys.exit(1)


def cmd_init_db(args):
    """Create the database schema."""
    try:
        create_tables(args.database_url)
    except Exception as e:
        console.print(f"[red]Failed to create tables:[/red] {e}")
        sys.exit(1)
    console.print("[green]Database schema created.[/green]")


def cmd_cleanup_trash(args):
    """Permanently delete videos that have been in the trash past the retention window."""

    async def action(ctx: CLIContext):
        value = _unwrap(
            await CleanupTrashVideos(ctx.videos, ctx.storage).execute(
                retention_days=args.retention_days, batch_size=args.batch_size, dry_run=args.dry_run
            )
        )
        _print_summary(
            "Trash cleanup" + (" (dry run)" if value["dry_run"] else ""),
            {
                "Expired": value["total_expired"],
                "Deleted": value["permanently_deleted"],
                "Failed": len(value["failed_video_ids"]),
            },
        )
        _print_ids("Failed videos (retried next run)", value["failed_video_ids"], "red")

    _run(action)


def cmd_cleanup_orphans(args):
    """Remove uploads that were never confirmed."""

    async def action(ctx: CLIContext):
        value = _unwrap(
            await CleanupOrphanVideos(ctx.videos, ctx.storage, ctx.encoding_queue).execute(
                orphan_age_hours=args.age_hours, batch_size=args.batch_size, dry_run=args.dry_run
            )
        )
        _print_summary(
            "Orphan cleanup" + (" (dry run)" if value["dry_run"] else ""),
            {
                "Orphans": value["total_orphans"],
                "Cleaned up": value["cleaned_up"],
                "Failed": len(value["failed_video_ids"]),
            },
        )
        _print_ids("Failed videos (retried next run)", value["failed_video_ids"], "red")

    _run(action)


def cmd_sweep_stale(args):
    """Fail qualities stuck in encoding and resubmit them."""

    async def action(ctx: CLIContext):
        sweep = SweepStaleEncodings(
            ctx.qualities,
            ctx.failure_handler,
            ctx.retry_queue,
            [ctx.encoding_queue.queue, ctx.retry_queue.queue],
        )
        value = _unwrap(await sweep.execute(stale_after_seconds=args.stale_after))
        _print_summary(
            "Stale encodings",
            {
                "Stale": value["total_stale"],
                "Resubmitted": value["resubmitted"],
                "Exhausted": value["exhausted"],
                "Failed": value["failed"],
                "Stalled jobs recovered": value["recovered_jobs"],
            },
        )

    _run(action)


def cmd_requeue_failed(args):
    """Re-submit failed qualities that still have retry budget."""

    async def action(ctx: CLIContext):
        requeue = RequeueFailedQualities(ctx.videos, ctx.qualities, ctx.retry_queue)
        value = _unwrap(await requeue.execute(limit=args.limit))
        _print_summary(
            "Requeue failed qualities",
            {
                "Candidates": value["total_candidates"],
                "Queued": value["queued"],
                "Skipped": value["skipped"],
                "Failed": value["failed"],
            },
        )

    _run(action)


def cmd_queue_stats(args):
    """Show job counts per queue and state."""

    async def action(ctx: CLIContext):
        stats = {
            ENCODING_QUEUE_NAME: await ctx.encoding_queue.get_queue_stats(),
            RETRY_QUEUE_NAME: await ctx.retry_queue.get_queue_stats(),
        }
        states = ["waiting", "active", "delayed", "completed", "failed"]
        table = Table(title="Queues")
        table.add_column("Queue", style="cyan")
        for state in states:
            table.add_column(state.capitalize(), justify="right")
        for name, counts in stats.items():
            table.add_row(name, *(str(counts.get(state, 0)) for state in states))
        console.print(table)

    _run(action)


def cmd_retry_job(args):
    """Move a failed job back to waiting."""

    async def action(ctx: CLIContext):
        queue = ctx.queue_by_name(args.queue)
        try:
            job = await queue.retry_job(args.job_id)
        except JobNotFoundError as e:
            raise CLIError(str(e))
        except InvalidJobStateError as e:
            raise CLIError(str(e))
        console.print(f"[green]Job {job.id} re-queued[/green] ({args.queue}, state {job.state.value})")

    _run(action)


def main():
    parser = argparse.ArgumentParser(prog="reelhouse", description="Reelhouse ingest maintenance")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init-db", help="Create the database schema")
    init_parser.add_argument("--database-url", default=DATABASE_URL, help="Database URL (default: from config)")
    init_parser.set_defaults(func=cmd_init_db)

    trash_parser = subparsers.add_parser("cleanup-trash", help="Purge soft-deleted videos past retention")
    trash_parser.add_argument(
        "--retention-days", type=int, default=TRASH_RETENTION_DAYS, help=f"Default: {TRASH_RETENTION_DAYS}"
    )
    trash_parser.add_argument("--batch-size", type=positive_int, default=CLEANUP_BATCH_SIZE)
    trash_parser.add_argument("--dry-run", action="store_true", help="Only count candidates")
    trash_parser.set_defaults(func=cmd_cleanup_trash)

    orphan_parser = subparsers.add_parser("cleanup-orphans", help="Remove uploads that were never confirmed")
    orphan_parser.add_argument("--age-hours", type=positive_int, default=ORPHAN_AGE_HOURS)
    orphan_parser.add_argument("--batch-size", type=positive_int, default=CLEANUP_BATCH_SIZE)
    orphan_parser.add_argument("--dry-run", action="store_true", help="Only count candidates")
    orphan_parser.set_defaults(func=cmd_cleanup_orphans)

    stale_parser = subparsers.add_parser("sweep-stale", help="Fail and resubmit qualities stuck in encoding")
    stale_parser.add_argument(
        "--stale-after", type=positive_int, default=QUALITY_STALE_TIMEOUT, help="Seconds in encoding before stale"
    )
    stale_parser.set_defaults(func=cmd_sweep_stale)

    requeue_parser = subparsers.add_parser("requeue-failed", help="Re-submit failed qualities with budget left")
    requeue_parser.add_argument("--limit", type=positive_int, default=READY_FOR_RETRY_LIMIT)
    requeue_parser.set_defaults(func=cmd_requeue_failed)

    stats_parser = subparsers.add_parser("queue-stats", help="Show queue depths")
    stats_parser.set_defaults(func=cmd_queue_stats)

    retry_parser = subparsers.add_parser("retry-job", help="Re-queue a failed job")
    retry_parser.add_argument("queue", choices=[ENCODING_QUEUE_NAME, RETRY_QUEUE_NAME])
    retry_parser.add_argument("job_id", help="Job ID (e.g. video-<id> or retry-<id>-<quality>)")
    retry_parser.set_defaults(func=cmd_retry_job)

    args = parser.parse_args()
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    args.func(args)


if __name__ == "__main__":
    main()
