"""
Pytest fixtures for Reelhouse tests.

Use cases and workers are exercised against the in-memory doubles in
``tests/fakes.py``; repository tests run against a throwaway SQLite database
created per test.
"""

from pathlib import Path
from typing import AsyncGenerator

import pytest
from databases import Database

from ingest.database import create_tables
from ingest.encoding_queue import ENCODING_QUEUE_NAME, EncodingJobQueue
from ingest.job_queue import RedisJobQueue
from ingest.retry_queue import RETRY_QUEUE_NAME, QualityRetryQueue
from ingest.video_status import QualityFailureHandler, VideoStatusReconciler
from tests.fakes import (
    FakeEncodingEngine,
    FakeRedis,
    FakeStorage,
    FakeUserRepository,
    FakeVideoQualityRepository,
    FakeVideoRepository,
    RecordingNotifier,
)


@pytest.fixture
async def database(tmp_path: Path) -> AsyncGenerator[Database, None]:
    """Connected database with a fresh schema in a temporary SQLite file."""
    url = f"sqlite:///{tmp_path / 'reelhouse-test.db'}"
    create_tables(url)
    db = Database(url)
    await db.connect()
    try:
        yield db
    finally:
        await db.disconnect()


@pytest.fixture
def users() -> FakeUserRepository:
    repo = FakeUserRepository()
    repo.add("user-1")
    return repo


@pytest.fixture
def qualities() -> FakeVideoQualityRepository:
    return FakeVideoQualityRepository()


@pytest.fixture
def videos(qualities) -> FakeVideoRepository:
    return FakeVideoRepository(qualities)


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def engine() -> FakeEncodingEngine:
    return FakeEncodingEngine()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def encoding_queue(redis) -> EncodingJobQueue:
    return EncodingJobQueue(RedisJobQueue(redis, ENCODING_QUEUE_NAME, prefix="test"))


@pytest.fixture
def retry_queue(redis) -> QualityRetryQueue:
    return QualityRetryQueue(RedisJobQueue(redis, RETRY_QUEUE_NAME, prefix="test"))


@pytest.fixture
def reconciler(videos, qualities, notifier, storage) -> VideoStatusReconciler:
    return VideoStatusReconciler(videos, qualities, notifier, storage, delete_raw_on_ready=False)


@pytest.fixture
def failure_handler(videos, qualities, notifier, reconciler) -> QualityFailureHandler:
    return QualityFailureHandler(videos, qualities, notifier, reconciler)
