"""Pytest configuration for softpurge."""

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from softpurge.jobs import JobQueue, RetryPolicy, SQLJobStore
from softpurge.storage import InMemoryDocumentDatabase


class FakeClock:
    """Controllable UTC clock passed wherever components take ``clock``."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def pytest_configure(config):
    """Configure pytest with custom settings."""
    config.addinivalue_line("markers", "integration: end-to-end pipeline test")


@pytest.fixture
def clock():
    """Clock starting at a fixed instant."""
    return FakeClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def database():
    """Empty in-memory document database."""
    return InMemoryDocumentDatabase()


@pytest_asyncio.fixture
async def job_store():
    """Initialized in-memory SQLite job store."""
    store = SQLJobStore("sqlite://")
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
def queue(job_store, clock):
    """Purge queue with fast retries."""
    retry = RetryPolicy(attempts=3, backoff_delay_seconds=60)
    return JobQueue(job_store, "test-queue", retry=retry, clock=clock)
