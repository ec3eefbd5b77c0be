"""
Tests for the job store, queue handle and worker.

Uses an in-memory SQLite job store and a controllable clock, so delays and
backoff are exercised by advancing time rather than sleeping.
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from softpurge.config import BackoffType
from softpurge.jobs import (
    JobQueue,
    JobSpec,
    JobStoreError,
    RateLimiter,
    RetryPolicy,
    SQLJobStore,
    TaskState,
    UnrecoverableTaskError,
    Worker,
    next_occurrence,
    repeat_task_id,
)

LEASE = timedelta(minutes=5)
DAILY = "FREQ=DAILY;BYHOUR=0;BYMINUTE=0;BYSECOND=0"


class TestRetryPolicy:
    """Test backoff computation."""

    def test_exponential_backoff(self):
        policy = RetryPolicy(attempts=5, backoff_delay_seconds=60)
        assert [policy.delay_for(n).total_seconds() for n in range(1, 5)] == [
            60,
            120,
            240,
            480,
        ]

    def test_fixed_backoff(self):
        policy = RetryPolicy(backoff_type=BackoffType.FIXED, backoff_delay_seconds=30)
        assert policy.delay_for(4) == timedelta(seconds=30)

    def test_attempts_must_be_positive(self):
        with pytest.raises(ValueError):
            RetryPolicy(attempts=0)


class TestRecurrence:
    """Test recurrence helpers."""

    def test_next_daily_occurrence_is_next_midnight_utc(self, clock):
        occurrence = next_occurrence(DAILY, clock.now)
        assert occurrence.isoformat() == "2026-03-02T00:00:00+00:00"

    def test_occurrence_is_strictly_after(self, clock):
        midnight = clock.now.replace(hour=0)
        assert next_occurrence(DAILY, midnight) == midnight + timedelta(days=1)

    def test_repeat_task_id(self, clock):
        midnight = clock.now.replace(hour=0)
        assert repeat_task_id("scan-users-daily", midnight) == (
            f"repeat:scan-users-daily:{int(midnight.timestamp() * 1000)}"
        )


class TestJobQueue:
    """Test enqueueing, deduplication and cancellation."""

    @pytest.mark.asyncio
    async def test_add_and_get(self, queue, clock):
        assert await queue.add("purge-entity", {"entity_id": "1"}, task_id="t-1")

        task = await queue.get_job("t-1")

        assert task.name == "purge-entity"
        assert task.payload == {"entity_id": "1"}
        assert task.state == TaskState.WAITING
        assert task.run_at == clock.now
        assert task.retry.attempts == 3

    @pytest.mark.asyncio
    async def test_duplicate_task_id_is_ignored(self, queue):
        assert await queue.add("purge-entity", {"v": 1}, task_id="t-1") is True
        assert await queue.add("purge-entity", {"v": 2}, task_id="t-1") is False

        assert (await queue.get_job("t-1")).payload == {"v": 1}
        assert len(await queue.list_jobs()) == 1

    @pytest.mark.asyncio
    async def test_add_bulk_deduplicates(self, queue):
        await queue.add("purge-entity", task_id="t-0")
        specs = [JobSpec(name="purge-entity", task_id=f"t-{i % 3}") for i in range(6)]

        assert await queue.add_bulk(specs) == 2
        assert await queue.add_bulk([]) == 0
        assert len(await queue.list_jobs()) == 3

    @pytest.mark.asyncio
    async def test_add_bulk_spans_insert_chunks(self, queue):
        specs = [JobSpec(name="purge-entity", task_id=f"t-{i}") for i in range(450)]

        assert await queue.add_bulk(specs) == 450
        assert (await queue.counts())["waiting"] == 450

    @pytest.mark.asyncio
    async def test_generated_ids_are_unique(self, queue):
        await queue.add("noop")
        await queue.add("noop")
        assert len(await queue.list_jobs()) == 2

    @pytest.mark.asyncio
    async def test_delayed_task_is_not_claimed_early(self, queue, clock):
        await queue.add("purge-entity", task_id="t-1", delay=timedelta(days=30))

        assert await queue.counts() == {"waiting": 0, "delayed": 1, "active": 0}
        assert await queue.claim(5, LEASE) == []

        clock.advance(days=30)
        claimed = await queue.claim(5, LEASE)
        assert [task.task_id for task in claimed] == ["t-1"]

    @pytest.mark.asyncio
    async def test_cancel(self, queue):
        await queue.add("purge-entity", task_id="t-1", delay=timedelta(days=1))

        assert await queue.cancel("t-1") is True
        assert await queue.cancel("t-1") is False
        assert await queue.get_job("t-1") is None

    @pytest.mark.asyncio
    async def test_active_task_cannot_be_cancelled(self, queue):
        await queue.add("purge-entity", task_id="t-1")
        await queue.claim(1, LEASE)

        assert await queue.cancel("t-1") is False
        assert (await queue.get_job("t-1")).state == TaskState.ACTIVE

    @pytest.mark.asyncio
    async def test_uninitialized_store(self, clock):
        queue = JobQueue(SQLJobStore("sqlite://"), "q", clock=clock)
        with pytest.raises(JobStoreError):
            await queue.add("noop")


class TestClaimAndFailure:
    """Test leases, retries and terminal failures."""

    @pytest.mark.asyncio
    async def test_claim_is_exclusive(self, queue):
        await queue.add("purge-entity", task_id="t-1")

        first = await queue.claim(5, LEASE)
        second = await queue.claim(5, LEASE)

        assert len(first) == 1
        assert second == []
        assert first[0].attempts_made == 1
        assert first[0].lease_token

    @pytest.mark.asyncio
    async def test_expired_lease_is_reclaimed(self, queue, clock):
        await queue.add("purge-entity", task_id="t-1")
        (stale,) = await queue.claim(1, LEASE)

        clock.advance(minutes=6)
        (fresh,) = await queue.claim(1, LEASE)

        assert fresh.attempts_made == 2
        assert fresh.lease_token != stale.lease_token
        # The first worker finishing late does not remove the redelivered task
        assert await queue.complete(stale) is False
        assert await queue.complete(fresh) is True
        assert await queue.get_job("t-1") is None

    @pytest.mark.asyncio
    async def test_failure_reschedules_with_backoff(self, queue, clock):
        await queue.add("purge-entity", task_id="t-1")
        (task,) = await queue.claim(1, LEASE)

        outcome = await queue.fail(task, "boom")

        assert outcome.terminal is False
        assert outcome.next_run_at == clock.now + timedelta(seconds=60)
        stored = await queue.get_job("t-1")
        assert stored.state == TaskState.WAITING
        assert stored.last_error == "boom"

        assert await queue.claim(1, LEASE) == []
        clock.advance(seconds=60)
        (task,) = await queue.claim(1, LEASE)
        outcome = await queue.fail(task, "boom")
        assert outcome.next_run_at == clock.now + timedelta(seconds=120)

    @pytest.mark.asyncio
    async def test_exhausted_retries_are_terminal(self, queue, clock):
        await queue.add("purge-entity", task_id="t-1")

        outcomes = []
        for _ in range(3):
            (task,) = await queue.claim(1, LEASE)
            outcomes.append(await queue.fail(task, "boom"))
            clock.advance(hours=1)

        assert [outcome.terminal for outcome in outcomes] == [False, False, True]
        assert await queue.get_job("t-1") is None

    @pytest.mark.asyncio
    async def test_unrecoverable_failure_is_terminal_immediately(self, queue):
        await queue.add("purge-entity", task_id="t-1")
        (task,) = await queue.claim(1, LEASE)

        outcome = await queue.fail(task, "bad payload", unrecoverable=True)

        assert outcome.terminal is True
        assert await queue.get_job("t-1") is None

    @pytest.mark.asyncio
    async def test_failure_after_lost_lease(self, queue, clock):
        await queue.add("purge-entity", task_id="t-1")
        (stale,) = await queue.claim(1, LEASE)
        clock.advance(minutes=6)
        await queue.claim(1, LEASE)

        outcome = await queue.fail(stale, "late")

        assert outcome.lease_lost is True
        assert (await queue.get_job("t-1")).state == TaskState.ACTIVE


class TestSchedulers:
    """Test recurring schedulers."""

    @pytest.mark.asyncio
    async def test_upsert_is_idempotent(self, queue):
        for _ in range(2):
            await queue.upsert_job_scheduler(
                "scan-users-daily", DAILY, "scan", {"entity_type": "users"}
            )

        schedulers = await queue.list_job_schedulers()

        assert [s.scheduler_id for s in schedulers] == ["scan-users-daily"]

    @pytest.mark.asyncio
    async def test_due_occurrence_is_promoted_once(self, queue, clock):
        scheduler = await queue.upsert_job_scheduler(
            "scan-users-daily", DAILY, "scan", {"entity_type": "users"}
        )

        assert await queue.promote_due() == 0

        clock.now = scheduler.next_run_at + timedelta(seconds=1)
        assert await queue.promote_due() == 1
        assert await queue.promote_due() == 0

        task_id = repeat_task_id("scan-users-daily", scheduler.next_run_at)
        task = await queue.get_job(task_id)
        assert task.name == "scan"
        assert task.payload == {"entity_type": "users"}

        advanced = await queue.store.get_scheduler("scan-users-daily")
        assert advanced.next_run_at == scheduler.next_run_at + timedelta(days=1)

    @pytest.mark.asyncio
    async def test_remove_scheduler(self, queue):
        await queue.upsert_job_scheduler("scan-users-daily", DAILY, "scan")

        assert await queue.remove_job_scheduler("scan-users-daily") is True
        assert await queue.list_job_schedulers() == []


class TestRateLimiter:
    """Test the sliding window limiter."""

    def test_window(self):
        now = [0.0]
        limiter = RateLimiter(2, 10.0, clock=lambda: now[0])

        limiter.record(2)
        assert limiter.available() == 0
        assert limiter.retry_after() == 10.0

        now[0] = 10.0
        assert limiter.available() == 2

    def test_rejects_non_positive_max(self):
        with pytest.raises(ValueError):
            RateLimiter(0, 10.0)


class TestWorker:
    """Test task processing."""

    @pytest.mark.asyncio
    async def test_successful_tasks_are_removed(self, queue):
        processor = AsyncMock(return_value=None)
        worker = Worker(queue, processor, concurrency=2)
        for i in range(5):
            await queue.add("noop", task_id=f"t-{i}")

        assert await worker.run_until_idle() == 5
        assert processor.await_count == 5
        assert await queue.list_jobs() == []

    @pytest.mark.asyncio
    async def test_concurrency_bounds_each_round(self, queue):
        worker = Worker(queue, AsyncMock(), concurrency=2)
        for i in range(5):
            await queue.add("noop", task_id=f"t-{i}")

        assert await worker.run_once() == 2

    @pytest.mark.asyncio
    async def test_failure_is_retried(self, queue, clock, caplog):
        processor = AsyncMock(side_effect=[RuntimeError("storage down"), None])
        worker = Worker(queue, processor)
        await queue.add("noop", task_id="t-1")

        with caplog.at_level("ERROR"):
            assert await worker.run_once() == 1
        assert "t-1" in caplog.text
        assert "1/3" in caplog.text

        assert await worker.run_once() == 0
        clock.advance(seconds=60)
        assert await worker.run_once() == 1
        assert await queue.get_job("t-1") is None

    @pytest.mark.asyncio
    async def test_settle_error_does_not_abort_sibling_tasks(self, queue, caplog):
        """Test that a store error settling one task leaves the others settled."""
        original = queue.complete

        async def complete(task):
            if task.task_id == "t-0":
                raise JobStoreError("write failed")
            return await original(task)

        worker = Worker(queue, AsyncMock(), concurrency=2)
        await queue.add("noop", task_id="t-0")
        await queue.add("noop", task_id="t-1")

        with patch.object(queue, "complete", side_effect=complete):
            with caplog.at_level("ERROR"):
                assert await worker.run_once() == 2

        assert await queue.get_job("t-1") is None
        stuck = await queue.get_job("t-0")
        assert stuck.state == TaskState.ACTIVE
        assert "t-0" in caplog.text
        assert "write failed" in caplog.text

    @pytest.mark.asyncio
    async def test_terminal_failure_handler(self, queue, clock):
        handler = AsyncMock()
        worker = Worker(
            queue,
            AsyncMock(side_effect=RuntimeError("boom")),
            on_terminal_failure=handler,
        )
        await queue.add("noop", task_id="t-1")

        for _ in range(3):
            await worker.run_once()
            clock.advance(hours=1)

        handler.assert_awaited_once()
        outcome = handler.await_args.args[0]
        assert outcome.terminal is True
        assert outcome.task.task_id == "t-1"
        assert "boom" in outcome.error

    @pytest.mark.asyncio
    async def test_terminal_failure_logs_critical_by_default(self, queue, caplog):
        worker = Worker(queue, AsyncMock(side_effect=UnrecoverableTaskError("bad")))
        await queue.add("noop", task_id="t-1")

        with caplog.at_level("CRITICAL"):
            await worker.run_once()

        assert any(record.levelname == "CRITICAL" for record in caplog.records)
        assert await queue.get_job("t-1") is None

    @pytest.mark.asyncio
    async def test_rate_limiter_caps_claims(self, queue):
        limiter = RateLimiter(3, 10.0, clock=lambda: 0.0)
        worker = Worker(queue, AsyncMock(), concurrency=5, rate_limiter=limiter)
        for i in range(5):
            await queue.add("noop", task_id=f"t-{i}")

        assert await worker.run_once() == 3
        assert await worker.run_once() == 0

    @pytest.mark.asyncio
    async def test_start_and_close(self, queue):
        processed = asyncio.Event()

        async def processor(task):
            processed.set()

        worker = Worker(queue, processor, poll_interval=0.01)
        await queue.add("noop", task_id="t-1")

        worker.start()
        assert worker.running
        await asyncio.wait_for(processed.wait(), timeout=2)
        await worker.close()

        assert not worker.running

    def test_concurrency_must_be_positive(self, queue):
        with pytest.raises(ValueError):
            Worker(queue, AsyncMock(), concurrency=0)
