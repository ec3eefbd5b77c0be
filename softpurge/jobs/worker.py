"""
Queue consumer.

A worker repeatedly promotes due scheduler occurrences, claims due tasks up
to its concurrency, and runs them through a processor coroutine. Delivery is
at-least-once: a worker that dies mid-task loses its lease and the task is
claimed again once the lease expires.
"""

import asyncio
import logging
import time
from collections import deque
from datetime import timedelta
from typing import Any, Awaitable, Callable, Deque, Optional

from .models import FailureOutcome, Task, UnrecoverableTaskError
from .queue import JobQueue

logger = logging.getLogger(__name__)

Processor = Callable[[Task], Awaitable[Any]]
TerminalFailureHandler = Callable[[FailureOutcome], Awaitable[None]]


class RateLimiter:
    """
    Sliding-window limit on task starts.

    Args:
        max_tasks: Tasks allowed per window
        window_seconds: Window length
        clock: Monotonic time source in seconds
    """

    def __init__(
        self,
        max_tasks: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_tasks <= 0:
            raise ValueError("max_tasks must be positive")
        self.max_tasks = max_tasks
        self.window_seconds = window_seconds
        self._clock = clock
        self._starts: Deque[float] = deque()

    def _evict(self, now: float) -> None:
        while self._starts and now - self._starts[0] >= self.window_seconds:
            self._starts.popleft()

    def available(self) -> int:
        """Task starts still allowed in the current window."""
        self._evict(self._clock())
        return self.max_tasks - len(self._starts)

    def record(self, count: int = 1) -> None:
        now = self._clock()
        self._starts.extend([now] * count)

    def retry_after(self) -> float:
        """Seconds until the oldest start leaves the window."""
        now = self._clock()
        self._evict(now)
        if len(self._starts) < self.max_tasks:
            return 0.0
        return max(0.0, self.window_seconds - (now - self._starts[0]))


class Worker:
    """
    Consumer for one queue.

    Example:
        >>> worker = Worker(queue, executor, concurrency=5)
        >>> worker.start()
        >>> ...
        >>> await worker.close()
    """

    def __init__(
        self,
        queue: JobQueue,
        processor: Processor,
        concurrency: int = 5,
        lease_seconds: float = 300,
        poll_interval: float = 1.0,
        rate_limiter: Optional[RateLimiter] = None,
        on_terminal_failure: Optional[TerminalFailureHandler] = None,
    ):
        """
        Initialize the worker.

        Args:
            queue: Queue to consume
            processor: Coroutine run for each task; raising marks the
                delivery failed
            concurrency: Maximum tasks processed at once
            lease_seconds: Processing time budget per delivery; the task is
                redelivered when it runs out
            poll_interval: Sleep between polls of an idle queue
            rate_limiter: Optional cap on task starts per time window
            on_terminal_failure: Called once a task has exhausted its
                retries; defaults to a CRITICAL log entry
        """
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.queue = queue
        self.processor = processor
        self.concurrency = concurrency
        self.lease = timedelta(seconds=lease_seconds)
        self.poll_interval = poll_interval
        self.rate_limiter = rate_limiter
        self.on_terminal_failure = on_terminal_failure

        self._stopping = asyncio.Event()
        self._runner: Optional["asyncio.Task[None]"] = None

    @property
    def running(self) -> bool:
        return self._runner is not None and not self._runner.done()

    async def run_once(self) -> int:
        """
        Promote due schedules, claim one round of tasks and process them.

        Returns:
            Number of tasks processed in this round
        """
        await self.queue.promote_due()

        limit = self.concurrency
        if self.rate_limiter is not None:
            limit = min(limit, self.rate_limiter.available())
            if limit <= 0:
                return 0

        tasks = await self.queue.claim(limit, self.lease)
        if not tasks:
            return 0
        if self.rate_limiter is not None:
            self.rate_limiter.record(len(tasks))

        results = await asyncio.gather(
            *(self._process(task) for task in tasks), return_exceptions=True
        )
        for task, result in zip(tasks, results):
            if isinstance(result, Exception):
                logger.error(
                    f"Task {task.task_id} ({task.name}) could not be settled: {result}",
                    extra={"task_id": task.task_id, "task_name": task.name},
                )
        return len(tasks)

    async def run_until_idle(self, max_rounds: int = 1000) -> int:
        """Process rounds until no task is due. Returns the total processed."""
        total = 0
        for _ in range(max_rounds):
            processed = await self.run_once()
            if processed == 0:
                break
            total += processed
        return total

    async def _process(self, task: Task) -> None:
        timeout = self.lease.total_seconds()
        try:
            await asyncio.wait_for(self.processor(task), timeout=timeout)
        except UnrecoverableTaskError as e:
            outcome = await self.queue.fail(task, self._describe(e), unrecoverable=True)
        except asyncio.TimeoutError:
            outcome = await self.queue.fail(task, f"Task timed out after {timeout}s")
        except Exception as e:
            outcome = await self.queue.fail(task, self._describe(e))
        else:
            if not await self.queue.complete(task):
                logger.warning(f"Task {task.task_id} finished after its lease was lost")
            return

        await self._handle_failure(outcome)

    @staticmethod
    def _describe(error: BaseException) -> str:
        return f"{type(error).__name__}: {error}"

    async def _handle_failure(self, outcome: FailureOutcome) -> None:
        task = outcome.task
        if outcome.lease_lost:
            logger.warning(
                f"Task {task.task_id} failed after its lease was lost: {outcome.error}"
            )
            return

        logger.error(
            f"Task {task.task_id} ({task.name}) failed on attempt "
            f"{task.attempts_made}/{task.retry.attempts} in queue {task.queue}: "
            f"{outcome.error}",
            extra={
                "task_id": task.task_id,
                "task_name": task.name,
                "attempts_made": task.attempts_made,
                "max_attempts": task.retry.attempts,
                "queue": task.queue,
                "payload": task.payload,
            },
        )
        if not outcome.terminal:
            return

        if self.on_terminal_failure is not None:
            await self.on_terminal_failure(outcome)
        else:
            logger.critical(
                f"Task {task.task_id} ({task.name}) permanently failed after "
                f"{task.attempts_made} attempts: {outcome.error}"
            )

    async def _run(self) -> None:
        logger.info(
            f"Worker started on {self.queue.name} with concurrency {self.concurrency}"
        )
        while not self._stopping.is_set():
            try:
                processed = await self.run_once()
            except Exception as e:
                logger.error(f"Worker round failed on {self.queue.name}: {e}")
                processed = 0

            if processed:
                continue

            pause = self.poll_interval
            if self.rate_limiter is not None:
                pause = max(pause, self.rate_limiter.retry_after())
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=pause)
            except asyncio.TimeoutError:
                pass
        logger.info(f"Worker stopped on {self.queue.name}")

    def start(self) -> None:
        """Run the polling loop in the background of the current event loop."""
        if self.running:
            return
        self._stopping.clear()
        self._runner = asyncio.get_running_loop().create_task(self._run())

    async def close(self) -> None:
        """Stop polling and wait for the in-flight round to finish."""
        self._stopping.set()
        if self._runner is not None:
            await self._runner
            self._runner = None


