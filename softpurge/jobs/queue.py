"""
Named task queue on top of a job store.

The queue is the producer-side handle: it stamps queue name, default retry
policy and run-at times onto tasks before they reach the store, and owns the
recurring schedulers of the queue.
"""

import logging
import uuid
from datetime import timedelta
from typing import Any, Dict, List, Mapping, Optional, Sequence

from ..timeutil import Clock, utcnow
from .models import (
    FailureOutcome,
    JobScheduler,
    JobSpec,
    RetryPolicy,
    Task,
    next_occurrence,
)
from .store import SQLJobStore

logger = logging.getLogger(__name__)


class JobQueue:
    """
    Producer and consumer handle for one named queue.

    Example:
        >>> queue = JobQueue(store, "soft-delete-purge")
        >>> await queue.add("purge-entity", {"entity_id": "42"},
        ...                 task_id="purge-users-42", delay=timedelta(days=30))
    """

    def __init__(
        self,
        store: SQLJobStore,
        name: str,
        retry: Optional[RetryPolicy] = None,
        clock: Clock = utcnow,
    ):
        self.store = store
        self.name = name
        self.retry = retry or RetryPolicy()
        self.clock = clock

    def _build(self, spec: JobSpec) -> Task:
        now = self.clock()
        task_id = spec.task_id or f"{spec.name}:{uuid.uuid4().hex}"
        return Task(
            task_id=task_id,
            queue=self.name,
            name=spec.name,
            payload=dict(spec.payload),
            run_at=now + (spec.delay or timedelta(0)),
            retry=spec.retry or self.retry,
            created_at=now,
        )

    async def add(
        self,
        name: str,
        payload: Optional[Mapping[str, Any]] = None,
        task_id: Optional[str] = None,
        delay: Optional[timedelta] = None,
        retry: Optional[RetryPolicy] = None,
    ) -> bool:
        """
        Enqueue a task.

        Args:
            name: Task name used by the processor to dispatch
            payload: JSON-serializable task data
            task_id: Deduplication key; a task with the same id already in
                the queue makes this call a no-op
            delay: Postpone delivery by this much
            retry: Override the queue's retry policy

        Returns:
            True if a task was stored, False if one with this id already existed
        """
        spec = JobSpec(
            name=name,
            payload=dict(payload or {}),
            task_id=task_id,
            delay=delay,
            retry=retry,
        )
        task = self._build(spec)
        added = await self.store.add(task)
        if added:
            logger.debug(f"Enqueued {task.task_id} on {self.name}")
        else:
            logger.debug(f"Task {task.task_id} already queued on {self.name}")
        return added

    async def add_bulk(self, specs: Sequence[JobSpec]) -> int:
        """Enqueue several tasks in one store call. Returns how many were new."""
        if not specs:
            return 0
        return await self.store.add_bulk([self._build(spec) for spec in specs])

    async def cancel(self, task_id: str) -> bool:
        """
        Remove a waiting or delayed task.

        Returns:
            False if the task does not exist or is being processed
        """
        removed = await self.store.remove(task_id)
        if removed:
            logger.info(f"Cancelled task {task_id} on {self.name}")
        return removed

    async def get_job(self, task_id: str) -> Optional[Task]:
        return await self.store.get(task_id)

    async def list_jobs(self, limit: int = 100) -> List[Task]:
        return await self.store.list_tasks(self.name, limit=limit)

    async def counts(self) -> Dict[str, int]:
        return await self.store.counts(self.name, self.clock())

    # Recurring schedules

    async def upsert_job_scheduler(
        self,
        scheduler_id: str,
        rule: str,
        name: str,
        payload: Optional[Mapping[str, Any]] = None,
    ) -> JobScheduler:
        """
        Create or replace a recurring scheduler.

        Re-running this with the same id (for example on every process
        start) keeps a single scheduler.

        Args:
            scheduler_id: Stable scheduler name
            rule: RFC 5545 recurrence rule, evaluated in UTC
            name: Name of the tasks it produces
            payload: Payload of the tasks it produces
        """
        now = self.clock()
        scheduler = JobScheduler(
            scheduler_id=scheduler_id,
            queue=self.name,
            rule=rule,
            task_name=name,
            payload=dict(payload or {}),
            next_run_at=next_occurrence(rule, now),
        )
        await self.store.upsert_scheduler(scheduler, now)
        logger.info(
            f"Scheduler {scheduler_id} on {self.name} next runs at "
            f"{scheduler.next_run_at.isoformat()}"
        )
        return scheduler

    async def remove_job_scheduler(self, scheduler_id: str) -> bool:
        return await self.store.remove_scheduler(scheduler_id)

    async def list_job_schedulers(self) -> List[JobScheduler]:
        return await self.store.list_schedulers(self.name)

    async def promote_due(self) -> int:
        """Materialise due scheduler occurrences into tasks."""
        return await self.store.promote_due_schedules(
            self.name, self.clock(), self.retry
        )

    # Consumer side

    async def claim(self, limit: int, lease: timedelta) -> List[Task]:
        return await self.store.claim(self.name, self.clock(), limit, lease)

    async def complete(self, task: Task) -> bool:
        return await self.store.complete(task)

    async def fail(
        self, task: Task, error: str, unrecoverable: bool = False
    ) -> FailureOutcome:
        return await self.store.fail(
            task, error, self.clock(), unrecoverable=unrecoverable
        )
