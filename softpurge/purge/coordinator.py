"""
Couples the soft delete lifecycle to the purge queue.

Registered as a lifecycle listener on every soft-delete collection, so every
delete schedules a purge and every restore, whatever code path triggers it,
tries to cancel one.
"""

import logging
from datetime import timedelta
from typing import Iterable, List

from ..jobs.models import JobScheduler
from ..jobs.queue import JobQueue
from ..soft_delete.ids import encode_entity_id
from ..storage.base import Document
from .tasks import (
    ENTITY_ID_KEY,
    ENTITY_TYPE_KEY,
    TaskKind,
    purge_task_id,
    scan_scheduler_id,
)

logger = logging.getLogger(__name__)


class PurgeCoordinator:
    """
    Schedules and cancels purge tasks on lifecycle transitions.

    Args:
        queue: Purge queue
        retention: Delay between soft delete and purge
        scan_schedule: Recurrence rule of the per-type scans
    """

    def __init__(self, queue: JobQueue, retention: timedelta, scan_schedule: str):
        self.queue = queue
        self.retention = retention
        self.scan_schedule = scan_schedule

    async def on_soft_deleted(self, entity_type: str, document: Document) -> None:
        """
        Schedule the purge of a freshly deleted entity.

        A pending task from an earlier delete is replaced so the delay counts
        from this deletion. Queue errors propagate to the caller.
        """
        entity_id = document["_id"]
        task_id = purge_task_id(entity_type, entity_id)

        await self.queue.cancel(task_id)
        added = await self.queue.add(
            TaskKind.PURGE_ENTITY.value,
            {ENTITY_TYPE_KEY: entity_type, ENTITY_ID_KEY: encode_entity_id(entity_id)},
            task_id=task_id,
            delay=self.retention,
        )
        if added:
            logger.info(
                f"Scheduled purge of {entity_type} {entity_id} in {self.retention}"
            )
        else:
            logger.info(f"Purge of {entity_type} {entity_id} is already in progress")

    async def on_restored(self, entity_type: str, document: Document) -> None:
        """
        Cancel the pending purge of a restored entity.

        Best effort: the restore has already been stored, and a task left
        behind finds the entity ineligible when it runs.
        """
        entity_id = document["_id"]
        task_id = purge_task_id(entity_type, entity_id)
        try:
            await self.queue.cancel(task_id)
        except Exception as e:
            logger.warning(f"Could not cancel purge task {task_id} after restore: {e}")

    async def setup_repeated_jobs(
        self, entity_types: Iterable[str]
    ) -> List[JobScheduler]:
        """Create or refresh the recurring scan of each entity type."""
        schedulers = []
        for entity_type in entity_types:
            schedulers.append(
                await self.queue.upsert_job_scheduler(
                    scan_scheduler_id(entity_type),
                    self.scan_schedule,
                    TaskKind.SCAN.value,
                    {ENTITY_TYPE_KEY: entity_type},
                )
            )
        return schedulers
