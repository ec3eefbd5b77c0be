"""
Hard removal of entities past the retention window.

The executor never trusts the task that triggered it: eligibility is part of
the delete condition itself, so a restored entity, an entity deleted again
later, or an already purged entity all make the purge a no-op.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional

from ..jobs.models import FailureOutcome, Task, UnrecoverableTaskError
from ..soft_delete.exceptions import UnknownEntityTypeError
from ..soft_delete.ids import decode_entity_id
from ..soft_delete.rewriter import DELETED_AT_FIELD, DELETED_FIELD
from ..soft_delete.services import SoftDeleteService
from .scanner import PurgeScanner, ScanResult
from .tasks import ENTITY_ID_KEY, ENTITY_TYPE_KEY, TaskKind, parse_purge_task_id

logger = logging.getLogger(__name__)


class InvalidPurgeTaskError(UnrecoverableTaskError):
    """The task does not name something the executor can act on."""

    def __init__(self, task_id: str, reason: str):
        self.task_id = task_id
        self.reason = reason
        super().__init__(f"Invalid purge task {task_id}: {reason}")


@dataclass(frozen=True)
class PurgeOutcome:
    """Result of one purge attempt."""

    entity_type: str
    entity_id: Any
    deleted: bool
    reason: Optional[str] = None


class PurgeExecutor:
    """
    Processor for the purge queue.

    Args:
        service: Registry of soft-delete collections
        scanner: Scanner run for ``scan`` tasks
        timeout: Bound on each conditional delete, in seconds
    """

    def __init__(
        self,
        service: SoftDeleteService,
        scanner: Optional[PurgeScanner] = None,
        timeout: float = 10.0,
    ):
        self.service = service
        self.scanner = scanner
        self.timeout = timeout

    async def purge(self, entity_type: str, entity_id: Any) -> PurgeOutcome:
        """
        Remove an entity if it is still deleted and past the retention window.

        The check and the removal are one conditional delete, so concurrent
        or repeated executions remove the entity at most once.
        """
        collection = self.service.get(entity_type).raw_collection
        cutoff = self.service.purge_cutoff()

        result = await asyncio.wait_for(
            collection.delete_one(  # softpurge: allow-hard-delete
                {
                    "_id": entity_id,
                    DELETED_FIELD: True,
                    DELETED_AT_FIELD: {"$lte": cutoff},
                }
            ),
            timeout=self.timeout,
        )

        if result.deleted_count == 0:
            logger.info(
                f"Skipped purge of {entity_type} {entity_id}: "
                "not found, restored or still within retention"
            )
            return PurgeOutcome(
                entity_type, entity_id, deleted=False, reason="not eligible"
            )

        logger.info(f"Purged {entity_type} {entity_id}")
        return PurgeOutcome(entity_type, entity_id, deleted=True)

    async def __call__(self, task: Task) -> Any:
        """Dispatch a queued task by name."""
        entity_type = task.payload.get(ENTITY_TYPE_KEY)
        if not entity_type:
            raise InvalidPurgeTaskError(task.task_id, "missing entity type")

        try:
            self.service.get(entity_type)
        except UnknownEntityTypeError as e:
            raise InvalidPurgeTaskError(task.task_id, str(e)) from e

        if task.name == TaskKind.PURGE_ENTITY.value:
            encoded = task.payload.get(ENTITY_ID_KEY)
            if encoded is None:
                raise InvalidPurgeTaskError(task.task_id, "missing entity id")
            try:
                entity_id = decode_entity_id(encoded)
            except ValueError as e:
                raise InvalidPurgeTaskError(task.task_id, str(e)) from e
            return await self.purge(entity_type, entity_id)

        if task.name == TaskKind.SCAN.value:
            if self.scanner is None:
                raise InvalidPurgeTaskError(task.task_id, "no scanner configured")
            scan: ScanResult = await self.scanner.scan(entity_type)
            return scan

        raise InvalidPurgeTaskError(task.task_id, f"unknown task name {task.name!r}")

    async def report_terminal_failure(self, outcome: FailureOutcome) -> None:
        """Escalate a task that will not be retried again."""
        task = outcome.task
        entity_type = task.payload.get(ENTITY_TYPE_KEY)
        entity_id = task.payload.get(ENTITY_ID_KEY)
        if not isinstance(entity_id, (str, int)):
            # Missing or tagged; the task id carries the id as text
            parsed = parse_purge_task_id(task.task_id, self.service.entity_types())
            if parsed is not None:
                entity_type, entity_id = parsed

        logger.critical(
            f"CRITICAL: {task.name} task permanently failed for {entity_type} "
            f"{entity_id if entity_id is not None else '-'} after "
            f"{task.attempts_made} attempts (task {task.task_id}): {outcome.error}",
            extra={
                "task_id": task.task_id,
                "task_name": task.name,
                "entity_type": entity_type,
                "entity_id": entity_id,
                "attempts_made": task.attempts_made,
                "error": outcome.error,
            },
        )
