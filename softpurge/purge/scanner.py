"""
Sweep for soft-deleted entities past the retention window.

The scanner is a safety net behind the per-entity purge tasks scheduled at
delete time: a task lost to a crash or a failed enqueue is recreated by the
next scan. It pages through overdue entities by identity, so each run does a
bounded amount of work per batch and keeps no cursor between runs.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List

from ..jobs.models import JobSpec
from ..jobs.queue import JobQueue
from ..soft_delete.exceptions import UnsupportedEntityIdError
from ..soft_delete.ids import encode_entity_id
from ..soft_delete.rewriter import DELETED_AT_FIELD, QueryOptions
from ..soft_delete.services import SoftDeleteService
from ..storage.base import ASCENDING
from .tasks import ENTITY_ID_KEY, ENTITY_TYPE_KEY, TaskKind, purge_task_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScanResult:
    """Outcome of one scan run."""

    entity_type: str
    scanned: int
    enqueued: int
    batches: int


class PurgeScanner:
    """
    Enqueue purge tasks for every overdue soft-deleted entity.

    Tasks carry the same identity as the ones scheduled at delete time, so an
    entity whose task is still pending is not enqueued twice.
    """

    def __init__(
        self,
        service: SoftDeleteService,
        queue: JobQueue,
        batch_size: int = 500,
        batch_timeout: float = 30.0,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.service = service
        self.queue = queue
        self.batch_size = batch_size
        self.batch_timeout = batch_timeout

    async def scan(self, entity_type: str) -> ScanResult:
        """
        Scan one entity type.

        A failed or timed-out batch read aborts the run; tasks enqueued by
        earlier batches stay queued and the next run starts over.

        Returns:
            Counts for this run
        """
        collection = self.service.get(entity_type)
        cutoff = self.service.purge_cutoff()
        logger.info(
            f"Scanning {entity_type} for entities deleted before {cutoff.isoformat()}"
        )

        scanned = enqueued = batches = 0
        last_id: Any = None

        while True:
            filter: Dict[str, Any] = {DELETED_AT_FIELD: {"$lte": cutoff}}
            if last_id is not None:
                filter["_id"] = {"$gt": last_id}

            batch = await asyncio.wait_for(
                collection.find(
                    filter,
                    QueryOptions.trash(),
                    sort=[("_id", ASCENDING)],
                    limit=self.batch_size,
                    projection={"_id": 1},
                ),
                timeout=self.batch_timeout,
            )
            if not batch:
                break

            batches += 1
            scanned += len(batch)
            specs = []
            for doc in batch:
                try:
                    entity_id = encode_entity_id(doc["_id"])
                except UnsupportedEntityIdError as e:
                    logger.error(f"Cannot schedule purge of {entity_type}: {e}")
                    continue
                specs.append(
                    JobSpec(
                        name=TaskKind.PURGE_ENTITY.value,
                        payload={
                            ENTITY_TYPE_KEY: entity_type,
                            ENTITY_ID_KEY: entity_id,
                        },
                        task_id=purge_task_id(entity_type, doc["_id"]),
                    )
                )
            enqueued += await self.queue.add_bulk(specs)
            last_id = batch[-1]["_id"]

            if len(batch) < self.batch_size:
                break

        result = ScanResult(
            entity_type=entity_type, scanned=scanned, enqueued=enqueued, batches=batches
        )
        logger.info(
            f"Scan of {entity_type} finished: {scanned} overdue, "
            f"{enqueued} enqueued in {batches} batches"
        )
        return result

    async def scan_all(self) -> List[ScanResult]:
        """Scan every registered entity type."""
        return [
            await self.scan(entity_type) for entity_type in self.service.entity_types()
        ]
