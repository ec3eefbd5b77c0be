"""
Service layer for soft delete operations.

Keeps the registry of soft-delete collections by entity type and provides
the higher-level delete, restore, trash listing and reporting operations
used by API handlers and the purge pipeline.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from ..storage.base import DESCENDING, Document, DocumentCollection
from ..timeutil import Clock, utcnow
from .collection import LifecycleListener, SoftDeleteCollection, with_soft_delete
from .exceptions import EntityNotFoundError, UnknownEntityTypeError
from .models import DeletionReport, EntityTypeStats
from .rewriter import DELETED_AT_FIELD, QueryOptions

logger = logging.getLogger(__name__)


class SoftDeleteService:
    """
    Registry and high-level operations for soft-delete collections.

    Listeners added to the service are attached to every collection it
    registers, so behaviour such as purge scheduling and restore
    cancellation applies to all entry points uniformly.
    """

    def __init__(
        self,
        retention: timedelta,
        listeners: Sequence[LifecycleListener] = (),
        clock: Clock = utcnow,
    ):
        """
        Initialize the soft delete service.

        Args:
            retention: Retention window for soft-deleted records
            listeners: Lifecycle listeners attached to every collection
            clock: Source of the current time
        """
        self.retention = retention
        self.clock = clock
        self._listeners: List[LifecycleListener] = list(listeners)
        self._collections: Dict[str, SoftDeleteCollection] = {}

    def add_listener(self, listener: LifecycleListener) -> None:
        """Attach a listener to current and future collections."""
        self._listeners.append(listener)
        for collection in self._collections.values():
            collection.add_listener(listener)

    def register(self, collection: DocumentCollection) -> SoftDeleteCollection:
        """
        Attach soft delete to a collection and register it by name.

        Args:
            collection: Storage accessor; its name becomes the entity type

        Returns:
            The soft-delete collection
        """
        if collection.name in self._collections:
            raise ValueError(f"Entity type {collection.name!r} is already registered")

        wrapped = with_soft_delete(
            collection, listeners=self._listeners, clock=self.clock
        )
        self._collections[collection.name] = wrapped
        logger.debug(f"Registered {collection.name} for soft delete")
        return wrapped

    def get(self, entity_type: str) -> SoftDeleteCollection:
        """
        Look up a registered collection.

        Raises:
            UnknownEntityTypeError: If the entity type is not registered
        """
        try:
            return self._collections[entity_type]
        except KeyError:
            raise UnknownEntityTypeError(entity_type) from None

    def entity_types(self) -> List[str]:
        return sorted(self._collections)

    def purge_cutoff(self) -> datetime:
        """Latest ``deletedAt`` that is eligible for purge right now."""
        return self.clock() - self.retention

    async def delete_entity(self, entity_type: str, entity_id: Any) -> Document:
        """
        Soft delete an entity.

        Raises:
            EntityNotFoundError: No active entity with this id
        """
        document = await self.get(entity_type).soft_delete(entity_id)
        if document is None:
            raise EntityNotFoundError(entity_type, entity_id)
        return document

    async def restore_entity(self, entity_type: str, entity_id: Any) -> Document:
        """
        Restore a soft-deleted entity.

        Raises:
            EntityNotFoundError: No entity with this id
        """
        document = await self.get(entity_type).restore(entity_id)
        if document is None:
            raise EntityNotFoundError(entity_type, entity_id)
        return document

    async def get_deleted_entities(
        self,
        entity_type: str,
        filters: Optional[Dict[str, Any]] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Document]:
        """
        List soft-deleted entities, newest deletion first.

        Args:
            entity_type: Type of entities to retrieve
            filters: Optional ``deleted_after`` / ``deleted_before`` bounds
            limit: Maximum records to return
            offset: Offset for pagination

        Returns:
            List of deleted documents
        """
        query: Dict[str, Any] = {}
        if filters:
            bounds: Dict[str, Any] = {}
            if filters.get("deleted_after") is not None:
                bounds["$gte"] = filters["deleted_after"]
            if filters.get("deleted_before") is not None:
                bounds["$lte"] = filters["deleted_before"]
            if bounds:
                query[DELETED_AT_FIELD] = bounds

        return await self.get(entity_type).find(
            query,
            QueryOptions.trash(),
            sort=[(DELETED_AT_FIELD, DESCENDING)],
            skip=offset,
            limit=limit,
        )

    async def generate_deletion_report(
        self, entity_types: Optional[List[str]] = None
    ) -> DeletionReport:
        """
        Count active, deleted and overdue records per entity type.

        Args:
            entity_types: Optional subset of registered entity types

        Returns:
            Deletion report
        """
        cutoff = self.purge_cutoff()
        report = DeletionReport(
            generated_at=self.clock(),
            retention_days=max(1, self.retention.days),
        )

        for entity_type in entity_types or self.entity_types():
            collection = self.get(entity_type)
            report.by_type[entity_type] = EntityTypeStats(
                active=await collection.count_active(),
                deleted=await collection.count(options=QueryOptions.trash()),
                overdue=await collection.count(
                    {DELETED_AT_FIELD: {"$lte": cutoff}}, QueryOptions.trash()
                ),
            )

        return report
