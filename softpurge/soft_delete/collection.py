"""
Soft delete capability for document collections.

``with_soft_delete`` wraps any storage accessor and returns a collection
whose read family respects the deletion lifecycle, whose delete family is
reversible, and whose destructive operations are disabled.

Usage:
    users = with_soft_delete(database.collection("users"))
    user_id = await users.insert_one({"email": "ada@example.com"})
    await users.soft_delete(user_id)
    await users.find_one({"email": "ada@example.com"})  # None
    await users.restore(user_id)
"""

import logging
from typing import Any, Dict, List, Mapping, NoReturn, Optional, Protocol, Sequence

from ..storage.base import (
    Document,
    DocumentCollection,
    Filter,
    Pipeline,
    SortSpec,
    UpdateResult,
)
from ..timeutil import Clock, utcnow
from .exceptions import HardDeleteDisabledError, LifecycleFieldError
from .ids import encode_entity_id
from .rewriter import (
    DEFAULT_OPTIONS,
    DELETED_AT_FIELD,
    DELETED_FIELD,
    QueryOptions,
    apply_deletion_filter,
    force_active,
    rewrite_pipeline,
)

logger = logging.getLogger(__name__)


class LifecycleListener(Protocol):
    """Receives lifecycle transitions after they are stored."""

    async def on_soft_deleted(self, entity_type: str, document: Document) -> None:
        ...

    async def on_restored(self, entity_type: str, document: Document) -> None:
        ...


class SoftDeleteCollection:
    """
    Collection wrapper enforcing the soft delete lifecycle.

    Stamps the ``deleted`` / ``deletedAt`` fields on inserted documents,
    routes every read through :func:`apply_deletion_filter`, and refuses hard
    deletes. Only soft_delete() and restore() write the lifecycle fields.
    Listeners are awaited after each successful soft delete or restore; their
    errors propagate to the caller.
    """

    def __init__(
        self,
        collection: DocumentCollection,
        listeners: Sequence[LifecycleListener] = (),
        clock: Clock = utcnow,
    ):
        self._collection = collection
        self._listeners: List[LifecycleListener] = list(listeners)
        self._clock = clock

    @property
    def name(self) -> str:
        """Entity type name, taken from the underlying collection."""
        return self._collection.name

    @property
    def raw_collection(self) -> DocumentCollection:
        """Unguarded accessor. Reserved for the purge executor."""
        return self._collection

    def add_listener(self, listener: LifecycleListener) -> None:
        self._listeners.append(listener)

    # Write family

    async def insert_one(self, document: Mapping[str, Any]) -> Any:
        """Insert a document as active, overwriting any lifecycle fields it sets."""
        return await self._collection.insert_one(self._with_defaults(document))

    async def insert_many(self, documents: Sequence[Mapping[str, Any]]) -> List[Any]:
        return await self._collection.insert_many(
            [self._with_defaults(document) for document in documents]
        )

    @staticmethod
    def _with_defaults(document: Mapping[str, Any]) -> Dict[str, Any]:
        stored = dict(document)
        if "_id" in stored:
            encode_entity_id(stored["_id"])
        stored[DELETED_FIELD] = False
        stored[DELETED_AT_FIELD] = None
        return stored

    def _check_update(self, update: Mapping[str, Any]) -> None:
        fields = []
        for key, value in update.items():
            if key.startswith("$") and isinstance(value, Mapping):
                fields.extend(value)
            else:
                fields.append(key)
        touched = [
            field
            for field in fields
            if field.split(".")[0] in (DELETED_FIELD, DELETED_AT_FIELD)
        ]
        if touched:
            raise LifecycleFieldError(self.name, touched)

    # Read family

    async def find(
        self,
        filter: Optional[Filter] = None,
        options: QueryOptions = DEFAULT_OPTIONS,
        sort: Optional[SortSpec] = None,
        skip: int = 0,
        limit: int = 0,
        projection: Optional[Mapping[str, int]] = None,
    ) -> List[Document]:
        return await self._collection.find(
            apply_deletion_filter(filter, options),
            sort=sort,
            skip=skip,
            limit=limit,
            projection=projection,
        )

    async def find_one(
        self,
        filter: Optional[Filter] = None,
        options: QueryOptions = DEFAULT_OPTIONS,
        sort: Optional[SortSpec] = None,
        projection: Optional[Mapping[str, int]] = None,
    ) -> Optional[Document]:
        return await self._collection.find_one(
            apply_deletion_filter(filter, options), sort=sort, projection=projection
        )

    async def find_by_id(
        self, entity_id: Any, options: QueryOptions = DEFAULT_OPTIONS
    ) -> Optional[Document]:
        return await self.find_one({"_id": entity_id}, options)

    async def count(
        self, filter: Optional[Filter] = None, options: QueryOptions = DEFAULT_OPTIONS
    ) -> int:
        return await self._collection.count_documents(
            apply_deletion_filter(filter, options)
        )

    async def find_one_and_update(
        self,
        filter: Filter,
        update: Mapping[str, Any],
        options: QueryOptions = DEFAULT_OPTIONS,
    ) -> Optional[Document]:
        """Atomically update the first visible match and return the new version."""
        self._check_update(update)
        return await self._collection.find_one_and_update(
            apply_deletion_filter(filter, options), update
        )

    async def update_many(
        self,
        filter: Filter,
        update: Mapping[str, Any],
        options: QueryOptions = DEFAULT_OPTIONS,
    ) -> UpdateResult:
        self._check_update(update)
        return await self._collection.update_many(
            apply_deletion_filter(filter, options), update
        )

    # Lifecycle

    async def soft_delete(self, entity_id: Any) -> Optional[Document]:
        """
        Mark an active entity deleted.

        The update only matches active documents, so calling it again on a
        deleted entity leaves the first ``deletedAt`` in place.

        Returns:
            The updated document, or None if no active entity has this id

        Raises:
            UnsupportedEntityIdError: The id cannot be carried by a purge
                task; the entity is left untouched
        """
        encode_entity_id(entity_id)
        document = await self._collection.find_one_and_update(
            apply_deletion_filter({"_id": entity_id}, DEFAULT_OPTIONS),
            {"$set": {DELETED_FIELD: True, DELETED_AT_FIELD: self._clock()}},
        )
        if document is None:
            return None

        logger.info(f"Soft deleted {self.name} {entity_id}")
        for listener in self._listeners:
            await listener.on_soft_deleted(self.name, document)
        return document

    async def restore(self, entity_id: Any) -> Optional[Document]:
        """
        Clear the deletion markers of an entity.

        Returns:
            The restored document, or None if no entity has this id
        """
        document = await self._collection.find_one_and_update(
            apply_deletion_filter({"_id": entity_id}, QueryOptions.with_deleted()),
            {"$set": {DELETED_FIELD: False, DELETED_AT_FIELD: None}},
        )
        if document is None:
            return None

        logger.info(f"Restored {self.name} {entity_id}")
        for listener in self._listeners:
            await listener.on_restored(self.name, document)
        return document

    async def count_active(self, filter: Optional[Filter] = None) -> int:
        return await self._collection.count_documents(force_active(filter))

    async def update_active(
        self, filter: Filter, update: Mapping[str, Any]
    ) -> UpdateResult:
        self._check_update(update)
        return await self._collection.update_many(force_active(filter), update)

    async def update_all_including_deleted(
        self, filter: Filter, update: Mapping[str, Any]
    ) -> UpdateResult:
        """Unfiltered bulk update for administrative corrections."""
        self._check_update(update)
        return await self._collection.update_many(dict(filter), update)

    async def aggregate_safe(
        self, pipeline: Optional[Pipeline] = None
    ) -> List[Document]:
        """Run a pipeline rewritten by :func:`rewrite_pipeline`."""
        return await self._collection.aggregate(  # softpurge: allow-raw-aggregate
            rewrite_pipeline(pipeline)
        )

    # Disabled destructive operations. Plain methods so the error is raised at
    # the call site, before any await.

    def delete_one(self, *args: Any, **kwargs: Any) -> NoReturn:
        raise HardDeleteDisabledError("delete_one", self.name, "soft_delete()")

    def delete_many(self, *args: Any, **kwargs: Any) -> NoReturn:
        raise HardDeleteDisabledError(
            "delete_many", self.name, "soft_delete() or update_active()"
        )

    def find_one_and_delete(self, *args: Any, **kwargs: Any) -> NoReturn:
        raise HardDeleteDisabledError("find_one_and_delete", self.name, "soft_delete()")

    def find_by_id_and_delete(self, *args: Any, **kwargs: Any) -> NoReturn:
        raise HardDeleteDisabledError(
            "find_by_id_and_delete", self.name, "soft_delete()"
        )

    def __repr__(self) -> str:
        return f"SoftDeleteCollection({self.name!r})"


def with_soft_delete(
    collection: DocumentCollection,
    listeners: Sequence[LifecycleListener] = (),
    clock: Clock = utcnow,
) -> SoftDeleteCollection:
    """
    Attach the soft delete lifecycle to a collection.

    Args:
        collection: Storage accessor to wrap
        listeners: Lifecycle listeners notified after soft delete and restore
        clock: Source of ``deletedAt`` timestamps

    Returns:
        The wrapped collection
    """
    if isinstance(collection, SoftDeleteCollection):
        raise TypeError(f"{collection!r} already has soft delete attached")
    return SoftDeleteCollection(collection, listeners=listeners, clock=clock)
