"""
Storage contract for document collections.

Provides the abstract interface the soft delete layer and the purge pipeline
are written against. Any document store offering filter predicates,
atomic single-document updates and deletes, and an aggregation pipeline can
be plugged in behind it.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

Document = Dict[str, Any]
Filter = Mapping[str, Any]
Pipeline = Sequence[Mapping[str, Any]]
SortSpec = Union[Mapping[str, int], Sequence[Tuple[str, int]]]

ASCENDING = 1
DESCENDING = -1

# Stages served by search indexes that live outside the primary documents.
SEARCH_STAGES = frozenset({"$search", "$vectorSearch", "$searchMeta"})
GEO_NEAR_STAGE = "$geoNear"
MATCH_STAGE = "$match"


class StorageError(Exception):
    """Base exception for storage engine failures."""


class DuplicateKeyError(StorageError):
    """Raised when inserting a document whose ``_id`` already exists."""

    def __init__(self, document_id: Any):
        self.document_id = document_id
        super().__init__(f"Duplicate key: _id {document_id!r} already exists")


class InvalidPipelineError(StorageError):
    """Raised for malformed or unsupported aggregation pipelines."""


class InvalidUpdateError(StorageError):
    """Raised for malformed update documents."""


class SearchNotEnabledError(StorageError):
    """Raised when a search stage is run against an engine without search indexes."""

    code = 31082
    code_name = "SearchNotEnabled"

    def __init__(self, stage: str):
        self.stage = stage
        super().__init__(
            f"Using {stage} requires a search index, which is not enabled "
            "for this deployment"
        )


@dataclass(frozen=True)
class UpdateResult:
    """Outcome of a filter-based update."""

    matched_count: int
    modified_count: int


@dataclass(frozen=True)
class DeleteResult:
    """Outcome of a filter-based delete."""

    deleted_count: int


class DocumentCollection(ABC):
    """Abstract storage accessor for a single collection of documents."""

    name: str

    @abstractmethod
    async def insert_one(self, document: Document) -> Any:
        """
        Insert a document.

        Args:
            document: Document to insert; ``_id`` is generated when missing

        Returns:
            The identity of the inserted document

        Raises:
            DuplicateKeyError: If the identity is already taken
        """
        pass

    @abstractmethod
    async def insert_many(self, documents: Sequence[Document]) -> List[Any]:
        """Insert several documents, returning their identities."""
        pass

    @abstractmethod
    async def find(
        self,
        filter: Optional[Filter] = None,
        sort: Optional[SortSpec] = None,
        skip: int = 0,
        limit: int = 0,
        projection: Optional[Mapping[str, int]] = None,
    ) -> List[Document]:
        """
        Find documents matching a filter.

        Args:
            filter: Filter predicate (empty matches everything)
            sort: Sort specification, e.g. ``[("_id", 1)]``
            skip: Number of matches to skip
            limit: Maximum number of documents (0 means no limit)
            projection: Inclusion or exclusion projection

        Returns:
            Copies of the matching documents
        """
        pass

    @abstractmethod
    async def find_one(
        self,
        filter: Optional[Filter] = None,
        sort: Optional[SortSpec] = None,
        projection: Optional[Mapping[str, int]] = None,
    ) -> Optional[Document]:
        """Find the first document matching a filter."""
        pass

    @abstractmethod
    async def count_documents(self, filter: Optional[Filter] = None) -> int:
        """Count documents matching a filter."""
        pass

    @abstractmethod
    async def update_many(
        self, filter: Filter, update: Mapping[str, Any]
    ) -> UpdateResult:
        """Apply an update to every document matching a filter."""
        pass

    @abstractmethod
    async def find_one_and_update(
        self,
        filter: Filter,
        update: Mapping[str, Any],
        return_document_after: bool = True,
        sort: Optional[SortSpec] = None,
    ) -> Optional[Document]:
        """
        Atomically update the first matching document.

        Args:
            filter: Filter predicate, evaluated atomically with the update
            update: Update document (``$set``, ``$unset``, ``$inc``)
            return_document_after: Return the updated rather than original document
            sort: Ordering used to pick the first match

        Returns:
            The document, or None if nothing matched
        """
        pass

    @abstractmethod
    async def delete_one(self, filter: Filter) -> DeleteResult:
        """
        Atomically delete the first document matching a filter.

        The predicate is checked and the delete applied in one step, which
        makes this usable as a conditional delete.
        """
        pass

    @abstractmethod
    async def delete_many(self, filter: Filter) -> DeleteResult:
        """Delete every document matching a filter."""
        pass

    @abstractmethod
    async def aggregate(self, pipeline: Pipeline) -> List[Document]:
        """
        Run an aggregation pipeline.

        Raises:
            InvalidPipelineError: Malformed pipeline or misplaced stage
            SearchNotEnabledError: Search stage without a search index
        """
        pass


class DocumentDatabase(ABC):
    """Abstract handle to a document database."""

    @abstractmethod
    def collection(self, name: str) -> DocumentCollection:
        """Return the accessor for a named collection."""
        pass

    @abstractmethod
    async def ping(self) -> bool:
        """Check that the database is reachable."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release connections held by the database handle."""
        pass
