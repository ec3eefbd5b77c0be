"""
Storage Module - document collection contract and reference engine.

The soft delete layer and the purge pipeline only talk to the abstract
``DocumentCollection``; ``InMemoryDocumentDatabase`` implements it in process.
"""

from .base import (
    ASCENDING,
    DESCENDING,
    SEARCH_STAGES,
    DeleteResult,
    DocumentCollection,
    DocumentDatabase,
    DuplicateKeyError,
    InvalidPipelineError,
    InvalidUpdateError,
    SearchNotEnabledError,
    StorageError,
    UpdateResult,
)
from .memory import InMemoryCollection, InMemoryDocumentDatabase, new_object_id

__all__ = [
    # Contract
    "DocumentCollection",
    "DocumentDatabase",
    "UpdateResult",
    "DeleteResult",
    "ASCENDING",
    "DESCENDING",
    "SEARCH_STAGES",
    # Reference engine
    "InMemoryCollection",
    "InMemoryDocumentDatabase",
    "new_object_id",
    # Exceptions
    "StorageError",
    "DuplicateKeyError",
    "InvalidPipelineError",
    "InvalidUpdateError",
    "SearchNotEnabledError",
]
