"""
Soft Delete Module - reversible deletion for document collections.

Provides the deletion-aware query rewriter, the soft-delete collection
wrapper that replaces destructive operations, and the service registry the
purge pipeline works from.
"""

from .collection import LifecycleListener, SoftDeleteCollection, with_soft_delete
from .exceptions import (
    EntityNotFoundError,
    HardDeleteDisabledError,
    LifecycleFieldError,
    SoftDeleteError,
    UnknownEntityTypeError,
    UnsupportedEntityIdError,
)
from .ids import decode_entity_id, encode_entity_id
from .models import DeletionReport, EntityTypeStats
from .rewriter import (
    DELETED_AT_FIELD,
    DELETED_FIELD,
    QueryOptions,
    apply_deletion_filter,
    force_active,
    pipeline_warnings,
    rewrite_pipeline,
)
from .services import SoftDeleteService

__all__ = [
    # Collections
    "SoftDeleteCollection",
    "LifecycleListener",
    "with_soft_delete",
    # Services
    "SoftDeleteService",
    # Query rewriting
    "QueryOptions",
    "apply_deletion_filter",
    "force_active",
    "rewrite_pipeline",
    "pipeline_warnings",
    "DELETED_FIELD",
    "DELETED_AT_FIELD",
    # Entity ids
    "encode_entity_id",
    "decode_entity_id",
    # Models
    "DeletionReport",
    "EntityTypeStats",
    # Exceptions
    "SoftDeleteError",
    "HardDeleteDisabledError",
    "EntityNotFoundError",
    "UnknownEntityTypeError",
    "UnsupportedEntityIdError",
    "LifecycleFieldError",
]
