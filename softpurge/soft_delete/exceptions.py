"""Exceptions for soft delete operations."""

from typing import Any, Optional, Sequence


class SoftDeleteError(Exception):
    """Base exception for soft delete operations."""

    def __init__(self, message: str, entity_id: Optional[Any] = None):
        self.entity_id = entity_id
        super().__init__(message)


class HardDeleteDisabledError(SoftDeleteError):
    """Raised when a destructive operation is called on a soft-delete collection.

    This is a configuration violation: the calling code path is wrong and
    retrying cannot help.
    """

    def __init__(self, operation: str, entity_type: str, alternative: str):
        self.operation = operation
        self.entity_type = entity_type
        super().__init__(
            f"Hard delete is disabled for {entity_type}: {operation}() is not "
            f"allowed. Use {alternative} instead."
        )


class EntityNotFoundError(SoftDeleteError):
    """Raised when a lifecycle target does not exist."""

    def __init__(self, entity_type: str, entity_id: Any):
        self.entity_type = entity_type
        super().__init__(f"{entity_type} {entity_id} not found", entity_id=entity_id)


class UnknownEntityTypeError(SoftDeleteError):
    """Raised when an entity type has not been registered for soft delete."""

    def __init__(self, entity_type: str):
        self.entity_type = entity_type
        super().__init__(
            f"Entity type {entity_type!r} is not registered for soft delete"
        )


class UnsupportedEntityIdError(SoftDeleteError):
    """Raised when an entity id cannot be carried in a purge task payload."""

    def __init__(self, entity_id: Any):
        super().__init__(
            f"Unsupported entity id type {type(entity_id).__name__}: "
            "use str, int, UUID, datetime or bytes",
            entity_id=entity_id,
        )


class LifecycleFieldError(SoftDeleteError):
    """Raised when an update writes ``deleted`` or ``deletedAt`` directly.

    The lifecycle fields only change through soft_delete() and restore(),
    which always set both together.
    """

    def __init__(self, entity_type: str, fields: Sequence[str]):
        self.entity_type = entity_type
        self.fields = list(fields)
        super().__init__(
            f"Update on {entity_type} writes lifecycle field(s) "
            f"{', '.join(self.fields)}. Use soft_delete() or restore() instead."
        )
