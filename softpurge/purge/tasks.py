"""Task kinds and deterministic task identities for the purge pipeline."""

from enum import Enum
from typing import Any, Iterable, Optional, Tuple

ENTITY_TYPE_KEY = "entity_type"
ENTITY_ID_KEY = "entity_id"


class TaskKind(str, Enum):
    """Purge pipeline task names."""

    SCAN = "scan"
    PURGE_ENTITY = "purge-entity"


def purge_task_id(entity_type: str, entity_id: Any) -> str:
    """Identity of the purge task for one entity. Repeated deletes share it."""
    return f"purge-{entity_type}-{entity_id}"


def scan_scheduler_id(entity_type: str) -> str:
    """Name of the recurring scan scheduler for an entity type."""
    return f"scan-{entity_type}-daily"


def task_id_for(kind: TaskKind, entity_type: str, entity_id: Any = None) -> str:
    if kind == TaskKind.PURGE_ENTITY:
        if entity_id is None:
            raise ValueError("A purge task needs an entity id")
        return purge_task_id(entity_type, entity_id)
    return scan_scheduler_id(entity_type)


def parse_purge_task_id(
    task_id: str, entity_types: Optional[Iterable[str]] = None
) -> Optional[Tuple[str, str]]:
    """
    Split a purge task identity into entity type and entity id.

    Args:
        task_id: Task identity, e.g. ``purge-users-65f0c2a1``
        entity_types: Known entity types; when given, the longest matching
            type wins, so types containing ``-`` parse correctly

    Returns:
        ``(entity_type, entity_id)``, or None if this is not a purge task id
    """
    if not task_id.startswith("purge-"):
        return None
    rest = task_id[len("purge-") :]

    if entity_types is not None:
        for entity_type in sorted(entity_types, key=len, reverse=True):
            prefix = f"{entity_type}-"
            if rest.startswith(prefix) and len(rest) > len(prefix):
                return entity_type, rest[len(prefix) :]
        return None

    entity_type, sep, entity_id = rest.partition("-")
    if not sep or not entity_type or not entity_id:
        return None
    return entity_type, entity_id
