"""
Purge Module - retention-based hard removal of soft-deleted entities.

Provides the coordinator that schedules purges on delete and cancels them on
restore, the scanner that sweeps overdue entities, and the executor that
removes them with a conditional delete.
"""

from .coordinator import PurgeCoordinator
from .executor import InvalidPurgeTaskError, PurgeExecutor, PurgeOutcome
from .scanner import PurgeScanner, ScanResult
from .tasks import (
    ENTITY_ID_KEY,
    ENTITY_TYPE_KEY,
    TaskKind,
    parse_purge_task_id,
    purge_task_id,
    scan_scheduler_id,
    task_id_for,
)

__all__ = [
    "PurgeCoordinator",
    "PurgeScanner",
    "ScanResult",
    "PurgeExecutor",
    "PurgeOutcome",
    "InvalidPurgeTaskError",
    "TaskKind",
    "purge_task_id",
    "scan_scheduler_id",
    "task_id_for",
    "parse_purge_task_id",
    "ENTITY_TYPE_KEY",
    "ENTITY_ID_KEY",
]
