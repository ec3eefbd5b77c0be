"""
softpurge - soft delete lifecycle and retention-based purge pipeline.

Records are never destroyed on user request. They are marked deleted, hidden
from ordinary reads, restorable for a retention window, and eventually
hard-purged by an idempotent, crash-safe job pipeline.

Key Features
------------
* **Query rewriting**: every read and aggregation respects the deletion
  marker, including ``$geoNear`` pipelines
* **Soft delete collections**: reversible delete, restore, and disabled hard
  deletes behind one wrapper
* **Durable job queue**: deduplicated, delayed tasks with exponential backoff
  on SQLAlchemy
* **Purge pipeline**: per-entity purge tasks plus a daily batched scan as a
  safety net; restore cancels the pending purge
* **Policy check**: static detection of hard deletes and raw aggregations

Quick Start
-----------
>>> from softpurge import PurgeConfig, PurgeRuntime
>>>
>>> config = PurgeConfig(retention_days=30, job_store_url="sqlite://")
>>> async with PurgeRuntime(config) as runtime:
...     users = runtime.register("users")
...     await runtime.start()
...     user_id = await users.insert_one({"email": "ada@example.com"})
...     await users.soft_delete(user_id)   # purge scheduled in 30 days
...     await users.restore(user_id)       # purge cancelled
"""

__version__ = "1.0.0"

from .config import BackoffType, PurgeConfig, configure, get_config, set_config
from .health import HealthReport, check_health
from .jobs import JobQueue, RetryPolicy, SQLJobStore, Task, Worker
from .purge import (
    PurgeCoordinator,
    PurgeExecutor,
    PurgeScanner,
    purge_task_id,
    scan_scheduler_id,
)
from .runtime import PurgeRuntime
from .soft_delete import (
    HardDeleteDisabledError,
    QueryOptions,
    SoftDeleteCollection,
    SoftDeleteService,
    with_soft_delete,
)
from .storage import InMemoryDocumentDatabase

__all__ = [
    "__version__",
    # Configuration
    "PurgeConfig",
    "BackoffType",
    "get_config",
    "set_config",
    "configure",
    # Soft delete
    "with_soft_delete",
    "SoftDeleteCollection",
    "SoftDeleteService",
    "QueryOptions",
    "HardDeleteDisabledError",
    # Jobs
    "SQLJobStore",
    "JobQueue",
    "Worker",
    "RetryPolicy",
    "Task",
    # Purge
    "PurgeCoordinator",
    "PurgeScanner",
    "PurgeExecutor",
    "purge_task_id",
    "scan_scheduler_id",
    # Runtime
    "PurgeRuntime",
    "HealthReport",
    "check_health",
    # Storage
    "InMemoryDocumentDatabase",
]
