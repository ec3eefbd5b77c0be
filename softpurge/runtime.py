"""
Process-level wiring of the purge pipeline.

``PurgeRuntime`` owns the handles that would otherwise be module globals:
the job store, the purge queue and its worker. It is created once at
startup and closed at shutdown.

Usage:
    async with PurgeRuntime(config, database) as runtime:
        users = runtime.register("users")
        await runtime.start()
        ...
"""

import logging
from typing import Any, Optional

from .config import PurgeConfig, get_config
from .health import HealthReport, check_health
from .jobs.models import RetryPolicy
from .jobs.queue import JobQueue
from .jobs.store import SQLJobStore
from .jobs.worker import RateLimiter, Worker
from .purge.coordinator import PurgeCoordinator
from .purge.executor import PurgeExecutor
from .purge.scanner import PurgeScanner
from .soft_delete.collection import SoftDeleteCollection
from .soft_delete.services import SoftDeleteService
from .storage.base import DocumentDatabase
from .storage.memory import InMemoryDocumentDatabase
from .timeutil import Clock, utcnow

logger = logging.getLogger(__name__)


class PurgeRuntime:
    """
    Owning context for the soft delete and purge components.

    Args:
        config: Configuration; the global configuration when omitted
        database: Document database holding the entities
        job_store: Job store; built from ``config.job_store_url`` when omitted
        clock: Source of the current time for every component
    """

    def __init__(
        self,
        config: Optional[PurgeConfig] = None,
        database: Optional[DocumentDatabase] = None,
        job_store: Optional[SQLJobStore] = None,
        clock: Clock = utcnow,
    ):
        self.config = config or get_config()
        if database is None:
            database = InMemoryDocumentDatabase()
        self.database = database
        self.job_store = job_store or SQLJobStore(self.config.job_store_url)
        self.clock = clock

        retry = RetryPolicy(
            attempts=self.config.purge_max_attempts,
            backoff_type=self.config.purge_backoff_type,
            backoff_delay_seconds=self.config.purge_backoff_delay_seconds,
        )
        self.queue = JobQueue(
            self.job_store, self.config.queue_name, retry=retry, clock=clock
        )
        self.coordinator = PurgeCoordinator(
            self.queue, self.config.retention, self.config.scan_schedule
        )
        self.service = SoftDeleteService(
            self.config.retention, listeners=[self.coordinator], clock=clock
        )
        self.scanner = PurgeScanner(
            self.service,
            self.queue,
            batch_size=self.config.scan_batch_size,
            batch_timeout=self.config.scan_batch_timeout_seconds,
        )
        self.executor = PurgeExecutor(
            self.service,
            scanner=self.scanner,
            timeout=self.config.purge_timeout_seconds,
        )

        rate_limiter = None
        if self.config.worker_rate_limit_max > 0:
            rate_limiter = RateLimiter(
                self.config.worker_rate_limit_max,
                self.config.worker_rate_limit_window_seconds,
            )
        self.worker = Worker(
            self.queue,
            self.executor,
            concurrency=self.config.worker_concurrency,
            lease_seconds=self.config.task_lease_seconds,
            poll_interval=self.config.worker_poll_interval_seconds,
            rate_limiter=rate_limiter,
            on_terminal_failure=self.executor.report_terminal_failure,
        )

    def register(self, name: str) -> SoftDeleteCollection:
        """Attach soft delete to the named collection of the database."""
        return self.service.register(self.database.collection(name))

    async def start(self, run_worker: bool = True) -> None:
        """
        Initialize the job store and schedule the recurring scans.

        Args:
            run_worker: Also start consuming the purge queue in the background
        """
        await self.job_store.initialize()
        await self.coordinator.setup_repeated_jobs(self.service.entity_types())
        if run_worker:
            self.worker.start()
        logger.info(
            f"{self.config.application_name} purge runtime started "
            f"(retention {self.config.retention_days} days, "
            f"entity types: {', '.join(self.service.entity_types()) or 'none'})"
        )

    async def health(self) -> HealthReport:
        return await check_health(
            self.database,
            self.job_store,
            timeout=self.config.health_check_timeout_seconds,
            clock=self.clock,
        )

    async def close(self) -> None:
        """Stop the worker and release the job store."""
        await self.worker.close()
        await self.job_store.close()
        logger.info(f"{self.config.application_name} purge runtime stopped")

    async def __aenter__(self) -> "PurgeRuntime":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
