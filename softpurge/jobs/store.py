"""
Durable task persistence on SQLAlchemy.

The task identity is the primary key, so submitting the same identity twice
leaves a single row. Claiming a task is a conditional update on its row,
which lets several worker processes share one store without a separate
locking subsystem.

Sessions are synchronous. Every public method runs its session in a worker
thread, so the event loop keeps serving other tasks and an
``asyncio.wait_for`` around a store call returns on time even while the
database blocks.
"""

import asyncio
import logging
import math
import threading
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    and_,
    create_engine,
    func,
    or_,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from ..timeutil import from_db_time, to_db_time
from .models import (
    FailureOutcome,
    JobScheduler,
    JobStoreError,
    RetryPolicy,
    Task,
    TaskState,
    next_occurrence,
    repeat_task_id,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

Base = declarative_base()

# Rows per multi-row INSERT, well under SQLite's bound parameter limit
_INSERT_CHUNK = 200


class TaskDB(Base):  # type: ignore[valid-type,misc]
    """SQLAlchemy model for queued tasks."""

    __tablename__ = "queue_tasks"

    task_id = Column(String(255), primary_key=True)
    queue = Column(String(100), nullable=False)
    name = Column(String(100), nullable=False)
    payload = Column(JSON, nullable=False)

    state = Column(String(20), nullable=False)
    run_at = Column(DateTime, nullable=False)

    # Retry
    attempts_made = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False)
    backoff_type = Column(String(20), nullable=False)
    backoff_delay_seconds = Column(Float, nullable=False)

    # Lease held by the worker processing the task
    lease_token = Column(String(64), nullable=True)
    lease_expires_at = Column(DateTime, nullable=True)

    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index("idx_queue_tasks_due", queue, state, run_at),
        Index("idx_queue_tasks_lease", queue, state, lease_expires_at),
    )


class JobSchedulerDB(Base):  # type: ignore[valid-type,misc]
    """SQLAlchemy model for recurring schedulers."""

    __tablename__ = "queue_schedulers"

    scheduler_id = Column(String(255), primary_key=True)
    queue = Column(String(100), nullable=False, index=True)
    rule = Column(Text, nullable=False)
    task_name = Column(String(100), nullable=False)
    payload = Column(JSON, nullable=False)
    next_run_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)


class SQLJobStore:
    """SQL database storage backend for queued tasks."""

    def __init__(
        self, connection_string: str, connect_timeout: Optional[float] = None
    ):
        """
        Initialize SQL job storage.

        Args:
            connection_string: SQLAlchemy database URL
            connect_timeout: Seconds the driver waits to connect, or for a
                SQLite lock, before failing; the driver default when None
        """
        self.connection_string = connection_string
        self.connect_timeout = connect_timeout
        self.engine: Optional[Engine] = None
        self.SessionLocal: Optional[sessionmaker] = None  # type: ignore[type-arg]
        # Set when every session shares one connection
        self._connection_lock: Optional[threading.Lock] = None

    async def _run(self, work: Callable[..., T], *args: Any) -> T:
        return await asyncio.to_thread(self._call, work, *args)

    def _call(self, work: Callable[..., T], *args: Any) -> T:
        lock = self._connection_lock
        if lock is None:
            return work(*args)
        with lock:
            return work(*args)

    def _connect_args(self) -> Dict[str, Any]:
        connect_args: Dict[str, Any] = {}
        if self.connection_string.startswith("sqlite"):
            connect_args["check_same_thread"] = False
            if self.connect_timeout is not None:
                connect_args["timeout"] = self.connect_timeout
        elif self.connection_string.startswith("postgresql"):
            if self.connect_timeout is not None:
                # libpq only accepts whole seconds
                connect_args["connect_timeout"] = max(
                    1, math.ceil(self.connect_timeout)
                )
        return connect_args

    async def initialize(self) -> None:
        """Create the engine and the tables."""
        await self._run(self._initialize)

    def _initialize(self) -> None:
        if self.engine is not None:
            return

        connect_args = self._connect_args()
        if self.connection_string in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection, or every session sees an empty database
            engine = create_engine(
                self.connection_string,
                connect_args=connect_args,
                poolclass=StaticPool,
            )
            self._connection_lock = threading.Lock()
        elif self.connection_string.startswith("sqlite"):
            # SQLite doesn't support pool_size and max_overflow
            engine = create_engine(
                self.connection_string, connect_args=connect_args, pool_pre_ping=True
            )
        else:
            engine = create_engine(
                self.connection_string,
                connect_args=connect_args,
                pool_pre_ping=True,
                pool_size=10,
                max_overflow=20,
            )

        try:
            Base.metadata.create_all(bind=engine)
        except Exception:
            engine.dispose()
            self._connection_lock = None
            raise

        self.engine = engine
        self.SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, bind=self.engine
        )
        logger.debug(f"Job store initialized at {self.engine.url!r}")

    async def close(self) -> None:
        """Dispose of pooled connections."""
        engine = self.engine
        self.engine = None
        self.SessionLocal = None
        if engine is not None:
            await asyncio.to_thread(engine.dispose)

    async def ping(self) -> bool:
        """Read from the task table, which needs the database to be readable."""
        return await self._run(self._ping)

    def _ping(self) -> bool:
        with self._session() as session:
            session.query(TaskDB.task_id).limit(1).all()
        return True

    def _session(self) -> Session:
        if self.SessionLocal is None:
            raise JobStoreError("Job store not initialized. Call initialize() first.")
        return self.SessionLocal()

    # Conversion

    @staticmethod
    def _task_to_row(task: Task) -> Dict[str, Any]:
        return {
            "task_id": task.task_id,
            "queue": task.queue,
            "name": task.name,
            "payload": task.payload,
            "state": task.state.value,
            "run_at": to_db_time(task.run_at),
            "attempts_made": task.attempts_made,
            "max_attempts": task.retry.attempts,
            "backoff_type": task.retry.backoff_type.value,
            "backoff_delay_seconds": task.retry.backoff_delay_seconds,
            "lease_token": task.lease_token,
            "lease_expires_at": to_db_time(task.lease_expires_at),
            "last_error": task.last_error,
            "created_at": to_db_time(task.created_at),
            "updated_at": to_db_time(task.created_at),
        }

    @staticmethod
    def _row_to_task(row: TaskDB) -> Task:
        return Task(
            task_id=row.task_id,
            queue=row.queue,
            name=row.name,
            payload=row.payload or {},
            state=TaskState(row.state),
            run_at=from_db_time(row.run_at),
            attempts_made=row.attempts_made,
            retry=RetryPolicy(
                attempts=row.max_attempts,
                backoff_type=row.backoff_type,
                backoff_delay_seconds=row.backoff_delay_seconds,
            ),
            lease_token=row.lease_token,
            lease_expires_at=from_db_time(row.lease_expires_at),
            last_error=row.last_error,
            created_at=from_db_time(row.created_at),
        )

    @staticmethod
    def _row_to_scheduler(row: JobSchedulerDB) -> JobScheduler:
        return JobScheduler(
            scheduler_id=row.scheduler_id,
            queue=row.queue,
            rule=row.rule,
            task_name=row.task_name,
            payload=row.payload or {},
            next_run_at=from_db_time(row.next_run_at),
        )

    def _insert_ignore(self, session: Session, rows: List[Dict[str, Any]]) -> int:
        """Insert rows whose task_id is not taken yet, returning how many were new."""
        inserted = 0
        dialect = session.get_bind().dialect.name

        for start in range(0, len(rows), _INSERT_CHUNK):
            chunk = rows[start : start + _INSERT_CHUNK]

            if dialect in ("sqlite", "postgresql"):
                if dialect == "sqlite":
                    from sqlalchemy.dialects.sqlite import insert
                else:
                    from sqlalchemy.dialects.postgresql import insert

                stmt = (
                    insert(TaskDB)
                    .values(chunk)
                    .on_conflict_do_nothing(index_elements=["task_id"])
                )
                result = session.execute(stmt)
                inserted += max(0, result.rowcount or 0)
            else:
                ids = [row["task_id"] for row in chunk]
                existing = {
                    task_id
                    for (task_id,) in session.query(TaskDB.task_id).filter(
                        TaskDB.task_id.in_(ids)
                    )
                }
                fresh = [row for row in chunk if row["task_id"] not in existing]
                session.bulk_insert_mappings(TaskDB, fresh)  # type: ignore[arg-type]
                inserted += len(fresh)

        return inserted

    # Tasks

    async def add(self, task: Task) -> bool:
        """
        Store a task unless its identity is already queued.

        Returns:
            True if the task was stored, False if it was a duplicate
        """
        return await self.add_bulk([task]) == 1

    async def add_bulk(self, tasks: Sequence[Task]) -> int:
        """
        Store several tasks, skipping identities already queued.

        Returns:
            Number of tasks actually stored
        """
        rows: Dict[str, Dict[str, Any]] = {}
        for task in tasks:
            rows.setdefault(task.task_id, self._task_to_row(task))
        if not rows:
            return 0
        return await self._run(self._add_rows, list(rows.values()))

    def _add_rows(self, rows: List[Dict[str, Any]]) -> int:
        with self._session() as session:
            inserted = self._insert_ignore(session, rows)
            session.commit()
        return inserted

    async def get(self, task_id: str) -> Optional[Task]:
        return await self._run(self._get, task_id)

    def _get(self, task_id: str) -> Optional[Task]:
        with self._session() as session:
            row = session.get(TaskDB, task_id)
            return self._row_to_task(row) if row is not None else None

    async def remove(self, task_id: str) -> bool:
        """
        Remove a task that is not currently being processed.

        Returns:
            True if a waiting or delayed task was removed
        """
        return await self._run(self._remove, task_id)

    def _remove(self, task_id: str) -> bool:
        with self._session() as session:
            deleted = (
                session.query(TaskDB)
                .filter(
                    TaskDB.task_id == task_id,
                    TaskDB.state != TaskState.ACTIVE.value,
                )
                .delete(synchronize_session=False)
            )
            session.commit()
        return deleted == 1

    async def claim(
        self, queue: str, now: datetime, limit: int, lease: timedelta
    ) -> List[Task]:
        """
        Claim due tasks for processing.

        A task is due when it is waiting and its run-at time has passed, or
        when it is active but its lease expired (the worker holding it died).
        Each claim is a conditional update, so a task is handed to at most one
        claimant per lease.

        Returns:
            Claimed tasks, with ``attempts_made`` already counting this delivery
        """
        if limit <= 0:
            return []
        return await self._run(self._claim, queue, now, limit, lease)

    def _claim(
        self, queue: str, now: datetime, limit: int, lease: timedelta
    ) -> List[Task]:
        now_db = to_db_time(now)
        lease_expires_at = to_db_time(now + lease)
        claimed: List[str] = []

        with self._session() as session:
            candidates = (
                session.query(TaskDB.task_id, TaskDB.state, TaskDB.lease_token)
                .filter(
                    TaskDB.queue == queue,
                    or_(
                        and_(
                            TaskDB.state == TaskState.WAITING.value,
                            TaskDB.run_at <= now_db,
                        ),
                        and_(
                            TaskDB.state == TaskState.ACTIVE.value,
                            TaskDB.lease_expires_at <= now_db,
                        ),
                    ),
                )
                .order_by(TaskDB.run_at, TaskDB.task_id)
                .limit(limit)
                .all()
            )

            for task_id, state, lease_token in candidates:
                token_clause = (
                    TaskDB.lease_token.is_(None)
                    if lease_token is None
                    else TaskDB.lease_token == lease_token
                )
                result = session.execute(
                    update(TaskDB)
                    .where(
                        TaskDB.task_id == task_id,
                        TaskDB.state == state,
                        token_clause,
                    )
                    .values(
                        state=TaskState.ACTIVE.value,
                        lease_token=uuid.uuid4().hex,
                        lease_expires_at=lease_expires_at,
                        attempts_made=TaskDB.attempts_made + 1,
                        updated_at=now_db,
                    )
                )
                if result.rowcount == 1:
                    claimed.append(task_id)
            session.commit()

            if not claimed:
                return []
            rows = (
                session.query(TaskDB)
                .filter(TaskDB.task_id.in_(claimed))
                .order_by(TaskDB.run_at, TaskDB.task_id)
                .all()
            )
            return [self._row_to_task(row) for row in rows]

    async def complete(self, task: Task) -> bool:
        """
        Remove a successfully processed task.

        Returns:
            False if the lease had already passed to another worker
        """
        return await self._run(self._complete, task)

    def _complete(self, task: Task) -> bool:
        with self._session() as session:
            deleted = (
                session.query(TaskDB)
                .filter(
                    TaskDB.task_id == task.task_id,
                    TaskDB.lease_token == task.lease_token,
                )
                .delete(synchronize_session=False)
            )
            session.commit()
        return deleted == 1

    async def fail(
        self, task: Task, error: str, now: datetime, unrecoverable: bool = False
    ) -> FailureOutcome:
        """
        Record a failed delivery.

        The task is rescheduled with backoff while attempts remain; otherwise
        (or when ``unrecoverable``) it is removed and the outcome is terminal.
        """
        return await self._run(self._fail, task, error, now, unrecoverable)

    def _fail(
        self, task: Task, error: str, now: datetime, unrecoverable: bool
    ) -> FailureOutcome:
        with self._session() as session:
            row = session.get(TaskDB, task.task_id)
            if row is None or row.lease_token != task.lease_token:
                return FailureOutcome(
                    task=task, error=error, terminal=False, lease_lost=True
                )

            if unrecoverable or row.attempts_made >= row.max_attempts:
                session.delete(row)
                session.commit()
                return FailureOutcome(task=task, error=error, terminal=True)

            next_run_at = now + task.retry.delay_for(row.attempts_made)
            row.state = TaskState.WAITING.value
            row.run_at = to_db_time(next_run_at)
            row.lease_token = None
            row.lease_expires_at = None
            row.last_error = error
            row.updated_at = to_db_time(now)
            session.commit()
            return FailureOutcome(
                task=task, error=error, terminal=False, next_run_at=next_run_at
            )

    async def list_tasks(self, queue: str, limit: int = 100) -> List[Task]:
        return await self._run(self._list_tasks, queue, limit)

    def _list_tasks(self, queue: str, limit: int) -> List[Task]:
        with self._session() as session:
            rows = (
                session.query(TaskDB)
                .filter(TaskDB.queue == queue)
                .order_by(TaskDB.run_at, TaskDB.task_id)
                .limit(limit)
                .all()
            )
            return [self._row_to_task(row) for row in rows]

    async def counts(self, queue: str, now: datetime) -> Dict[str, int]:
        """Number of waiting, delayed and active tasks in a queue."""
        return await self._run(self._counts, queue, now)

    def _counts(self, queue: str, now: datetime) -> Dict[str, int]:
        now_db = to_db_time(now)
        with self._session() as session:
            base = session.query(func.count(TaskDB.task_id)).filter(
                TaskDB.queue == queue
            )
            return {
                "waiting": base.filter(
                    TaskDB.state == TaskState.WAITING.value, TaskDB.run_at <= now_db
                ).scalar()
                or 0,
                "delayed": base.filter(
                    TaskDB.state == TaskState.WAITING.value, TaskDB.run_at > now_db
                ).scalar()
                or 0,
                "active": base.filter(TaskDB.state == TaskState.ACTIVE.value).scalar()
                or 0,
            }

    # Schedulers

    async def upsert_scheduler(self, scheduler: JobScheduler, now: datetime) -> None:
        """Create or replace a recurring scheduler."""
        await self._run(self._upsert_scheduler, scheduler, now)

    def _upsert_scheduler(self, scheduler: JobScheduler, now: datetime) -> None:
        with self._session() as session:
            row = session.get(JobSchedulerDB, scheduler.scheduler_id)
            if row is None:
                row = JobSchedulerDB(
                    scheduler_id=scheduler.scheduler_id, created_at=to_db_time(now)
                )
                session.add(row)
            row.queue = scheduler.queue
            row.rule = scheduler.rule
            row.task_name = scheduler.task_name
            row.payload = scheduler.payload
            row.next_run_at = to_db_time(scheduler.next_run_at)
            row.updated_at = to_db_time(now)
            session.commit()

    async def get_scheduler(self, scheduler_id: str) -> Optional[JobScheduler]:
        return await self._run(self._get_scheduler, scheduler_id)

    def _get_scheduler(self, scheduler_id: str) -> Optional[JobScheduler]:
        with self._session() as session:
            row = session.get(JobSchedulerDB, scheduler_id)
            return self._row_to_scheduler(row) if row is not None else None

    async def remove_scheduler(self, scheduler_id: str) -> bool:
        return await self._run(self._remove_scheduler, scheduler_id)

    def _remove_scheduler(self, scheduler_id: str) -> bool:
        with self._session() as session:
            deleted = (
                session.query(JobSchedulerDB)
                .filter(JobSchedulerDB.scheduler_id == scheduler_id)
                .delete(synchronize_session=False)
            )
            session.commit()
        return deleted == 1

    async def list_schedulers(self, queue: str) -> List[JobScheduler]:
        return await self._run(self._list_schedulers, queue)

    def _list_schedulers(self, queue: str) -> List[JobScheduler]:
        with self._session() as session:
            rows = (
                session.query(JobSchedulerDB)
                .filter(JobSchedulerDB.queue == queue)
                .order_by(JobSchedulerDB.scheduler_id)
                .all()
            )
            return [self._row_to_scheduler(row) for row in rows]

    async def promote_due_schedules(
        self, queue: str, now: datetime, retry: RetryPolicy
    ) -> int:
        """
        Turn due scheduler occurrences into tasks.

        Each occurrence produces a task whose identity embeds the occurrence
        time, and the scheduler's next run is advanced with a conditional
        update, so concurrent workers enqueue each occurrence at most once.

        Returns:
            Number of tasks enqueued
        """
        return await self._run(self._promote_due_schedules, queue, now, retry)

    def _promote_due_schedules(
        self, queue: str, now: datetime, retry: RetryPolicy
    ) -> int:
        now_db = to_db_time(now)
        enqueued = 0

        with self._session() as session:
            due = (
                session.query(JobSchedulerDB)
                .filter(
                    JobSchedulerDB.queue == queue,
                    JobSchedulerDB.next_run_at <= now_db,
                )
                .all()
            )
            for row in due:
                occurrence = from_db_time(row.next_run_at)
                following = next_occurrence(row.rule, now)
                result = session.execute(
                    update(JobSchedulerDB)
                    .where(
                        JobSchedulerDB.scheduler_id == row.scheduler_id,
                        JobSchedulerDB.next_run_at == row.next_run_at,
                    )
                    .values(next_run_at=to_db_time(following), updated_at=now_db)
                )
                if result.rowcount != 1:
                    continue

                task = Task(
                    task_id=repeat_task_id(row.scheduler_id, occurrence),
                    queue=queue,
                    name=row.task_name,
                    payload=dict(row.payload or {}),
                    run_at=occurrence,
                    retry=retry,
                    created_at=now,
                )
                enqueued += self._insert_ignore(session, [self._task_to_row(task)])
            session.commit()

        return enqueued
