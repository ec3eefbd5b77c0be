"""
Jobs Module - durable delayed tasks with retries.

Provides the SQLAlchemy-backed job store, the queue handle producers use to
enqueue and cancel tasks, recurring schedulers, and the worker that consumes
a queue with bounded concurrency and at-least-once delivery.
"""

from .models import (
    FailureOutcome,
    JobScheduler,
    JobSpec,
    JobStoreError,
    RetryPolicy,
    Task,
    TaskState,
    UnrecoverableTaskError,
    next_occurrence,
    repeat_task_id,
)
from .queue import JobQueue
from .store import SQLJobStore
from .worker import RateLimiter, Worker

__all__ = [
    # Store and queue
    "SQLJobStore",
    "JobQueue",
    "Worker",
    "RateLimiter",
    # Models
    "Task",
    "TaskState",
    "JobSpec",
    "JobScheduler",
    "RetryPolicy",
    "FailureOutcome",
    "next_occurrence",
    "repeat_task_id",
    # Exceptions
    "JobStoreError",
    "UnrecoverableTaskError",
]
