"""
Data models for the durable task queue.

Tasks carry a caller-chosen identity that doubles as the deduplication key,
a run-at time for delayed delivery, and the retry policy applied when a
delivery fails.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional

from dateutil.rrule import rrulestr
from pydantic import BaseModel, ConfigDict, Field

from ..config import BackoffType
from ..timeutil import ensure_utc


class JobStoreError(Exception):
    """Raised when the job store cannot serve a request."""


class UnrecoverableTaskError(Exception):
    """Raised by a processor when retrying the task cannot succeed.

    The task fails terminally on the first delivery, skipping remaining
    attempts.
    """


class TaskState(str, Enum):
    """Persistent task states. Finished tasks are removed from the store."""

    WAITING = "waiting"
    ACTIVE = "active"


class RetryPolicy(BaseModel):
    """Delivery attempts and backoff between them."""

    model_config = ConfigDict(frozen=True)

    attempts: int = Field(5, description="Maximum deliveries", gt=0)
    backoff_type: BackoffType = Field(
        BackoffType.EXPONENTIAL, description="Backoff shape"
    )
    backoff_delay_seconds: float = Field(60.0, description="Base delay", ge=0)

    def delay_for(self, attempts_made: int) -> timedelta:
        """
        Delay before the next delivery.

        Args:
            attempts_made: Deliveries already made (at least 1)

        Returns:
            ``delay * 2 ** (attempts_made - 1)`` for exponential backoff,
            ``delay`` for fixed backoff
        """
        base = self.backoff_delay_seconds
        if self.backoff_type == BackoffType.EXPONENTIAL:
            return timedelta(seconds=base * 2 ** max(0, attempts_made - 1))
        return timedelta(seconds=base)


class Task(BaseModel):
    """A queued unit of work."""

    task_id: str = Field(..., description="Unique identity and dedup key", min_length=1)
    queue: str = Field(..., description="Queue the task belongs to")
    name: str = Field(..., description="Task name used for dispatch")
    payload: Dict[str, Any] = Field(default_factory=dict)
    state: TaskState = Field(TaskState.WAITING)
    run_at: datetime = Field(..., description="Earliest delivery time")
    attempts_made: int = Field(0, ge=0)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    lease_token: Optional[str] = Field(None, description="Token of the current claim")
    lease_expires_at: Optional[datetime] = None
    last_error: Optional[str] = None
    created_at: datetime

    def is_delayed(self, now: datetime) -> bool:
        if self.state != TaskState.WAITING:
            return False
        return ensure_utc(self.run_at) > ensure_utc(now)

    @property
    def attempts_left(self) -> int:
        return max(0, self.retry.attempts - self.attempts_made)


@dataclass(frozen=True)
class JobSpec:
    """Request to enqueue one task."""

    name: str
    payload: Dict[str, Any] = field(default_factory=dict)
    task_id: Optional[str] = None
    delay: Optional[timedelta] = None
    retry: Optional[RetryPolicy] = None


@dataclass(frozen=True)
class FailureOutcome:
    """What the store did with a failed delivery."""

    task: Task
    error: str
    terminal: bool
    next_run_at: Optional[datetime] = None
    lease_lost: bool = False


class JobScheduler(BaseModel):
    """Recurring producer of tasks, driven by a recurrence rule."""

    scheduler_id: str = Field(..., min_length=1)
    queue: str
    rule: str = Field(..., description="RFC 5545 recurrence rule, evaluated in UTC")
    task_name: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    next_run_at: datetime


def next_occurrence(rule: str, after: datetime) -> datetime:
    """
    Next occurrence of a recurrence rule strictly after ``after``.

    The rule is anchored at midnight UTC of the day ``after`` falls on, so
    ``BYHOUR``/``BYMINUTE`` parts describe UTC wall-clock times.

    Raises:
        ValueError: The rule has no further occurrences
    """
    after = ensure_utc(after)
    anchor = after.replace(hour=0, minute=0, second=0, microsecond=0)
    occurrence = rrulestr(rule, dtstart=anchor).after(after, inc=False)
    if occurrence is None:
        raise ValueError(f"Recurrence rule {rule!r} has no occurrence after {after}")
    return ensure_utc(occurrence)


def repeat_task_id(scheduler_id: str, run_at: datetime) -> str:
    """Identity of the task a scheduler produces for one occurrence."""
    millis = int(ensure_utc(run_at).timestamp() * 1000)
    return f"repeat:{scheduler_id}:{millis}"
