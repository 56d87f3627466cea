"""
Job-related type definitions shared by stores, the queue and workers.
"""

import time
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field

from newq.constants import JOB_ID_PREFIX, TERMINAL_STATUSES, JobStatus


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return time.time_ns() // 1_000_000


def generate_id(prefix: str = JOB_ID_PREFIX) -> str:
    """Generate a collision-resistant identifier such as ``job_<hex>``."""
    return f"{prefix}_{uuid4().hex}"


class Job(BaseModel):
    """
    A unit of work.

    ``payload`` and ``meta`` are opaque to the queue. All timestamps are
    epoch milliseconds; ``locked_until == 0`` means the job is unlocked.
    """

    id: str
    queue: str
    payload: Any = None
    attempts: int = 0
    max_attempts: int
    visible_at: int
    locked_until: int = 0
    status: JobStatus = JobStatus.PENDING
    created_at: int
    updated_at: int
    meta: dict[str, Any] | None = None

    @property
    def is_exhausted(self) -> bool:
        """Check if every allowed attempt has been used."""
        return self.attempts >= self.max_attempts

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def remaining_attempts(self) -> int:
        """Get remaining claim attempts."""
        return max(0, self.max_attempts - self.attempts)

    def is_claimable(self, now: int) -> bool:
        """
        Evaluate the eligibility gate at ``now``.

        A ``processing`` job whose lease has lapsed counts as pending.
        """
        if self.status not in (JobStatus.PENDING, JobStatus.PROCESSING):
            return False
        return (
            self.visible_at <= now
            and self.locked_until < now
            and self.attempts < self.max_attempts
        )


class JobLog(BaseModel):
    """Append-only audit entry for a job."""

    id: str
    job_id: str
    queue: str
    event: str
    data: Any = None
    created_at: int


class QueueStats(BaseModel):
    """Job counts per status for one queue."""

    queue: str
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    expired: int = 0

    def add(self, status: JobStatus | str, count: int = 1) -> None:
        """Add ``count`` jobs of ``status`` to the matching counter."""
        field = JobStatus(status).value
        setattr(self, field, getattr(self, field) + count)


class EnqueueOptions(BaseModel):
    """Validated options for enqueueing a job."""

    job_id: str | None = Field(default=None, min_length=1)
    delay_ms: int = Field(default=0, ge=0)
    max_attempts: int | None = Field(default=None, ge=1)
    overwrite: bool = False
    meta: dict[str, Any] | None = None
