"""
Job store contract.

Every backend implements these operations. The queue and the worker only
ever talk to this interface, so the correctness of the claim protocol rests
on each backend making its writes atomic and conditional:

- ``claim`` must never hand the same job to two callers while a lease is
  active. Each candidate is taken with a compare-and-swap style write
  ("update only if still eligible"); candidates that lose the race are
  skipped.
- ``ack``, ``nack`` and ``log_event`` are idempotent and silently ignore
  missing jobs.
- A failed write leaves no partial state behind.
"""

from abc import ABC, abstractmethod
from typing import Any, Protocol, runtime_checkable

from newq.types.job import EnqueueOptions, Job, JobLog, QueueStats


class JobExistsError(ValueError):
    """Raised when enqueueing an id that already exists without ``overwrite``."""

    def __init__(self, job_id: str):
        super().__init__(f"Job '{job_id}' already exists")
        self.job_id = job_id


class JobStore(ABC):
    """Abstract job store."""

    async def init(self) -> None:
        """
        Prepare the backend (schema, indexes).

        Called once before first use; must be safe to call repeatedly.
        """

    async def close(self) -> None:
        """Release backend resources."""

    @abstractmethod
    async def enqueue(
        self,
        queue: str,
        payload: Any,
        options: EnqueueOptions | None = None,
    ) -> Job:
        """
        Insert a new pending job.

        Args:
            queue: Queue name.
            payload: Opaque job payload.
            options: Id, delay, attempt ceiling, overwrite flag and meta.

        Returns:
            The stored job.

        Raises:
            ValueError: If the queue name is empty.
            JobExistsError: If ``options.job_id`` exists and overwrite is off.
        """

    @abstractmethod
    async def claim(
        self,
        queue: str,
        limit: int = 1,
        visibility_timeout_ms: int | None = None,
    ) -> list[Job]:
        """
        Atomically lease up to ``limit`` eligible jobs, oldest first.

        Each returned job has ``status=processing``, ``attempts`` incremented
        and ``locked_until = now + visibility_timeout_ms``.
        """

    @abstractmethod
    async def ack(self, job_id: str, delete_after_ack: bool = False) -> None:
        """Mark a job completed, or delete it when ``delete_after_ack``."""

    @abstractmethod
    async def nack(
        self,
        job_id: str,
        requeue: bool = True,
        delay_ms: int | None = None,
    ) -> None:
        """
        Release a job.

        With ``requeue`` the lease is cleared and the job becomes pending,
        visible again after ``delay_ms``. Without it the job is failed.
        """

    @abstractmethod
    async def get_job(self, job_id: str) -> Job | None:
        """Get a job by id."""

    @abstractmethod
    async def log_event(self, job_id: str, event: str, data: Any = None) -> None:
        """Append an audit entry; no-op when the job does not exist."""

    @abstractmethod
    async def get_logs(self, job_id: str) -> list[JobLog]:
        """Get the audit entries of a job, oldest first."""


@runtime_checkable
class SupportsStats(Protocol):
    """Optional store capability: per-queue status aggregation."""

    async def stats(self, queue: str | None = None) -> list[QueueStats]:
        ...
