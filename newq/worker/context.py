"""
Per-job handle passed to handlers.

Handlers may be executed more than once for the same job (lease expiry,
worker crash), so they should be idempotent.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from newq.constants import JobEvent
from newq.observability.metrics import get_metrics
from newq.store.base import JobStore
from newq.types.job import Job
from newq.worker.backoff import BackoffPolicy, default_backoff

logger = logging.getLogger(__name__)


@dataclass
class JobContext:
    """
    Context passed to job handlers during execution.

    Every operation writes to the store and appends a matching audit event.
    Resolving twice is allowed; the store's idempotent writes make the last
    call win.
    """

    job: Job
    store: JobStore
    backoff: BackoffPolicy = default_backoff
    delete_after_ack: bool = False
    resolved: bool = field(default=False, init=False)

    @property
    def job_id(self) -> str:
        return self.job.id

    @property
    def payload(self) -> Any:
        return self.job.payload

    @property
    def is_last_attempt(self) -> bool:
        """Check if this is the last allowed attempt."""
        return self.job.is_exhausted

    async def ack(self) -> None:
        """
        Resolve the job as completed.

        With ``delete_after_ack`` the audit event is written first, while the
        row still exists to attribute it to.
        """
        if self.delete_after_ack:
            await self.store.log_event(self.job.id, JobEvent.ACK, {})
            await self.store.ack(self.job.id, delete_after_ack=True)
        else:
            await self.store.ack(self.job.id)
            await self.store.log_event(self.job.id, JobEvent.ACK, {})
        self.resolved = True
        get_metrics().record_job_acked(self.job.queue)
        logger.info("Job acked", extra={"job_id": self.job.id, "queue": self.job.queue})

    async def nack(self, requeue: bool = True, delay_ms: int | None = None) -> None:
        """
        Release the job.

        Args:
            requeue: Return the job to pending (True) or fail it (False).
            delay_ms: Delay before a requeued job is visible again.
        """
        await self.store.nack(self.job.id, requeue=requeue, delay_ms=delay_ms)
        await self.store.log_event(
            self.job.id,
            JobEvent.NACK,
            {"requeue": requeue, "delay_ms": delay_ms},
        )
        self.resolved = True
        get_metrics().record_job_nacked(self.job.queue, requeue)
        logger.info(
            "Job nacked",
            extra={"job_id": self.job.id, "requeue": requeue, "delay_ms": delay_ms},
        )

    async def retry(self, delay_ms: int | None = None) -> None:
        """
        Requeue the job for another attempt.

        Without an explicit ``delay_ms`` the backoff policy is applied to the
        attempts used so far.
        """
        if delay_ms is None:
            delay_ms = self.backoff(self.job.attempts)
        await self.nack(requeue=True, delay_ms=delay_ms)

    async def log(self, event: str, data: Any = None) -> None:
        """Append an audit event without changing the job's state."""
        await self.store.log_event(self.job.id, event, data)


JobHandler = Callable[[JobContext], Awaitable[None]]
