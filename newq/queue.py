"""
Producer-facing queue facade.
"""

import logging
from typing import Any

from newq.config import QueueOptions, WorkerOptions
from newq.constants import SPAN_ENQUEUE_JOB, JobEvent
from newq.observability.metrics import get_metrics
from newq.observability.tracing import get_tracer
from newq.store.base import JobStore, SupportsStats
from newq.types.job import EnqueueOptions, Job, JobLog, QueueStats
from newq.worker.main import Worker

logger = logging.getLogger(__name__)


class Queue:
    """
    Entry point for producers.

    Every state-changing call writes one audit event after the store write.
    A failing audit write raises to the caller.
    """

    def __init__(self, store: JobStore, options: QueueOptions | None = None):
        self.store = store
        self.options = options or QueueOptions()

    async def init(self) -> None:
        """Run the store's one-time setup."""
        await self.store.init()

    async def enqueue(
        self,
        queue: str,
        payload: Any,
        *,
        job_id: str | None = None,
        delay_ms: int = 0,
        max_attempts: int | None = None,
        overwrite: bool = False,
        meta: dict[str, Any] | None = None,
    ) -> Job:
        """
        Enqueue a job.

        Args:
            queue: Queue name.
            payload: Job payload, opaque to the queue.
            job_id: Optional caller-chosen id.
            delay_ms: Delay before the job becomes claimable.
            max_attempts: Claim ceiling; defaults to ``Settings.default_max_attempts``.
            overwrite: Replace an existing job with the same id.
            meta: Caller annotation stored with the job.

        Returns:
            The stored job.

        Raises:
            pydantic.ValidationError: If the options are malformed.
            ValueError: If the queue name is empty.
            JobExistsError: If ``job_id`` exists and ``overwrite`` is False.
        """
        options = EnqueueOptions(
            job_id=job_id,
            delay_ms=delay_ms,
            max_attempts=max_attempts,
            overwrite=overwrite,
            meta=meta,
        )

        with get_tracer().start_as_current_span(SPAN_ENQUEUE_JOB) as span:
            span.set_attribute("queue", queue)
            job = await self.store.enqueue(queue, payload, options)
            span.set_attribute("job_id", job.id)
            await self.store.log_event(job.id, JobEvent.ENQUEUE, {"payload": payload})

        get_metrics().record_job_enqueued(queue)
        logger.info("Job enqueued", extra={"job_id": job.id, "queue": queue})
        return job

    async def get_job(self, job_id: str) -> Job | None:
        return await self.store.get_job(job_id)

    async def get_logs(self, job_id: str) -> list[JobLog]:
        """Get the audit trail of a job, oldest first."""
        return await self.store.get_logs(job_id)

    async def get_stats(self, queue: str | None = None) -> list[QueueStats]:
        """Get per-status counts; empty when the store cannot aggregate."""
        if isinstance(self.store, SupportsStats):
            return await self.store.stats(queue)
        return []

    async def remove(self, job_id: str) -> None:
        """
        Soft-remove a job: fail it and record a ``delete`` event.

        The row stays in the store.
        """
        await self.store.nack(job_id, requeue=False)
        await self.store.log_event(job_id, JobEvent.DELETE, {})
        logger.info("Job removed", extra={"job_id": job_id})

    def create_worker(self, **overrides: Any) -> Worker:
        """
        Create a worker over this queue's store.

        The worker inherits the queue's visibility timeout, poll interval and
        ack-deletion policy; keyword arguments override ``WorkerOptions``
        fields, except ``sink`` and ``backoff`` which go to the worker.
        """
        worker_kwargs = {
            key: overrides.pop(key) for key in ("sink", "backoff") if key in overrides
        }
        fields: dict[str, Any] = {
            "visibility_timeout_ms": self.options.visibility_timeout_ms,
            "poll_interval_ms": self.options.poll_interval_ms,
            "delete_after_ack": self.options.delete_after_ack,
        }
        fields.update(overrides)
        return Worker(self.store, WorkerOptions(**fields), **worker_kwargs)
