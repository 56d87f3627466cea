"""
In-memory job store.

Meant for local development and tests: state lives in one process and is
shared only by tasks on the same event loop.
"""

import asyncio
import itertools
import logging
from collections.abc import Callable
from typing import Any

from newq.config import get_settings
from newq.constants import LOG_ID_PREFIX, JobStatus
from newq.store.base import JobExistsError, JobStore
from newq.types.job import EnqueueOptions, Job, JobLog, QueueStats, generate_id, now_ms

logger = logging.getLogger(__name__)


class InMemoryJobStore(JobStore):
    """
    Dict-backed implementation of the job store contract.

    All mutations run under a single ``asyncio.Lock`` and re-check the
    eligibility gate before writing, so concurrent ``claim`` calls never
    lease the same job. Returned jobs are copies; mutating them does not
    affect stored state.
    """

    def __init__(self, clock: Callable[[], int] = now_ms):
        self._clock = clock
        self._settings = get_settings()
        self._jobs: dict[str, Job] = {}
        self._order: dict[str, int] = {}
        self._logs: dict[str, list[JobLog]] = {}
        self._seq = itertools.count()
        self._lock = asyncio.Lock()

    async def enqueue(
        self,
        queue: str,
        payload: Any,
        options: EnqueueOptions | None = None,
    ) -> Job:
        if not queue:
            raise ValueError("Queue name cannot be empty")
        options = options or EnqueueOptions()

        async with self._lock:
            job_id = options.job_id or generate_id()
            if job_id in self._jobs and not options.overwrite:
                raise JobExistsError(job_id)

            now = self._clock()
            job = Job(
                id=job_id,
                queue=queue,
                payload=payload,
                max_attempts=options.max_attempts or self._settings.default_max_attempts,
                visible_at=now + options.delay_ms,
                created_at=now,
                updated_at=now,
                meta=options.meta,
            )
            self._jobs[job_id] = job.model_copy(deep=True)
            self._order[job_id] = next(self._seq)
            self._logs.setdefault(job_id, [])

        logger.debug("Enqueued job", extra={"job_id": job_id, "queue": queue})
        return self._jobs[job_id].model_copy(deep=True)

    async def claim(
        self,
        queue: str,
        limit: int = 1,
        visibility_timeout_ms: int | None = None,
    ) -> list[Job]:
        if limit < 1:
            return []
        if visibility_timeout_ms is None:
            visibility_timeout_ms = self._settings.visibility_timeout_ms

        async with self._lock:
            now = self._clock()
            candidates = sorted(
                (
                    job
                    for job in self._jobs.values()
                    if job.queue == queue and job.is_claimable(now)
                ),
                key=lambda job: (job.created_at, self._order[job.id]),
            )

            claimed: list[Job] = []
            for job in candidates:
                if len(claimed) >= limit:
                    break
                if not self._try_claim(job.id, now, visibility_timeout_ms):
                    continue
                claimed.append(self._jobs[job.id].model_copy(deep=True))

        if claimed:
            logger.debug(
                f"Claimed {len(claimed)} jobs",
                extra={"queue": queue, "job_count": len(claimed)},
            )
        return claimed

    def _try_claim(self, job_id: str, now: int, visibility_timeout_ms: int) -> bool:
        """Conditional write: lease the job only if it is still eligible."""
        job = self._jobs.get(job_id)
        if job is None or not job.is_claimable(now):
            return False

        job.status = JobStatus.PROCESSING
        job.locked_until = now + visibility_timeout_ms
        job.attempts += 1
        job.updated_at = now
        return True

    async def ack(self, job_id: str, delete_after_ack: bool = False) -> None:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return

            if delete_after_ack:
                del self._jobs[job_id]
                self._order.pop(job_id, None)
                return

            job.status = JobStatus.COMPLETED
            job.locked_until = 0
            job.updated_at = self._clock()

    async def nack(
        self,
        job_id: str,
        requeue: bool = True,
        delay_ms: int | None = None,
    ) -> None:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return

            now = self._clock()
            job.locked_until = 0
            job.updated_at = now
            if requeue:
                job.status = JobStatus.PENDING
                job.visible_at = now + (delay_ms or 0)
            else:
                job.status = JobStatus.FAILED

    async def get_job(self, job_id: str) -> Job | None:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job is not None else None

    async def log_event(self, job_id: str, event: str, data: Any = None) -> None:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return

            entry = JobLog(
                id=generate_id(LOG_ID_PREFIX),
                job_id=job_id,
                queue=job.queue,
                event=event,
                data=data,
                created_at=self._clock(),
            )
            self._logs.setdefault(job_id, []).append(entry)

    async def get_logs(self, job_id: str) -> list[JobLog]:
        return [entry.model_copy(deep=True) for entry in self._logs.get(job_id, [])]

    async def stats(self, queue: str | None = None) -> list[QueueStats]:
        """Count stored jobs per queue and status."""
        stats: dict[str, QueueStats] = {}
        for job in self._jobs.values():
            if queue is not None and job.queue != queue:
                continue
            stats.setdefault(job.queue, QueueStats(queue=job.queue)).add(job.status)
        return list(stats.values())
