"""
Worker loop for executing jobs.

The worker polls its registered queues, leases jobs through the store's
atomic claim, runs the queue's handler for each job, and resolves the
outcome back into the job lifecycle.
"""

import asyncio
import logging
import signal
import time
from collections.abc import Callable
from enum import StrEnum
from typing import Any

from newq.constants import SPAN_CLAIM_JOBS, SPAN_EXECUTE_JOB, JobEvent, SinkEvent
from newq.config import WorkerOptions
from newq.observability.logging import bind_context, clear_context, get_logger, setup_logging
from newq.observability.metrics import get_metrics
from newq.observability.tracing import get_tracer
from newq.store.base import JobStore
from newq.types.job import Job
from newq.worker.backoff import BackoffPolicy, default_backoff
from newq.worker.context import JobContext, JobHandler

logger = logging.getLogger(__name__)
sink_logger = get_logger(__name__)

LogSink = Callable[[str, dict[str, Any]], None]


class WorkerState(StrEnum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


def default_sink(event: str, data: dict[str, Any]) -> None:
    """Report worker diagnostics as a structured warning."""
    fields = {key: value for key, value in data.items() if key != "err"}
    err = data.get("err")
    if err is not None:
        fields["error"] = repr(err)
    sink_logger.warning("worker_event", worker_event=str(event), **fields)


class Worker:
    """
    Job worker that polls queues and dispatches jobs to handlers.

    Features:
    - One handler per queue, owned by this instance (last registration wins)
    - Claims bounded by ``concurrency`` per queue per iteration
    - Handler exceptions requeue the job instead of dropping it
    - Backend errors are reported to the sink and never stop the loop
    - Cooperative shutdown: ``stop()`` lets in-flight handlers finish
    """

    def __init__(
        self,
        store: JobStore,
        options: WorkerOptions | None = None,
        *,
        sink: LogSink | None = None,
        backoff: BackoffPolicy = default_backoff,
    ):
        """
        Initialize the worker.

        Args:
            store: The job store to claim from.
            options: Concurrency, poll interval, visibility timeout and
                retry settings. Defaults come from ``Settings``.
            sink: Called as ``sink(event, data)`` for dequeue and handler
                errors. Defaults to logging.
            backoff: Policy used by ``JobContext.retry()`` without a delay.
        """
        self.options = options or WorkerOptions()
        self.store = store
        self._sink = sink or default_sink
        self._backoff = backoff
        self._handlers: dict[str, JobHandler] = {}
        self._state = WorkerState.IDLE
        self._stop_event = asyncio.Event()
        self._loop_exited = asyncio.Event()
        self._loop_exited.set()
        self._metrics = get_metrics()

    @property
    def state(self) -> WorkerState:
        return self._state

    @property
    def queues(self) -> list[str]:
        """Registered queue names in registration order."""
        return list(self._handlers)

    def listen(self, queue: str, handler: JobHandler) -> None:
        """
        Register the handler for a queue, replacing any previous one.

        Queues without a handler are never polled by this worker.
        """
        if queue in self._handlers:
            logger.info(f"Replacing handler for queue: {queue}")
        self._handlers[queue] = handler

    def handler(self, queue: str) -> Callable[[JobHandler], JobHandler]:
        """
        Decorator form of ``listen``.

        Example:
            @worker.handler("emails")
            async def send_email(ctx: JobContext) -> None:
                ...
                await ctx.ack()
        """

        def decorator(func: JobHandler) -> JobHandler:
            self.listen(queue, func)
            return func

        return decorator

    async def start(self) -> None:
        """
        Run the polling loop until ``stop()`` is called.

        A worker that is still draining after ``stop()`` is restarted only
        once its previous loop has exited.

        Raises:
            RuntimeError: If the worker is already running.
        """
        while self._state == WorkerState.STOPPING:
            await self._loop_exited.wait()
        if self._state == WorkerState.RUNNING:
            raise RuntimeError("Worker is already running")

        logger.info(
            "Worker starting",
            extra={"queues": self.queues, "concurrency": self.options.concurrency},
        )
        self._state = WorkerState.RUNNING
        self._stop_event.clear()
        self._loop_exited.clear()

        try:
            await self.store.init()

            while self._state == WorkerState.RUNNING:
                try:
                    claimed = await self.run_once()
                except Exception as e:
                    logger.exception(f"Error in worker loop: {e}")
                    claimed = 0

                if claimed == 0 and self._state == WorkerState.RUNNING:
                    await self._sleep()
        finally:
            self._state = WorkerState.STOPPED
            self._loop_exited.set()

        logger.info("Worker stopped")

    def stop(self) -> None:
        """
        Stop polling after the current iteration; no-op unless running.

        The state stays ``stopping`` until in-flight handlers have finished.
        """
        if self._state != WorkerState.RUNNING:
            return
        logger.info("Worker stopping")
        self._state = WorkerState.STOPPING
        self._stop_event.set()

    async def _sleep(self) -> None:
        """Wait ``poll_interval_ms``, waking early on ``stop()``."""
        try:
            await asyncio.wait_for(
                self._stop_event.wait(),
                timeout=self.options.poll_interval_ms / 1000,
            )
        except TimeoutError:
            pass

    async def run_once(self) -> int:
        """
        Run a single poll iteration over all registered queues.

        Returns:
            Number of jobs claimed across all queues.
        """
        total = 0
        for queue in self.queues:
            total += await self._poll_queue(queue)
        return total

    async def _poll_queue(self, queue: str) -> int:
        """Claim from one queue and run the claimed jobs to completion."""
        try:
            with get_tracer().start_as_current_span(SPAN_CLAIM_JOBS) as span:
                span.set_attribute("queue", queue)
                jobs = await self.store.claim(
                    queue,
                    limit=self.options.concurrency,
                    visibility_timeout_ms=self.options.visibility_timeout_ms,
                )
                span.set_attribute("job_count", len(jobs))
        except Exception as e:
            logger.exception("Failed to claim jobs", extra={"queue": queue})
            self._metrics.record_claim_error(queue)
            self._sink(SinkEvent.DEQUEUE_ERROR, {"err": e, "queue": queue})
            return 0

        if not jobs:
            return 0

        self._metrics.record_jobs_claimed(queue, len(jobs))
        logger.info(f"Claimed {len(jobs)} jobs", extra={"queue": queue})

        await asyncio.gather(*(self._execute_job(job) for job in jobs))
        return len(jobs)

    async def _execute_job(self, job: Job) -> None:
        """
        Execute a single job.

        Any exception from the handler is contained here: the job gets a
        ``handler_error`` audit event and, unless the handler already
        resolved it, is requeued with the fixed retry delay. Nothing
        propagates to the loop.
        """
        handler = self._handlers[job.queue]
        ctx = JobContext(
            job=job,
            store=self.store,
            backoff=self._backoff,
            delete_after_ack=self.options.delete_after_ack,
        )
        start_time = time.monotonic()
        bind_context(job_id=job.id, queue=job.queue)

        try:
            with get_tracer().start_as_current_span(SPAN_EXECUTE_JOB) as span:
                span.set_attribute("job_id", job.id)
                span.set_attribute("queue", job.queue)
                span.set_attribute("attempt", job.attempts)

                await handler(ctx)

            self._metrics.record_job_duration(
                job.queue, "success", time.monotonic() - start_time
            )
            if not ctx.resolved:
                logger.warning(
                    "Handler returned without resolving the job; "
                    "it is redelivered when the lease expires",
                    extra={"job_id": job.id},
                )
        except Exception as e:
            self._metrics.record_job_duration(
                job.queue, "error", time.monotonic() - start_time
            )
            self._metrics.record_handler_error(job.queue)
            self._sink(SinkEvent.HANDLER_ERROR, {"err": e, "job_id": job.id})
            await self._requeue_after_error(ctx, e)
        finally:
            clear_context()

    async def _requeue_after_error(self, ctx: JobContext, error: Exception) -> None:
        try:
            await ctx.log(
                JobEvent.HANDLER_ERROR,
                {"error": str(error), "type": type(error).__name__},
            )
            if not ctx.resolved:
                await ctx.nack(requeue=True, delay_ms=self.options.retry_delay_ms)
        except Exception as e:
            logger.exception("Failed to requeue job", extra={"job_id": ctx.job_id})
            self._sink(SinkEvent.NACK_ERROR, {"err": e, "job_id": ctx.job_id})


async def run_worker(worker: Worker, *, configure_logging: bool = True) -> None:
    """
    Run a worker as the main task of a process.

    Configures logging, stops the worker on SIGTERM/SIGINT and closes the
    store once the loop has drained.
    """
    if configure_logging:
        setup_logging()

    loop = asyncio.get_running_loop()
    signals = (signal.SIGTERM, signal.SIGINT)
    for sig in signals:
        loop.add_signal_handler(sig, worker.stop)

    try:
        await worker.start()
    finally:
        for sig in signals:
            loop.remove_signal_handler(sig)
        await worker.store.close()
