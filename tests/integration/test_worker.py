"""
Integration tests for worker functionality.
"""

import asyncio
import os
import signal
from typing import Any

import pytest

from newq.config import WorkerOptions
from newq.constants import JobStatus
from newq.queue import Queue
from newq.store import InMemoryJobStore, JobStore
from newq.types import Job
from newq.worker import JobContext, Worker, WorkerState, run_worker


def make_worker(store: JobStore, sink, **options: Any) -> Worker:
    options.setdefault("poll_interval_ms", 10)
    return Worker(store, WorkerOptions(**options), sink=sink)


async def wait_for(predicate, timeout: float = 5.0) -> None:
    """Poll an async predicate until it holds."""
    async def _wait() -> None:
        while not await predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_wait(), timeout=timeout)


class FlakyClaimStore(InMemoryJobStore):
    """In-memory store whose claims fail for selected queues."""

    def __init__(self, failing_queues: set[str], **kwargs: Any):
        super().__init__(**kwargs)
        self.failing_queues = failing_queues

    async def claim(self, queue: str, limit: int = 1, visibility_timeout_ms: int | None = None) -> list[Job]:
        if queue in self.failing_queues:
            raise ConnectionError("backend unavailable")
        return await super().claim(queue, limit, visibility_timeout_ms)


class TestWorkerIntegration:
    """Integration tests for worker job processing."""

    async def test_enqueue_then_ack(self, store: JobStore, sink):
        """Test complete job lifecycle: enqueue -> claim -> handler -> ack."""
        queue = Queue(store)
        job = await queue.enqueue("q", "p")
        seen: list[Any] = []

        async def handler(ctx: JobContext) -> None:
            seen.append(ctx.payload)
            await ctx.ack()

        worker = make_worker(store, sink)
        worker.listen("q", handler)

        assert await worker.run_once() == 1

        stored = await queue.get_job(job.id)
        assert seen == ["p"]
        assert stored.status == JobStatus.COMPLETED
        assert stored.attempts == 1
        assert [log.event for log in await queue.get_logs(job.id)] == ["enqueue", "ack"]
        assert sink.events == []

    async def test_handler_error_auto_requeue(self, store: JobStore, sink):
        """Test a raising handler requeues the job until attempts run out."""
        queue = Queue(store)
        job = await queue.enqueue("q", {"x": 1}, max_attempts=3)

        async def handler(ctx: JobContext) -> None:
            raise RuntimeError("boom")

        worker = make_worker(store, sink)
        worker.listen("q", handler)

        assert await worker.run_once() == 1
        stored = await queue.get_job(job.id)
        assert stored.attempts == 1
        assert stored.status == JobStatus.PENDING
        events = [log.event for log in await queue.get_logs(job.id)]
        assert events == ["enqueue", "handler_error", "nack"]

        assert await worker.run_once() == 1
        assert await worker.run_once() == 1
        stored = await queue.get_job(job.id)
        assert stored.attempts == 3
        assert stored.status == JobStatus.PENDING

        # Exhausted: nothing further is claimed, status is left as is
        assert await worker.run_once() == 0
        assert (await queue.get_job(job.id)).attempts == 3

        assert sink.names() == ["handler_error"] * 3
        _, data = sink.events[0]
        assert data["job_id"] == job.id
        assert isinstance(data["err"], RuntimeError)

        logs = await queue.get_logs(job.id)
        error_log = next(log for log in logs if log.event == "handler_error")
        assert error_log.data == {"error": "boom", "type": "RuntimeError"}

    async def test_handler_error_uses_fixed_retry_delay(self, memory_store: InMemoryJobStore, sink, clock):
        """Test automatic requeue applies retry_delay_ms, not backoff."""
        job = await memory_store.enqueue("q", 1)

        async def handler(ctx: JobContext) -> None:
            raise ValueError("bad input")

        worker = make_worker(memory_store, sink, retry_delay_ms=750)
        worker.listen("q", handler)
        await worker.run_once()

        stored = await memory_store.get_job(job.id)
        assert stored.visible_at == clock.now + 750
        assert await worker.run_once() == 0

    async def test_claim_failure_does_not_abort_iteration(self, clock, sink):
        """Test a failing queue is reported and the next queue still runs."""
        store = FlakyClaimStore({"broken"}, clock=clock)
        await store.enqueue("broken", 1)
        good = await store.enqueue("good", 2)

        async def handler(ctx: JobContext) -> None:
            await ctx.ack()

        worker = make_worker(store, sink)
        worker.listen("broken", handler)
        worker.listen("good", handler)

        assert await worker.run_once() == 1
        assert (await store.get_job(good.id)).status == JobStatus.COMPLETED
        assert sink.names() == ["dequeue_error"]
        assert sink.events[0][1]["queue"] == "broken"

    async def test_listen_last_registration_wins(self, memory_store: InMemoryJobStore, sink):
        await memory_store.enqueue("q", 1)
        calls: list[str] = []

        async def first(ctx: JobContext) -> None:
            calls.append("first")
            await ctx.ack()

        async def second(ctx: JobContext) -> None:
            calls.append("second")
            await ctx.ack()

        worker = make_worker(memory_store, sink)
        worker.listen("q", first)
        worker.listen("q", second)
        await worker.run_once()

        assert calls == ["second"]
        assert worker.queues == ["q"]

    async def test_handler_decorator(self, memory_store: InMemoryJobStore, sink):
        job = await memory_store.enqueue("emails", {"to": "a@example.com"})
        worker = make_worker(memory_store, sink)

        @worker.handler("emails")
        async def send_email(ctx: JobContext) -> None:
            await ctx.ack()

        await worker.run_once()

        assert (await memory_store.get_job(job.id)).status == JobStatus.COMPLETED

    async def test_unregistered_queue_not_polled(self, memory_store: InMemoryJobStore, sink):
        other = await memory_store.enqueue("other", 1)

        async def handler(ctx: JobContext) -> None:
            await ctx.ack()

        worker = make_worker(memory_store, sink)
        worker.listen("q", handler)

        assert await worker.run_once() == 0
        stored = await memory_store.get_job(other.id)
        assert stored.status == JobStatus.PENDING
        assert stored.attempts == 0

    async def test_concurrency_bounds_claims(self, memory_store: InMemoryJobStore, sink):
        """Test at most `concurrency` jobs run at once and run concurrently."""
        for i in range(5):
            await memory_store.enqueue("q", i)
        in_flight = 0
        peak = 0

        async def handler(ctx: JobContext) -> None:
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.02)
            in_flight -= 1
            await ctx.ack()

        worker = make_worker(memory_store, sink, concurrency=3)
        worker.listen("q", handler)

        assert await worker.run_once() == 3
        assert peak == 3
        assert await worker.run_once() == 2

    async def test_unresolved_job_redelivered_after_lease(self, memory_store: InMemoryJobStore, sink, clock):
        """Test a handler that never resolves leaves the job to lease expiry."""
        job = await memory_store.enqueue("q", 1)
        attempts: list[int] = []

        async def handler(ctx: JobContext) -> None:
            attempts.append(ctx.job.attempts)

        worker = make_worker(memory_store, sink, visibility_timeout_ms=1_000)
        worker.listen("q", handler)

        assert await worker.run_once() == 1
        assert (await memory_store.get_job(job.id)).status == JobStatus.PROCESSING
        assert await worker.run_once() == 0

        clock.advance(1_001)
        assert await worker.run_once() == 1
        assert attempts == [1, 2]

    async def test_delete_after_ack_keeps_audit_trail(self, store: JobStore, sink):
        """Test deleting on ack still records the ack event."""
        queue = Queue(store)
        job = await queue.enqueue("q", 1)

        async def handler(ctx: JobContext) -> None:
            await ctx.ack()

        worker = make_worker(store, sink, delete_after_ack=True)
        worker.listen("q", handler)
        await worker.run_once()

        assert await queue.get_job(job.id) is None
        assert [log.event for log in await queue.get_logs(job.id)] == ["enqueue", "ack"]


class TestWorkerLifecycle:
    """Tests for start/stop behaviour of the polling loop."""

    async def test_start_processes_until_stopped(self, store: JobStore, sink):
        queue = Queue(store)
        job = await queue.enqueue("q", "p")

        async def handler(ctx: JobContext) -> None:
            await ctx.ack()

        worker = make_worker(store, sink)
        worker.listen("q", handler)
        assert worker.state == WorkerState.IDLE

        task = asyncio.create_task(worker.start())

        async def completed() -> bool:
            stored = await queue.get_job(job.id)
            return stored.status == JobStatus.COMPLETED

        await wait_for(completed)
        assert worker.state == WorkerState.RUNNING

        worker.stop()
        await asyncio.wait_for(task, timeout=5)
        assert worker.state == WorkerState.STOPPED

    async def test_start_without_handlers_idles(self, memory_store: InMemoryJobStore, sink):
        worker = make_worker(memory_store, sink)
        task = asyncio.create_task(worker.start())
        await asyncio.sleep(0.05)

        worker.stop()
        await asyncio.wait_for(task, timeout=5)

        assert worker.state == WorkerState.STOPPED

    async def test_stop_wakes_sleeping_worker(self, memory_store: InMemoryJobStore, sink):
        """Test stop() interrupts the poll sleep."""
        worker = make_worker(memory_store, sink, poll_interval_ms=60_000)
        worker.listen("q", lambda ctx: ctx.ack())
        task = asyncio.create_task(worker.start())
        await asyncio.sleep(0.05)

        worker.stop()

        await asyncio.wait_for(task, timeout=1)

    async def test_stop_lets_in_flight_handler_finish(self, memory_store: InMemoryJobStore, sink):
        job = await memory_store.enqueue("q", 1)
        started = asyncio.Event()
        release = asyncio.Event()

        async def handler(ctx: JobContext) -> None:
            started.set()
            await release.wait()
            await ctx.ack()

        worker = make_worker(memory_store, sink)
        worker.listen("q", handler)
        task = asyncio.create_task(worker.start())

        await asyncio.wait_for(started.wait(), timeout=5)
        worker.stop()
        await asyncio.sleep(0.02)
        assert not task.done()
        assert worker.state == WorkerState.STOPPING

        release.set()
        await asyncio.wait_for(task, timeout=5)

        assert (await memory_store.get_job(job.id)).status == JobStatus.COMPLETED

    async def test_stop_when_idle_is_noop(self, memory_store: InMemoryJobStore, sink):
        worker = make_worker(memory_store, sink)

        worker.stop()

        assert worker.state == WorkerState.IDLE

    async def test_start_twice_rejected(self, memory_store: InMemoryJobStore, sink):
        worker = make_worker(memory_store, sink)
        task = asyncio.create_task(worker.start())
        await asyncio.sleep(0.01)

        with pytest.raises(RuntimeError):
            await worker.start()

        worker.stop()
        await asyncio.wait_for(task, timeout=5)

    async def test_restart_after_stop(self, memory_store: InMemoryJobStore, sink):
        """Test a stopped worker can be started again."""
        processed: list[Any] = []

        async def handler(ctx: JobContext) -> None:
            processed.append(ctx.payload)
            await ctx.ack()

        worker = make_worker(memory_store, sink)
        worker.listen("q", handler)

        for payload in ("first", "second"):
            await memory_store.enqueue("q", payload)
            task = asyncio.create_task(worker.start())

            async def done(expected: int = len(processed) + 1) -> bool:
                return len(processed) == expected

            await wait_for(done)
            worker.stop()
            await asyncio.wait_for(task, timeout=5)

        assert processed == ["first", "second"]
        assert worker.state == WorkerState.STOPPED

    async def test_handler_errors_never_escape_start(self, memory_store: InMemoryJobStore, sink):
        job = await memory_store.enqueue("q", 1)

        async def handler(ctx: JobContext) -> None:
            raise RuntimeError("boom")

        worker = make_worker(memory_store, sink)
        worker.listen("q", handler)
        task = asyncio.create_task(worker.start())

        async def exhausted() -> bool:
            return (await memory_store.get_job(job.id)).attempts == 3

        await wait_for(exhausted)
        worker.stop()
        await asyncio.wait_for(task, timeout=5)

        assert task.exception() is None
        assert sink.names().count("handler_error") == 3

    async def test_restart_while_draining_waits_for_previous_loop(self, memory_store: InMemoryJobStore, sink):
        """Test start() during a drain never runs two polling loops at once."""
        for i in range(2):
            await memory_store.enqueue("q", i)
        started = asyncio.Event()
        release = asyncio.Event()
        in_flight = 0
        peak = 0
        processed: list[Any] = []

        async def handler(ctx: JobContext) -> None:
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            started.set()
            await release.wait()
            in_flight -= 1
            processed.append(ctx.payload)
            await ctx.ack()

        worker = make_worker(memory_store, sink, concurrency=1)
        worker.listen("q", handler)
        first = asyncio.create_task(worker.start())
        await asyncio.wait_for(started.wait(), timeout=5)

        worker.stop()
        second = asyncio.create_task(worker.start())
        await asyncio.sleep(0.05)
        assert worker.state == WorkerState.STOPPING
        assert in_flight == 1

        release.set()
        await asyncio.wait_for(first, timeout=5)

        async def both_done() -> bool:
            return len(processed) == 2

        await wait_for(both_done)
        assert worker.state == WorkerState.RUNNING
        worker.stop()
        await asyncio.wait_for(second, timeout=5)

        assert peak == 1
        assert processed == [0, 1]

    async def test_start_init_failure_stops_worker(self, clock, sink):
        class BrokenInitStore(InMemoryJobStore):
            async def init(self) -> None:
                raise ConnectionError("backend unavailable")

        worker = make_worker(BrokenInitStore(clock=clock), sink)

        with pytest.raises(ConnectionError):
            await worker.start()

        assert worker.state == WorkerState.STOPPED


class TestHandlerResolution:
    """Tests for how handler outcomes map onto the job lifecycle."""

    async def test_ack_then_raise_stays_completed(self, memory_store: InMemoryJobStore, sink):
        """Test an error after the handler resolved the job does not requeue it."""
        queue = Queue(memory_store)
        job = await queue.enqueue("q", 1)

        async def handler(ctx: JobContext) -> None:
            await ctx.ack()
            raise RuntimeError("cleanup failed")

        worker = make_worker(memory_store, sink)
        worker.listen("q", handler)
        await worker.run_once()

        stored = await queue.get_job(job.id)
        assert stored.status == JobStatus.COMPLETED
        assert [log.event for log in await queue.get_logs(job.id)] == [
            "enqueue",
            "ack",
            "handler_error",
        ]
        assert sink.names() == ["handler_error"]
        assert await worker.run_once() == 0


class ClosingStore(InMemoryJobStore):
    def __init__(self, **kwargs: Any):
        super().__init__(**kwargs)
        self.closed = False

    async def close(self) -> None:
        self.closed = True


class TestRunWorker:
    """Tests for the process entrypoint."""

    async def test_sigterm_stops_and_closes_store(self, clock, sink):
        store = ClosingStore(clock=clock)
        job = await store.enqueue("q", 1)

        async def handler(ctx: JobContext) -> None:
            await ctx.ack()

        worker = make_worker(store, sink)
        worker.listen("q", handler)
        task = asyncio.create_task(run_worker(worker, configure_logging=False))

        async def completed() -> bool:
            return (await store.get_job(job.id)).status == JobStatus.COMPLETED

        await wait_for(completed)
        os.kill(os.getpid(), signal.SIGTERM)
        await asyncio.wait_for(task, timeout=5)

        assert worker.state == WorkerState.STOPPED
        assert store.closed
