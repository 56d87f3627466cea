"""
SQL job store.
Implements the job store contract on top of async SQLAlchemy.
"""

import logging
from collections.abc import Callable
from typing import Any

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from newq.config import get_settings
from newq.constants import LOG_ID_PREFIX, JobStatus
from newq.db.connection import create_engine, create_session_factory, session_scope
from newq.db.models import Base, JobLogRecord, JobRecord
from newq.observability.tracing import instrument_sqlalchemy
from newq.store.base import JobExistsError, JobStore
from newq.types.job import EnqueueOptions, Job, JobLog, QueueStats, generate_id, now_ms

logger = logging.getLogger(__name__)


class SqlJobStore(JobStore):
    """
    Relational job store (PostgreSQL via asyncpg, SQLite via aiosqlite).

    Implements atomic operations for:
    - Job submission with explicit duplicate handling
    - Lease acquisition with a conditional UPDATE per candidate
    - Idempotent ack/nack
    - Append-only audit logging
    """

    def __init__(
        self,
        database_url: str | None = None,
        *,
        engine: AsyncEngine | None = None,
        clock: Callable[[], int] = now_ms,
    ):
        """
        Initialize the store.

        Args:
            database_url: Database URL, used when no engine is given.
            engine: An existing engine. The store does not dispose it on close.
            clock: Source of epoch milliseconds.
        """
        self._settings = get_settings()
        self._owns_engine = engine is None
        self._engine = engine or create_engine(database_url)
        self._session_factory = create_session_factory(self._engine)
        self._clock = clock
        self._instrumented = False

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    async def init(self) -> None:
        """Create tables and indexes if they do not exist."""
        if self._settings.otel_instrument_sqlalchemy and not self._instrumented:
            instrument_sqlalchemy(self._engine)
            self._instrumented = True

        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Job store schema initialized")

    async def close(self) -> None:
        if self._owns_engine:
            await self._engine.dispose()
            logger.info("Database connection closed")

    async def enqueue(
        self,
        queue: str,
        payload: Any,
        options: EnqueueOptions | None = None,
    ) -> Job:
        """
        Insert a pending job.

        An existing id is replaced only when ``options.overwrite`` is set;
        otherwise ``JobExistsError`` is raised, including when a concurrent
        insert wins the primary key.
        """
        if not queue:
            raise ValueError("Queue name cannot be empty")
        options = options or EnqueueOptions()
        job_id = options.job_id or generate_id()
        now = self._clock()

        record = JobRecord(
            id=job_id,
            queue=queue,
            payload=payload,
            meta=options.meta,
            status=JobStatus.PENDING,
            attempts=0,
            max_attempts=options.max_attempts or self._settings.default_max_attempts,
            visible_at=now + options.delay_ms,
            locked_until=0,
            created_at=now,
            updated_at=now,
        )

        try:
            async with session_scope(self._session_factory) as session:
                existing = await self._get_record(session, job_id)
                if existing is not None:
                    if not options.overwrite:
                        raise JobExistsError(job_id)
                    await session.delete(existing)
                    await session.flush()
                session.add(record)
        except IntegrityError as e:
            raise JobExistsError(job_id) from e

        logger.info("Created new job", extra={"job_id": job_id, "queue": queue})
        return record.to_job()

    @staticmethod
    async def _get_record(session: AsyncSession, job_id: str) -> JobRecord | None:
        result = await session.execute(select(JobRecord).where(JobRecord.id == job_id))
        return result.scalar_one_or_none()

    @staticmethod
    def _eligible(now: int):
        """SQL form of the eligibility gate (lapsed leases count as pending)."""
        return and_(
            JobRecord.status.in_([JobStatus.PENDING, JobStatus.PROCESSING]),
            JobRecord.visible_at <= now,
            JobRecord.locked_until < now,
            JobRecord.attempts < JobRecord.max_attempts,
        )

    async def claim(
        self,
        queue: str,
        limit: int = 1,
        visibility_timeout_ms: int | None = None,
    ) -> list[Job]:
        """
        Lease up to ``limit`` eligible jobs, oldest first.

        Candidates are read without locks, then each one is taken by an
        UPDATE that repeats the eligibility gate in its WHERE clause. A
        replica that lost the race updates zero rows and moves on, so two
        callers can never both lease the same job.
        """
        if limit < 1:
            return []
        if visibility_timeout_ms is None:
            visibility_timeout_ms = self._settings.visibility_timeout_ms

        now = self._clock()
        locked_until = now + visibility_timeout_ms
        claimed: list[Job] = []
        tried: set[str] = set()

        while len(claimed) < limit:
            async with session_scope(self._session_factory) as session:
                stmt = (
                    select(JobRecord.id)
                    .where(JobRecord.queue == queue, self._eligible(now))
                    .order_by(JobRecord.created_at.asc(), JobRecord.seq.asc())
                    .limit(limit - len(claimed))
                )
                if tried:
                    stmt = stmt.where(JobRecord.id.not_in(tried))
                candidate_ids = (await session.execute(stmt)).scalars().all()

            if not candidate_ids:
                break

            for job_id in candidate_ids:
                tried.add(job_id)
                job = await self._try_claim(job_id, now, locked_until)
                if job is not None:
                    claimed.append(job)

        if claimed:
            logger.info(
                f"Acquired lease on {len(claimed)} jobs",
                extra={"queue": queue, "job_count": len(claimed)},
            )
        return claimed

    async def _try_claim(self, job_id: str, now: int, locked_until: int) -> Job | None:
        async with session_scope(self._session_factory) as session:
            stmt = (
                update(JobRecord)
                .where(JobRecord.id == job_id, self._eligible(now))
                .values(
                    status=JobStatus.PROCESSING,
                    locked_until=locked_until,
                    attempts=JobRecord.attempts + 1,
                    updated_at=now,
                )
                .returning(JobRecord)
            )
            record = (await session.execute(stmt)).scalar_one_or_none()
            return record.to_job() if record is not None else None

    async def ack(self, job_id: str, delete_after_ack: bool = False) -> None:
        async with session_scope(self._session_factory) as session:
            if delete_after_ack:
                await session.execute(delete(JobRecord).where(JobRecord.id == job_id))
                return

            await session.execute(
                update(JobRecord)
                .where(JobRecord.id == job_id)
                .values(
                    status=JobStatus.COMPLETED,
                    locked_until=0,
                    updated_at=self._clock(),
                )
            )

    async def nack(
        self,
        job_id: str,
        requeue: bool = True,
        delay_ms: int | None = None,
    ) -> None:
        now = self._clock()
        values: dict[str, Any] = {"locked_until": 0, "updated_at": now}
        if requeue:
            values["status"] = JobStatus.PENDING
            values["visible_at"] = now + (delay_ms or 0)
        else:
            values["status"] = JobStatus.FAILED

        async with session_scope(self._session_factory) as session:
            await session.execute(
                update(JobRecord).where(JobRecord.id == job_id).values(**values)
            )

    async def get_job(self, job_id: str) -> Job | None:
        async with session_scope(self._session_factory) as session:
            record = await self._get_record(session, job_id)
            return record.to_job() if record is not None else None

    async def log_event(self, job_id: str, event: str, data: Any = None) -> None:
        async with session_scope(self._session_factory) as session:
            queue = (
                await session.execute(
                    select(JobRecord.queue).where(JobRecord.id == job_id)
                )
            ).scalar_one_or_none()
            if queue is None:
                return

            session.add(
                JobLogRecord(
                    id=generate_id(LOG_ID_PREFIX),
                    job_id=job_id,
                    queue=queue,
                    event=event,
                    data=data,
                    created_at=self._clock(),
                )
            )

    async def get_logs(self, job_id: str) -> list[JobLog]:
        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                select(JobLogRecord)
                .where(JobLogRecord.job_id == job_id)
                .order_by(JobLogRecord.seq.asc())
            )
            return [row.to_log() for row in result.scalars().all()]

    async def stats(self, queue: str | None = None) -> list[QueueStats]:
        """
        Get job counts by status for each queue.

        Args:
            queue: Optional queue filter.

        Returns:
            One ``QueueStats`` per queue that has jobs.
        """
        stmt = select(JobRecord.queue, JobRecord.status, func.count()).group_by(
            JobRecord.queue, JobRecord.status
        )
        if queue is not None:
            stmt = stmt.where(JobRecord.queue == queue)

        async with session_scope(self._session_factory) as session:
            rows = (await session.execute(stmt)).all()

        stats: dict[str, QueueStats] = {}
        for queue_name, status, count in rows:
            stats.setdefault(queue_name, QueueStats(queue=queue_name)).add(status, count)
        return list(stats.values())
