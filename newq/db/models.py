"""
SQLAlchemy database models.
Defines the job and job log tables used by the SQL store.
"""

from typing import Any

from sqlalchemy import JSON, BigInteger, Enum, Index, Integer, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from newq.constants import JobStatus
from newq.types.job import Job, JobLog

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class JobRecord(Base):
    """
    Row representing a job.

    This is the authoritative source of truth for job state. Claims are
    conditional UPDATEs against this table; see ``SqlJobStore.claim``.
    Times are epoch milliseconds so the eligibility gate is a plain
    integer comparison on every dialect.
    """

    __tablename__ = "newq_jobs"

    # Insertion order; breaks created_at ties in claim
    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    queue: Mapped[str] = mapped_column(String(255), nullable=False)

    payload: Mapped[Any] = mapped_column(JSONType, nullable=True)
    meta: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    status: Mapped[JobStatus] = mapped_column(
        Enum(
            JobStatus,
            name="newq_job_status",
            create_constraint=True,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        default=JobStatus.PENDING,
    )

    # Retry tracking
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False)

    # Scheduling and lease
    visible_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    locked_until: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Timestamps
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __table_args__ = (
        # Index for efficient queue polling
        Index("ix_newq_jobs_claim", "queue", "status", "visible_at", "created_at"),
        Index("ix_newq_jobs_queue_status", "queue", "status"),
    )

    def to_job(self) -> Job:
        """Convert the row to the public ``Job`` model."""
        return Job(
            id=self.id,
            queue=self.queue,
            payload=self.payload,
            attempts=self.attempts,
            max_attempts=self.max_attempts,
            visible_at=self.visible_at,
            locked_until=self.locked_until,
            status=JobStatus(self.status),
            created_at=self.created_at,
            updated_at=self.updated_at,
            meta=self.meta,
        )

    def __repr__(self) -> str:
        return (
            f"JobRecord(id={self.id}, queue={self.queue}, "
            f"status={self.status}, attempts={self.attempts}/{self.max_attempts})"
        )


class JobLogRecord(Base):
    """
    Append-only audit row.

    Not tied to ``newq_jobs`` by a foreign key: entries outlive jobs that are
    deleted on ack. ``seq`` gives a stable chronological order.
    """

    __tablename__ = "newq_job_logs"

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    job_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    queue: Mapped[str] = mapped_column(String(255), nullable=False)
    event: Mapped[str] = mapped_column(String(255), nullable=False)
    data: Mapped[Any] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)

    def to_log(self) -> JobLog:
        """Convert the row to the public ``JobLog`` model."""
        return JobLog(
            id=self.id,
            job_id=self.job_id,
            queue=self.queue,
            event=self.event,
            data=self.data,
            created_at=self.created_at,
        )
