"""
Application constants.
Centralized location for all constant values used across the package.
"""

from enum import StrEnum


class JobStatus(StrEnum):
    """
    Job lifecycle states.

    State transitions:
    - PENDING -> PROCESSING (claim)
    - PROCESSING -> COMPLETED (ack)
    - PROCESSING -> PENDING (nack with requeue / retry)
    - PROCESSING -> FAILED (nack without requeue)
    - PROCESSING with a lapsed lease is claimable again without a write
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})


class JobEvent(StrEnum):
    """Audit events written to the job log."""

    ENQUEUE = "enqueue"
    ACK = "ack"
    NACK = "nack"
    DELETE = "delete"
    HANDLER_ERROR = "handler_error"


class SinkEvent(StrEnum):
    """Operational diagnostics reported to the worker logging sink."""

    DEQUEUE_ERROR = "dequeue_error"
    HANDLER_ERROR = "handler_error"
    NACK_ERROR = "nack_error"


# Default values
DEFAULT_MAX_ATTEMPTS = 3
BACKOFF_BASE_MS = 1_000
BACKOFF_MAX_MS = 60_000

JOB_ID_PREFIX = "job"
LOG_ID_PREFIX = "log"

# Metrics names
METRIC_JOBS_ENQUEUED = "newq_jobs_enqueued_total"
METRIC_JOBS_CLAIMED = "newq_jobs_claimed_total"
METRIC_JOBS_ACKED = "newq_jobs_acked_total"
METRIC_JOBS_NACKED = "newq_jobs_nacked_total"
METRIC_HANDLER_ERRORS = "newq_handler_errors_total"
METRIC_CLAIM_ERRORS = "newq_claim_errors_total"
METRIC_JOB_DURATION = "newq_job_duration_seconds"

# Trace span names
SPAN_ENQUEUE_JOB = "enqueue_job"
SPAN_CLAIM_JOBS = "claim_jobs"
SPAN_EXECUTE_JOB = "execute_job"
