"""
Worker module.
Contains the polling loop, the per-job context and backoff policies.
"""

from newq.worker.backoff import BackoffPolicy, default_backoff, exponential_backoff
from newq.worker.context import JobContext, JobHandler
from newq.worker.main import Worker, WorkerState, default_sink, run_worker

__all__ = [
    "Worker",
    "WorkerState",
    "JobContext",
    "JobHandler",
    "BackoffPolicy",
    "default_backoff",
    "exponential_backoff",
    "default_sink",
    "run_worker",
]
