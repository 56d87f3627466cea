"""
newq - storage-agnostic job queue

Producers enqueue payloads onto named queues; workers claim jobs under a
visibility-timeout lease, run handlers, and ack/nack/retry the outcome.
Delivery is at-least-once.
"""

from newq.queue import Queue
from newq.store import InMemoryJobStore, JobExistsError, JobStore
from newq.types import Job, JobLog, QueueStats
from newq.worker import JobContext, Worker, default_backoff

__version__ = "1.0.0"

__all__ = [
    "Queue",
    "Worker",
    "JobContext",
    "JobStore",
    "InMemoryJobStore",
    "JobExistsError",
    "Job",
    "JobLog",
    "QueueStats",
    "default_backoff",
]
