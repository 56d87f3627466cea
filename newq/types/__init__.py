"""
Type definitions for the job queue.
"""

from newq.types.job import (
    EnqueueOptions,
    Job,
    JobLog,
    QueueStats,
    generate_id,
    now_ms,
)

__all__ = [
    "Job",
    "JobLog",
    "QueueStats",
    "EnqueueOptions",
    "generate_id",
    "now_ms",
]
