"""
Job store contract and the in-memory backend.
The SQL backend lives in ``newq.db``.
"""

from newq.store.base import JobExistsError, JobStore, SupportsStats
from newq.store.memory import InMemoryJobStore

__all__ = [
    "JobStore",
    "SupportsStats",
    "JobExistsError",
    "InMemoryJobStore",
]
