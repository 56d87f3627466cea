"""
Database module.
Contains the SQL job store with its connection helpers and models.
"""

from newq.db.connection import create_engine, create_session_factory, session_scope
from newq.db.models import Base, JobLogRecord, JobRecord
from newq.db.repository import SqlJobStore

__all__ = [
    "SqlJobStore",
    "create_engine",
    "create_session_factory",
    "session_scope",
    "Base",
    "JobRecord",
    "JobLogRecord",
]
