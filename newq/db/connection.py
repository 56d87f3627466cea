"""
Database connection management.
Handles async SQLAlchemy engine and session creation for the SQL store.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from newq.config import get_settings

logger = logging.getLogger(__name__)


def create_engine(database_url: str | None = None, **kwargs: Any) -> AsyncEngine:
    """
    Create an async database engine.

    Pool sizing from settings applies to server databases only; an in-memory
    SQLite database gets a ``StaticPool`` so every session sees the same data.

    Args:
        database_url: The database URL. Defaults to ``Settings.database_url``.
        **kwargs: Extra arguments for ``create_async_engine``.

    Returns:
        AsyncEngine: The SQLAlchemy async engine instance.
    """
    settings = get_settings()
    url = make_url(database_url or settings.database_url)

    options: dict[str, Any] = {"echo": settings.log_level == "DEBUG"}
    if url.get_backend_name() == "sqlite":
        if url.database in (None, "", ":memory:"):
            options["poolclass"] = StaticPool
            options["connect_args"] = {"check_same_thread": False}
    else:
        options.update(
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_pre_ping=True,
        )
    options.update(kwargs)

    return create_async_engine(url, **options)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """
    Create the session factory bound to ``engine``.

    Args:
        engine: The async engine.

    Returns:
        An ``async_sessionmaker`` producing non-expiring sessions.
    """
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@asynccontextmanager
async def session_scope(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession]:
    """
    Context manager for a unit of work.

    Commits on success and rolls back on any error, so a failed write
    leaves no partial state.

    Yields:
        AsyncSession: An async database session.
    """
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
