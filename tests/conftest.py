"""
Pytest configuration and shared fixtures.
"""

from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

from newq.db import SqlJobStore
from newq.store import InMemoryJobStore, JobStore

# Fixed start time in epoch milliseconds
CLOCK_START_MS = 1_700_000_000_000


class FakeClock:
    """Manually advanced millisecond clock injected into stores."""

    def __init__(self, start: int = CLOCK_START_MS):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


class RecordingSink:
    """Worker logging sink that keeps every reported event."""

    def __init__(self):
        self.events: list[tuple[str, dict[str, Any]]] = []

    def __call__(self, event: str, data: dict[str, Any]) -> None:
        self.events.append((event, data))

    def names(self) -> list[str]:
        return [event for event, _ in self.events]


@pytest.fixture
def clock() -> FakeClock:
    """Create a fake clock."""
    return FakeClock()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def memory_store(clock: FakeClock) -> InMemoryJobStore:
    """Create an in-memory store on the fake clock."""
    return InMemoryJobStore(clock=clock)


@pytest.fixture
def sqlite_url(tmp_path: Path) -> str:
    """SQLite database file in a per-test temporary directory."""
    return f"sqlite+aiosqlite:///{tmp_path / 'newq.db'}"


@pytest_asyncio.fixture
async def sql_store(sqlite_url: str, clock: FakeClock) -> AsyncGenerator[SqlJobStore]:
    """Create an initialized SQL store on the fake clock."""
    store = SqlJobStore(sqlite_url, clock=clock)
    await store.init()

    yield store

    await store.close()


@pytest_asyncio.fixture(params=["memory", "sql"])
async def store(
    request: pytest.FixtureRequest,
    clock: FakeClock,
    sqlite_url: str,
) -> AsyncGenerator[JobStore]:
    """Every shipped backend, so contract tests run against each one."""
    if request.param == "memory":
        backend: JobStore = InMemoryJobStore(clock=clock)
    else:
        backend = SqlJobStore(sqlite_url, clock=clock)
    await backend.init()

    yield backend

    await backend.close()
