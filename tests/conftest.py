from datetime import datetime, timedelta, timezone

import pytest

from db import database, queue
from services.orchestrator import JobOrchestrator


class FakeClock:
    """Callable clock the tests move by hand."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
async def db(tmp_path, monkeypatch):
    path = str(tmp_path / "jobs.db")
    monkeypatch.setattr(database, "DB_PATH", path)
    await database.init_db()
    return path


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def orchestrator(db, clock):
    return JobOrchestrator(
        max_attempts=3,
        backoff_base=30,
        backoff_cap=900,
        min_successful_sources="1",
        clock=clock,
    )


async def lease_source(clock, source: str, lease_seconds: float = 300):
    """Lease everything visible and return the descriptor for *source*."""
    for d in await queue.lease(50, clock(), lease_seconds):
        if d.source_name == source:
            return d
    return None
