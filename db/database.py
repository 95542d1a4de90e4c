import json
import os
from contextlib import asynccontextmanager
from datetime import datetime

import aiosqlite

from models.job import Job, JobDataRecord, from_ts, to_ts

DB_PATH = os.getenv("DB_PATH", "persona_jobs.db")

# Seconds a writer waits on a locked database before giving up
BUSY_TIMEOUT: float = float(os.getenv("DB_BUSY_TIMEOUT", "15"))

_CREATE_JOBS = """
CREATE TABLE IF NOT EXISTS jobs (
    id               TEXT PRIMARY KEY,
    status           TEXT NOT NULL DEFAULT 'pending',
    user_inputs      TEXT NOT NULL,
    expected_sources TEXT NOT NULL,
    source_outcomes  TEXT NOT NULL DEFAULT '{}',
    source_errors    TEXT NOT NULL DEFAULT '{}',
    failure_reason   TEXT,
    created_at       TEXT NOT NULL,
    updated_at       TEXT NOT NULL,
    completed_at     TEXT
)
"""

_CREATE_JOB_DATA = """
CREATE TABLE IF NOT EXISTS job_data (
    job_id       TEXT NOT NULL,
    source_name  TEXT NOT NULL,
    data         TEXT NOT NULL,
    collected_at TEXT NOT NULL,
    PRIMARY KEY (job_id, source_name),
    FOREIGN KEY (job_id) REFERENCES jobs(id)
)
"""

# One row per (job, source); attempts survive requeues on the same row
_CREATE_QUEUE = """
CREATE TABLE IF NOT EXISTS task_queue (
    id            TEXT PRIMARY KEY,
    job_id        TEXT    NOT NULL,
    source_name   TEXT    NOT NULL,
    payload       TEXT    NOT NULL,
    attempt_count INTEGER NOT NULL DEFAULT 0,
    max_attempts  INTEGER NOT NULL,
    visible_at    TEXT    NOT NULL,
    leased        INTEGER NOT NULL DEFAULT 0,
    last_error    TEXT,
    created_at    TEXT    NOT NULL,
    UNIQUE (job_id, source_name)
)
"""

_CREATE_CACHE = """
CREATE TABLE IF NOT EXISTS cache (
    key        TEXT PRIMARY KEY,
    value      TEXT NOT NULL,
    expires_at TEXT
)
"""

_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_jobs_status_created ON jobs(status, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_queue_visible ON task_queue(visible_at)",
    "CREATE INDEX IF NOT EXISTS idx_queue_job ON task_queue(job_id)",
]


async def init_db() -> None:
    async with aiosqlite.connect(DB_PATH, timeout=BUSY_TIMEOUT) as db:
        await db.execute("PRAGMA journal_mode=WAL")
        await db.execute(_CREATE_JOBS)
        await db.execute(_CREATE_JOB_DATA)
        await db.execute(_CREATE_QUEUE)
        await db.execute(_CREATE_CACHE)
        for stmt in _INDEXES:
            await db.execute(stmt)
        await db.commit()


# ── Connections ───────────────────────────────────────────────────────────────

@asynccontextmanager
async def connect():
    """Plain connection; commits on clean exit."""
    async with aiosqlite.connect(DB_PATH, timeout=BUSY_TIMEOUT) as db:
        db.row_factory = aiosqlite.Row
        yield db
        await db.commit()


@asynccontextmanager
async def transaction():
    """
    Write transaction taken with BEGIN IMMEDIATE so only one writer wins.
    Everything done on the yielded connection commits or rolls back together.
    """
    async with aiosqlite.connect(DB_PATH, timeout=BUSY_TIMEOUT) as db:
        db.row_factory = aiosqlite.Row
        await db.execute("BEGIN IMMEDIATE")
        try:
            yield db
        except BaseException:
            await db.rollback()
            raise
        await db.commit()


@asynccontextmanager
async def using(db: aiosqlite.Connection | None):
    """Reuse the caller's connection when given one, otherwise open our own."""
    if db is not None:
        yield db
        return
    async with connect() as conn:
        yield conn


async def ping() -> None:
    async with connect() as db:
        async with db.execute("SELECT 1") as cur:
            await cur.fetchone()


# ── Jobs ──────────────────────────────────────────────────────────────────────

def _row_to_job(row) -> Job:
    return Job(
        id=row["id"],
        status=row["status"],
        user_inputs=json.loads(row["user_inputs"]),
        expected_sources=frozenset(json.loads(row["expected_sources"])),
        source_outcomes=json.loads(row["source_outcomes"]),
        source_errors=json.loads(row["source_errors"]),
        failure_reason=row["failure_reason"],
        created_at=from_ts(row["created_at"]),
        updated_at=from_ts(row["updated_at"]),
        completed_at=from_ts(row["completed_at"]),
    )


async def insert_job(job: Job, db: aiosqlite.Connection | None = None) -> None:
    async with using(db) as conn:
        await conn.execute(
            """
            INSERT INTO jobs (id, status, user_inputs, expected_sources,
                              source_outcomes, source_errors, failure_reason,
                              created_at, updated_at, completed_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                job.id,
                job.status,
                json.dumps(job.user_inputs),
                json.dumps(sorted(job.expected_sources)),
                json.dumps(job.source_outcomes),
                json.dumps(job.source_errors),
                job.failure_reason,
                to_ts(job.created_at),
                to_ts(job.updated_at or job.created_at),
                to_ts(job.completed_at),
            ),
        )


async def get_job(job_id: str, db: aiosqlite.Connection | None = None) -> Job | None:
    async with using(db) as conn:
        async with conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)) as cur:
            row = await cur.fetchone()
            return _row_to_job(row) if row else None


async def update_job(job: Job, db: aiosqlite.Connection | None = None) -> None:
    """Persist the mutable part of a job. Inputs and expected sources never change."""
    async with using(db) as conn:
        await conn.execute(
            """
            UPDATE jobs
            SET status = ?, source_outcomes = ?, source_errors = ?,
                failure_reason = ?, updated_at = ?, completed_at = ?
            WHERE id = ?
            """,
            (
                job.status,
                json.dumps(job.source_outcomes),
                json.dumps(job.source_errors),
                job.failure_reason,
                to_ts(job.updated_at),
                to_ts(job.completed_at),
                job.id,
            ),
        )


async def list_jobs(status: str, created_before: datetime | None = None) -> list[Job]:
    query = "SELECT * FROM jobs WHERE status = ?"
    params: list = [status]
    if created_before is not None:
        query += " AND created_at < ?"
        params.append(to_ts(created_before))
    query += " ORDER BY created_at ASC"
    async with connect() as db:
        async with db.execute(query, params) as cur:
            return [_row_to_job(r) for r in await cur.fetchall()]


async def count_jobs() -> int:
    async with connect() as db:
        async with db.execute("SELECT COUNT(*) FROM jobs") as cur:
            row = await cur.fetchone()
            return row[0]


# ── Job data ──────────────────────────────────────────────────────────────────

async def save_job_data(record: JobDataRecord, db: aiosqlite.Connection | None = None) -> None:
    """Last successful write for a (job, source) key wins; there is no merge."""
    async with using(db) as conn:
        await conn.execute(
            """
            INSERT INTO job_data (job_id, source_name, data, collected_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(job_id, source_name) DO UPDATE SET
                data         = excluded.data,
                collected_at = excluded.collected_at
            """,
            (
                record.job_id,
                record.source_name,
                json.dumps(record.data, default=str),
                to_ts(record.collected_at),
            ),
        )


async def get_job_data(
    job_id: str, source_name: str, db: aiosqlite.Connection | None = None
) -> JobDataRecord | None:
    async with using(db) as conn:
        async with conn.execute(
            "SELECT * FROM job_data WHERE job_id = ? AND source_name = ?",
            (job_id, source_name),
        ) as cur:
            row = await cur.fetchone()
            if not row:
                return None
            return JobDataRecord(
                job_id=row["job_id"],
                source_name=row["source_name"],
                data=json.loads(row["data"]),
                collected_at=from_ts(row["collected_at"]),
            )
