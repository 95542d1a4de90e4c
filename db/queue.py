"""
Durable at-least-once task queue on top of the task_queue table.

A descriptor is visible once visible_at <= now. Leasing pushes visible_at out
by the lease duration, so a worker that dies mid-task simply lets the lease
expire and the descriptor becomes leasable again. The only way a descriptor
leaves the table is ack().

    enqueue()   insert with visible_at = now (no-op if the job/source exists)
    lease()     claim up to N visible descriptors
    ack()       delete for good
    requeue()   release with a delay (backoff)
    stats()     counts derived from the rows, never stored
"""

import json
import logging
import uuid
from datetime import datetime, timedelta

import aiosqlite

from db.database import transaction, using
from models.job import TaskDescriptor, from_ts, to_ts

logger = logging.getLogger(__name__)


def _row_to_descriptor(row) -> TaskDescriptor:
    return TaskDescriptor(
        id=row["id"],
        job_id=row["job_id"],
        source_name=row["source_name"],
        payload=json.loads(row["payload"]),
        attempt_count=row["attempt_count"],
        max_attempts=row["max_attempts"],
        visible_at=from_ts(row["visible_at"]),
        leased=bool(row["leased"]),
        last_error=row["last_error"],
        created_at=from_ts(row["created_at"]),
    )


async def enqueue(
    descriptor: TaskDescriptor,
    now: datetime,
    db: aiosqlite.Connection | None = None,
) -> bool:
    """Returns False when the (job, source) pair was already queued."""
    descriptor.id = descriptor.id or uuid.uuid4().hex
    descriptor.visible_at = now
    descriptor.created_at = now
    async with using(db) as conn:
        cur = await conn.execute(
            """
            INSERT INTO task_queue (id, job_id, source_name, payload, attempt_count,
                                    max_attempts, visible_at, leased, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?)
            ON CONFLICT(job_id, source_name) DO NOTHING
            """,
            (
                descriptor.id,
                descriptor.job_id,
                descriptor.source_name,
                json.dumps(descriptor.payload),
                descriptor.attempt_count,
                descriptor.max_attempts,
                to_ts(now),
                to_ts(now),
            ),
        )
        inserted = cur.rowcount == 1
    if inserted:
        logger.debug(
            "Task enqueued",
            extra={"job_id": descriptor.job_id, "source": descriptor.source_name},
        )
    return inserted


async def lease(max_count: int, now: datetime, lease_seconds: float) -> list[TaskDescriptor]:
    """Claim up to *max_count* visible descriptors. attempt_count is left alone."""
    if max_count <= 0:
        return []
    until = now + timedelta(seconds=lease_seconds)
    async with transaction() as db:
        async with db.execute(
            """
            SELECT * FROM task_queue
             WHERE visible_at <= ?
             ORDER BY visible_at ASC, created_at ASC
             LIMIT ?
            """,
            (to_ts(now), max_count),
        ) as cur:
            rows = await cur.fetchall()
        leased = []
        for row in rows:
            await db.execute(
                "UPDATE task_queue SET visible_at = ?, leased = 1 WHERE id = ?",
                (to_ts(until), row["id"]),
            )
            d = _row_to_descriptor(row)
            d.visible_at = until
            d.leased = True
            leased.append(d)
    return leased


async def ack(descriptor_id: str, db: aiosqlite.Connection | None = None) -> None:
    async with using(db) as conn:
        await conn.execute("DELETE FROM task_queue WHERE id = ?", (descriptor_id,))


async def requeue(
    descriptor_id: str,
    delay: float,
    now: datetime,
    db: aiosqlite.Connection | None = None,
) -> None:
    async with using(db) as conn:
        await conn.execute(
            "UPDATE task_queue SET visible_at = ?, leased = 0 WHERE id = ?",
            (to_ts(now + timedelta(seconds=delay)), descriptor_id),
        )


async def record_failure(
    descriptor_id: str,
    attempt_count: int,
    error: str,
    db: aiosqlite.Connection | None = None,
) -> None:
    async with using(db) as conn:
        await conn.execute(
            "UPDATE task_queue SET attempt_count = ?, last_error = ? WHERE id = ?",
            (attempt_count, error[:512], descriptor_id),
        )


async def get(
    job_id: str, source_name: str, db: aiosqlite.Connection | None = None
) -> TaskDescriptor | None:
    async with using(db) as conn:
        async with conn.execute(
            "SELECT * FROM task_queue WHERE job_id = ? AND source_name = ?",
            (job_id, source_name),
        ) as cur:
            row = await cur.fetchone()
            return _row_to_descriptor(row) if row else None


async def has_inflight_lease(
    job_id: str, source_name: str, now: datetime, db: aiosqlite.Connection | None = None
) -> bool:
    d = await get(job_id, source_name, db=db)
    return bool(d and d.leased and d.visible_at and d.visible_at > now)


async def stats(now: datetime) -> dict:
    """
    {pending, leased, ready, total}:
        leased   claimed and lease not yet expired
        pending  everything else still in the table (ready or backing off)
        ready    leasable right now
    """
    async with using(None) as db:
        async with db.execute(
            """
            SELECT
                COUNT(*) AS total,
                COALESCE(SUM(CASE WHEN leased = 1 AND visible_at > ? THEN 1 ELSE 0 END), 0) AS leased,
                COALESCE(SUM(CASE WHEN visible_at <= ? THEN 1 ELSE 0 END), 0) AS ready
            FROM task_queue
            """,
            (to_ts(now), to_ts(now)),
        ) as cur:
            row = await cur.fetchone()
    total, leased_count, ready = row["total"], row["leased"], row["ready"]
    return {
        "pending": total - leased_count,
        "leased":  leased_count,
        "ready":   ready,
        "total":   total,
    }
