"""Small key-value cache with per-key expiry, kept in the same SQLite file."""

import json
import os
from datetime import datetime, timedelta

from db.database import connect
from models.job import to_ts

CACHE_TTL_SECONDS: float = float(os.getenv("CACHE_TTL_SECONDS", "3600"))


async def cache_set(key: str, value, now: datetime, ttl: float | None = CACHE_TTL_SECONDS) -> None:
    expires_at = to_ts(now + timedelta(seconds=ttl)) if ttl else None
    async with connect() as db:
        await db.execute(
            """
            INSERT INTO cache (key, value, expires_at) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                value      = excluded.value,
                expires_at = excluded.expires_at
            """,
            (key, json.dumps(value, default=str), expires_at),
        )


async def cache_get(key: str, now: datetime):
    async with connect() as db:
        async with db.execute(
            "SELECT value, expires_at FROM cache WHERE key = ?", (key,)
        ) as cur:
            row = await cur.fetchone()
        if not row:
            return None
        if row["expires_at"] is not None and row["expires_at"] <= to_ts(now):
            await db.execute("DELETE FROM cache WHERE key = ?", (key,))
            return None
        return json.loads(row["value"])
