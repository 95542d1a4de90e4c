"""
Composite health.

Each probe runs concurrently with its own timeout and its own try/except, so a
slow or broken dependency only marks itself unhealthy. The reduction:

    all probes healthy   → healthy    (200)
    some probes healthy  → degraded   (207)
    no probe healthy     → unhealthy  (503)
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable

import aiosqlite

from db import cache, database, queue
from models.errors import DependencyUnavailableError
from models.job import to_ts, utcnow

logger = logging.getLogger(__name__)

HEALTH_PROBE_TIMEOUT: float = float(os.getenv("HEALTH_PROBE_TIMEOUT", "5"))
REQUIRED_ENV_VARS: list[str] = [
    v.strip() for v in os.getenv("REQUIRED_ENV_VARS", "").split(",") if v.strip()
]

HEALTHY = "healthy"
DEGRADED = "degraded"
UNHEALTHY = "unhealthy"

_STATUS_CODES = {HEALTHY: 200, DEGRADED: 207, UNHEALTHY: 503}

Probe = Callable[[], Awaitable[dict]]


@dataclass
class ProbeResult:
    status: str
    message: str
    response_time_ms: int = 0
    details: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "status":       self.status,
            "message":      self.message,
            "responseTime": self.response_time_ms,
            **self.details,
        }


@dataclass
class CompositeHealth:
    status: str
    checks: dict
    timestamp: str

    @property
    def healthy(self) -> int:
        return sum(1 for c in self.checks.values() if c.status == HEALTHY)

    @property
    def status_code(self) -> int:
        return _STATUS_CODES[self.status]

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "status":    self.status,
            "checks":    {name: c.to_dict() for name, c in self.checks.items()},
            "summary":   {"healthy": self.healthy, "total": len(self.checks)},
        }


def reduce_status(results: list[ProbeResult]) -> str:
    healthy = sum(1 for r in results if r.status == HEALTHY)
    if results and healthy == len(results):
        return HEALTHY
    if healthy > 0:
        return DEGRADED
    return UNHEALTHY


class HealthAggregator:
    def __init__(
        self,
        probe_timeout: float = HEALTH_PROBE_TIMEOUT,
        required_env: list[str] | None = None,
        clock: Callable = utcnow,
        probes: dict[str, Probe] | None = None,
    ):
        self.probe_timeout = probe_timeout
        self.required_env = REQUIRED_ENV_VARS if required_env is None else required_env
        self.clock = clock
        self.probes: dict[str, Probe] = probes if probes is not None else {
            "database":    self._probe_database,
            "cache":       self._probe_cache,
            "queue":       self._probe_queue,
            "environment": self._probe_environment,
        }

    async def check(self) -> CompositeHealth:
        names = list(self.probes)
        results = await asyncio.gather(*(self._run(n, self.probes[n]) for n in names))
        checks = dict(zip(names, results))
        health = CompositeHealth(
            status=reduce_status(results),
            checks=checks,
            timestamp=to_ts(self.clock()),
        )
        if health.status != HEALTHY:
            logger.warning(
                "Health %s",
                health.status,
                extra={"failing": [n for n, r in checks.items() if r.status != HEALTHY]},
            )
        return health

    async def _run(self, name: str, probe: Probe) -> ProbeResult:
        start = time.monotonic()
        try:
            details = await asyncio.wait_for(probe(), timeout=self.probe_timeout)
        except asyncio.TimeoutError:
            return ProbeResult(UNHEALTHY, f"{name} probe timed out after {self.probe_timeout:.0f}s")
        except DependencyUnavailableError as exc:
            return ProbeResult(UNHEALTHY, f"{name} error: {exc}", details=dict(exc.details))
        except Exception as exc:
            return ProbeResult(UNHEALTHY, f"{name} error: {exc}")
        elapsed = int((time.monotonic() - start) * 1000)
        details = dict(details or {})
        message = details.pop("message", f"{name} OK")
        return ProbeResult(HEALTHY, message, elapsed, details)

    # ── Probes ────────────────────────────────────────────────────────────────

    async def _probe_database(self) -> dict:
        try:
            await database.ping()
        except aiosqlite.Error as exc:
            raise DependencyUnavailableError(str(exc)) from exc
        return {"message": "Database connection successful"}

    async def _probe_cache(self) -> dict:
        now = self.clock()
        token = to_ts(now)
        try:
            await cache.cache_set("health:ping", token, now, ttl=60)
            echoed = await cache.cache_get("health:ping", now)
        except aiosqlite.Error as exc:
            raise DependencyUnavailableError(str(exc)) from exc
        if echoed != token:
            raise DependencyUnavailableError("Cache returned a stale value")
        return {"message": "Cache round trip successful"}

    async def _probe_queue(self) -> dict:
        try:
            stats = await queue.stats(self.clock())
        except aiosqlite.Error as exc:
            raise DependencyUnavailableError(str(exc)) from exc
        return {"message": "Queue system operational", "stats": stats}

    async def _probe_environment(self) -> dict:
        missing = [v for v in self.required_env if not os.getenv(v)]
        if missing:
            raise DependencyUnavailableError(
                f"Missing environment variables: {', '.join(missing)}",
                details={"missing": missing},
            )
        return {"message": "All required environment variables present", "missing": []}
