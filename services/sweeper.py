"""
Maintenance sweep. A lease-based queue guarantees redelivery but not an upper
bound on job latency; this puts the bound back.

    sweep_stuck_jobs()    fail sources of over-age jobs that nobody is working on,
                          and finish the enqueue of jobs stuck in 'pending'
    trigger_processing()  wake the worker pool for an immediate lease cycle
"""

import logging
import os
from datetime import timedelta

from db import cache, database, queue
from models.job import PENDING, PROCESSING, to_ts
from services.orchestrator import JobOrchestrator

logger = logging.getLogger(__name__)

JOB_TIMEOUT_SECONDS: float = float(os.getenv("JOB_TIMEOUT_SECONDS", "1800"))
PENDING_GRACE_SECONDS: float = float(os.getenv("PENDING_GRACE_SECONDS", "60"))

TIMEOUT_REASON = "Timed out waiting for collector"


class RetrySweeper:
    def __init__(
        self,
        orchestrator: JobOrchestrator,
        pool=None,
        job_timeout: float = JOB_TIMEOUT_SECONDS,
        pending_grace: float = PENDING_GRACE_SECONDS,
    ):
        self.orchestrator = orchestrator
        self.pool = pool
        self.job_timeout = job_timeout
        self.pending_grace = pending_grace

    async def sweep_stuck_jobs(self) -> dict:
        now = self.orchestrator.clock()
        resumed, timed_out = [], {}

        for job in await database.list_jobs(PENDING, now - timedelta(seconds=self.pending_grace)):
            if await self.orchestrator.resume_enqueue(job.id):
                resumed.append(job.id)
                logger.warning("Resumed enqueue for pending job", extra={"job_id": job.id})

        for job in await database.list_jobs(PROCESSING, now - timedelta(seconds=self.job_timeout)):
            stuck = []
            for source in job.pending_sources():
                if not await queue.has_inflight_lease(job.id, source, now):
                    stuck.append(source)
            if job.pending_sources() and not stuck:
                continue
            # An empty list still re-runs the completion check
            updated = await self.orchestrator.force_fail_sources(job.id, stuck, TIMEOUT_REASON)
            timed_out[job.id] = {"sources": stuck, "status": updated.status}

        summary = {"resumed": resumed, "timedOut": timed_out}
        logger.info(
            "Sweep finished",
            extra={"resumed": len(resumed), "timed_out": len(timed_out)},
        )
        return summary

    def trigger_processing(self) -> bool:
        if self.pool is None:
            logger.info("No worker pool attached; nothing to trigger")
            return False
        self.pool.trigger()
        return True

    async def run_maintenance(self) -> dict:
        summary = await self.sweep_stuck_jobs()
        summary["triggered"] = self.trigger_processing()
        now = self.orchestrator.clock()
        await cache.cache_set("maintenance:last", {"at": to_ts(now), **summary}, now, ttl=None)
        return summary
