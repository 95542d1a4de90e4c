"""
Job orchestration.

- create_job()       validate, persist (pending), enqueue one task per source, flip to processing
- report_outcome()   apply one collector result/failure and re-decide the job's status
- get_status()       read-only snapshot
- force_fail_sources() / resume_enqueue()   repair paths used by the sweeper

Every outcome update for a job runs under that job's asyncio.Lock and inside
one BEGIN IMMEDIATE transaction, so job row, job data and queue row change
together or not at all.
"""

import asyncio
import logging
import os
import uuid
import weakref
from typing import Callable

import aiosqlite

from agent.base import CollectorError, SkipCollection
from agent.parser import normalise_keywords
from db import cache, database, queue
from models.errors import NotFoundError, ValidationError
from models.job import (
    COMPLETED,
    FAILED,
    OUTCOME_FAILED,
    OUTCOME_PENDING,
    OUTCOME_SKIPPED,
    OUTCOME_SUCCEEDED,
    PENDING,
    PROCESSING,
    TERMINAL_OUTCOMES,
    Job,
    JobDataRecord,
    TaskDescriptor,
    can_transition,
    expected_sources_for,
    payload_for,
    utcnow,
)

logger = logging.getLogger(__name__)

MAX_ATTEMPTS: int = int(os.getenv("MAX_ATTEMPTS", "3"))
BACKOFF_BASE_SECONDS: float = float(os.getenv("BACKOFF_BASE_SECONDS", "30"))
BACKOFF_CAP_SECONDS: float = float(os.getenv("BACKOFF_CAP_SECONDS", "900"))
# "1" (any success completes the job), any other integer, or "all"
MIN_SUCCESSFUL_SOURCES: str = os.getenv("MIN_SUCCESSFUL_SOURCES", "1")
ENQUEUE_RETRIES: int = int(os.getenv("ENQUEUE_RETRIES", "3"))


def parse_threshold(value) -> int | None:
    """None means every non-skipped source must succeed."""
    if value is None or str(value).strip().lower() == "all":
        return None
    return max(1, int(value))


def normalise_inputs(raw: dict) -> dict:
    """Canonical, immutable copy of the request parameters."""
    competitor_urls = raw.get("competitor_urls") or []
    if isinstance(competitor_urls, str):
        competitor_urls = competitor_urls.split(",")
    return {
        "primary_url":     (raw.get("primary_url") or "").strip(),
        "marketplace_url": (raw.get("marketplace_url") or "").strip() or None,
        "keywords":        normalise_keywords(raw.get("keywords")),
        "competitor_urls": [u.strip() for u in competitor_urls if u and u.strip()],
        "include_social":  bool(raw.get("include_social")),
    }


class JobOrchestrator:
    def __init__(
        self,
        max_attempts: int = MAX_ATTEMPTS,
        backoff_base: float = BACKOFF_BASE_SECONDS,
        backoff_cap: float = BACKOFF_CAP_SECONDS,
        min_successful_sources=MIN_SUCCESSFUL_SOURCES,
        enqueue_retries: int = ENQUEUE_RETRIES,
        clock: Callable = utcnow,
    ):
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.min_successful = parse_threshold(min_successful_sources)
        self.enqueue_retries = enqueue_retries
        self.clock = clock
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, job_id: str) -> asyncio.Lock:
        lock = self._locks.get(job_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[job_id] = lock
        return lock

    def backoff_delay(self, attempt_count: int) -> float:
        """base, 2*base, 4*base, ... capped."""
        return min(self.backoff_base * (2 ** max(attempt_count - 1, 0)), self.backoff_cap)

    # ── Create ────────────────────────────────────────────────────────────────

    async def create_job(self, raw_inputs: dict) -> str:
        inputs = normalise_inputs(raw_inputs or {})
        if not inputs["primary_url"]:
            raise ValidationError("primaryUrl is required")

        now = self.clock()
        expected = expected_sources_for(inputs)
        job = Job(
            id=uuid.uuid4().hex,
            status=PENDING,
            user_inputs=inputs,
            expected_sources=expected,
            source_outcomes={s: OUTCOME_PENDING for s in sorted(expected)},
            created_at=now,
            updated_at=now,
        )
        await database.insert_job(job)
        logger.info(
            "Job created",
            extra={"job_id": job.id, "expected_sources": sorted(expected)},
        )

        for attempt in range(1, self.enqueue_retries + 1):
            try:
                await self.resume_enqueue(job.id)
                break
            except aiosqlite.Error as exc:
                logger.warning(
                    "Enqueue failed on attempt %d/%d",
                    attempt, self.enqueue_retries,
                    extra={"job_id": job.id, "error": str(exc)},
                )
                if attempt < self.enqueue_retries:
                    await asyncio.sleep(0.1 * attempt)
        else:
            # Job stays pending; the sweeper resumes the enqueue later
            logger.error("Enqueue gave up; left for sweeper", extra={"job_id": job.id})

        return job.id

    async def resume_enqueue(self, job_id: str) -> bool:
        """
        Enqueue every still-pending source of a job in 'pending' and flip it to
        'processing'. Sources already queued are left as they are.
        Returns False when the job had already moved on.
        """
        async with self._lock_for(job_id):
            async with database.transaction() as db:
                job = await database.get_job(job_id, db)
                if job is None:
                    raise NotFoundError(f"Job {job_id} not found")
                if job.status != PENDING:
                    return False

                now = self.clock()
                added = 0
                for source in job.pending_sources():
                    descriptor = TaskDescriptor(
                        job_id=job.id,
                        source_name=source,
                        payload=payload_for(source, job.user_inputs),
                        max_attempts=self.max_attempts,
                    )
                    if await queue.enqueue(descriptor, now, db):
                        added += 1

                self._transition(job, PROCESSING, now)
                # Outcomes reported while pending may already settle the job
                self._decide(job, now)
                await database.update_job(job, db)

        logger.info(
            "Job processing",
            extra={"job_id": job_id, "enqueued": added, "status": job.status},
        )
        if job.is_terminal:
            await self._cache_terminal(job)
        return True

    # ── Outcomes ──────────────────────────────────────────────────────────────

    async def report_outcome(
        self,
        job_id: str,
        source_name: str,
        result: dict | None = None,
        error: BaseException | None = None,
    ) -> Job:
        """
        Apply one collector outcome. *error* is None for success, a
        SkipCollection for a skipped source, or any other exception for a
        failure (PermanentCollectorError consumes all remaining attempts).
        Reports for a source that is already terminal change nothing.
        """
        async with self._lock_for(job_id):
            async with database.transaction() as db:
                job = await database.get_job(job_id, db)
                if job is None:
                    raise NotFoundError(f"Job {job_id} not found")
                if source_name not in job.expected_sources:
                    raise ValidationError(f"Source {source_name!r} is not expected for job {job_id}")

                current = job.source_outcomes.get(source_name, OUTCOME_PENDING)
                if current in TERMINAL_OUTCOMES:
                    logger.info(
                        "Duplicate outcome ignored",
                        extra={"job_id": job_id, "source": source_name, "outcome": current},
                    )
                    return job

                now = self.clock()
                descriptor = await queue.get(job_id, source_name, db)

                if error is None:
                    outcome = await self._apply_success(job, source_name, result, descriptor, now, db)
                elif isinstance(error, SkipCollection):
                    outcome = OUTCOME_SKIPPED
                    if descriptor:
                        await queue.ack(descriptor.id, db)
                else:
                    outcome = await self._apply_failure(job, source_name, error, descriptor, now, db)
                    if outcome is None:
                        return job

                job.source_outcomes[source_name] = outcome
                job.updated_at = now
                self._decide(job, now)
                await database.update_job(job, db)

        logger.info(
            "Outcome applied",
            extra={"job_id": job_id, "source": source_name, "outcome": outcome, "status": job.status},
        )
        if job.is_terminal:
            await self._cache_terminal(job)
        return job

    async def _apply_success(self, job, source_name, result, descriptor, now, db) -> str:
        await database.save_job_data(
            JobDataRecord(job.id, source_name, result if result is not None else {}, now), db
        )
        job.source_errors.pop(source_name, None)
        if descriptor:
            await queue.ack(descriptor.id, db)
        return OUTCOME_SUCCEEDED

    async def _apply_failure(self, job, source_name, error, descriptor, now, db) -> str | None:
        message = (str(error) or error.__class__.__name__)[:512]
        permanent = isinstance(error, CollectorError) and error.kind == "permanent"

        if descriptor is None:
            job.source_errors[source_name] = message
            if job.status == PENDING and not permanent and self.max_attempts > 1:
                # Enqueue never reached this source; queue its retry now
                return await self._enqueue_retry(job, source_name, message, now, db)
            return OUTCOME_FAILED

        if not descriptor.leased:
            # Already requeued for this attempt; a second report must not count twice
            logger.info(
                "Failure report for unleased task ignored",
                extra={"job_id": job.id, "source": source_name},
            )
            return None

        job.source_errors[source_name] = message
        attempts = descriptor.max_attempts if permanent else min(
            descriptor.attempt_count + 1, descriptor.max_attempts
        )
        if attempts >= descriptor.max_attempts:
            await queue.ack(descriptor.id, db)
            logger.warning(
                "Source failed permanently",
                extra={"job_id": job.id, "source": source_name, "attempts": attempts,
                       "permanent": permanent, "error": message},
            )
            return OUTCOME_FAILED

        delay = self.backoff_delay(attempts)
        await queue.record_failure(descriptor.id, attempts, message, db)
        await queue.requeue(descriptor.id, delay, now, db)
        logger.warning(
            "Source failed; retrying in %.0fs",
            delay,
            extra={"job_id": job.id, "source": source_name, "attempts": attempts, "error": message},
        )
        return OUTCOME_PENDING

    async def _enqueue_retry(self, job, source_name, message, now, db) -> str:
        descriptor = TaskDescriptor(
            job_id=job.id,
            source_name=source_name,
            payload=payload_for(source_name, job.user_inputs),
            max_attempts=self.max_attempts,
            attempt_count=1,
        )
        delay = self.backoff_delay(1)
        await queue.enqueue(descriptor, now, db)
        await queue.record_failure(descriptor.id, 1, message, db)
        await queue.requeue(descriptor.id, delay, now, db)
        logger.warning(
            "Source failed before enqueue; retrying in %.0fs",
            delay,
            extra={"job_id": job.id, "source": source_name, "error": message},
        )
        return OUTCOME_PENDING

    async def force_fail_sources(self, job_id: str, sources: list[str], reason: str) -> Job:
        """Mark still-pending *sources* failed, drop their tasks and re-decide the job."""
        async with self._lock_for(job_id):
            async with database.transaction() as db:
                job = await database.get_job(job_id, db)
                if job is None:
                    raise NotFoundError(f"Job {job_id} not found")
                now = self.clock()
                for source in sources:
                    if job.source_outcomes.get(source, OUTCOME_PENDING) != OUTCOME_PENDING:
                        continue
                    job.source_outcomes[source] = OUTCOME_FAILED
                    job.source_errors[source] = reason
                    descriptor = await queue.get(job_id, source, db)
                    if descriptor:
                        await queue.ack(descriptor.id, db)
                job.updated_at = now
                self._decide(job, now)
                await database.update_job(job, db)

        logger.warning(
            "Sources force-failed",
            extra={"job_id": job_id, "sources": sources, "reason": reason, "status": job.status},
        )
        if job.is_terminal:
            await self._cache_terminal(job)
        return job

    # ── Status ────────────────────────────────────────────────────────────────

    def _transition(self, job: Job, new_status: str, now) -> None:
        if not can_transition(job.status, new_status):
            raise RuntimeError(f"Illegal job transition {job.status} -> {new_status}")
        job.status = new_status
        job.updated_at = now
        if new_status in (COMPLETED, FAILED):
            job.completed_at = now

    def _decide(self, job: Job, now) -> None:
        """Move a processing job to completed/failed once every source is terminal."""
        if job.status != PROCESSING or job.pending_sources():
            return

        succeeded = job.sources_with(OUTCOME_SUCCEEDED)
        failed = job.sources_with(OUTCOME_FAILED)
        countable = len(job.expected_sources) - len(job.sources_with(OUTCOME_SKIPPED))
        needed = countable if self.min_successful is None else min(self.min_successful, countable)
        needed = max(needed, 1)

        if len(succeeded) >= needed:
            self._transition(job, COMPLETED, now)
            job.failure_reason = None
        else:
            self._transition(job, FAILED, now)
            job.failure_reason = (
                f"Sources failed: {', '.join(failed)}" if failed else "No source produced data"
            )
        logger.info(
            "Job finished",
            extra={"job_id": job.id, "status": job.status,
                   "succeeded": succeeded, "failed": failed, "needed": needed},
        )

    async def get_status(self, job_id: str) -> Job:
        job = await database.get_job(job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        return job

    async def status_document(self, job_id: str) -> dict:
        """Status as served over HTTP. Finished jobs never change, so they come from the cache."""
        cached = await self._cached(job_id)
        if cached is not None:
            return cached
        job = await self.get_status(job_id)
        doc = job.to_status_dict()
        if job.is_terminal:
            await self._cache_terminal(job)
        return doc

    async def get_job_data(self, job_id: str, source_name: str) -> JobDataRecord:
        record = await database.get_job_data(job_id, source_name)
        if record is None:
            raise NotFoundError(f"No {source_name} data for job {job_id}")
        return record

    # ── Cache ─────────────────────────────────────────────────────────────────

    async def _cached(self, job_id: str) -> dict | None:
        try:
            return await cache.cache_get(f"job:{job_id}", self.clock())
        except aiosqlite.Error as exc:
            logger.warning("Status cache read failed", extra={"job_id": job_id, "error": str(exc)})
            return None

    async def _cache_terminal(self, job: Job) -> None:
        # The store already holds the truth; a cache miss only costs a read
        try:
            await cache.cache_set(f"job:{job.id}", job.to_status_dict(), self.clock())
        except aiosqlite.Error as exc:
            logger.warning("Status cache write failed", extra={"job_id": job.id, "error": str(exc)})
