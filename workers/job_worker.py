"""
Background collector workers.

- WorkerPool.run()      polls the task queue every WORKER_POLL_SECONDS (or at once after trigger())
- WorkerPool.run_once() leases up to the number of free slots and starts one runner per task
- execute()             runs one collector under the per-task timeout and reports the outcome

A runner never lets a collector exception escape: every result becomes an
outcome for the orchestrator. If reporting itself fails the task is left
leased, and lease expiry hands it to another runner.
"""

import asyncio
import logging
import os

from agent.base import CollectorTask, TransientCollectorError
from db import queue
from models.job import TaskDescriptor
from services.orchestrator import JobOrchestrator

logger = logging.getLogger(__name__)

WORKER_CONCURRENCY: int = int(os.getenv("WORKER_CONCURRENCY", "4"))
WORKER_POLL_SECONDS: float = float(os.getenv("WORKER_POLL_SECONDS", "3"))
TASK_TIMEOUT_SECONDS: float = float(os.getenv("TASK_TIMEOUT_SECONDS", "120"))
# Must stay above the task timeout or healthy runs get redelivered
LEASE_SECONDS: float = float(os.getenv("LEASE_SECONDS", "300"))


class WorkerPool:
    def __init__(
        self,
        orchestrator: JobOrchestrator,
        collectors: dict[str, CollectorTask],
        concurrency: int = WORKER_CONCURRENCY,
        poll_interval: float = WORKER_POLL_SECONDS,
        task_timeout: float = TASK_TIMEOUT_SECONDS,
        lease_seconds: float = LEASE_SECONDS,
    ):
        self.orchestrator = orchestrator
        self.collectors = collectors
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.task_timeout = task_timeout
        self.lease_seconds = max(lease_seconds, task_timeout)
        self._slots = asyncio.Semaphore(concurrency)
        self._wake = asyncio.Event()
        self._running: set[asyncio.Task] = set()
        self._abandoned: set[asyncio.Task] = set()

    @property
    def busy(self) -> int:
        return len(self._running)

    def trigger(self) -> None:
        """Skip the rest of the current poll wait and lease immediately."""
        self._wake.set()

    async def run(self) -> None:
        logger.info("Worker pool started", extra={"concurrency": self.concurrency})
        while True:
            try:
                await self.run_once()
            except Exception as exc:
                logger.error("worker_loop error", extra={"error": str(exc)}, exc_info=True)

            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()

    async def run_once(self) -> int:
        """Lease what fits into the free slots and start runners. Returns the number started."""
        free = self.concurrency - len(self._running)
        if free <= 0:
            return 0
        tasks = await queue.lease(free, self.orchestrator.clock(), self.lease_seconds)
        for descriptor in tasks:
            t = asyncio.create_task(self._guarded(descriptor))
            self._running.add(t)
            t.add_done_callback(self._running.discard)
        return len(tasks)

    async def drain(self) -> None:
        """Wait for every started runner to finish (tests and shutdown)."""
        while self._running:
            await asyncio.gather(*list(self._running), return_exceptions=True)

    async def stop(self) -> None:
        for t in list(self._running) + list(self._abandoned):
            t.cancel()
        await asyncio.gather(*self._running, *self._abandoned, return_exceptions=True)

    async def _guarded(self, descriptor: TaskDescriptor) -> None:
        async with self._slots:
            await self.execute(descriptor)

    async def execute(self, descriptor: TaskDescriptor) -> None:
        job_id, source = descriptor.job_id, descriptor.source_name
        collector = self.collectors.get(source)
        result, error = None, None

        if collector is None:
            error = TransientCollectorError(f"No collector registered for {source!r}")
        else:
            logger.info(
                "Task started",
                extra={"job_id": job_id, "source": source, "attempt": descriptor.attempt_count + 1},
            )
            result, error = await self._run_with_timeout(collector, descriptor)

        try:
            await self.orchestrator.report_outcome(job_id, source, result=result, error=error)
        except Exception as exc:
            # Lease expiry will redeliver the task
            logger.error(
                "Could not report outcome",
                extra={"job_id": job_id, "source": source, "error": str(exc)},
                exc_info=True,
            )

    async def _run_with_timeout(self, collector: CollectorTask, descriptor: TaskDescriptor):
        """
        Returns (result, error). The collector is not cancelled on timeout; it
        may be blocked in a network call we cannot preempt. It is left to finish
        and whatever it returns is discarded.
        """
        task = asyncio.create_task(collector.run(descriptor.payload))
        done, _ = await asyncio.wait({task}, timeout=self.task_timeout)
        if not done:
            self._abandoned.add(task)
            task.add_done_callback(self._discard_abandoned(descriptor))
            logger.warning(
                "Task timed out after %.0fs",
                self.task_timeout,
                extra={"job_id": descriptor.job_id, "source": descriptor.source_name},
            )
            return None, TransientCollectorError(f"Timed out after {self.task_timeout:.0f}s")

        if task.cancelled():
            return None, TransientCollectorError("Collector was cancelled")
        exc = task.exception()
        if exc is not None:
            if not isinstance(exc, Exception):
                raise exc
            logger.warning(
                "Task failed",
                extra={"job_id": descriptor.job_id, "source": descriptor.source_name,
                       "error": str(exc), "error_type": type(exc).__name__},
            )
            return None, exc
        return task.result(), None

    def _discard_abandoned(self, descriptor: TaskDescriptor):
        def _done(t: asyncio.Task) -> None:
            self._abandoned.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            logger.info(
                "Late result from timed-out task discarded",
                extra={"job_id": descriptor.job_id, "source": descriptor.source_name,
                       "error": str(exc) if exc else None},
            )
        return _done
