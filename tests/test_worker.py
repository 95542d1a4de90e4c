import asyncio
import contextlib
from datetime import timedelta

import pytest

from agent.base import CollectorTask, PermanentCollectorError, SkipCollection
from db import queue
from services.orchestrator import JobOrchestrator
from workers.job_worker import WorkerPool

WEBSITE_ONLY = {"primary_url": "https://example.com", "keywords": ["grounding sheets"]}


class FakeCollector(CollectorTask):
    def __init__(self, name, result=None, error=None, delay=0.0):
        self.name = name
        self.result = result if result is not None else {"ok": True}
        self.error = error
        self.delay = delay
        self.calls = []

    async def run(self, payload: dict) -> dict:
        self.calls.append(payload)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
async def make_pool(orchestrator):
    pools = []

    def _make(*collectors, task_timeout=5.0):
        pool = WorkerPool(
            orchestrator,
            {c.name: c for c in collectors},
            concurrency=2,
            poll_interval=0.01,
            task_timeout=task_timeout,
            lease_seconds=300,
        )
        pools.append(pool)
        return pool

    yield _make
    for pool in pools:
        await pool.stop()


async def test_successful_collector_completes_job(orchestrator, make_pool):
    website = FakeCollector("website", result={"title": "Grounding"})
    pool = make_pool(website)
    job_id = await orchestrator.create_job(WEBSITE_ONLY)

    assert await pool.run_once() == 1
    await pool.drain()

    assert website.calls == [{"url": "https://example.com", "keywords": ["grounding sheets"]}]
    job = await orchestrator.get_status(job_id)
    assert job.status == "completed"
    assert (await orchestrator.get_job_data(job_id, "website")).data == {"title": "Grounding"}


async def test_permanent_error_fails_source(orchestrator, make_pool):
    pool = make_pool(FakeCollector("website", error=PermanentCollectorError("Malformed URL")))
    job_id = await orchestrator.create_job(WEBSITE_ONLY)

    await pool.run_once()
    await pool.drain()

    job = await orchestrator.get_status(job_id)
    assert job.status == "failed"
    assert job.source_errors["website"] == "Malformed URL"


async def test_unexpected_exception_is_treated_as_transient(orchestrator, make_pool, clock):
    pool = make_pool(FakeCollector("website", error=RuntimeError("socket closed")))
    job_id = await orchestrator.create_job(WEBSITE_ONLY)

    await pool.run_once()
    await pool.drain()

    job = await orchestrator.get_status(job_id)
    assert job.status == "processing"
    assert job.source_outcomes["website"] == "pending"
    d = await queue.get(job_id, "website")
    assert d.attempt_count == 1
    assert d.visible_at == clock() + timedelta(seconds=30)


async def test_timeout_counts_as_transient_failure(orchestrator, make_pool):
    slow = FakeCollector("website", delay=0.5)
    pool = make_pool(slow, task_timeout=0.05)
    job_id = await orchestrator.create_job(WEBSITE_ONLY)

    await pool.run_once()
    await pool.drain()

    job = await orchestrator.get_status(job_id)
    assert job.source_outcomes["website"] == "pending"
    assert "Timed out" in job.source_errors["website"]
    assert (await queue.get(job_id, "website")).attempt_count == 1


async def test_skip_collection_marks_source_skipped(orchestrator, make_pool):
    pool = make_pool(
        FakeCollector("website"),
        FakeCollector("competitor", error=SkipCollection("no urls")),
    )
    job_id = await orchestrator.create_job({**WEBSITE_ONLY, "competitor_urls": ["https://rival.example"]})

    await pool.run_once()
    await pool.drain()

    job = await orchestrator.get_status(job_id)
    assert job.source_outcomes == {"website": "succeeded", "competitor": "skipped"}
    assert job.status == "completed"


async def test_missing_collector_is_retried_later(orchestrator, make_pool):
    pool = make_pool()
    job_id = await orchestrator.create_job(WEBSITE_ONLY)

    await pool.run_once()
    await pool.drain()

    assert (await queue.get(job_id, "website")).attempt_count == 1


async def test_pool_leases_no_more_than_free_slots(orchestrator, make_pool, clock):
    collectors = [FakeCollector(n, delay=0.05) for n in ("website", "reviews", "competitor")]
    pool = make_pool(*collectors)
    await orchestrator.create_job({
        **WEBSITE_ONLY,
        "marketplace_url": "https://www.amazon.com/dp/B0",
        "competitor_urls": ["https://rival.example"],
    })

    assert await pool.run_once() == 2
    assert pool.busy == 2
    assert await pool.run_once() == 0
    await pool.drain()
    assert await pool.run_once() == 1
    await pool.drain()


async def test_run_loop_wakes_on_trigger(orchestrator, clock):
    website = FakeCollector("website")
    pool = WorkerPool(orchestrator, {"website": website}, poll_interval=60, task_timeout=5)
    loop_task = asyncio.create_task(pool.run())
    await asyncio.sleep(0.05)

    job_id = await orchestrator.create_job(WEBSITE_ONLY)
    pool.trigger()
    for _ in range(100):
        if (await orchestrator.get_status(job_id)).status == "completed":
            break
        await asyncio.sleep(0.02)

    loop_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await loop_task
    await pool.stop()
    assert (await orchestrator.get_status(job_id)).status == "completed"


def test_lease_never_shorter_than_task_timeout():
    pool = WorkerPool(JobOrchestrator(), {}, task_timeout=600, lease_seconds=300)
    assert pool.lease_seconds == 600
