from agent.base import TransientCollectorError
from conftest import lease_source
from db import cache, database, queue
from models.job import Job
from services.sweeper import TIMEOUT_REASON, RetrySweeper

WEBSITE_ONLY = {"primary_url": "https://example.com", "keywords": ["grounding sheets"]}


class FakePool:
    def __init__(self):
        self.triggered = 0

    def trigger(self):
        self.triggered += 1


def _sweeper(orchestrator, pool=None):
    return RetrySweeper(orchestrator, pool, job_timeout=1800, pending_grace=60)


async def test_stuck_source_without_lease_is_failed(orchestrator, clock):
    job_id = await orchestrator.create_job(WEBSITE_ONLY)
    await lease_source(clock, "website")
    await orchestrator.report_outcome(job_id, "website", error=TransientCollectorError("503"))

    clock.advance(1801)
    summary = await _sweeper(orchestrator).sweep_stuck_jobs()

    assert summary["timedOut"][job_id] == {"sources": ["website"], "status": "failed"}
    job = await orchestrator.get_status(job_id)
    assert job.status == "failed"
    assert job.source_outcomes["website"] == "failed"
    assert job.source_errors["website"] == TIMEOUT_REASON
    assert (await queue.stats(clock()))["total"] == 0


async def test_source_with_live_lease_is_left_alone(orchestrator, clock):
    job_id = await orchestrator.create_job(WEBSITE_ONLY)

    clock.advance(1700)
    await lease_source(clock, "website", lease_seconds=300)
    clock.advance(101)
    summary = await _sweeper(orchestrator).sweep_stuck_jobs()

    assert summary["timedOut"] == {}
    assert (await orchestrator.get_status(job_id)).status == "processing"


async def test_young_jobs_are_not_swept(orchestrator, clock):
    job_id = await orchestrator.create_job(WEBSITE_ONLY)

    clock.advance(600)
    await _sweeper(orchestrator).sweep_stuck_jobs()

    assert (await orchestrator.get_status(job_id)).status == "processing"


async def test_sweep_keeps_succeeded_sources(orchestrator, clock):
    job_id = await orchestrator.create_job(
        {**WEBSITE_ONLY, "marketplace_url": "https://www.amazon.com/dp/B0"}
    )
    await queue.lease(10, clock(), 300)
    await orchestrator.report_outcome(job_id, "website", result={"ok": True})
    await orchestrator.report_outcome(job_id, "reviews", error=TransientCollectorError("429"))

    clock.advance(1801)
    await _sweeper(orchestrator).sweep_stuck_jobs()

    job = await orchestrator.get_status(job_id)
    assert job.source_outcomes == {"website": "succeeded", "reviews": "failed"}
    assert job.status == "completed"


async def test_pending_job_gets_its_enqueue_resumed(orchestrator, clock):
    job = Job(
        id="half-made",
        status="pending",
        user_inputs={"primary_url": "https://example.com", "keywords": []},
        expected_sources=frozenset({"website"}),
        source_outcomes={"website": "pending"},
        created_at=clock(),
    )
    await database.insert_job(job)

    clock.advance(61)
    summary = await _sweeper(orchestrator).sweep_stuck_jobs()

    assert summary["resumed"] == ["half-made"]
    assert (await orchestrator.get_status("half-made")).status == "processing"
    d = await lease_source(clock, "website")
    assert d.payload == {"url": "https://example.com", "keywords": []}


async def test_trigger_processing_wakes_pool(orchestrator):
    pool = FakePool()

    assert _sweeper(orchestrator, pool).trigger_processing() is True
    assert pool.triggered == 1
    assert _sweeper(orchestrator).trigger_processing() is False


async def test_run_maintenance_records_last_run(orchestrator, clock):
    pool = FakePool()

    summary = await _sweeper(orchestrator, pool).run_maintenance()

    assert summary["triggered"] is True
    last = await cache.cache_get("maintenance:last", clock())
    assert last["resumed"] == []
    assert last["at"].startswith("2026-01-01T12:00:00")
