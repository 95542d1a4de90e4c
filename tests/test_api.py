import httpx
import pytest

import main
from conftest import lease_source
from services.health import HealthAggregator
from services.sweeper import RetrySweeper


@pytest.fixture
async def client(orchestrator, clock):
    main.app.state.orchestrator = orchestrator
    main.app.state.pool = None
    main.app.state.sweeper = RetrySweeper(orchestrator, None, job_timeout=1800, pending_grace=60)
    main.app.state.health = HealthAggregator(required_env=[], clock=clock)
    transport = httpx.ASGITransport(app=main.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


async def _queue_total(client) -> int:
    return (await client.get("/queue/stats")).json()["total"]


async def test_empty_body_is_400_and_creates_nothing(client):
    before = (await client.get("/queue/stats")).json()

    resp = await client.post("/jobs", content=b"")

    assert resp.status_code == 400
    assert (await client.get("/queue/stats")).json() == before
    from db import database
    assert await database.count_jobs() == 0


@pytest.mark.parametrize("body", [b"{}", b'{"keywords": ["x"]}', b"not json", b"[1, 2]"])
async def test_bad_bodies_are_400(client, body):
    resp = await client.post("/jobs", content=body, headers={"Content-Type": "application/json"})

    assert resp.status_code == 400
    assert await _queue_total(client) == 0


async def test_create_job_and_read_status(client):
    resp = await client.post(
        "/jobs", json={"primaryUrl": "https://example.com", "keywords": ["grounding sheets"]}
    )

    assert resp.status_code == 201
    job_id = resp.json()["jobId"]
    assert resp.json()["status"] == "processing"

    status = (await client.get(f"/jobs/{job_id}/status")).json()
    assert status["id"] == job_id
    assert status["status"] == "processing"
    assert status["progress"] == 0
    assert status["sources"] == {"website": "pending"}
    assert "completedAt" not in status
    assert await _queue_total(client) == 1


async def test_legacy_form_fields_are_accepted(client, orchestrator):
    resp = await client.post("/jobs", json={
        "primaryProductUrl": "https://example.com",
        "amazonProductUrl": "https://www.amazon.com/dp/B0",
        "targetKeywords": "grounding sheets, earthing mats",
    })

    assert resp.status_code == 201
    job = await orchestrator.get_status(resp.json()["jobId"])
    assert job.expected_sources == {"website", "reviews"}
    assert job.user_inputs["keywords"] == ["grounding sheets", "earthing mats"]


async def test_unknown_job_is_404(client):
    assert (await client.get("/jobs/unknown/status")).status_code == 404
    assert (await client.get("/jobs/unknown/data/website")).status_code == 404
    resp = await client.post("/internal/outcomes", json={"jobId": "unknown", "sourceName": "website", "result": {}})
    assert resp.status_code == 404


async def test_outcome_callback_completes_job(client, clock):
    job_id = (await client.post("/jobs", json={"primaryUrl": "https://example.com"})).json()["jobId"]
    await lease_source(clock, "website")

    resp = await client.post(
        "/internal/outcomes",
        json={"jobId": job_id, "sourceName": "website", "result": {"title": "Home"}},
    )

    assert resp.status_code == 200
    assert resp.json()["status"] == "completed"
    status = (await client.get(f"/jobs/{job_id}/status")).json()
    assert status["progress"] == 100
    assert "completedAt" in status
    data = (await client.get(f"/jobs/{job_id}/data/website")).json()
    assert data["data"] == {"title": "Home"}
    assert data["sourceName"] == "website"


async def test_outcome_callback_permanent_error(client, clock):
    job_id = (await client.post("/jobs", json={
        "primaryUrl": "https://example.com",
        "marketplaceUrl": "https://www.amazon.com/dp/B0",
    })).json()["jobId"]
    await lease_source(clock, "reviews")

    resp = await client.post("/internal/outcomes", json={
        "jobId": job_id, "sourceName": "reviews", "error": "HTTP 404", "errorKind": "permanent",
    })

    assert resp.json()["sources"] == {"reviews": "failed", "website": "pending"}


async def test_outcome_for_unexpected_source_is_400(client):
    job_id = (await client.post("/jobs", json={"primaryUrl": "https://example.com"})).json()["jobId"]

    resp = await client.post("/internal/outcomes", json={"jobId": job_id, "sourceName": "social", "result": {}})

    assert resp.status_code == 400


async def test_health_endpoint(client):
    resp = await client.get("/health")

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "healthy"
    assert body["summary"] == {"healthy": 4, "total": 4}


async def test_health_endpoint_degraded_status_code(client):
    async def down():
        raise RuntimeError("down")

    async def up():
        return {}

    main.app.state.health = HealthAggregator(probes={"cache": down, "database": up})

    resp = await client.get("/health")

    assert resp.status_code == 207
    assert resp.json()["status"] == "degraded"


async def test_maintenance_sweeps_stuck_jobs(client, clock):
    job_id = (await client.post("/jobs", json={"primaryUrl": "https://example.com"})).json()["jobId"]

    clock.advance(1801)
    resp = await client.post("/health")

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert job_id in body["summary"]["timedOut"]
    assert (await client.get(f"/jobs/{job_id}/status")).json()["status"] == "failed"


async def test_maintenance_failure_is_500(client):
    class Broken:
        async def run_maintenance(self):
            raise RuntimeError("store offline")

    main.app.state.sweeper = Broken()

    resp = await client.post("/health")

    assert resp.status_code == 500
    assert resp.json()["details"] == "store offline"
    assert "timestamp" in resp.json()
