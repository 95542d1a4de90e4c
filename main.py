"""
Persona research job engine: main entry point.

Starts:
    • Structured JSON logging
    • SQLite DB init (jobs, job data, task queue, cache)
    • Collector worker pool (background asyncio task)
    • FastAPI HTTP server (jobs, outcomes callback, health, maintenance)
"""

import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from typing import Literal

import uvicorn
from dotenv import load_dotenv

load_dotenv()  # must run before any module-level os.getenv() calls

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from agent.base import PermanentCollectorError, SkipCollection, TransientCollectorError, build_collectors
from db import database, queue
from models.errors import NotFoundError, ValidationError
from models.job import ALL_SOURCES, to_ts
from services.health import HealthAggregator
from services.orchestrator import JobOrchestrator
from services.sweeper import RetrySweeper
from workers.job_worker import WorkerPool

START_WORKERS: bool = os.getenv("START_WORKERS", "true").lower() == "true"


# ── Structured JSON logging ────────────────────────────────────────────────────

class _JSONFormatter(logging.Formatter):
    """One JSON object per log line, machine-readable and grep-friendly."""

    _SKIP = frozenset({
        "name", "msg", "args", "levelname", "levelno", "pathname", "filename",
        "module", "exc_info", "exc_text", "stack_info", "lineno", "funcName",
        "created", "msecs", "relativeCreated", "thread", "threadName",
        "processName", "process", "message", "taskName",
    })

    def format(self, record: logging.LogRecord) -> str:
        record.message = record.getMessage()
        out: dict = {
            "ts":     self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level":  record.levelname,
            "logger": record.name,
            "msg":    record.message,
        }
        if record.exc_info:
            out["exc"] = self.formatException(record.exc_info)
        # Bubble up any extra= fields passed by callers
        for k, v in record.__dict__.items():
            if k not in self._SKIP:
                out[k] = v
        return json.dumps(out, default=str)


def setup_logging(level: str = "INFO") -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(_JSONFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logging.getLogger(name).handlers = []
        logging.getLogger(name).propagate = True


setup_logging(os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)


# ── Lifespan ───────────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    await database.init_db()
    logger.info("Database ready", extra={"db_path": database.DB_PATH})

    orchestrator = JobOrchestrator()
    pool = None
    worker_task = None
    if START_WORKERS:
        pool = WorkerPool(orchestrator, build_collectors())
        worker_task = asyncio.create_task(pool.run())

    app.state.orchestrator = orchestrator
    app.state.pool = pool
    app.state.sweeper = RetrySweeper(orchestrator, pool)
    app.state.health = HealthAggregator(clock=orchestrator.clock)

    yield

    logger.info("Shutting down")
    if worker_task:
        worker_task.cancel()
        await pool.stop()


# ── FastAPI app ────────────────────────────────────────────────────────────────

app = FastAPI(title="Persona Research Job Engine", version="0.1.0", lifespan=lifespan)


class CreateJobRequest(BaseModel):
    """New field names plus the ones the original web form posts."""

    model_config = ConfigDict(populate_by_name=True)

    primary_url: str | None = Field(
        None, validation_alias=AliasChoices("primaryUrl", "primaryProductUrl", "primary_url")
    )
    marketplace_url: str | None = Field(
        None, validation_alias=AliasChoices("marketplaceUrl", "amazonProductUrl", "marketplace_url")
    )
    keywords: list[str] = Field(
        default_factory=list, validation_alias=AliasChoices("keywords", "targetKeywords")
    )
    competitor_urls: list[str] = Field(
        default_factory=list, validation_alias=AliasChoices("competitorUrls", "competitor_urls")
    )
    include_social: bool = Field(
        False, validation_alias=AliasChoices("includeSocial", "include_social")
    )

    @field_validator("keywords", "competitor_urls", mode="before")
    @classmethod
    def _split_commas(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            return [p.strip() for p in v.split(",") if p.strip()]
        return v


class OutcomeReport(BaseModel):
    job_id: str = Field(validation_alias=AliasChoices("jobId", "job_id"))
    source_name: str = Field(validation_alias=AliasChoices("sourceName", "source_name"))
    result: dict | None = None
    error: str | None = None
    error_kind: Literal["transient", "permanent", "skipped"] = Field(
        "transient", validation_alias=AliasChoices("errorKind", "error_kind")
    )


@app.post("/jobs", status_code=201)
async def api_create_job(request: Request):
    raw = await request.body()
    try:
        data = json.loads(raw) if raw.strip() else {}
        if not isinstance(data, dict):
            raise ValueError("body must be a JSON object")
        req = CreateJobRequest.model_validate(data)
    except ValueError as exc:  # JSON and pydantic errors are both ValueErrors
        raise HTTPException(status_code=400, detail=f"Invalid request body: {exc}")

    orchestrator: JobOrchestrator = request.app.state.orchestrator
    try:
        job_id = await orchestrator.create_job(req.model_dump())
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    if request.app.state.pool:
        request.app.state.pool.trigger()
    job = await orchestrator.get_status(job_id)
    return {"jobId": job_id, "status": job.status}


@app.get("/jobs/{job_id}/status")
async def api_job_status(job_id: str, request: Request):
    try:
        return await request.app.state.orchestrator.status_document(job_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")


@app.get("/jobs/{job_id}/data/{source_name}")
async def api_job_data(job_id: str, source_name: str, request: Request):
    if source_name not in ALL_SOURCES:
        raise HTTPException(status_code=404, detail=f"Unknown source {source_name!r}")
    try:
        record = await request.app.state.orchestrator.get_job_data(job_id, source_name)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return record.to_dict()


@app.post("/internal/outcomes")
async def api_report_outcome(report: OutcomeReport, request: Request):
    error = None
    if report.error_kind == "skipped":
        error = SkipCollection(report.error or "skipped")
    elif report.error is not None:
        cls = PermanentCollectorError if report.error_kind == "permanent" else TransientCollectorError
        error = cls(report.error)

    try:
        job = await request.app.state.orchestrator.report_outcome(
            report.job_id, report.source_name, result=report.result, error=error
        )
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return job.to_status_dict()


@app.get("/queue/stats")
async def api_queue_stats(request: Request):
    return await queue.stats(request.app.state.orchestrator.clock())


@app.get("/health")
async def health(request: Request):
    result = await request.app.state.health.check()
    return JSONResponse(result.to_dict(), status_code=result.status_code)


@app.post("/health")
async def maintenance(request: Request):
    """Sweep stuck jobs and kick the workers."""
    logger.info("Running system maintenance")
    now = request.app.state.orchestrator.clock
    try:
        summary = await request.app.state.sweeper.run_maintenance()
    except Exception as exc:
        logger.error("Maintenance failed", extra={"error": str(exc)}, exc_info=True)
        return JSONResponse(
            {
                "error":     "System maintenance failed",
                "details":   str(exc),
                "timestamp": to_ts(now()),
            },
            status_code=500,
        )
    return {
        "success":   True,
        "message":   "System maintenance completed",
        "timestamp": to_ts(now()),
        "summary":   summary,
    }


# ── Entry point ────────────────────────────────────────────────────────────────

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
        reload=False,
        log_config=None,   # let our handler take over
    )
