from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

# Job status, forward only
PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"

JOB_STATUSES = (PENDING, PROCESSING, COMPLETED, FAILED)

_NEXT_STATUS = {
    PENDING: {PROCESSING},
    PROCESSING: {COMPLETED, FAILED},
    COMPLETED: set(),
    FAILED: set(),
}

# Per-source outcomes
OUTCOME_PENDING = "pending"
OUTCOME_SUCCEEDED = "succeeded"
OUTCOME_FAILED = "failed"
OUTCOME_SKIPPED = "skipped"

TERMINAL_OUTCOMES = frozenset({OUTCOME_SUCCEEDED, OUTCOME_FAILED, OUTCOME_SKIPPED})

# Source names
WEBSITE = "website"
REVIEWS = "reviews"
SOCIAL = "social"
COMPETITOR = "competitor"

ALL_SOURCES = (WEBSITE, REVIEWS, SOCIAL, COMPETITOR)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_ts(dt: datetime | None) -> str | None:
    """Fixed-width UTC timestamp so SQLite can compare them as text."""
    if dt is None:
        return None
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def from_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.strptime(value, "%Y-%m-%dT%H:%M:%S.%fZ").replace(tzinfo=timezone.utc)


def can_transition(current: str, new: str) -> bool:
    return new in _NEXT_STATUS.get(current, set())


@dataclass
class Job:
    id: str
    status: str          # pending | processing | completed | failed
    user_inputs: dict
    expected_sources: frozenset
    source_outcomes: dict = field(default_factory=dict)
    source_errors: dict = field(default_factory=dict)
    failure_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (COMPLETED, FAILED)

    def pending_sources(self) -> list[str]:
        return sorted(
            s for s in self.expected_sources
            if self.source_outcomes.get(s, OUTCOME_PENDING) == OUTCOME_PENDING
        )

    def sources_with(self, outcome: str) -> list[str]:
        return sorted(
            s for s in self.expected_sources if self.source_outcomes.get(s) == outcome
        )

    @property
    def progress(self) -> int:
        """Percent of expected sources with a terminal outcome."""
        if not self.expected_sources:
            return 0
        done = sum(
            1 for s in self.expected_sources
            if self.source_outcomes.get(s) in TERMINAL_OUTCOMES
        )
        return int(done * 100 / len(self.expected_sources))

    def to_status_dict(self) -> dict:
        out: dict = {
            "id":        self.id,
            "status":    self.status,
            "progress":  100 if self.is_terminal else self.progress,
            "createdAt": to_ts(self.created_at),
            "sources":   {s: self.source_outcomes.get(s, OUTCOME_PENDING)
                          for s in sorted(self.expected_sources)},
        }
        if self.completed_at:
            out["completedAt"] = to_ts(self.completed_at)
        if self.failure_reason:
            out["failureReason"] = self.failure_reason
        return out


@dataclass
class TaskDescriptor:
    job_id: str
    source_name: str
    payload: dict
    max_attempts: int
    attempt_count: int = 0
    id: Optional[str] = None
    visible_at: Optional[datetime] = None
    leased: bool = False
    last_error: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def attempts_left(self) -> int:
        return self.max_attempts - self.attempt_count


@dataclass
class JobDataRecord:
    job_id: str
    source_name: str
    data: Any
    collected_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "jobId":       self.job_id,
            "sourceName":  self.source_name,
            "data":        self.data,
            "collectedAt": to_ts(self.collected_at),
        }


def expected_sources_for(inputs: dict) -> frozenset:
    """
    Which sources a request needs, decided once at creation.

        primary_url only                    → {website}
        + marketplace_url                   → + reviews
        + competitor_urls                   → + competitor
        + include_social and keywords       → + social
    """
    sources = {WEBSITE}
    if inputs.get("marketplace_url"):
        sources.add(REVIEWS)
    if inputs.get("competitor_urls"):
        sources.add(COMPETITOR)
    if inputs.get("include_social") and inputs.get("keywords"):
        sources.add(SOCIAL)
    return frozenset(sources)


def payload_for(source: str, inputs: dict) -> dict:
    """Collector input for *source*, cut from the immutable user inputs."""
    keywords = list(inputs.get("keywords") or [])
    if source == WEBSITE:
        return {"url": inputs["primary_url"], "keywords": keywords}
    if source == REVIEWS:
        return {"url": inputs["marketplace_url"], "keywords": keywords}
    if source == COMPETITOR:
        return {"urls": list(inputs.get("competitor_urls") or []), "keywords": keywords}
    if source == SOCIAL:
        return {"keywords": keywords}
    raise ValueError(f"Unknown source: {source}")
