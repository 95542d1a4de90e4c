"""
Collector task contract.

A collector turns one source's payload into structured data. It either returns
a dict or raises one of the classified errors below; the worker converts those
into outcomes for the orchestrator. Collectors never enforce their own timeout.
"""

from abc import ABC, abstractmethod
from urllib.parse import urlparse


class CollectorError(Exception):
    """Base for classified collector failures."""

    kind = "transient"


class TransientCollectorError(CollectorError):
    """Network trouble, timeouts, bot challenges: worth another attempt."""

    kind = "transient"


class PermanentCollectorError(CollectorError):
    """Malformed target or refused credentials: retrying will not help."""

    kind = "permanent"


class SkipCollection(Exception):
    """Nothing to collect for this payload; the source is recorded as skipped."""


class CollectorTask(ABC):
    """One data source. Must be safe to run more than once with the same payload."""

    name: str

    @abstractmethod
    async def run(self, payload: dict) -> dict:
        raise NotImplementedError


def require_url(payload: dict, key: str = "url") -> str:
    """Return a usable http(s) URL from *payload* or fail permanently."""
    url = (payload.get(key) or "").strip()
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise PermanentCollectorError(f"Malformed URL: {url!r}")
    return url


def classify_status(status: int, url: str) -> None:
    """Raise the right error for an HTTP status, or return quietly for 2xx/3xx."""
    if status < 400:
        return
    if status in (401, 403, 404, 410):
        raise PermanentCollectorError(f"HTTP {status} from {url}")
    raise TransientCollectorError(f"HTTP {status} from {url}")


def build_collectors() -> dict[str, CollectorTask]:
    """Default collector for every known source name."""
    # Imported here so tests that swap in fakes never load Playwright
    from agent.social import SocialCollector
    from agent.website import CompetitorCollector, ReviewsCollector, WebsiteCollector

    collectors: list[CollectorTask] = [
        WebsiteCollector(),
        ReviewsCollector(),
        SocialCollector(),
        CompetitorCollector(),
    ]
    return {c.name: c for c in collectors}
