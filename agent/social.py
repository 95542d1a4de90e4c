"""Social discussion collector using Reddit's public search JSON, one query per keyword."""

import logging
import os
from typing import Any, Dict, List

import httpx

from agent.base import (
    CollectorTask,
    SkipCollection,
    TransientCollectorError,
    classify_status,
)
from agent.parser import clean_text, keyword_hits, normalise_keywords
from models.job import SOCIAL

logger = logging.getLogger(__name__)

SOCIAL_USER_AGENT: str = os.getenv("SOCIAL_USER_AGENT", "persona-research/0.1")
SOCIAL_POST_LIMIT: int = int(os.getenv("SOCIAL_POST_LIMIT", "25"))


class SocialCollector(CollectorTask):
    """Fetch discussion threads mentioning the keywords and keep a trimmed copy."""

    name = SOCIAL
    base_url = "https://www.reddit.com/search.json"

    def __init__(self, timeout_s: float = 20.0, limit: int = SOCIAL_POST_LIMIT,
                 transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._timeout = timeout_s
        self._limit = limit
        self._transport = transport

    @staticmethod
    def _to_post(child: Dict[str, Any]) -> Dict[str, Any]:
        data = child.get("data") or {}
        return {
            "id":        data.get("id"),
            "subreddit": data.get("subreddit"),
            "title":     clean_text(data.get("title") or ""),
            "text":      clean_text(data.get("selftext") or "")[:2000],
            "score":     data.get("score") or 0,
            "comments":  data.get("num_comments") or 0,
            "url":       f"https://www.reddit.com{data.get('permalink', '')}",
        }

    async def run(self, payload: dict) -> dict:
        keywords = normalise_keywords(payload.get("keywords"))
        if not keywords:
            raise SkipCollection("No keywords to search for")

        posts: Dict[str, Dict[str, Any]] = {}
        async with httpx.AsyncClient(
            timeout=self._timeout,
            follow_redirects=True,
            headers={"User-Agent": SOCIAL_USER_AGENT},
            transport=self._transport,
        ) as client:
            for kw in keywords:
                try:
                    resp = await client.get(
                        self.base_url,
                        params={"q": kw, "limit": self._limit, "sort": "relevance"},
                    )
                except httpx.HTTPError as exc:
                    raise TransientCollectorError(f"Search for {kw!r} failed: {exc}") from exc
                classify_status(resp.status_code, str(resp.url))
                try:
                    children = resp.json().get("data", {}).get("children", [])
                except ValueError as exc:
                    raise TransientCollectorError(f"Bad JSON for {kw!r}") from exc
                for child in children:
                    post = self._to_post(child)
                    if post["id"]:
                        posts.setdefault(post["id"], post)

        ranked: List[Dict[str, Any]] = sorted(posts.values(), key=lambda p: p["score"], reverse=True)
        corpus = " ".join(f"{p['title']} {p['text']}" for p in ranked)
        logger.info("Social collected", extra={"keywords": keywords, "posts": len(ranked)})
        return {
            "keywords":     keywords,
            "posts":        ranked,
            "count":        len(ranked),
            "keyword_hits": keyword_hits(corpus, keywords),
        }
