"""
Page collectors driven by Playwright.

Classes:
    BrowserSession       – headless Chromium with the stealth setup, async context manager
    WebsiteCollector     – the product's own site (source "website")
    CompetitorCollector  – each competitor URL (source "competitor")
    ReviewsCollector     – marketplace product page reviews (source "reviews")
"""

import asyncio
import logging
import os

from playwright.async_api import (
    async_playwright,
    Browser,
    BrowserContext,
    Error as PWError,
    Page,
    TimeoutError as PWTimeout,
)

from agent.base import (
    CollectorTask,
    PermanentCollectorError,
    SkipCollection,
    TransientCollectorError,
    classify_status,
    require_url,
)
from agent.parser import clean_text, normalise_keywords, parse_rating, summarise_page
from models.job import COMPETITOR, REVIEWS, WEBSITE

logger = logging.getLogger(__name__)

HEADLESS: bool = os.getenv("HEADLESS", "true").lower() == "true"
NAV_TIMEOUT_MS: int = int(os.getenv("NAV_TIMEOUT_MS", "30000"))
MAX_REVIEWS: int = int(os.getenv("MAX_REVIEWS", "50"))

# Use a real, recent Chrome UA, no "HeadlessChrome" in the string
_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/131.0.0.0 Safari/537.36"
)

# Launch flags that strip Playwright's automation signals
_STEALTH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-blink-features=AutomationControlled",  # removes navigator.webdriver
    "--disable-infobars",
    "--disable-dev-shm-usage",
    "--no-first-run",
    "--no-default-browser-check",
    "--disable-extensions",
]

# JS injected before every page load to mask remaining automation fingerprints
_STEALTH_SCRIPT = """
Object.defineProperty(navigator, 'webdriver', { get: () => undefined });
window.chrome = { runtime: {}, loadTimes: function() {}, csi: function() {}, app: {} };
Object.defineProperty(navigator, 'languages', { get: () => ['en-US', 'en'] });
"""

_BOT_TRIGGERS = [
    "access denied",
    "robot check",
    "captcha",
    "unusual traffic",
    "verify you are human",
    "checking your browser",
    "sorry, you have been blocked",
    "just a moment",
    "enter the characters you see below",
]

# Review bodies, tried in order (Amazon first, then generic schema.org markup)
_REVIEW_SELECTORS = [
    '[data-hook="review-body"]',
    '[data-hook="review"] .review-text',
    '[itemprop="reviewBody"]',
    '.review-text',
    '.review-content',
]

_RATING_SELECTORS = [
    '[data-hook="rating-out-of-text"]',
    '#acrPopover',
    '[itemprop="ratingValue"]',
]


# ── Shared helpers ─────────────────────────────────────────────────────────────

async def _check_bot_challenge(page: Page) -> None:
    title = (await page.title()).lower()
    try:
        snippet = (await page.content())[:3000].lower()
    except PWError:
        snippet = ""
    combined = f"{title} {page.url.lower()} {snippet}"
    for t in _BOT_TRIGGERS:
        if t in combined:
            raise TransientCollectorError(f"Bot challenge detected ({t!r}) at {page.url}")


async def _dismiss_overlays(page: Page) -> None:
    for sel in [
        'button[aria-label="Close"]',
        'button[aria-label="close"]',
        'button:has-text("Accept")',
        'button:has-text("No thanks")',
        '#sp-cc-accept',
    ]:
        try:
            el = page.locator(sel).first
            if await el.is_visible():
                await el.click()
                await asyncio.sleep(0.3)
        except PWError:
            pass


async def _texts(page: Page, selector: str) -> list[str]:
    try:
        return [t for t in await page.locator(selector).all_inner_texts() if t.strip()]
    except PWError:
        return []


# ── BrowserSession ─────────────────────────────────────────────────────────────

class BrowserSession:
    """
    Headless Chromium with the stealth setup applied. Use as an async context manager:

        async with BrowserSession() as session:
            page = await session.open("https://example.com")
    """

    def __init__(self, headless: bool = HEADLESS):
        self.headless = headless
        self._pw = None
        self._browser: Browser | None = None
        self._context: BrowserContext | None = None
        self.page: Page | None = None

    async def __aenter__(self) -> "BrowserSession":
        try:
            self._pw = await async_playwright().start()
            self._browser = await self._pw.chromium.launch(
                headless=self.headless,
                args=_STEALTH_ARGS,
            )
        except PWError as exc:
            await self.__aexit__()
            raise TransientCollectorError(f"Browser launch failed: {exc}") from exc
        self._context = await self._browser.new_context(
            viewport={"width": 1280, "height": 900},
            user_agent=_USER_AGENT,
            locale="en-US",
            extra_http_headers={"Accept-Language": "en-US,en;q=0.9"},
        )
        await self._context.add_init_script(_STEALTH_SCRIPT)
        self.page = await self._context.new_page()
        return self

    async def __aexit__(self, *_) -> None:
        if self._browser:
            await self._browser.close()
        if self._pw:
            await self._pw.stop()
        self._browser = None
        self._pw = None
        self.page = None

    async def open(self, url: str) -> Page:
        """Navigate and classify the result. Raises a CollectorError on failure."""
        try:
            resp = await self.page.goto(url, wait_until="domcontentloaded", timeout=NAV_TIMEOUT_MS)
        except PWTimeout as exc:
            raise TransientCollectorError(f"Timed out loading {url}") from exc
        except PWError as exc:
            raise TransientCollectorError(f"Could not load {url}: {exc}") from exc
        if resp is not None:
            classify_status(resp.status, url)
        await asyncio.sleep(1)
        await _check_bot_challenge(self.page)
        await _dismiss_overlays(self.page)
        return self.page

    async def read_page(self, url: str, keywords: list[str]) -> dict:
        page = await self.open(url)
        description = ""
        try:
            meta = page.locator('meta[name="description"]').first
            if await meta.count() > 0:
                description = await meta.get_attribute("content") or ""
        except PWError:
            pass
        headings = await _texts(page, "h1, h2, h3")
        body = "\n".join(await _texts(page, "body"))
        return summarise_page(page.url, await page.title(), description, headings, body, keywords)


# ── Collectors ─────────────────────────────────────────────────────────────────

class WebsiteCollector(CollectorTask):
    name = WEBSITE

    async def run(self, payload: dict) -> dict:
        url = require_url(payload)
        keywords = normalise_keywords(payload.get("keywords"))
        async with BrowserSession() as session:
            page = await session.read_page(url, keywords)
        logger.info("Website collected", extra={"url": url, "words": page["word_count"]})
        return {"keywords": keywords, "page": page}


class CompetitorCollector(CollectorTask):
    """
    Reads every competitor page in one run. A single bad URL is recorded
    inside the result; the run fails only if no page could be read.
    """

    name = COMPETITOR

    async def run(self, payload: dict) -> dict:
        urls = [u for u in payload.get("urls") or [] if u and u.strip()]
        if not urls:
            raise SkipCollection("No competitor URLs")
        keywords = normalise_keywords(payload.get("keywords"))

        pages, errors = [], {}
        last_transient: TransientCollectorError | None = None
        async with BrowserSession() as session:
            for raw in urls:
                try:
                    url = require_url({"url": raw})
                    pages.append(await session.read_page(url, keywords))
                except PermanentCollectorError as exc:
                    errors[raw] = str(exc)
                except TransientCollectorError as exc:
                    errors[raw] = str(exc)
                    last_transient = exc

        if not pages:
            if last_transient is not None:
                raise TransientCollectorError(f"No competitor page loaded: {last_transient}")
            raise PermanentCollectorError("No competitor URL was usable")
        logger.info("Competitors collected", extra={"pages": len(pages), "errors": len(errors)})
        return {"keywords": keywords, "pages": pages, "errors": errors}


class ReviewsCollector(CollectorTask):
    name = REVIEWS

    def __init__(self, max_reviews: int = MAX_REVIEWS):
        self.max_reviews = max_reviews

    async def run(self, payload: dict) -> dict:
        url = require_url(payload)
        keywords = normalise_keywords(payload.get("keywords"))
        async with BrowserSession() as session:
            page = await session.open(url)
            title = clean_text(await page.title())

            reviews: list[str] = []
            for sel in _REVIEW_SELECTORS:
                reviews = await _texts(page, sel)
                if reviews:
                    break

            rating = None
            for sel in _RATING_SELECTORS:
                found = await _texts(page, sel)
                if found:
                    rating = parse_rating(found[0])
                    if rating is not None:
                        break

        reviews = [clean_text(r) for r in reviews][: self.max_reviews]
        logger.info("Reviews collected", extra={"url": url, "reviews": len(reviews)})
        return {
            "url":      url,
            "product":  title,
            "rating":   rating,
            "reviews":  reviews,
            "count":    len(reviews),
            "keywords": keywords,
        }
