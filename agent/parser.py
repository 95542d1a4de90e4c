"""
Text helpers shared by the collectors: plain text in, plain structures out.

    clean_text("  Sleep   better\\n\\n tonight ")    → "Sleep better tonight"
    split_sentences("Great. Works well!")          → ["Great.", "Works well!"]
    keyword_hits(text, ["grounding sheets"])       → {"grounding sheets": 3}
    mentions(text, ["sleep"], limit=2)             → ["I sleep through the night now.", ...]
    parse_rating("4.5 out of 5 stars")             → 4.5
"""

import re

_WS = re.compile(r"\s+")

# Sentence boundary: terminal punctuation followed by whitespace and a capital/digit/quote
_SENTENCE_END = re.compile(r"(?<=[.!?])\s+(?=[A-Z0-9\"'“])")

# "4.5 out of 5 stars", "4,5 von 5 Sternen", "Rated 4 out of 5"
_RATING = re.compile(r"(\d+(?:[.,]\d+)?)\s*(?:out of|von|sur|de)\s*5", re.IGNORECASE)

# Lines too short to carry any opinion are noise (menu items, buttons)
_MIN_SENTENCE_CHARS = 20


def clean_text(text: str) -> str:
    return _WS.sub(" ", text or "").strip()


def split_sentences(text: str) -> list[str]:
    text = clean_text(text)
    if not text:
        return []
    return [s.strip() for s in _SENTENCE_END.split(text) if s.strip()]


def normalise_keywords(keywords) -> list[str]:
    """
    Accept a list or a comma separated string; lower-case, dedupe, keep order.
    """
    if isinstance(keywords, str):
        keywords = keywords.split(",")
    seen: list[str] = []
    for kw in keywords or []:
        kw = clean_text(str(kw)).lower()
        if kw and kw not in seen:
            seen.append(kw)
    return seen


def _kw_pattern(keyword: str) -> re.Pattern:
    return re.compile(r"\b" + re.escape(keyword) + r"\b", re.IGNORECASE)


def keyword_hits(text: str, keywords: list[str]) -> dict[str, int]:
    text = clean_text(text)
    return {kw: len(_kw_pattern(kw).findall(text)) for kw in keywords}


def mentions(text: str, keywords: list[str], limit: int = 10) -> list[str]:
    """Sentences that mention any keyword, in page order, at most *limit*."""
    patterns = [_kw_pattern(kw) for kw in keywords]
    found = []
    for sentence in split_sentences(text):
        if len(sentence) < _MIN_SENTENCE_CHARS:
            continue
        if any(p.search(sentence) for p in patterns):
            found.append(sentence)
            if len(found) >= limit:
                break
    return found


def parse_rating(text: str) -> float | None:
    m = _RATING.search(text or "")
    if not m:
        return None
    try:
        value = float(m.group(1).replace(",", "."))
    except ValueError:
        return None
    return value if 0 <= value <= 5 else None


def summarise_page(
    url: str,
    title: str,
    description: str,
    headings: list[str],
    body: str,
    keywords: list[str],
) -> dict:
    """Structured record for one fetched page."""
    body = clean_text(body)
    return {
        "url":         url,
        "title":       clean_text(title),
        "description": clean_text(description),
        "headings":    [h for h in (clean_text(x) for x in headings) if h][:30],
        "word_count":  len(body.split()),
        "keyword_hits": keyword_hits(body, keywords),
        "mentions":    mentions(body, keywords),
    }
