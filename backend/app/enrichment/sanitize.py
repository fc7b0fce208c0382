from __future__ import annotations

import re
from typing import Optional, Tuple

from app.core.config import settings

REDACTED_URL = "[REDACTED_URL]"

_URL_RE = re.compile(r"https?://\S+", re.IGNORECASE)


def strip_nulls(text: str) -> str:
    return text.replace("\x00", "")


def strip_urls(text: str) -> str:
    return _URL_RE.sub(REDACTED_URL, text)


def sanitize_excerpt(text: Optional[str], max_len: int) -> str:
    """
    All ingested text is hostile: URLs are redacted (no exfil / prompt-injection
    links reach downstream consumers), NULs dropped, length capped.
    """
    return strip_nulls(strip_urls(text or "")).strip()[:max_len]


def build_excerpts(
    *,
    title: Optional[str],
    summary: Optional[str],
    content_text: Optional[str],
    snapshot: Optional[str],
) -> Tuple[str, str]:
    """
    Returns (llm_excerpt, snapshot_excerpt).
    """
    joined = "\n\n".join(p for p in (title, summary, content_text, snapshot) if p)
    return (
        sanitize_excerpt(joined, settings.llm_excerpt_chars),
        sanitize_excerpt(snapshot, settings.snapshot_excerpt_chars),
    )
