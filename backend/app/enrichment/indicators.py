# app/enrichment/indicators.py
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, List, Literal, Optional, Set, Tuple
from urllib.parse import urlsplit, urlunsplit

IndicatorKind = Literal["url", "domain", "ip", "email", "hash", "cve"]


@dataclass(frozen=True)
class ExtractedIndicator:
    kind: IndicatorKind
    value: str  # as matched in the text
    normalized_value: str
    source: str  # provenance: which corpus field it came from


# ---- scan patterns (global, applied in this order) ----

_URL_SCAN = re.compile(r"\bhttps?://[^\s<>\"')\]]+", re.IGNORECASE)
_EMAIL_SCAN = re.compile(r"\b[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,24}\b", re.IGNORECASE)
_CVE_SCAN = re.compile(r"\bCVE-\d{4}-\d{4,7}\b", re.IGNORECASE)
_HASH_SCAN = re.compile(r"\b[0-9a-fA-F]{32}\b|\b[0-9a-fA-F]{40}\b|\b[0-9a-fA-F]{64}\b")
_IPV4_SCAN = re.compile(r"\b\d{1,3}(?:\.\d{1,3}){3}\b")
_DOMAIN_SCAN = re.compile(r"\b(?:[a-z0-9-]+\.)+[a-z]{2,24}\b", re.IGNORECASE)

# ---- validation patterns (applied to the trimmed, normalized candidate) ----

_URL_PREFIX = re.compile(r"^https?://", re.IGNORECASE)
_DOMAIN_FULL = re.compile(r"^(?:[a-z0-9-]+\.)+[a-z]{2,24}$")
_EMAIL_FULL = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_IPV4_FULL = re.compile(r"^\d{1,3}(?:\.\d{1,3}){3}$")
_HASH_FULL = re.compile(r"^(?:[0-9a-f]{32}|[0-9a-f]{40}|[0-9a-f]{64})$")
_CVE_FULL = re.compile(r"^CVE-\d{4}-\d{4,7}$")

_EDGE_CHARS = "\"'“”‘’()<>[]{}.,;:"


def trim_punctuation(s: str) -> str:
    return s.strip().strip(_EDGE_CHARS + " \t\r\n\f\v")


def normalize_url(raw: str) -> Optional[str]:
    """
    http(s) only; fragment dropped, scheme/host lowercased, path + query kept.
    """
    trimmed = trim_punctuation(raw)
    if not _URL_PREFIX.match(trimmed):
        return None
    try:
        parts = urlsplit(trimmed)
        host = parts.hostname
        port = parts.port
    except ValueError:
        return None
    if not host:
        return None

    netloc = f"[{host}]" if ":" in host else host
    if port is not None:
        netloc = f"{netloc}:{port}"
    if parts.username is not None:
        userinfo = parts.username
        if parts.password is not None:
            userinfo = f"{userinfo}:{parts.password}"
        netloc = f"{userinfo}@{netloc}"

    return urlunsplit((parts.scheme.lower(), netloc, parts.path or "/", parts.query, ""))


def normalize_domain(raw: str) -> Optional[str]:
    trimmed = trim_punctuation(raw).lower()
    if not trimmed or not _DOMAIN_FULL.match(trimmed):
        return None
    return trimmed


def normalize_email(raw: str) -> Optional[str]:
    trimmed = trim_punctuation(raw).lower()
    if not trimmed or not _EMAIL_FULL.match(trimmed):
        return None
    return trimmed


def normalize_ip(raw: str) -> Optional[str]:
    trimmed = trim_punctuation(raw)
    if not _IPV4_FULL.match(trimmed):
        return None
    octets = [int(x) for x in trimmed.split(".")]
    if any(n > 255 for n in octets):
        return None
    return ".".join(str(n) for n in octets)


def normalize_hash(raw: str) -> Optional[str]:
    trimmed = trim_punctuation(raw).lower()
    if not _HASH_FULL.match(trimmed):
        return None
    return trimmed


def normalize_cve(raw: str) -> Optional[str]:
    trimmed = trim_punctuation(raw).upper()
    if not _CVE_FULL.match(trimmed):
        return None
    return trimmed


_SCANS: Tuple[Tuple[str, "re.Pattern[str]", Callable[[str], Optional[str]]], ...] = (
    ("url", _URL_SCAN, normalize_url),
    ("email", _EMAIL_SCAN, normalize_email),
    ("cve", _CVE_SCAN, normalize_cve),
    ("hash", _HASH_SCAN, normalize_hash),
    ("ip", _IPV4_SCAN, normalize_ip),
    ("domain", _DOMAIN_SCAN, normalize_domain),
)


def extract_indicators(text: Optional[str], source: str) -> List[ExtractedIndicator]:
    """
    Pure, deterministic, total. Duplicates (by kind + normalized value) are dropped
    within one call; matches that fail normalization are discarded.
    Every URL's host is also emitted as a domain.
    """
    out: List[ExtractedIndicator] = []
    seen: Set[Tuple[str, str]] = set()

    def add(kind: str, value: str, normalized: Optional[str]) -> None:
        if not normalized:
            return
        key = (kind, normalized)
        if key in seen:
            return
        seen.add(key)
        out.append(ExtractedIndicator(kind=kind, value=value, normalized_value=normalized, source=source))

    s = "" if text is None else str(text)
    if not s.strip():
        return out

    for kind, pattern, normalize in _SCANS:
        for m in pattern.finditer(s):
            raw = m.group(0)
            add(kind, raw, normalize(raw))

    for row in [x for x in out if x.kind == "url"]:
        host = urlsplit(row.normalized_value).hostname or ""
        add("domain", host, normalize_domain(host))

    return out


def count_by_kind(indicators: List[ExtractedIndicator]) -> dict:
    counts: dict = {}
    for x in indicators:
        counts[x.kind] = counts.get(x.kind, 0) + 1
    return counts
