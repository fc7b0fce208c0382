# app/enrichment/fetcher.py
from __future__ import annotations

import logging
import re
import socket
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple
from urllib.parse import urljoin, urlsplit

import requests
from bs4 import BeautifulSoup

from app.core.config import settings
from app.core.security import sha256_hex

log = logging.getLogger("sentinel.fetch")

_IPV4_RE = re.compile(r"^\d{1,3}(?:\.\d{1,3}){3}$")

_WS_RE = re.compile(r"\s+")
_NON_TEXT_TAGS = ["script", "style", "noscript"]

_CHUNK_SIZE = 16 * 1024
_TITLE_MAX = 200

# (family, address) pairs, as returned by getaddrinfo
Resolver = Callable[[str, int], List[Tuple[int, str]]]


@dataclass(frozen=True)
class FetchOutcome:
    ok: bool
    url: str
    final_url: Optional[str] = None
    status: Optional[int] = None
    content_type: Optional[str] = None
    content_length: Optional[int] = None
    sha256: Optional[str] = None
    body_text: str = ""
    extracted_title: Optional[str] = None
    error: Optional[str] = None

    def to_metadata(self) -> dict:
        # shape stored under metadata.enrichment.fetch
        if self.ok:
            return {
                "ok": True,
                "url": self.url,
                "finalUrl": self.final_url,
                "status": self.status,
                "contentType": self.content_type,
                "contentLength": self.content_length,
                "sha256": self.sha256,
            }
        return {
            "ok": False,
            "url": self.url,
            "finalUrl": self.final_url,
            "status": self.status,
            "error": self.error,
        }


# ---------------------------------------------------------------------------
# Target policy
# ---------------------------------------------------------------------------


def is_http_url(raw: str | None) -> bool:
    if not raw:
        return False
    try:
        parts = urlsplit(raw.strip())
    except ValueError:
        return False
    return parts.scheme.lower() in ("http", "https") and bool(parts.netloc)


def is_private_ipv4(ip: str) -> bool:
    """
    Fixed deny table: 0/8, 10/8, 127/8, 169.254/16, 172.16/12, 192.168/16, 100.64/10.
    Non-IPv4 strings are not private (callers decide what to do with them).
    """
    if not _IPV4_RE.match(ip):
        return False
    a, b = (int(x) for x in ip.split(".")[:2])
    if a == 0 or a == 10 or a == 127:
        return True
    if a == 169 and b == 254:
        return True
    if a == 172 and 16 <= b <= 31:
        return True
    if a == 192 and b == 168:
        return True
    if a == 100 and 64 <= b <= 127:  # CGNAT
        return True
    return False


def is_local_hostname(hostname: str) -> bool:
    h = (hostname or "").lower()
    if not h:
        return True
    return h == "localhost" or h.endswith(".local")


def system_resolver(hostname: str, port: int) -> List[Tuple[int, str]]:
    """
    getaddrinfo bounded by the fetch timeout. A hung lookup is reported as an
    OSError; the worker thread is abandoned, not joined.
    """
    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="dns")
    try:
        future = pool.submit(socket.getaddrinfo, hostname, port, proto=socket.IPPROTO_TCP)
        try:
            infos = future.result(timeout=max(settings.fetch_timeout_ms, 1) / 1000.0)
        except FuturesTimeout:
            raise OSError(f"dns lookup timed out: {hostname}") from None
    finally:
        pool.shutdown(wait=False)
    return [(family, str(sockaddr[0])) for family, _, _, _, sockaddr in infos]


def check_fetch_target(url: str, resolver: Resolver = system_resolver) -> Optional[str]:
    """
    Returns a rejection reason, or None when the URL may be fetched.
    No network traffic other than a DNS lookup for non-literal hosts.
    """
    try:
        parts = urlsplit(url)
        scheme = parts.scheme.lower()
        hostname = parts.hostname or ""
        port = parts.port
    except ValueError:
        return "invalid_url"

    if scheme not in ("http", "https"):
        return "unsupported_scheme"
    if is_local_hostname(hostname):
        return "local_hostname"

    if _IPV4_RE.match(hostname):
        if any(int(o) > 255 for o in hostname.split(".")):
            return "invalid_ip"
        if is_private_ipv4(hostname):
            return "private_ip"
        return None

    # IPv6 literals are refused outright
    if ":" in hostname:
        return "ipv6_literal_blocked"

    try:
        addrs = resolver(hostname, port or (443 if scheme == "https" else 80))
    except (OSError, UnicodeError):
        return "dns_lookup_failed"
    if not addrs:
        return "dns_lookup_failed"

    for family, address in addrs:
        if family == socket.AF_INET6:
            return "dns_ipv6_blocked"
        if family == socket.AF_INET and is_private_ipv4(address):
            return "dns_private_ip"
    return None


# ---------------------------------------------------------------------------
# Body handling
# ---------------------------------------------------------------------------


def parse_html(html: str) -> Tuple[str, Optional[str]]:
    """
    (visible text, title) from one parse. Entities are decoded; script, style
    and noscript bodies are dropped.
    """
    soup = BeautifulSoup(html or "", "html.parser")

    title = None
    if soup.title is not None:
        title = _WS_RE.sub(" ", soup.title.get_text()).strip()[:_TITLE_MAX] or None

    for tag in soup(_NON_TEXT_TAGS):
        tag.decompose()
    text = _WS_RE.sub(" ", soup.get_text(separator=" ", strip=True)).strip()
    return text, title


def html_to_text(html: str) -> str:
    return parse_html(html)[0]


def extract_html_title(html: str) -> Optional[str]:
    return parse_html(html)[1]


def _parse_content_length(raw: Optional[str]) -> Optional[int]:
    if raw is None:
        return None
    try:
        return int(raw.strip())
    except ValueError:
        return None


class SafeFetcher:
    """
    One outbound GET per call, SSRF-hardened.

    - every hop (initial + each redirect) passes check_fetch_target first
    - redirects followed manually, bounded by max_redirects
    - body streamed and cut at max_bytes; sha256 covers exactly the kept bytes
    - network and policy failures come back as FetchOutcome(ok=False), never raised
    """

    def __init__(
        self,
        *,
        session: Optional[requests.Session] = None,
        resolver: Resolver = system_resolver,
        user_agent: Optional[str] = None,
    ):
        self.session = session or requests.Session()
        self.resolver = resolver
        self.headers = {
            "User-Agent": user_agent or settings.fetch_user_agent,
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
        }

    def fetch(
        self,
        url: str,
        *,
        timeout_ms: int = settings.fetch_timeout_ms,
        max_redirects: int = settings.fetch_max_redirects,
        max_bytes: int = settings.fetch_max_bytes,
    ) -> FetchOutcome:
        timeout_s = max(timeout_ms, 1) / 1000.0
        current = url
        redirects = 0

        while True:
            reason = check_fetch_target(current, self.resolver)
            if reason:
                log.info("fetch blocked url=%s reason=%s", current, reason)
                return FetchOutcome(ok=False, url=url, final_url=current, error=f"blocked:{reason}")

            try:
                resp = self.session.get(
                    current,
                    headers=self.headers,
                    allow_redirects=False,
                    stream=True,
                    timeout=timeout_s,
                )
            except requests.RequestException as e:
                log.warning("fetch failed url=%s err=%s", current, e)
                return FetchOutcome(ok=False, url=url, final_url=current, error=str(e))

            try:
                location = resp.headers.get("location")
                if 300 <= resp.status_code < 400 and location:
                    if redirects >= max_redirects:
                        return FetchOutcome(
                            ok=False,
                            url=url,
                            final_url=current,
                            status=resp.status_code,
                            error="too_many_redirects",
                        )
                    redirects += 1
                    current = urljoin(current, location)
                    continue

                body = self._read_limited(resp, max_bytes, deadline=time.monotonic() + timeout_s)
                return self._build_outcome(url, current, resp, body)
            except requests.RequestException as e:
                log.warning("fetch read failed url=%s err=%s", current, e)
                return FetchOutcome(
                    ok=False,
                    url=url,
                    final_url=current,
                    status=resp.status_code,
                    error=str(e),
                )
            finally:
                resp.close()

    @staticmethod
    def _read_limited(resp: requests.Response, max_bytes: int, *, deadline: float) -> bytes:
        chunks = []
        total = 0
        for chunk in resp.iter_content(chunk_size=_CHUNK_SIZE):
            if not chunk:
                continue
            chunks.append(chunk)
            total += len(chunk)
            if total >= max_bytes:
                break
            if time.monotonic() > deadline:
                raise requests.Timeout("body read exceeded timeout")
        return b"".join(chunks)[:max_bytes]

    @staticmethod
    def _build_outcome(url: str, final_url: str, resp: requests.Response, body: bytes) -> FetchOutcome:
        content_type = resp.headers.get("content-type")
        text = body.decode("utf-8", errors="replace")

        is_html = "text/html" in (content_type or "").lower()
        if is_html:
            body_text, title = parse_html(text)
        else:
            body_text, title = text, None

        return FetchOutcome(
            ok=True,
            url=url,
            final_url=final_url,
            status=resp.status_code,
            content_type=content_type,
            content_length=_parse_content_length(resp.headers.get("content-length")),
            sha256=sha256_hex(body),
            body_text=body_text,
            extracted_title=title,
        )
