# app/enrichment/service.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.logs import best_effort
from app.enrichment.fetcher import FetchOutcome, SafeFetcher, is_http_url
from app.enrichment.indicators import ExtractedIndicator, count_by_kind, extract_indicators
from app.enrichment.sanitize import build_excerpts
from app.ledger.models import EvidenceItem
from app.ledger.repository import PipelineRepository

log = logging.getLogger("sentinel.enrichment")

ENRICHMENT_VERSION = 1


@dataclass(frozen=True)
class EnrichmentResult:
    status: str  # enriched | skipped_missing | skipped_cooldown
    evidence_id: str
    indicator_count: int = 0
    fetch_ok: Optional[bool] = None


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat()


def _parse_iso(raw: Any) -> Optional[datetime]:
    if not raw or not isinstance(raw, str):
        return None
    try:
        dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def previous_enrichment(metadata: Any) -> Dict[str, Any]:
    # older writers may have left a non-object under "enrichment"
    if not isinstance(metadata, dict):
        return {}
    previous = metadata.get("enrichment")
    return previous if isinstance(previous, dict) else {}


def within_cooldown(previous: Dict[str, Any], now: datetime) -> bool:
    if not isinstance(previous, dict):
        return False
    last = _parse_iso(previous.get("lastRunAt"))
    if last is None:
        return False
    return now - last < timedelta(minutes=settings.enrichment_cooldown_minutes)


def build_corpus(evidence: EvidenceItem, snapshot_text: str) -> List[Tuple[str, str]]:
    """
    (text, provenance) pairs, in extraction order.
    """
    corpus: List[Tuple[str, str]] = []
    for text, source in (
        (evidence.source_uri, "source_uri"),
        (evidence.title, "title"),
        (evidence.summary, "summary"),
        (evidence.content_text, "content_text"),
        (snapshot_text, "snapshot"),
    ):
        if text:
            corpus.append((text, source))
    return corpus


class EnrichmentService:
    """
    Per-evidence enrichment workflow.

    cooldown -> safe fetch (optional, no open transaction) -> locked re-read
    -> corpus -> indicators -> excerpts
    -> one transaction (metadata merge + indicator replace) -> best-effort audit
    """

    def __init__(self, db: Session, *, fetcher: Optional[SafeFetcher] = None):
        self.db = db
        self.repo = PipelineRepository(db)
        self.fetcher = fetcher or SafeFetcher()

    def enrich_evidence(
        self,
        *,
        tenant_id: str,
        evidence_id: str,
        actor_user_id: Optional[str] = None,
        force: bool = False,
    ) -> EnrichmentResult:
        tenant_id = (tenant_id or "").strip()
        evidence_id = (evidence_id or "").strip()
        if not tenant_id or not evidence_id:
            return EnrichmentResult(status="skipped_missing", evidence_id=evidence_id)

        # 1) Load
        evidence = self.repo.get_evidence(tenant_id, evidence_id)
        if evidence is None:
            log.info("enrich skipped tenant=%s evidence=%s reason=missing", tenant_id, evidence_id)
            return EnrichmentResult(status="skipped_missing", evidence_id=evidence_id)

        # 2) Cooldown
        now = datetime.now(timezone.utc)
        previous = previous_enrichment(evidence.metadata_json)
        if not force and within_cooldown(previous, now):
            log.info("enrich skipped tenant=%s evidence=%s reason=cooldown", tenant_id, evidence_id)
            return EnrichmentResult(status="skipped_cooldown", evidence_id=evidence_id)

        source_uri = evidence.source_uri
        # no transaction stays open across outbound network I/O
        self.db.commit()

        enrichment: Dict[str, Any] = {
            "lastRunAt": _iso(now),
            "version": ENRICHMENT_VERSION,
        }

        # 3) Source snapshot
        snapshot_text = ""
        outcome: Optional[FetchOutcome] = None
        if is_http_url(source_uri):
            outcome = self.fetcher.fetch(
                source_uri.strip(),
                timeout_ms=settings.fetch_timeout_ms,
                max_redirects=settings.fetch_max_redirects,
                max_bytes=settings.fetch_max_bytes,
            )
            fetch_meta = outcome.to_metadata()
            fetch_meta["fetchedAt"] = _iso(datetime.now(timezone.utc))
            enrichment["fetch"] = fetch_meta
            if outcome.ok:
                snapshot_text = outcome.body_text[: settings.snapshot_max_chars]
                if outcome.extracted_title:
                    enrichment["extractedTitle"] = outcome.extracted_title

        # Locked re-read; metadata may have changed during the fetch
        evidence = self.repo.get_evidence_for_update(tenant_id, evidence_id)
        if evidence is None:
            self.db.rollback()
            log.info("enrich skipped tenant=%s evidence=%s reason=deleted_during_fetch", tenant_id, evidence_id)
            return EnrichmentResult(status="skipped_missing", evidence_id=evidence_id)

        # 4) + 5) Indicators, one corpus entry at a time
        indicators: List[ExtractedIndicator] = []
        for text, source in build_corpus(evidence, snapshot_text):
            indicators.extend(extract_indicators(text, source))

        # 6) Excerpts + counts
        llm_excerpt, snapshot_excerpt = build_excerpts(
            title=evidence.title,
            summary=evidence.summary,
            content_text=evidence.content_text,
            snapshot=snapshot_text,
        )
        enrichment["llmExcerpt"] = llm_excerpt
        enrichment["snapshotExcerpt"] = snapshot_excerpt
        enrichment["indicators"] = {
            "total": len(indicators),
            "byKind": count_by_kind(indicators),
        }

        # 7) Persist (atomic, same transaction as the locked re-read)
        self.repo.apply_enrichment(evidence=evidence, enrichment=enrichment, indicators=indicators)

        # 8) Audit (best effort)
        best_effort(
            "audit evidence.enriched",
            self.repo.audit,
            tenant_id=tenant_id,
            action="evidence.enriched",
            actor_user_id=actor_user_id,
            target_type="evidence",
            target_id=evidence_id,
            metadata={
                "indicators": enrichment["indicators"],
                "fetch": enrichment.get("fetch"),
            },
        )

        log.info(
            "enriched tenant=%s evidence=%s indicators=%d fetch_ok=%s",
            tenant_id,
            evidence_id,
            len(indicators),
            outcome.ok if outcome else None,
        )
        return EnrichmentResult(
            status="enriched",
            evidence_id=evidence_id,
            indicator_count=len(indicators),
            fetch_ok=outcome.ok if outcome else None,
        )


def enrich_evidence(
    db: Session,
    *,
    tenant_id: str,
    evidence_id: str,
    actor_user_id: Optional[str] = None,
    force: bool = False,
    fetcher: Optional[SafeFetcher] = None,
) -> EnrichmentResult:
    return EnrichmentService(db, fetcher=fetcher).enrich_evidence(
        tenant_id=tenant_id,
        evidence_id=evidence_id,
        actor_user_id=actor_user_id,
        force=force,
    )
