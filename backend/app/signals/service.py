# app/signals/service.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.db.base import as_utc
from app.ledger.models import EvidenceItem
from app.ledger.repository import PipelineRepository
from app.signals.geo import geo_from_metadata
from app.signals.scoring import SignalInputs, SignalScore, geo_context, score_signal

log = logging.getLogger("sentinel.signals")

SIGNAL_KIND = "osint_rule"
TITLE_SUMMARY_CHARS = 140

_SIGNAL_TABLES = ("signals", "signal_evidence_links")


@dataclass(frozen=True)
class CreatedSignal:
    id: str
    kind: str
    severity: int
    score: int
    reasons: List[str]


def is_missing_signal_table_error(err: Exception) -> bool:
    """
    Tenant store not yet migrated: Postgres says 'relation "signals" does not exist',
    sqlite says 'no such table: signals'.
    """
    # driver message only; str(err) also carries the SQL text
    msg = str(getattr(err, "orig", None) or err).lower()
    if "relation" not in msg and "no such table" not in msg:
        return False
    return any(t in msg for t in _SIGNAL_TABLES)


def signal_title(evidence: EvidenceItem) -> str:
    if evidence.title:
        return evidence.title
    if evidence.summary:
        return evidence.summary[:TITLE_SUMMARY_CHARS]
    return f"Signal from evidence {evidence.id}"


class SignalService:
    """
    Per-evidence signal evaluation. At most one osint_rule signal per
    (tenant, evidence); severity/score are write-once.
    """

    def __init__(self, db: Session, *, min_score: Optional[int] = None):
        self.db = db
        self.repo = PipelineRepository(db)
        self.min_score = settings.signal_min_score if min_score is None else min_score

    def score_evidence(
        self,
        evidence: EvidenceItem,
        entity_ids: List[str],
        *,
        now: Optional[datetime] = None,
    ) -> SignalScore:
        entities = self.repo.get_entities(evidence.tenant_id, entity_ids)
        point = geo_from_metadata(evidence.metadata_json or {})
        geo = geo_context(point, entities)

        return score_signal(
            SignalInputs(
                fetched_at=as_utc(evidence.fetched_at),
                source_type=evidence.source_type,
                source_uri=evidence.source_uri,
                tags=tuple(evidence.tags or ()),
                facility_distance_km=geo.facility_distance_km,
                route_distance_km=geo.route_distance_km,
                route_corridor_km=geo.route_corridor_km,
                linked_entity_count=len(entity_ids),
            ),
            now=now,
        )

    def evaluate_signal(self, *, tenant_id: str, evidence_id: str) -> Optional[CreatedSignal]:
        try:
            return self._evaluate(tenant_id=tenant_id, evidence_id=evidence_id)
        except SQLAlchemyError as e:
            if not is_missing_signal_table_error(e):
                raise
            self.db.rollback()
            log.warning("signal tables missing tenant=%s (not migrated); skipping", tenant_id)
            return None

    def _evaluate(self, *, tenant_id: str, evidence_id: str) -> Optional[CreatedSignal]:
        # 1) Idempotency
        if self.repo.has_signal_for_evidence(tenant_id, evidence_id):
            return None

        # 2) Load
        evidence = self.repo.get_evidence(tenant_id, evidence_id)
        if evidence is None:
            return None

        # 3) + 4) + 5) Linked entities, geo, score
        entity_ids = self.repo.linked_entity_ids(tenant_id, evidence_id)
        result = self.score_evidence(evidence, entity_ids)

        # 6) Threshold
        if result.score < self.min_score:
            log.info(
                "signal not raised tenant=%s evidence=%s score=%d",
                tenant_id,
                evidence_id,
                result.score,
            )
            return None

        # 7) Persist (atomic)
        signal = self.repo.create_signal(
            tenant_id=tenant_id,
            evidence_id=evidence_id,
            entity_ids=entity_ids,
            kind=SIGNAL_KIND,
            title=signal_title(evidence),
            severity=result.severity,
            score=result.score,
            reasons=result.reasons,
        )
        log.info(
            "signal created tenant=%s evidence=%s signal=%s score=%d severity=%d",
            tenant_id,
            evidence_id,
            signal.id,
            result.score,
            result.severity,
        )
        return CreatedSignal(
            id=signal.id,
            kind=SIGNAL_KIND,
            severity=result.severity,
            score=result.score,
            reasons=list(result.reasons),
        )


def evaluate_signal(db: Session, *, tenant_id: str, evidence_id: str) -> Optional[CreatedSignal]:
    return SignalService(db).evaluate_signal(tenant_id=tenant_id, evidence_id=evidence_id)
