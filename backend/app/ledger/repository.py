from __future__ import annotations

import uuid
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session
from sqlalchemy.dialects import postgresql, sqlite

from app.db.base import utcnow
from app.enrichment.indicators import ExtractedIndicator
from app.ledger.models import (
    EvidenceItem,
    Entity,
    EvidenceEntityLink,
    Indicator,
    Signal,
    SignalEvidenceLink,
    SignalEntityLink,
    AuditEvent,
)


def _insert_ignoring_conflicts(db: Session, table):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(table).on_conflict_do_nothing()
    if dialect == "sqlite":
        return sqlite.insert(table).on_conflict_do_nothing()
    raise RuntimeError(f"unsupported store dialect: {dialect}")


class PipelineRepository:
    """
    Store contracts for the enrichment + signal pipelines.
    Every query is tenant-scoped; write helpers commit their own unit of work.
    """

    def __init__(self, db: Session):
        self.db = db

    # -------------------------
    # READS
    # -------------------------

    def get_evidence(self, tenant_id: str, evidence_id: str) -> EvidenceItem | None:
        return (
            self.db.query(EvidenceItem)
            .filter(EvidenceItem.tenant_id == tenant_id, EvidenceItem.id == evidence_id)
            .first()
        )

    def get_evidence_for_update(self, tenant_id: str, evidence_id: str) -> EvidenceItem | None:
        """
        Fresh row, locked until the caller commits or rolls back.
        SQLite has no row locks; the re-read still replaces stale identity-map state.
        """
        return (
            self.db.query(EvidenceItem)
            .filter(EvidenceItem.tenant_id == tenant_id, EvidenceItem.id == evidence_id)
            .with_for_update()
            .populate_existing()
            .first()
        )

    def linked_entity_ids(self, tenant_id: str, evidence_id: str) -> List[str]:
        rows = (
            self.db.query(EvidenceEntityLink.entity_id)
            .filter(
                EvidenceEntityLink.tenant_id == tenant_id,
                EvidenceEntityLink.evidence_id == evidence_id,
            )
            .order_by(EvidenceEntityLink.entity_id)
            .all()
        )
        return [r[0] for r in rows]

    def get_entities(self, tenant_id: str, entity_ids: Iterable[str]) -> List[Entity]:
        ids = list(entity_ids)
        if not ids:
            return []
        return (
            self.db.query(Entity)
            .filter(Entity.tenant_id == tenant_id, Entity.id.in_(ids))
            .order_by(Entity.id)
            .all()
        )

    def has_signal_for_evidence(self, tenant_id: str, evidence_id: str) -> bool:
        exists = (
            self.db.query(SignalEvidenceLink.id)
            .filter(
                SignalEvidenceLink.tenant_id == tenant_id,
                SignalEvidenceLink.evidence_id == evidence_id,
            )
            .first()
        )
        return exists is not None

    def list_indicators(self, tenant_id: str, evidence_id: str) -> List[Indicator]:
        return (
            self.db.query(Indicator)
            .filter(Indicator.tenant_id == tenant_id, Indicator.evidence_id == evidence_id)
            .order_by(Indicator.kind, Indicator.normalized_value)
            .all()
        )

    # -------------------------
    # ENRICHMENT WRITES
    # -------------------------

    def apply_enrichment(
        self,
        *,
        evidence: EvidenceItem,
        enrichment: Dict[str, Any],
        indicators: List[ExtractedIndicator],
    ) -> None:
        """
        One transaction:
        - top-level merge of {"enrichment": ...} into evidence metadata
          (evidence must come from get_evidence_for_update in the open transaction)
        - delete every indicator row for the evidence, insert the fresh set
        """
        tenant_id = evidence.tenant_id
        evidence_id = evidence.id
        try:
            # new dict so the JSON column registers as dirty
            merged = dict(evidence.metadata_json or {})
            merged["enrichment"] = enrichment
            evidence.metadata_json = merged

            self.db.query(Indicator).filter(
                Indicator.tenant_id == tenant_id,
                Indicator.evidence_id == evidence_id,
            ).delete(synchronize_session=False)
            self.db.flush()

            if indicators:
                now = utcnow()
                rows = [
                    {
                        "id": str(uuid.uuid4()),
                        "tenant_id": tenant_id,
                        "evidence_id": evidence_id,
                        "kind": x.kind,
                        "value": x.value,
                        "normalized_value": x.normalized_value,
                        "source": x.source,
                        "created_at": now,
                    }
                    for x in indicators
                ]
                self.db.execute(_insert_ignoring_conflicts(self.db, Indicator.__table__), rows)

            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    # -------------------------
    # SIGNAL WRITES
    # -------------------------

    def create_signal(
        self,
        *,
        tenant_id: str,
        evidence_id: str,
        entity_ids: List[str],
        kind: str,
        title: str,
        severity: int,
        score: float,
        reasons: List[str],
    ) -> Signal:
        """
        One transaction: signal + evidence link + entity links + signal.created audit.
        """
        try:
            signal = Signal(
                id=str(uuid.uuid4()),
                tenant_id=tenant_id,
                kind=kind,
                title=title,
                severity=severity,
                score=score,
                status="open",
                rationale={"reasons": list(reasons)},
            )
            self.db.add(signal)
            self.db.flush()

            self.db.add(
                SignalEvidenceLink(
                    tenant_id=tenant_id,
                    signal_id=signal.id,
                    evidence_id=evidence_id,
                )
            )

            for entity_id in dict.fromkeys(entity_ids):
                self.db.add(
                    SignalEntityLink(
                        tenant_id=tenant_id,
                        signal_id=signal.id,
                        entity_id=entity_id,
                    )
                )

            self.db.add(
                AuditEvent(
                    tenant_id=tenant_id,
                    action="signal.created",
                    actor_user_id=None,
                    target_type="signal",
                    target_id=signal.id,
                    metadata_json={
                        "evidenceId": evidence_id,
                        "kind": kind,
                        "score": score,
                        "severity": severity,
                        "reasons": list(reasons),
                    },
                )
            )

            self.db.commit()
            return signal
        except Exception:
            self.db.rollback()
            raise

    # -------------------------
    # AUDIT
    # -------------------------

    def audit(
        self,
        *,
        tenant_id: str,
        action: str,
        target_type: str,
        target_id: str,
        actor_user_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        entry = AuditEvent(
            tenant_id=tenant_id,
            action=action,
            actor_user_id=actor_user_id,
            target_type=target_type,
            target_id=target_id,
            metadata_json=metadata or {},
            at=utcnow(),
        )
        try:
            self.db.add(entry)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
