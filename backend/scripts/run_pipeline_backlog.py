import sys
from datetime import datetime, timedelta, timezone

from app.core.logs import configure_logging
from app.ledger.db import tenant_session
from app.ledger.models import EvidenceItem
from app.enrichment.service import EnrichmentService
from app.signals.service import SignalService

# Enrich + evaluate every evidence item a tenant fetched in the last N hours.
# Usage: python scripts/run_pipeline_backlog.py <tenant_id> [hours]

configure_logging()

tenant_id = sys.argv[1]
hours = int(sys.argv[2]) if len(sys.argv) > 2 else 24
since = datetime.now(timezone.utc) - timedelta(hours=hours)

db = tenant_session(tenant_id)

ids = [
    r[0]
    for r in db.query(EvidenceItem.id)
    .filter(EvidenceItem.tenant_id == tenant_id, EvidenceItem.fetched_at >= since)
    .order_by(EvidenceItem.fetched_at)
    .all()
]

enricher = EnrichmentService(db)
signals = SignalService(db)

enriched = 0
created = 0
for evidence_id in ids:
    res = enricher.enrich_evidence(tenant_id=tenant_id, evidence_id=evidence_id)
    if res.status == "enriched":
        enriched += 1
    if signals.evaluate_signal(tenant_id=tenant_id, evidence_id=evidence_id):
        created += 1

db.close()

print(f"evidence={len(ids)} enriched={enriched} signals_created={created}")
