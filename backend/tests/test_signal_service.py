from sqlalchemy.orm import sessionmaker

import pytest

from app.ledger.models import (
    AuditEvent,
    Entity,
    EvidenceEntityLink,
    EvidenceItem,
    Indicator,
    Signal,
    SignalEntityLink,
    SignalEvidenceLink,
)
from app.signals.service import SignalService, evaluate_signal, is_missing_signal_table_error

from conftest import TENANT, add_entity, add_evidence, make_engine, ts


KM_PER_DEG_LAT = 111.195

ROUTE_META = {
    "routeGeometry": {"type": "LineString", "coordinates": [[0, 0], [1, 0]]},
    "corridorKm": 5,
}


def test_cisa_evidence_creates_one_signal_with_links_and_audit(db):
    ev = add_evidence(
        db,
        fetched_at=ts(0.1),
        source_type="rss",
        source_uri="https://alerts.cisa.gov/x",
        tags=["cisa", "critical"],
        title="CISA adds KEV entry",
    )

    created = evaluate_signal(db, tenant_id=TENANT, evidence_id=ev.id)

    assert created is not None
    assert created.score == 90
    assert created.severity == 5
    assert created.kind == "osint_rule"

    sig = db.query(Signal).one()
    assert sig.title == "CISA adds KEV entry"
    assert sig.status == "open"
    assert sig.severity == 5
    assert sig.rationale["reasons"] == created.reasons
    assert "tag=critical (+30)" in sig.rationale["reasons"]

    link = db.query(SignalEvidenceLink).one()
    assert (link.signal_id, link.evidence_id, link.tenant_id) == (sig.id, ev.id, TENANT)
    assert db.query(SignalEntityLink).count() == 0

    audit = db.query(AuditEvent).filter(AuditEvent.action == "signal.created").one()
    assert audit.target_id == sig.id
    assert audit.metadata_json["reasons"] == created.reasons
    assert audit.metadata_json["evidenceId"] == ev.id


def test_reevaluation_is_idempotent(db):
    ev = add_evidence(db, fetched_at=ts(0), source_type="webhook", tags=["high"])
    svc = SignalService(db)

    first = svc.evaluate_signal(tenant_id=TENANT, evidence_id=ev.id)
    second = svc.evaluate_signal(tenant_id=TENANT, evidence_id=ev.id)

    assert first is not None
    assert second is None
    assert db.query(Signal).count() == 1


def test_low_score_creates_nothing(db):
    ev = add_evidence(db, fetched_at=ts(24 * 10), source_type="rss", tags=[])

    assert evaluate_signal(db, tenant_id=TENANT, evidence_id=ev.id) is None
    assert db.query(Signal).count() == 0
    assert db.query(SignalEvidenceLink).count() == 0


def test_missing_evidence_is_noop(db):
    assert evaluate_signal(db, tenant_id=TENANT, evidence_id="missing") is None
    ev = add_evidence(db, fetched_at=ts(0), source_type="webhook", tags=["critical"])
    assert evaluate_signal(db, tenant_id="tenant-b", evidence_id=ev.id) is None
    assert db.query(Signal).count() == 0


def test_facility_proximity_and_linked_entities(db):
    ev = add_evidence(
        db,
        fetched_at=ts(48),
        source_type="manual",
        metadata_json={"geo": {"lat": 0.0, "lon": 0.0}},
        summary="Protest reported near the plant gates",
    )
    near = add_entity(db, evidence_id=ev.id, type="FACILITY", name="Plant", metadata_json={"geo": {"lat": 0.1, "lon": 0}})
    far = add_entity(db, evidence_id=ev.id, type="FACILITY", name="HQ", metadata_json={"geo": {"lat": 5, "lon": 5}})

    created = evaluate_signal(db, tenant_id=TENANT, evidence_id=ev.id)

    # recency<=72h 10 + manual 10 + <=50km 20 + linked 10
    assert created.score == 50
    assert created.severity == 3
    assert "geo_proximity<=50km (+20)" in created.reasons
    assert "linked_entities=2 (+10)" in created.reasons

    sig = db.query(Signal).one()
    assert sig.title == "Protest reported near the plant gates"
    assert {r.entity_id for r in db.query(SignalEntityLink)} == {near.id, far.id}


def test_entities_of_other_tenants_are_ignored(db):
    ev = add_evidence(db, fetched_at=ts(48), source_type="manual", metadata_json={"geo": {"lat": 0, "lon": 0}})
    foreign = Entity(tenant_id="tenant-b", type="FACILITY", metadata_json={"geo": {"lat": 0, "lon": 0}})
    db.add(foreign)
    db.flush()
    db.add(EvidenceEntityLink(tenant_id="tenant-b", evidence_id=ev.id, entity_id=foreign.id))
    db.commit()

    created = evaluate_signal(db, tenant_id=TENANT, evidence_id=ev.id)

    assert created.score == 20
    assert not any(r.startswith("geo_proximity") for r in created.reasons)


@pytest.mark.parametrize(
    "offset_km,bonus_reason,score",
    [
        (3, "route_corridor<=5km (+20)", 50),
        (8, "route_corridor<=20km (+10)", 40),
        (25, "route_corridor>20km (+0)", 30),
    ],
)
def test_route_corridor_scenarios(db, offset_km, bonus_reason, score):
    ev = add_evidence(
        db,
        fetched_at=ts(48),
        source_type="manual",
        metadata_json={"geo": {"lat": offset_km / KM_PER_DEG_LAT, "lon": 0.5}},
    )
    add_entity(db, evidence_id=ev.id, type="ROUTE", name="Supply route", metadata_json=ROUTE_META)

    created = evaluate_signal(db, tenant_id=TENANT, evidence_id=ev.id)

    # recency 10 + manual 10 + linked 10 + corridor band
    assert bonus_reason in created.reasons
    assert created.score == score


def test_title_fallbacks(db):
    ev = add_evidence(db, fetched_at=ts(0), source_type="webhook", summary="s" * 300)
    created = evaluate_signal(db, tenant_id=TENANT, evidence_id=ev.id)
    assert db.get(Signal, created.id).title == "s" * 140

    ev2 = add_evidence(db, fetched_at=ts(0), source_type="webhook")
    created2 = evaluate_signal(db, tenant_id=TENANT, evidence_id=ev2.id)
    assert db.get(Signal, created2.id).title == f"Signal from evidence {ev2.id}"


def test_unmigrated_signal_tables_are_a_noop():
    engine = make_engine(
        tables=[
            EvidenceItem.__table__,
            Entity.__table__,
            EvidenceEntityLink.__table__,
            Indicator.__table__,
            AuditEvent.__table__,
        ]
    )
    db = sessionmaker(bind=engine, autoflush=False, autocommit=False)()
    try:
        ev = add_evidence(db, fetched_at=ts(0), source_type="webhook", tags=["critical"])
        assert evaluate_signal(db, tenant_id=TENANT, evidence_id=ev.id) is None
    finally:
        db.close()
        engine.dispose()


def test_other_store_errors_propagate(db, monkeypatch):
    from sqlalchemy.exc import OperationalError

    ev = add_evidence(db, fetched_at=ts(0), source_type="webhook", tags=["critical"])
    svc = SignalService(db)

    def down(*a, **kw):
        raise OperationalError("SELECT 1", {}, Exception("server closed the connection unexpectedly"))

    monkeypatch.setattr(svc.repo, "has_signal_for_evidence", down)

    with pytest.raises(OperationalError):
        svc.evaluate_signal(tenant_id=TENANT, evidence_id=ev.id)


def test_missing_table_error_matching():
    pg = Exception('relation "signals" does not exist')
    lite = Exception("no such table: signal_evidence_links")
    other = Exception('relation "entities" does not exist')
    assert is_missing_signal_table_error(pg)
    assert is_missing_signal_table_error(lite)
    assert not is_missing_signal_table_error(other)
