from datetime import datetime, timezone, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.db.base import Base
from app.db import registry as _  # noqa: F401  # register models
from app.enrichment.fetcher import FetchOutcome
from app.ledger.models import EvidenceItem, Entity, EvidenceEntityLink


TENANT = "tenant-a"


def ts(hours: float = 0):
    return datetime.now(timezone.utc) - timedelta(hours=hours)


def make_engine(tables=None):
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine, tables=tables)
    return engine


@pytest.fixture()
def engine():
    e = make_engine()
    try:
        yield e
    finally:
        e.dispose()


@pytest.fixture()
def db(engine):
    Session = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    session = Session()
    try:
        yield session
    finally:
        session.close()


def add_evidence(db, **kw) -> EvidenceItem:
    values = {
        "tenant_id": TENANT,
        "fetched_at": ts(1),
        "source_type": "manual",
        "tags": [],
        "metadata_json": {},
    }
    values.update(kw)
    ev = EvidenceItem(**values)
    db.add(ev)
    db.commit()
    return ev


def add_entity(db, *, evidence_id=None, tenant_id=TENANT, **kw) -> Entity:
    ent = Entity(tenant_id=tenant_id, **kw)
    db.add(ent)
    db.flush()
    if evidence_id:
        db.add(EvidenceEntityLink(tenant_id=tenant_id, evidence_id=evidence_id, entity_id=ent.id))
    db.commit()
    return ent


class StubFetcher:
    """Records fetch calls and returns a canned FetchOutcome."""

    def __init__(self, outcome: FetchOutcome):
        self.outcome = outcome
        self.calls = []

    def fetch(self, url, **kw):
        self.calls.append((url, kw))
        return self.outcome
