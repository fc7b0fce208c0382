import uuid

from sqlalchemy import Column, String, Integer, Float, DateTime, Text, ForeignKey, Index, UniqueConstraint

from app.db.base import Base, JSONType, utcnow


def new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Owned by ingestion / tenant admin (read here, only metadata.enrichment written)
# ---------------------------------------------------------------------------


class EvidenceItem(Base):
    __tablename__ = "evidence_items"

    id = Column(String, primary_key=True, default=new_id)
    tenant_id = Column(String, nullable=False)

    fetched_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    source_type = Column(String, nullable=False)  # manual | rss | webhook
    source_uri = Column(Text, nullable=True)

    title = Column(Text, nullable=True)
    summary = Column(Text, nullable=True)
    content_text = Column(Text, nullable=True)

    tags = Column(JSONType, nullable=False, default=list)  # list[str]
    content_hash = Column(String, nullable=True)

    # "metadata" is reserved on declarative classes
    metadata_json = Column("metadata", JSONType, nullable=False, default=dict)

    __table_args__ = (
        Index("ix_evidence_items_tenant_fetched", "tenant_id", "fetched_at"),
    )


class Entity(Base):
    __tablename__ = "entities"

    id = Column(String, primary_key=True, default=new_id)
    tenant_id = Column(String, nullable=False)

    type = Column(String, nullable=False)  # FACILITY | ROUTE | ...
    name = Column(String, nullable=False, default="")

    # FACILITY: {"geo": {"lat", "lon"}}
    # ROUTE:    {"routeGeometry": {"type": "LineString", "coordinates": [[lon, lat], ...]}, "corridorKm": 5}
    metadata_json = Column("metadata", JSONType, nullable=False, default=dict)

    __table_args__ = (
        Index("ix_entities_tenant_type", "tenant_id", "type"),
    )


class EvidenceEntityLink(Base):
    __tablename__ = "evidence_entity_links"

    tenant_id = Column(String, primary_key=True)
    evidence_id = Column(
        String,
        ForeignKey("evidence_items.id", ondelete="CASCADE"),
        primary_key=True,
    )
    entity_id = Column(
        String,
        ForeignKey("entities.id", ondelete="CASCADE"),
        primary_key=True,
    )


# ---------------------------------------------------------------------------
# Owned by the enrichment pipeline
# ---------------------------------------------------------------------------


class Indicator(Base):
    __tablename__ = "evidence_indicators"

    id = Column(String, primary_key=True, default=new_id)
    tenant_id = Column(String, nullable=False)
    evidence_id = Column(
        String,
        ForeignKey("evidence_items.id", ondelete="CASCADE"),
        nullable=False,
    )

    kind = Column(String, nullable=False)  # url | domain | ip | email | hash | cve
    value = Column(Text, nullable=False)
    normalized_value = Column(Text, nullable=False)
    source = Column(String, nullable=False)  # corpus field it came from

    metadata_json = Column("metadata", JSONType, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "evidence_id",
            "kind",
            "normalized_value",
            name="uq_evidence_indicator",
        ),
        Index("ix_evidence_indicators_lookup", "tenant_id", "kind", "normalized_value"),
    )


# ---------------------------------------------------------------------------
# Owned by the signal pipeline
# ---------------------------------------------------------------------------


class Signal(Base):
    __tablename__ = "signals"

    id = Column(String, primary_key=True, default=new_id)
    tenant_id = Column(String, nullable=False)

    kind = Column(String, nullable=False)  # osint_rule
    title = Column(Text, nullable=False)
    severity = Column(Integer, nullable=False)  # 1..5
    score = Column(Float, nullable=False)  # 0..100
    status = Column(String, nullable=False, default="open")

    rationale = Column(JSONType, nullable=False, default=dict)  # {"reasons": [...]}
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_signals_tenant_created", "tenant_id", "created_at"),
        Index("ix_signals_tenant_severity", "tenant_id", "severity"),
    )


class SignalEvidenceLink(Base):
    __tablename__ = "signal_evidence_links"

    id = Column(String, primary_key=True, default=new_id)
    tenant_id = Column(String, nullable=False)
    signal_id = Column(
        String,
        ForeignKey("signals.id", ondelete="CASCADE"),
        nullable=False,
    )
    evidence_id = Column(String, nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "signal_id", "evidence_id", name="uq_signal_evidence"),
        Index("ix_signal_evidence_links_evidence", "tenant_id", "evidence_id"),
    )


class SignalEntityLink(Base):
    __tablename__ = "signal_entity_links"

    id = Column(String, primary_key=True, default=new_id)
    tenant_id = Column(String, nullable=False)
    signal_id = Column(
        String,
        ForeignKey("signals.id", ondelete="CASCADE"),
        nullable=False,
    )
    entity_id = Column(String, nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "signal_id", "entity_id", name="uq_signal_entity"),
    )


class AuditEvent(Base):
    __tablename__ = "audit_log"

    id = Column(String, primary_key=True, default=new_id)
    tenant_id = Column(String, nullable=False)

    action = Column(String, nullable=False)  # evidence.enriched | signal.created
    actor_user_id = Column(String, nullable=True)
    target_type = Column(String, nullable=False)
    target_id = Column(String, nullable=False)

    metadata_json = Column("metadata", JSONType, nullable=False, default=dict)
    at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_audit_tenant_action_time", "tenant_id", "action", "at"),
    )
