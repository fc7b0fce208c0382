from app.ledger.models import (
    EvidenceItem,
    Indicator,
    Entity,
    EvidenceEntityLink,
    Signal,
    SignalEvidenceLink,
    SignalEntityLink,
    AuditEvent,
)

__all__ = [
    "EvidenceItem",
    "Indicator",
    "Entity",
    "EvidenceEntityLink",
    "Signal",
    "SignalEvidenceLink",
    "SignalEntityLink",
    "AuditEvent",
]
