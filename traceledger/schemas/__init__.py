# Canonical schemas for the traceability ledger.
# Events are the facts; proofs are the ledger's receipts for them.

from .events import (
    EventType,
    GeoPoint,
    EventFields,
    SupplyChainEvent,
    COORDINATE_SCALE,
    normalize_coordinate,
)
from .anchor import (
    AnchorStatus,
    AnchorProof,
    TransactionInfo,
    RecordedEvent,
    VerificationResult,
)
from .trace import Participant, TraceEntry, TraceSummary, ProductTrace

__all__ = [
    # Events
    "EventType",
    "GeoPoint",
    "EventFields",
    "SupplyChainEvent",
    "COORDINATE_SCALE",
    "normalize_coordinate",
    # Anchoring
    "AnchorStatus",
    "AnchorProof",
    "TransactionInfo",
    "RecordedEvent",
    "VerificationResult",
    # Trace
    "Participant",
    "TraceEntry",
    "TraceSummary",
    "ProductTrace",
]
