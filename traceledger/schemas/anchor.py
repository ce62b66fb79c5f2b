"""
Anchor Proof Schema

A proof is the ledger's receipt for a committed hash. It is immutable
except for the status field, which may move out of PENDING exactly once.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from .events import HASH_PATTERN, SupplyChainEvent


class AnchorStatus(str, Enum):
    """Ledger confirmation state of an anchor."""
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"


# Allowed status transitions (from -> set of to)
ALLOWED_TRANSITIONS: dict[AnchorStatus, frozenset[AnchorStatus]] = {
    AnchorStatus.PENDING: frozenset({AnchorStatus.CONFIRMED, AnchorStatus.FAILED}),
    AnchorStatus.CONFIRMED: frozenset(),
    AnchorStatus.FAILED: frozenset(),
}


class AnchorProof(BaseModel):
    """Record of one anchor result."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="UUID4 assigned when the proof is created")
    event_id: Optional[str] = Field(
        default=None,
        description="Owning event; set when the proof is linked"
    )
    data_hash: str = Field(..., pattern=HASH_PATTERN)
    transaction_ref: str = Field(..., min_length=1)
    block_number: int = Field(..., ge=0)
    block_timestamp: datetime
    network: str = Field(..., min_length=1)
    cost_units: Optional[str] = None
    status: AnchorStatus = AnchorStatus.CONFIRMED
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def transition_to(self, status: AnchorStatus) -> "AnchorProof":
        """
        Return a copy with the new status.

        Raises:
            ValueError: If the transition is not PENDING -> CONFIRMED/FAILED
        """
        if status not in ALLOWED_TRANSITIONS[self.status]:
            raise ValueError(
                f"Illegal anchor status transition {self.status.value} -> {status.value}"
            )
        return self.model_copy(update={"status": status})

    def for_event(self, event_id: str) -> "AnchorProof":
        """Bind an unlinked proof to its event."""
        if self.event_id is not None and self.event_id != event_id:
            raise ValueError(f"Proof {self.id} already belongs to event {self.event_id}")
        return self.model_copy(update={"event_id": event_id})


class TransactionInfo(BaseModel):
    """What the ledger reports about one transaction."""
    transaction_ref: str
    network: str
    status: AnchorStatus
    block_number: Optional[int] = None
    block_timestamp: Optional[datetime] = None
    from_address: Optional[str] = None
    to_address: Optional[str] = None
    cost_units: Optional[str] = None


class RecordedEvent(BaseModel):
    """
    Outcome of record_event / reanchor_event.

    anchor_proof is None and anchor_error is set when anchoring failed;
    the event is still persisted (unverified) in that case.
    """
    event: SupplyChainEvent
    anchor_proof: Optional[AnchorProof] = None
    anchor_error: Optional[str] = None

    @property
    def anchored(self) -> bool:
        return self.anchor_proof is not None


class VerificationResult(BaseModel):
    """Result of re-verifying one stored event."""
    event_id: str
    is_valid: bool
    stored_hash: str
    computed_hash: Optional[str] = None
    verified: bool
    proof_hash_matches: Optional[bool] = Field(
        default=None,
        description="Stored hash equals the anchor proof hash; None when unanchored"
    )
    anchor_status: Optional[AnchorStatus] = None
    transaction_ref: Optional[str] = None
    chain_verified: Optional[bool] = Field(
        default=None,
        description="None when the ledger was not consulted or unreachable"
    )
    message: str
