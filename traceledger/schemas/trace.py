"""
Chain-of-Custody Schema

Read models returned by the custody assembler. Nothing here is persisted.
"""

from typing import Optional

from pydantic import BaseModel, Field

from .anchor import AnchorProof
from .events import SupplyChainEvent


class Participant(BaseModel):
    """An actor resolved from the external profile directory."""
    id: str
    name: Optional[str] = None
    organization: Optional[str] = None
    role: Optional[str] = None


class TraceEntry(BaseModel):
    """One event in a product trace, with its proof and performer."""
    event: SupplyChainEvent
    anchor_proof: Optional[AnchorProof] = None
    performer: Optional[Participant] = None
    integrity_valid: Optional[bool] = Field(
        default=None,
        description="None unless the trace was assembled with integrity checks"
    )


class TraceSummary(BaseModel):
    total_events: int = 0
    verified_events: int = 0
    anchored_events: int = 0
    participants_count: int = 0
    integrity_failures: int = 0


class ProductTrace(BaseModel):
    """Ordered custody history of one product."""
    product_id: str
    events: list[TraceEntry] = []
    proofs: list[AnchorProof] = Field(
        default_factory=list,
        description="Anchor proofs of the anchored events, in trace order"
    )
    participants: list[Participant] = []
    summary: TraceSummary = Field(default_factory=TraceSummary)
