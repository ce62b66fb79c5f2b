"""
Supply-Chain Event Schema

An event is something that happened to a product: it was harvested,
processed, packaged, shipped, scanned. Events are recorded once and
never edited. The only later change is the one-way flip from
unverified to verified when the anchor proof is linked.

The hashed fields are product_id, event_type, performed_by, timestamp,
location and metadata. The id and description are NOT hashed.
"""

import math
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_EVEN
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# Fixed scale of every persisted and hashed coordinate
COORDINATE_SCALE = Decimal("0.00000001")

# NUMERIC(18, 8) holds at most 10 integer digits
MAX_COORDINATE_MAGNITUDE = Decimal("1e10")

HASH_PATTERN = r"^[0-9a-f]{64}$"


class EventType(str, Enum):
    """
    Custody event kinds.
    You can add more later, never remove.
    """
    HARVEST = "HARVEST"
    PROCESSING = "PROCESSING"
    QUALITY_TEST = "QUALITY_TEST"
    PACKAGING = "PACKAGING"
    SHIPMENT = "SHIPMENT"
    TRANSFER = "TRANSFER"
    LISTING = "LISTING"
    SCAN = "SCAN"
    VERIFICATION = "VERIFICATION"


def normalize_coordinate(value: Any, name: str) -> Decimal:
    """
    Convert a coordinate to a Decimal with exactly 8 fractional digits.

    Floats go through str() first so 12.34 becomes 12.34000000 and not
    the binary expansion of the double.
    """
    if isinstance(value, bool):
        raise ValueError(f"{name} must be a number, got bool")
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError(f"{name} must be finite")
        value = str(value)
    try:
        dec = Decimal(value) if not isinstance(value, Decimal) else value
    except (InvalidOperation, TypeError, ValueError) as e:
        raise ValueError(f"{name} is not a number: {value!r}") from e
    if not dec.is_finite():
        raise ValueError(f"{name} must be finite")
    if abs(dec) >= MAX_COORDINATE_MAGNITUDE:
        raise ValueError(f"{name} out of range: {value!r}")
    dec = dec.quantize(COORDINATE_SCALE, rounding=ROUND_HALF_EVEN)
    if dec.is_zero():
        # -0 and 0 must encode identically
        dec = Decimal("0").quantize(COORDINATE_SCALE)
    return dec


class GeoPoint(BaseModel):
    """
    A WGS84 position.

    latitude and longitude are both required; there is no half-present
    location. (0, 0) is a real position, distinct from "no location".
    """
    model_config = ConfigDict(frozen=True)

    latitude: Decimal = Field(..., description="Degrees, -90..90")
    longitude: Decimal = Field(..., description="Degrees, -180..180")
    accuracy: Optional[Decimal] = Field(
        default=None,
        description="Horizontal accuracy in meters, 0 <= accuracy < 1e10"
    )

    @field_validator("latitude", "longitude", "accuracy", mode="before")
    @classmethod
    def _normalize(cls, value: Any, info) -> Optional[Decimal]:
        if value is None:
            if info.field_name == "accuracy":
                return None
            raise ValueError(f"{info.field_name} is required")
        return normalize_coordinate(value, info.field_name)

    @model_validator(mode="after")
    def _check_ranges(self) -> "GeoPoint":
        if not Decimal(-90) <= self.latitude <= Decimal(90):
            raise ValueError(f"latitude out of range: {self.latitude}")
        if not Decimal(-180) <= self.longitude <= Decimal(180):
            raise ValueError(f"longitude out of range: {self.longitude}")
        if self.accuracy is not None:
            if self.accuracy < 0:
                raise ValueError(f"accuracy must be >= 0: {self.accuracy}")
            if self.accuracy >= MAX_COORDINATE_MAGNITUDE:
                raise ValueError(f"accuracy out of range: {self.accuracy}")
        return self


class EventFields(BaseModel):
    """The logical fields that feed the canonical encoding."""
    model_config = ConfigDict(frozen=True)

    product_id: str
    event_type: EventType
    performed_by: str
    timestamp: datetime
    location: Optional[GeoPoint] = None
    metadata: Optional[dict[str, Any]] = None


class SupplyChainEvent(BaseModel):
    """
    The persisted event record.

    Rules:
    - id and timestamp are assigned once at creation
    - data_hash is computed once at creation and never recomputed for storage
    - anchor_ref is set at most once; verified is True iff anchor_ref is set
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="UUID4 assigned at creation")
    product_id: str = Field(..., min_length=1)
    event_type: EventType
    performed_by: str = Field(..., min_length=1)
    timestamp: datetime
    location: Optional[GeoPoint] = None
    description: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None
    data_hash: str = Field(..., pattern=HASH_PATTERN)
    anchor_ref: Optional[str] = Field(
        default=None,
        description="Id of the linked AnchorProof"
    )
    verified: bool = False

    @model_validator(mode="after")
    def _verified_iff_anchored(self) -> "SupplyChainEvent":
        if self.verified != (self.anchor_ref is not None):
            raise ValueError("verified must be true exactly when anchor_ref is set")
        return self

    def logical_fields(self) -> EventFields:
        """The hashed subset of this event."""
        return EventFields(
            product_id=self.product_id,
            event_type=self.event_type,
            performed_by=self.performed_by,
            timestamp=self.timestamp,
            location=self.location,
            metadata=self.metadata,
        )

    def with_anchor(self, proof_id: str) -> "SupplyChainEvent":
        """Return the linked (verified) copy of this event."""
        return self.model_copy(update={"anchor_ref": proof_id, "verified": True})
