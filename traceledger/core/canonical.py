"""
Canonical Event Encoding

Turns an event's logical fields into deterministic bytes.
Same logical event → same bytes. Always. Forever.

This is SACRED GROUND.

If this changes, every stored data_hash becomes unverifiable.
Any breaking change must bump FORMAT_VERSION.

CANONICAL ENCODING RULES (format version 1):
1. Top level is a JSON object with keys in this fixed order:
   __canon_v, productId, eventType, performedBy, timestamp, location, metadata
2. location and metadata are ALWAYS present; absent means JSON null
3. timestamp: ISO 8601, UTC, microseconds, Z suffix
4. location: {"latitude","longitude","accuracy"} in that order,
   values are fixed 8-decimal strings; accuracy may be null
5. metadata keys: sorted recursively (Unicode code point order)
6. metadata nulls: KEPT as null (a key with null differs from a missing key)
7. metadata numbers: finite only; integral floats encode as integers;
   other floats use the shortest round-trip repr
8. Allowed metadata types: str, int, float, Decimal, bool, None, list, dict
9. JSON output: no whitespace, ASCII only, UTF-8 bytes
10. description and id are NOT encoded
"""

import json
import math
from collections import OrderedDict
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from ..schemas.events import EventFields, GeoPoint
from .errors import CanonicalEncodingError


class CanonicalEncoder:
    """
    Canonical encoding of event fields.

    IMMUTABLE CONTRACT:
    - Same logical input → same bytes
    - Independent of dict insertion order
    - Independent of platform and Python version
    """

    # Version of the canonical format
    # Increment this if encoding rules change in breaking ways
    FORMAT_VERSION = 1

    @classmethod
    def encode(cls, fields: EventFields) -> bytes:
        """
        Encode logical event fields to canonical bytes.

        Raises:
            CanonicalEncodingError: If any field cannot be encoded deterministically
        """
        return cls.canonicalize(fields).encode("utf-8")

    @classmethod
    def canonicalize(cls, fields: EventFields) -> str:
        """Canonical JSON text for the given fields."""
        if isinstance(fields, dict):
            try:
                fields = EventFields(**fields)
            except Exception as e:
                raise CanonicalEncodingError(f"Invalid event fields: {e}") from e

        document = OrderedDict()
        document["__canon_v"] = cls.FORMAT_VERSION
        document["productId"] = cls._require_text(fields.product_id, "productId")
        document["eventType"] = cls._enum_value(fields.event_type)
        document["performedBy"] = cls._require_text(fields.performed_by, "performedBy")
        document["timestamp"] = cls.format_timestamp(fields.timestamp)
        document["location"] = cls._encode_location(fields.location)
        document["metadata"] = (
            None if fields.metadata is None
            else cls._encode_mapping(fields.metadata, "metadata")
        )

        try:
            return json.dumps(
                document,
                sort_keys=False,         # Order is fixed above
                separators=(",", ":"),   # No whitespace
                ensure_ascii=True,       # Escape non-ASCII for consistency
                allow_nan=False,
            )
        except (TypeError, ValueError) as e:
            raise CanonicalEncodingError(f"Cannot encode event: {e}") from e

    @classmethod
    def normalize_metadata(cls, metadata: Optional[dict[str, Any]]) -> Optional[dict[str, Any]]:
        """
        Plain-JSON copy of metadata exactly as it will be hashed.

        Storing this form (instead of the caller's) makes a JSONB round
        trip re-encode to the same bytes.
        """
        if metadata is None:
            return None
        return json.loads(json.dumps(cls._encode_mapping(metadata, "metadata")))

    @staticmethod
    def format_timestamp(dt: datetime) -> str:
        """
        Format a datetime as YYYY-MM-DDTHH:MM:SS.ffffffZ.

        Naive datetimes are rejected: we need the absolute moment.
        """
        if not isinstance(dt, datetime):
            raise CanonicalEncodingError(f"timestamp must be a datetime, got {type(dt).__name__}")
        if dt.tzinfo is None:
            raise CanonicalEncodingError(
                "timestamp is timezone-naive. "
                "Use datetime.now(timezone.utc) or attach a timezone."
            )
        utc_dt = dt.astimezone(timezone.utc)
        return utc_dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc_dt.microsecond:06d}Z"

    @staticmethod
    def _require_text(value: Any, name: str) -> str:
        if not isinstance(value, str) or not value:
            raise CanonicalEncodingError(f"{name} must be a non-empty string")
        return value

    @staticmethod
    def _enum_value(value: Any) -> str:
        if isinstance(value, Enum):
            return value.value
        if isinstance(value, str) and value:
            return value
        raise CanonicalEncodingError(f"eventType must be an enum or string, got {value!r}")

    @staticmethod
    def _fixed(value: Decimal) -> str:
        # Fixed-point, never exponent notation ("0E-8" must be "0.00000000")
        return f"{value:.8f}"

    @classmethod
    def _encode_location(cls, location: Optional[GeoPoint]) -> Optional[OrderedDict]:
        if location is None:
            return None
        encoded = OrderedDict()
        encoded["latitude"] = cls._fixed(location.latitude)
        encoded["longitude"] = cls._fixed(location.longitude)
        encoded["accuracy"] = (
            None if location.accuracy is None else cls._fixed(location.accuracy)
        )
        return encoded

    @classmethod
    def _encode_mapping(cls, data: Any, path: str) -> OrderedDict:
        if not isinstance(data, dict):
            raise CanonicalEncodingError(
                f"{path} must be an object, got {type(data).__name__}"
            )
        for key in data:
            if not isinstance(key, str):
                raise CanonicalEncodingError(
                    f"Key at {path} must be a string, got {type(key).__name__}"
                )
        encoded = OrderedDict()
        for key in sorted(data):
            encoded[key] = cls._encode_value(data[key], f"{path}.{key}")
        return encoded

    @classmethod
    def _encode_value(cls, value: Any, path: str) -> Any:
        """Recursively encode one metadata value."""
        if value is None:
            return None

        # bool before int: bool is an int subclass
        if isinstance(value, bool):
            return value

        if isinstance(value, int):
            return value

        if isinstance(value, float):
            if not math.isfinite(value):
                raise CanonicalEncodingError(f"Non-finite number at {path}")
            if value.is_integer():
                return int(value)
            return value

        if isinstance(value, Decimal):
            if not value.is_finite():
                raise CanonicalEncodingError(f"Non-finite number at {path}")
            if value == value.to_integral_value():
                return int(value)
            return cls._encode_value(float(value), path)

        if isinstance(value, str):
            return value

        if isinstance(value, (list, tuple)):
            return [cls._encode_value(v, f"{path}[{i}]") for i, v in enumerate(value)]

        if isinstance(value, dict):
            return cls._encode_mapping(value, path)

        raise CanonicalEncodingError(
            f"Cannot encode {type(value).__name__} at {path}. "
            "Only JSON-compatible types are allowed."
        )
