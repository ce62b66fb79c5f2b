"""
Tests for canonical encoding and hashing

The canonical form is SACRED GROUND: these tests pin the exact bytes.
"""

import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError as PydanticValidationError

from traceledger.core import CanonicalEncoder, CanonicalEncodingError, Hasher
from traceledger.schemas import EventFields, EventType, GeoPoint


T0 = datetime(2024, 3, 15, 14, 30, 0, 123456, tzinfo=timezone.utc)


def make_fields(**overrides) -> EventFields:
    values = dict(
        product_id="P1",
        event_type=EventType.HARVEST,
        performed_by="U1",
        timestamp=T0,
        location=GeoPoint(latitude=12.34, longitude=56.78),
        metadata={"quantity": 10, "unit": "kg"},
    )
    values.update(overrides)
    return EventFields(**values)


class TestCanonicalEncoder:
    """Test canonical encoding - THIS IS SACRED GROUND."""

    def test_golden_canonical_format(self):
        """The exact canonical text for a known event."""
        expected = (
            '{"__canon_v":1,"productId":"P1","eventType":"HARVEST","performedBy":"U1",'
            '"timestamp":"2024-03-15T14:30:00.123456Z",'
            '"location":{"latitude":"12.34000000","longitude":"56.78000000","accuracy":null},'
            '"metadata":{"quantity":10,"unit":"kg"}}'
        )
        assert CanonicalEncoder.canonicalize(make_fields()) == expected

    def test_encode_returns_utf8_bytes(self):
        encoded = CanonicalEncoder.encode(make_fields())
        assert isinstance(encoded, bytes)
        assert encoded == CanonicalEncoder.canonicalize(make_fields()).encode("utf-8")

    def test_deterministic(self):
        """Same input always produces same bytes."""
        assert CanonicalEncoder.encode(make_fields()) == CanonicalEncoder.encode(make_fields())

    def test_metadata_key_order_independent(self):
        """Insertion order of metadata keys does not matter, at any depth."""
        a = make_fields(metadata={"b": 2, "a": {"y": 1, "x": [{"q": 1, "p": 2}]}})
        b = make_fields(metadata={"a": {"x": [{"p": 2, "q": 1}], "y": 1}, "b": 2})
        assert CanonicalEncoder.encode(a) == CanonicalEncoder.encode(b)

    def test_list_order_is_significant(self):
        a = make_fields(metadata={"tags": ["x", "y"]})
        b = make_fields(metadata={"tags": ["y", "x"]})
        assert CanonicalEncoder.encode(a) != CanonicalEncoder.encode(b)

    def test_absent_location_and_metadata_are_explicit_null(self):
        text = CanonicalEncoder.canonicalize(make_fields(location=None, metadata=None))
        assert text.endswith('"location":null,"metadata":null}')

    def test_zero_coordinates_are_not_null(self):
        """(0, 0) is a real place in the Gulf of Guinea, not 'no location'."""
        zero = make_fields(location=GeoPoint(latitude=0, longitude=0))
        absent = make_fields(location=None)
        assert '"latitude":"0.00000000","longitude":"0.00000000"' in CanonicalEncoder.canonicalize(zero)
        assert Hasher.hash_fields(zero) != Hasher.hash_fields(absent)

    def test_negative_zero_coordinate_equals_zero(self):
        a = make_fields(location=GeoPoint(latitude=-0.0, longitude=0))
        b = make_fields(location=GeoPoint(latitude=0.0, longitude=0))
        assert CanonicalEncoder.encode(a) == CanonicalEncoder.encode(b)

    def test_accuracy_encoded_when_present(self):
        fields = make_fields(location=GeoPoint(latitude=1, longitude=2, accuracy=5.5))
        assert '"accuracy":"5.50000000"' in CanonicalEncoder.canonicalize(fields)

    def test_null_metadata_value_differs_from_missing_key(self):
        with_null = make_fields(metadata={"unit": "kg", "grade": None})
        without = make_fields(metadata={"unit": "kg"})
        assert '"grade":null' in CanonicalEncoder.canonicalize(with_null)
        assert Hasher.hash_fields(with_null) != Hasher.hash_fields(without)

    def test_empty_metadata_differs_from_absent(self):
        assert Hasher.hash_fields(make_fields(metadata={})) != Hasher.hash_fields(make_fields(metadata=None))

    def test_integral_float_encodes_as_integer(self):
        """10.0 and 10 are the same quantity."""
        assert Hasher.hash_fields(make_fields(metadata={"q": 10.0})) == \
            Hasher.hash_fields(make_fields(metadata={"q": 10}))

    def test_fractional_float_uses_shortest_repr(self):
        text = CanonicalEncoder.canonicalize(make_fields(metadata={"q": 0.1}))
        assert '"metadata":{"q":0.1}' in text

    def test_decimal_metadata_normalized(self):
        assert Hasher.hash_fields(make_fields(metadata={"q": Decimal("10.00")})) == \
            Hasher.hash_fields(make_fields(metadata={"q": 10}))
        assert Hasher.hash_fields(make_fields(metadata={"q": Decimal("2.5")})) == \
            Hasher.hash_fields(make_fields(metadata={"q": 2.5}))

    def test_booleans_stay_booleans(self):
        """True must not collapse into 1."""
        assert Hasher.hash_fields(make_fields(metadata={"ok": True})) != \
            Hasher.hash_fields(make_fields(metadata={"ok": 1}))

    def test_non_finite_numbers_rejected(self):
        for bad in (float("nan"), float("inf"), float("-inf")):
            with pytest.raises(CanonicalEncodingError):
                CanonicalEncoder.encode(make_fields(metadata={"q": bad}))

    def test_unsupported_types_rejected(self):
        for bad in ({1, 2}, b"raw", T0):
            with pytest.raises(CanonicalEncodingError):
                CanonicalEncoder.encode(make_fields(metadata={"v": bad}))

    def test_non_string_nested_key_rejected(self):
        with pytest.raises(CanonicalEncodingError):
            CanonicalEncoder.encode(make_fields(metadata={"outer": {1: "x"}}))

    def test_non_ascii_escaped(self):
        text = CanonicalEncoder.canonicalize(make_fields(metadata={"origin": "Côte d'Ivoire"}))
        assert "\\u00f4" in text
        assert text.isascii()

    def test_no_whitespace_in_output(self):
        text = CanonicalEncoder.canonicalize(make_fields())
        assert ": " not in text
        assert ", " not in text

    def test_timestamp_normalized_to_utc(self):
        plus_two = timezone(timedelta(hours=2))
        local = make_fields(timestamp=T0.astimezone(plus_two))
        assert CanonicalEncoder.encode(local) == CanonicalEncoder.encode(make_fields())

    def test_timestamp_always_has_microseconds(self):
        fields = make_fields(timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc))
        assert '"timestamp":"2024-01-01T00:00:00.000000Z"' in CanonicalEncoder.canonicalize(fields)

    def test_naive_timestamp_rejected(self):
        with pytest.raises(CanonicalEncodingError):
            CanonicalEncoder.format_timestamp(datetime(2024, 1, 1))

    def test_description_not_part_of_encoding(self):
        """EventFields has no description; the canonical text never mentions one."""
        assert "description" not in CanonicalEncoder.canonicalize(make_fields())

    def test_dict_input_accepted(self):
        fields = make_fields()
        assert CanonicalEncoder.encode(fields.model_dump()) == CanonicalEncoder.encode(fields)

    def test_normalize_metadata_survives_json_round_trip(self):
        """What we store must re-encode to the same bytes after a JSONB round trip."""
        original = {"b": (1, 2.0), "a": {"big": 1e20, "x": Decimal("0.25")}}
        normalized = CanonicalEncoder.normalize_metadata(original)
        reloaded = json.loads(json.dumps(normalized))
        assert Hasher.hash_fields(make_fields(metadata=reloaded)) == \
            Hasher.hash_fields(make_fields(metadata=original))


class TestHashSensitivity:
    """Changing any hashed field changes the hash."""

    @pytest.fixture
    def base_hash(self):
        return Hasher.hash_fields(make_fields())

    def test_performed_by(self, base_hash):
        assert Hasher.hash_fields(make_fields(performed_by="U2")) != base_hash

    def test_timestamp_by_one_microsecond(self, base_hash):
        later = T0 + timedelta(microseconds=1)
        assert Hasher.hash_fields(make_fields(timestamp=later)) != base_hash

    def test_one_metadata_value(self, base_hash):
        assert Hasher.hash_fields(make_fields(metadata={"quantity": 11, "unit": "kg"})) != base_hash

    def test_presence_of_location(self, base_hash):
        assert Hasher.hash_fields(make_fields(location=None)) != base_hash

    def test_event_type(self, base_hash):
        assert Hasher.hash_fields(make_fields(event_type=EventType.SHIPMENT)) != base_hash


class TestHasher:

    def test_sha256_lowercase_hex(self):
        digest = Hasher.hash_bytes(b"abc")
        assert digest == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
        assert Hasher.is_valid_digest(digest)

    def test_hash_fields_is_hash_of_encoding(self):
        fields = make_fields()
        assert Hasher.hash_fields(fields) == Hasher.hash_bytes(CanonicalEncoder.encode(fields))

    def test_is_valid_digest(self):
        assert Hasher.is_valid_digest("a" * 64)
        assert not Hasher.is_valid_digest("A" * 64)
        assert not Hasher.is_valid_digest("a" * 63)
        assert not Hasher.is_valid_digest("g" * 64)
        assert not Hasher.is_valid_digest(None)

    def test_matches(self):
        digest = Hasher.hash_bytes(b"x")
        assert Hasher.matches(digest, digest)
        assert Hasher.matches(digest, digest.upper())
        assert not Hasher.matches(digest, Hasher.hash_bytes(b"y"))
        assert not Hasher.matches(digest, "not-a-digest")


class TestGeoPoint:

    def test_coordinates_quantized_to_eight_places(self):
        point = GeoPoint(latitude="12.123456789", longitude=56.78)
        assert point.latitude == Decimal("12.12345679")
        assert point.longitude == Decimal("56.78000000")
        assert point.accuracy is None

    def test_float_goes_through_str(self):
        """0.1 must not become 0.1000000000000000055511151231257827."""
        assert GeoPoint(latitude=0.1, longitude=0).latitude == Decimal("0.10000000")

    def test_ranges_enforced(self):
        with pytest.raises(PydanticValidationError):
            GeoPoint(latitude=90.5, longitude=0)
        with pytest.raises(PydanticValidationError):
            GeoPoint(latitude=0, longitude=-180.1)
        with pytest.raises(PydanticValidationError):
            GeoPoint(latitude=0, longitude=0, accuracy=-1)

    def test_huge_values_rejected_as_validation_errors(self):
        for point in (
            {"latitude": 1e30, "longitude": 0},
            {"latitude": 0, "longitude": Decimal("-1e40")},
            {"latitude": 0, "longitude": 0, "accuracy": 1e10},
            {"latitude": 0, "longitude": 0, "accuracy": "9999999999.999999999"},
        ):
            with pytest.raises(PydanticValidationError):
                GeoPoint(**point)

    def test_largest_storable_accuracy_accepted(self):
        point = GeoPoint(latitude=0, longitude=0, accuracy="9999999999.5")
        assert point.accuracy == Decimal("9999999999.50000000")

    def test_non_finite_rejected(self):
        with pytest.raises(PydanticValidationError):
            GeoPoint(latitude=float("nan"), longitude=0)

    def test_both_coordinates_required(self):
        with pytest.raises(PydanticValidationError):
            GeoPoint(latitude=1)
