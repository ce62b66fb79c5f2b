"""
Tests for the Event Integrity Service and Chain-of-Custody Assembler

Demonstrates the complete event lifecycle:
1. Record an event (hash, persist, anchor, link)
2. Verify it locally and against the ledger
3. Survive an anchoring failure and re-anchor later
4. Detect tampering with stored fields
5. Assemble a product's chain of custody
"""

import asyncio
import itertools
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from traceledger.core import (
    AnchorSubmissionError,
    ChainOfCustodyAssembler,
    EventIntegrityService,
    Hasher,
    LedgerUnavailableError,
    NotFoundError,
    SimulatedLedgerClient,
    TransactionNotFoundError,
    ValidationError,
)
from traceledger.db import InMemoryProductDirectory, InMemoryTraceStore
from traceledger.observability import MetricsCollector
from traceledger.schemas import EventType, GeoPoint, Participant


T0 = datetime(2024, 3, 15, 8, 0, tzinfo=timezone.utc)


def run(coro):
    return asyncio.run(coro)


def stepping_clock(start=T0, step=timedelta(minutes=1)):
    """Clock returning start, start+step, start+2*step, ..."""
    ticks = itertools.count()
    return lambda: start + next(ticks) * step


class SwitchableLedger(SimulatedLedgerClient):
    """Simulated ledger that can be told to fail."""

    def __init__(self):
        super().__init__(delay_seconds=0)
        self.failing = False
        self.submitted: list[str] = []

    async def _submit(self, data_hash):
        self.submitted.append(data_hash)
        if self.failing:
            raise ConnectionError("ledger down")
        return await super()._submit(data_hash)


@pytest.fixture
def store():
    return InMemoryTraceStore()


@pytest.fixture
def directory():
    directory = InMemoryProductDirectory()
    directory.add_product("P1")
    directory.add_product("P2")
    directory.add_participant(Participant(id="U1", name="Ama Mensah", organization="Kumasi Farms", role="farmer"))
    directory.add_participant(Participant(id="U2", name="Kofi Boateng", organization="Tema Logistics", role="shipper"))
    return directory


@pytest.fixture
def ledger():
    return SwitchableLedger()


@pytest.fixture
def metrics():
    return MetricsCollector()


@pytest.fixture
def service(store, ledger, directory, metrics):
    return EventIntegrityService(store, ledger, directory, clock=stepping_clock(), metrics=metrics)


def record_harvest(service, **overrides):
    kwargs = dict(
        product_id="P1",
        event_type=EventType.HARVEST,
        performed_by="U1",
        location=GeoPoint(latitude=12.34, longitude=56.78),
        metadata={"quantity": 10, "unit": "kg"},
    )
    kwargs.update(overrides)
    return run(service.record_event(**kwargs))


class TestRecordEvent:
    """Recording hashes, persists and anchors."""

    def test_record_and_anchor(self, service, store):
        result = record_harvest(service)
        event = result.event

        assert result.anchored
        assert result.anchor_error is None
        assert event.verified is True
        assert event.anchor_ref == result.anchor_proof.id
        assert Hasher.is_valid_digest(event.data_hash)
        assert event.data_hash == Hasher.hash_fields(event.logical_fields())
        assert result.anchor_proof.data_hash == event.data_hash
        assert result.anchor_proof.event_id == event.id

        assert store.load_event(event.id) == event
        assert store.load_anchor_proof(event.id) == result.anchor_proof

    def test_timestamp_and_id_assigned_by_service(self, service):
        first = record_harvest(service).event
        second = record_harvest(service).event
        assert first.id != second.id
        assert first.timestamp == T0
        assert second.timestamp == T0 + timedelta(minutes=1)

    def test_description_does_not_affect_hash(self, store, ledger, directory):
        a = EventIntegrityService(store, ledger, directory, clock=lambda: T0)
        b = EventIntegrityService(store, ledger, directory, clock=lambda: T0)
        with_text = record_harvest(a, description="Morning picking")
        without = record_harvest(b)
        assert with_text.event.data_hash == without.event.data_hash

    def test_string_event_type_and_dict_location_accepted(self, service):
        result = record_harvest(service, event_type="SHIPMENT", location={"latitude": 0, "longitude": 0})
        assert result.event.event_type == EventType.SHIPMENT
        assert result.event.location.latitude == Decimal("0.00000000")

    def test_metadata_stored_in_hashed_form(self, service):
        result = record_harvest(service, metadata={"weight": Decimal("10.0"), "tags": ("a", "b")})
        assert result.event.metadata == {"tags": ["a", "b"], "weight": 10}

    def test_unknown_product_rejected(self, service, store):
        with pytest.raises(NotFoundError):
            record_harvest(service, product_id="NOPE")
        assert store.get_event_count() == 0

    def test_missing_actor_rejected(self, service):
        with pytest.raises(ValidationError):
            record_harvest(service, performed_by="  ")

    def test_unknown_event_type_rejected(self, service):
        with pytest.raises(ValidationError, match="Unknown event_type"):
            record_harvest(service, event_type="TELEPORT")

    def test_bad_location_rejected(self, service):
        with pytest.raises(ValidationError):
            record_harvest(service, location={"latitude": 91, "longitude": 0})
        with pytest.raises(ValidationError):
            record_harvest(service, location={"latitude": 1})
        with pytest.raises(ValidationError):
            record_harvest(service, location={"latitude": 1e30, "longitude": 0})

    def test_unencodable_metadata_rejected_before_persisting(self, service, store):
        with pytest.raises(ValidationError):
            record_harvest(service, metadata={"when": T0})
        with pytest.raises(ValidationError):
            record_harvest(service, metadata={"q": float("nan")})
        assert store.get_event_count() == 0

    def test_naive_clock_rejected(self, store, ledger, directory):
        service = EventIntegrityService(store, ledger, directory, clock=lambda: datetime(2024, 1, 1))
        with pytest.raises(ValidationError):
            record_harvest(service)

    def test_metrics_recorded(self, service, metrics):
        record_harvest(service)
        assert metrics.events_recorded == 1
        assert metrics.anchors_succeeded == 1
        assert metrics.anchors_failed == 0


class TestAnchorFailure:
    """An anchoring failure leaves the event stored and unverified."""

    def test_failure_is_partial_success(self, service, ledger, store, metrics):
        ledger.failing = True
        result = record_harvest(service)

        assert not result.anchored
        assert "ledger down" in result.anchor_error
        assert result.event.verified is False
        assert result.event.anchor_ref is None
        assert store.load_event(result.event.id) == result.event
        assert store.load_anchor_proof(result.event.id) is None
        assert metrics.anchors_failed == 1

    def test_reanchor_reuses_stored_hash(self, service, ledger, store):
        ledger.failing = True
        event = record_harvest(service).event

        ledger.failing = False
        result = run(service.reanchor_event(event.id))

        assert result.anchored
        assert result.event.verified is True
        assert result.anchor_proof.data_hash == event.data_hash
        assert ledger.submitted == [event.data_hash, event.data_hash]
        assert result.event.timestamp == event.timestamp

    def test_reanchor_of_anchored_event_is_noop(self, service, ledger):
        first = record_harvest(service)
        again = run(service.reanchor_event(first.event.id))

        assert again.anchor_proof == first.anchor_proof
        assert len(ledger.submitted) == 1

    def test_reanchor_unknown_event(self, service):
        with pytest.raises(NotFoundError):
            run(service.reanchor_event("missing"))

    def test_reanchor_pending(self, service, ledger, store):
        ledger.failing = True
        for _ in range(3):
            record_harvest(service)
        assert len(store.list_unanchored()) == 3

        ledger.failing = False
        results = run(service.reanchor_pending())

        assert len(results) == 3
        assert all(r.anchored for r in results)
        assert store.list_unanchored() == []

    def test_timeout_is_anchor_failure(self, store, directory):
        slow = SimulatedLedgerClient(delay_seconds=0.5, timeout_seconds=0.05)
        service = EventIntegrityService(store, slow, directory, clock=stepping_clock())
        result = record_harvest(service)
        assert not result.anchored
        assert "timed out" in result.anchor_error


class TestVerifyEvent:
    """Recompute and compare."""

    def test_valid_event(self, service, metrics):
        event = record_harvest(service).event
        result = run(service.verify_event(event.id))

        assert result.is_valid is True
        assert result.verified is True
        assert result.stored_hash == result.computed_hash == event.data_hash
        assert result.proof_hash_matches is True
        assert result.chain_verified is True
        assert result.transaction_ref is not None
        assert "confirmed on mock" in result.message
        assert metrics.integrity_checks == 1
        assert metrics.integrity_mismatches == 0

    def test_verify_is_repeatable(self, service):
        event = record_harvest(service).event
        first = run(service.verify_event(event.id))
        second = run(service.verify_event(event.id))
        assert first == second

    def test_local_only(self, service):
        event = record_harvest(service).event
        result = run(service.verify_event(event.id, check_chain=False))
        assert result.is_valid is True
        assert result.chain_verified is None

    def test_unanchored_event_verifies_locally(self, service, ledger):
        ledger.failing = True
        event = record_harvest(service).event
        result = run(service.verify_event(event.id))

        assert result.is_valid is True
        assert result.verified is False
        assert result.anchor_status is None
        assert result.chain_verified is None
        assert result.proof_hash_matches is None
        assert result.message.endswith("(not anchored)")

    def test_tampered_metadata_detected(self, service, store, metrics):
        event = record_harvest(service).event
        store._events[event.id] = event.model_copy(update={"metadata": {"quantity": 100, "unit": "kg"}})

        result = run(service.verify_event(event.id))

        assert result.is_valid is False
        assert result.computed_hash != result.stored_hash
        assert "differs from stored hash" in result.message
        assert metrics.integrity_mismatches == 1

    def test_tampered_actor_detected(self, service, store):
        event = record_harvest(service).event
        store._events[event.id] = event.model_copy(update={"performed_by": "U2"})
        assert run(service.verify_event(event.id)).is_valid is False

    def test_tampered_location_detected(self, service, store):
        event = record_harvest(service).event
        moved = GeoPoint(latitude=12.35, longitude=56.78)
        store._events[event.id] = event.model_copy(update={"location": moved})
        assert run(service.verify_event(event.id)).is_valid is False

    def test_tampered_proof_hash_reported_separately(self, service, store, metrics):
        """The event itself still re-hashes correctly; only its proof disagrees."""
        result = record_harvest(service)
        proof = result.anchor_proof
        store._proofs[proof.id] = proof.model_copy(update={"data_hash": "0" * 64})

        verification = run(service.verify_event(result.event.id))

        assert verification.is_valid is True
        assert verification.stored_hash == verification.computed_hash
        assert verification.proof_hash_matches is False
        assert verification.message.startswith("Integrity check failed")
        assert "anchor proof hash differs" in verification.message
        assert metrics.integrity_mismatches == 1

    def test_description_edit_is_not_tampering(self, service, store):
        event = record_harvest(service).event
        store._events[event.id] = event.model_copy(update={"description": "edited"})
        assert run(service.verify_event(event.id)).is_valid is True

    def test_chain_unknown_transaction(self, service, ledger, monkeypatch):
        event = record_harvest(service).event

        async def unknown(transaction_ref, data_hash):
            raise TransactionNotFoundError(transaction_ref)

        monkeypatch.setattr(ledger, "verify_on_chain", unknown)
        result = run(service.verify_event(event.id))

        assert result.is_valid is True
        assert result.chain_verified is False
        assert "unknown to mock" in result.message

    def test_chain_unreachable_is_inconclusive(self, service, ledger, monkeypatch):
        event = record_harvest(service).event

        async def unreachable(transaction_ref, data_hash):
            raise LedgerUnavailableError("connection refused")

        monkeypatch.setattr(ledger, "verify_on_chain", unreachable)
        result = run(service.verify_event(event.id))

        assert result.is_valid is True
        assert result.chain_verified is None

    def test_other_network_proof_skips_chain(self, service, store, ledger):
        event = record_harvest(service).event
        proof = store.load_anchor_proof(event.id)
        store._proofs[proof.id] = proof.model_copy(update={"network": "sepolia"})

        result = run(service.verify_event(event.id))
        assert result.is_valid is True
        assert result.chain_verified is None

    def test_unknown_event(self, service):
        with pytest.raises(NotFoundError):
            run(service.verify_event("missing"))


class TestOrdering:

    def test_events_ordered_by_timestamp_then_insertion(self, store, ledger, directory):
        t1, t2, t3 = T0, T0 + timedelta(hours=1), T0 + timedelta(hours=2)
        times = iter([t3, t1, t2, t2])
        service = EventIntegrityService(store, ledger, directory, clock=lambda: next(times))

        ids = [
            record_harvest(service, event_type=event_type).event.id
            for event_type in (EventType.SHIPMENT, EventType.HARVEST, EventType.PROCESSING, EventType.PACKAGING)
        ]

        events = service.list_product_events("P1")
        assert [e.event_type for e in events] == [
            EventType.HARVEST, EventType.PROCESSING, EventType.PACKAGING, EventType.SHIPMENT,
        ]
        assert [e.id for e in events] == [ids[1], ids[2], ids[3], ids[0]]

    def test_list_unknown_product(self, service):
        with pytest.raises(NotFoundError):
            service.list_product_events("NOPE")


class TestChainOfCustody:
    """Assemble product traces."""

    @pytest.fixture
    def custody(self, store, directory):
        return ChainOfCustodyAssembler(store, directory)

    def test_trace_with_two_events(self, service, custody):
        record_harvest(service)
        record_harvest(service, event_type=EventType.SHIPMENT, performed_by="U2", location=None)

        trace = custody.get_trace("P1")

        assert trace.product_id == "P1"
        assert [e.event.event_type for e in trace.events] == [EventType.HARVEST, EventType.SHIPMENT]
        assert all(e.anchor_proof is not None for e in trace.events)
        assert [p.event_id for p in trace.proofs] == [e.event.id for e in trace.events]
        assert trace.events[0].performer.name == "Ama Mensah"
        assert trace.events[1].performer.organization == "Tema Logistics"
        assert trace.summary.total_events == 2
        assert trace.summary.verified_events == 2
        assert trace.summary.anchored_events == 2
        assert trace.summary.participants_count == 2
        assert {p.id for p in trace.participants} == {"U1", "U2"}
        assert trace.events[0].integrity_valid is None

    def test_trace_counts_unanchored(self, service, ledger, custody):
        record_harvest(service)
        ledger.failing = True
        record_harvest(service)

        trace = custody.get_trace("P1")
        summary = trace.summary
        assert summary.total_events == 2
        assert summary.verified_events == 1
        assert summary.anchored_events == 1
        assert [p.event_id for p in trace.proofs] == [trace.events[0].event.id]

    def test_unknown_performer_counted_but_not_listed(self, service, custody):
        record_harvest(service, performed_by="stranger")
        trace = custody.get_trace("P1")

        assert trace.events[0].performer is None
        assert trace.summary.participants_count == 1
        assert trace.participants == []

    def test_empty_trace(self, custody):
        trace = custody.get_trace("P2")
        assert trace.events == []
        assert trace.summary.total_events == 0

    def test_trace_only_contains_own_product(self, service, custody):
        record_harvest(service)
        record_harvest(service, product_id="P2")
        assert custody.get_trace("P1").summary.total_events == 1

    def test_verify_integrity_flags_tampered_events(self, service, store, custody):
        good = record_harvest(service).event
        bad = record_harvest(service).event
        store._events[bad.id] = bad.model_copy(update={"metadata": {"quantity": 1}})

        trace = custody.get_trace("P1", verify_integrity=True)

        by_id = {e.event.id: e for e in trace.events}
        assert by_id[good.id].integrity_valid is True
        assert by_id[bad.id].integrity_valid is False
        assert trace.summary.integrity_failures == 1

    def test_unknown_product(self, custody):
        with pytest.raises(NotFoundError):
            custody.get_trace("NOPE")

    def test_assembly_is_read_only(self, service, store, custody):
        record_harvest(service)
        custody.get_trace("P1", verify_integrity=True)
        assert store.get_event_count() == 1


def test_anchor_submission_error_keeps_cause():
    cause = ConnectionError("down")
    error = AnchorSubmissionError("failed", cause=cause)
    assert error.cause is cause
