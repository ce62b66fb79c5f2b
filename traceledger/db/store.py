"""
Trace Store Abstraction

This module defines the TraceStore interface and the in-memory implementation.
The PostgreSQL implementation lives in postgres.py.

The TraceStore is responsible for:
- Persisting events and anchor proofs
- Linking a proof to its event (the one-way verified flip)
- Ordered reads for traces (timestamp, then insertion order)

The EventIntegrityService retains responsibility for:
- Canonical encoding and hashing
- Talking to the ledger
- Deciding what goes into each unit of work

TRANSACTION CONTRACT:
All writes MUST use the begin() context manager:

    with store.begin() as uow:
        uow.save_anchor_proof(proof)
        event = uow.link_anchor(event_id, proof.id)
        uow.commit()

Leaving the block without commit() rolls everything back. No observer
ever sees a linked event without its proof, or a proof without its event.
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Generator, Optional

from ..schemas import AnchorProof, SupplyChainEvent


# ============================================================
# EXCEPTIONS
# ============================================================

class TraceStoreError(Exception):
    """Base exception for trace store errors."""
    pass


class AnchorLinkError(TraceStoreError):
    """Raised when a proof cannot be linked (missing rows, or already linked)."""
    pass


class StoreBusyError(TraceStoreError):
    """Raised when a lock or statement timeout is hit (store busy)."""
    pass


# ============================================================
# UNIT OF WORK
# ============================================================

@dataclass
class UnitOfWork:
    """
    Transaction context for one atomic group of writes.

    THREAD SAFETY: All transaction state (conn, cursor, staged rows) is
    stored HERE, not on the store, so one store instance can be shared.
    """
    _store: "TraceStore"
    _conn: Any = field(default=None)  # Database connection (owned by context)
    _cursor: Any = field(default=None)  # Database cursor (owned by context)
    _staged_events: dict = field(default_factory=dict)  # in-memory staging
    _staged_proofs: dict = field(default_factory=dict)  # in-memory staging
    _committed: bool = field(default=False, init=False)
    _rolled_back: bool = field(default=False, init=False)

    def _check_open(self) -> None:
        if self._committed:
            raise TraceStoreError("Transaction already committed")
        if self._rolled_back:
            raise TraceStoreError("Transaction already rolled back")

    def save_event(self, event: SupplyChainEvent) -> SupplyChainEvent:
        """Insert a new event. Duplicate ids are rejected."""
        self._check_open()
        return self._store._do_save_event(self, event)

    def save_anchor_proof(self, proof: AnchorProof) -> AnchorProof:
        """Insert a proof. Its event_id must be set and not yet have a proof."""
        self._check_open()
        if proof.event_id is None:
            raise AnchorLinkError(f"Proof {proof.id} has no event_id")
        return self._store._do_save_anchor_proof(self, proof)

    def link_anchor(self, event_id: str, proof_id: str) -> SupplyChainEvent:
        """
        Set anchor_ref and flip verified on an unanchored event.

        Returns:
            The linked event
        """
        self._check_open()
        return self._store._do_link_anchor(self, event_id, proof_id)

    def commit(self) -> None:
        self._check_open()
        self._store._do_commit(self)
        self._committed = True

    def rollback(self) -> None:
        """Explicitly rollback this transaction."""
        if not self._committed and not self._rolled_back:
            self._store._do_rollback(self)
            self._rolled_back = True


# ============================================================
# ABSTRACT BASE CLASS
# ============================================================

class TraceStore(ABC):
    """
    Abstract base class for event and proof storage.

    Implementations must ensure:
    1. Atomic units of work: begin() commits all writes or none
    2. An event has at most one proof (unique event_id)
    3. verified is true iff anchor_ref is set, at every commit
    4. Product reads are ordered by (timestamp, insertion order)
    """

    @contextmanager
    @abstractmethod
    def begin(self) -> Generator[UnitOfWork, None, None]:
        """
        Begin a unit of work.

        Auto-rollbacks if the block raises or exits without commit().
        """
        pass

    @abstractmethod
    def _do_save_event(self, uow: UnitOfWork, event: SupplyChainEvent) -> SupplyChainEvent:
        """Internal: use uow.save_event() instead."""
        pass

    @abstractmethod
    def _do_save_anchor_proof(self, uow: UnitOfWork, proof: AnchorProof) -> AnchorProof:
        """Internal: use uow.save_anchor_proof() instead."""
        pass

    @abstractmethod
    def _do_link_anchor(self, uow: UnitOfWork, event_id: str, proof_id: str) -> SupplyChainEvent:
        """Internal: use uow.link_anchor() instead."""
        pass

    @abstractmethod
    def _do_commit(self, uow: UnitOfWork) -> None:
        """Internal: use uow.commit() instead."""
        pass

    @abstractmethod
    def _do_rollback(self, uow: UnitOfWork) -> None:
        """Internal: use uow.rollback() instead."""
        pass

    @abstractmethod
    def load_event(self, event_id: str) -> Optional[SupplyChainEvent]:
        pass

    @abstractmethod
    def load_events_by_product(self, product_id: str) -> list[SupplyChainEvent]:
        """Events of one product, ordered by timestamp then insertion order."""
        pass

    @abstractmethod
    def load_anchor_proof(self, event_id: str) -> Optional[AnchorProof]:
        """The proof owned by an event, if any."""
        pass

    @abstractmethod
    def load_anchor_proofs_by_product(self, product_id: str) -> dict[str, AnchorProof]:
        """All proofs of one product's events, keyed by event id."""
        pass

    @abstractmethod
    def list_unanchored(self, limit: int = 100) -> list[SupplyChainEvent]:
        """Events still waiting for a proof, oldest insertion first."""
        pass

    @abstractmethod
    def get_event_count(self) -> int:
        """Get total number of events in the store."""
        pass

    def close(self) -> None:
        """Release resources. Default: nothing to release."""
        return None


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

class InMemoryTraceStore(TraceStore):
    """
    In-memory implementation of TraceStore.

    Suitable for:
    - Development
    - Testing

    NOT suitable for:
    - Production (no durability)
    - Multi-instance deployments (no shared state)

    Writes are staged on the UnitOfWork and applied under the store lock
    at commit, so readers never see a half-applied unit of work.
    """

    def __init__(self):
        self._events: dict[str, SupplyChainEvent] = {}
        self._insertion_seq: dict[str, int] = {}
        self._proofs: dict[str, AnchorProof] = {}  # keyed by proof id
        self._proof_by_event: dict[str, str] = {}
        self._next_seq = 0
        self._lock = Lock()

    @contextmanager
    def begin(self) -> Generator[UnitOfWork, None, None]:
        uow = UnitOfWork(_store=self, _conn="in_memory")
        try:
            yield uow
        except Exception:
            uow.rollback()
            raise
        finally:
            if not uow._committed and not uow._rolled_back:
                uow.rollback()

    def _event_view(self, uow: UnitOfWork, event_id: str) -> Optional[SupplyChainEvent]:
        if event_id in uow._staged_events:
            return uow._staged_events[event_id]
        with self._lock:
            return self._events.get(event_id)

    def _do_save_event(self, uow: UnitOfWork, event: SupplyChainEvent) -> SupplyChainEvent:
        if self._event_view(uow, event.id) is not None:
            raise TraceStoreError(f"Event {event.id} already exists")
        if event.verified:
            raise TraceStoreError("New events must be saved unverified")
        uow._staged_events[event.id] = event
        return event

    def _do_save_anchor_proof(self, uow: UnitOfWork, proof: AnchorProof) -> AnchorProof:
        if self._event_view(uow, proof.event_id) is None:
            raise AnchorLinkError(f"Event {proof.event_id} does not exist")
        with self._lock:
            taken = proof.event_id in self._proof_by_event or proof.id in self._proofs
        staged_taken = any(p.event_id == proof.event_id for p in uow._staged_proofs.values())
        if taken or staged_taken:
            raise AnchorLinkError(f"Event {proof.event_id} already has an anchor proof")
        uow._staged_proofs[proof.id] = proof
        return proof

    def _do_link_anchor(self, uow: UnitOfWork, event_id: str, proof_id: str) -> SupplyChainEvent:
        event = self._event_view(uow, event_id)
        if event is None:
            raise AnchorLinkError(f"Event {event_id} does not exist")
        if event.anchor_ref is not None:
            raise AnchorLinkError(f"Event {event_id} is already anchored")

        proof = uow._staged_proofs.get(proof_id)
        if proof is None:
            with self._lock:
                proof = self._proofs.get(proof_id)
        if proof is None:
            raise AnchorLinkError(f"Anchor proof {proof_id} does not exist")
        if proof.event_id != event_id:
            raise AnchorLinkError(f"Anchor proof {proof_id} belongs to event {proof.event_id}")

        linked = event.with_anchor(proof_id)
        uow._staged_events[event_id] = linked
        return linked

    def _do_commit(self, uow: UnitOfWork) -> None:
        if uow._conn != "in_memory":
            raise TraceStoreError("_do_commit called outside transaction")
        with self._lock:
            # Re-check against writes committed since staging
            for proof in uow._staged_proofs.values():
                if proof.event_id in self._proof_by_event:
                    raise AnchorLinkError(f"Event {proof.event_id} already has an anchor proof")
            for event_id, event in uow._staged_events.items():
                current = self._events.get(event_id)
                if current is not None and current.anchor_ref is not None:
                    raise AnchorLinkError(f"Event {event_id} is already anchored")
                if current is not None and event.anchor_ref is None:
                    raise TraceStoreError(f"Event {event_id} already exists")

            for event_id, event in uow._staged_events.items():
                if event_id not in self._insertion_seq:
                    self._insertion_seq[event_id] = self._next_seq
                    self._next_seq += 1
                self._events[event_id] = event
            for proof_id, proof in uow._staged_proofs.items():
                self._proofs[proof_id] = proof
                self._proof_by_event[proof.event_id] = proof_id
        uow._staged_events.clear()
        uow._staged_proofs.clear()

    def _do_rollback(self, uow: UnitOfWork) -> None:
        uow._staged_events.clear()
        uow._staged_proofs.clear()

    def load_event(self, event_id: str) -> Optional[SupplyChainEvent]:
        with self._lock:
            return self._events.get(event_id)

    def load_events_by_product(self, product_id: str) -> list[SupplyChainEvent]:
        with self._lock:
            events = [e for e in self._events.values() if e.product_id == product_id]
            return sorted(events, key=lambda e: (e.timestamp, self._insertion_seq[e.id]))

    def load_anchor_proof(self, event_id: str) -> Optional[AnchorProof]:
        with self._lock:
            proof_id = self._proof_by_event.get(event_id)
            return self._proofs.get(proof_id) if proof_id else None

    def load_anchor_proofs_by_product(self, product_id: str) -> dict[str, AnchorProof]:
        with self._lock:
            return {
                event_id: self._proofs[proof_id]
                for event_id, proof_id in self._proof_by_event.items()
                if self._events[event_id].product_id == product_id
            }

    def list_unanchored(self, limit: int = 100) -> list[SupplyChainEvent]:
        with self._lock:
            pending = [e for e in self._events.values() if e.anchor_ref is None]
            pending.sort(key=lambda e: self._insertion_seq[e.id])
            return pending[:limit]

    def get_event_count(self) -> int:
        with self._lock:
            return len(self._events)

    def clear(self) -> None:
        """Clear all data (for testing)."""
        with self._lock:
            self._events.clear()
            self._insertion_seq.clear()
            self._proofs.clear()
            self._proof_by_event.clear()
            self._next_seq = 0
