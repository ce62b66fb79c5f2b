"""
Event Integrity Service

Records supply-chain events with tamper evidence and re-verifies them.

WRITE FLOW (two units of work, never one spanning the ledger call):
1. validate → assign id/timestamp → encode → hash
2. UoW #1: persist the event, unverified
3. anchor the hash (may suspend, may fail)
4. UoW #2: persist proof + link it + flip verified, atomically

If step 3 fails the event stays unverified with no proof. That is a
partial success, not a rollback: the event is real, only its anchor is
missing, and reanchor_event() retries with the STORED hash.

VERIFY FLOW:
stored event → encode → hash → compare with stored data_hash (and the
stored hash with the proof's) → optionally ask the ledger. The local check
never needs the ledger.
"""

import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Union
from uuid import uuid4

from pydantic import ValidationError as PydanticValidationError

from ..db.directory import ProductDirectory
from ..db.store import AnchorLinkError, TraceStore
from ..observability import MetricsCollector, get_logger, get_metrics
from ..schemas import (
    AnchorProof,
    EventFields,
    EventType,
    GeoPoint,
    RecordedEvent,
    SupplyChainEvent,
    VerificationResult,
)
from .anchor import LedgerAnchorClient
from .canonical import CanonicalEncoder
from .errors import (
    AnchorSubmissionError,
    CanonicalEncodingError,
    LedgerUnavailableError,
    NotFoundError,
    TransactionNotFoundError,
    ValidationError,
)
from .hasher import Hasher

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EventIntegrityService:
    """
    Record, re-anchor and verify events.

    Collaborators are passed in explicitly (see traceledger.bootstrap);
    nothing here reaches for a global.
    """

    def __init__(
        self,
        store: TraceStore,
        anchor_client: LedgerAnchorClient,
        products: ProductDirectory,
        clock: Optional[Callable[[], datetime]] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self._store = store
        self._anchor_client = anchor_client
        self._products = products
        self._clock = clock or _utcnow
        self._metrics = metrics if metrics is not None else get_metrics()

    @property
    def anchor_client(self) -> LedgerAnchorClient:
        return self._anchor_client

    # ================================================================
    # RECORD
    # ================================================================

    async def record_event(
        self,
        product_id: str,
        event_type: Union[EventType, str],
        performed_by: str,
        location: Optional[Union[GeoPoint, dict[str, Any]]] = None,
        description: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> RecordedEvent:
        """
        Record a new custody event and anchor it.

        Returns:
            RecordedEvent. anchor_proof is None (and anchor_error set) when
            the ledger call failed; the event is persisted regardless.

        Raises:
            ValidationError: Malformed input (including unencodable metadata)
            NotFoundError: Unknown product
        """
        product_id = self._require_id(product_id, "product_id")
        performed_by = self._require_id(performed_by, "performed_by")
        event_type = self._coerce_event_type(event_type)
        location = self._coerce_location(location)

        if not self._products.product_exists(product_id):
            raise NotFoundError(f"Product not found: {product_id}")

        # Store metadata in its hashed form so a database round trip re-encodes identically
        metadata = CanonicalEncoder.normalize_metadata(metadata)

        timestamp = self._clock()
        if timestamp.tzinfo is None:
            raise ValidationError("Clock returned a timezone-naive datetime")

        fields = EventFields(
            product_id=product_id,
            event_type=event_type,
            performed_by=performed_by,
            timestamp=timestamp,
            location=location,
            metadata=metadata,
        )
        data_hash = Hasher.hash_fields(fields)

        event = SupplyChainEvent(
            id=str(uuid4()),
            product_id=product_id,
            event_type=event_type,
            performed_by=performed_by,
            timestamp=timestamp,
            location=location,
            description=description,
            metadata=metadata,
            data_hash=data_hash,
        )

        with self._store.begin() as uow:
            uow.save_event(event)
            uow.commit()

        self._metrics.record_event()
        logger.info(
            "Event recorded",
            event_id=event.id,
            product_id=product_id,
            event_type=event_type.value,
            data_hash=data_hash,
        )

        return await self._anchor_and_link(event)

    async def reanchor_event(self, event_id: str) -> RecordedEvent:
        """
        Retry anchoring for an unverified event.

        Reuses the stored data_hash; the event is never re-encoded.
        An already-anchored event returns its existing proof without
        touching the ledger.

        Raises:
            NotFoundError: Unknown event
        """
        event = self._load_event(event_id)
        if event.verified:
            return RecordedEvent(event=event, anchor_proof=self._store.load_anchor_proof(event_id))

        try:
            return await self._anchor_and_link(event)
        except AnchorLinkError:
            # Another worker linked it first
            current = self._load_event(event_id)
            if current.verified:
                return RecordedEvent(
                    event=current,
                    anchor_proof=self._store.load_anchor_proof(event_id),
                )
            raise

    async def reanchor_pending(self, limit: int = 100) -> list[RecordedEvent]:
        """Retry anchoring for every unverified event, oldest first."""
        results = []
        for event in self._store.list_unanchored(limit=limit):
            results.append(await self.reanchor_event(event.id))
        anchored = sum(1 for r in results if r.anchored)
        logger.info("Pending events re-anchored", attempted=len(results), anchored=anchored)
        return results

    async def _anchor_and_link(self, event: SupplyChainEvent) -> RecordedEvent:
        start = time.perf_counter()
        try:
            proof = await self._anchor_client.anchor(event.data_hash)
        except AnchorSubmissionError as e:
            self._metrics.record_anchor((time.perf_counter() - start) * 1000, success=False)
            logger.warning(
                "Anchoring failed; event left unverified",
                event_id=event.id,
                network=self._anchor_client.network,
                error=str(e),
            )
            return RecordedEvent(event=event, anchor_error=str(e))

        self._metrics.record_anchor((time.perf_counter() - start) * 1000, success=True)
        proof = proof.for_event(event.id)

        try:
            with self._store.begin() as uow:
                uow.save_anchor_proof(proof)
                linked = uow.link_anchor(event.id, proof.id)
                uow.commit()
        except Exception:
            logger.error(
                "Anchor succeeded but proof could not be persisted",
                event_id=event.id,
                transaction_ref=proof.transaction_ref,
                network=proof.network,
            )
            raise

        logger.info(
            "Event anchored",
            event_id=event.id,
            transaction_ref=proof.transaction_ref,
            block_number=proof.block_number,
            network=proof.network,
        )
        return RecordedEvent(event=linked, anchor_proof=proof)

    # ================================================================
    # VERIFY
    # ================================================================

    async def verify_event(self, event_id: str, check_chain: bool = True) -> VerificationResult:
        """
        Recompute an event's hash and compare it with what was stored.

        is_valid compares the recomputed hash with the stored one only.
        proof_hash_matches compares the stored hash with the anchor proof
        (None when unanchored). chain_verified is None when the ledger was
        not consulted or could not be reached.

        Raises:
            NotFoundError: Unknown event
        """
        event = self._load_event(event_id)
        proof = self._store.load_anchor_proof(event_id)

        computed_hash: Optional[str] = None
        problems: list[str] = []
        try:
            computed_hash = Hasher.hash_fields(event.logical_fields())
        except CanonicalEncodingError as e:
            problems.append(f"stored fields no longer encode: {e}")

        is_valid = computed_hash is not None and Hasher.matches(computed_hash, event.data_hash)
        if computed_hash is not None and not is_valid:
            problems.append("recomputed hash differs from stored hash")

        proof_hash_matches = None
        if proof is not None:
            proof_hash_matches = Hasher.matches(event.data_hash, proof.data_hash)
            if not proof_hash_matches:
                problems.append("anchor proof hash differs from stored hash")

        self._metrics.record_integrity_check(is_valid and proof_hash_matches is not False)
        if problems:
            logger.error(
                "INTEGRITY MISMATCH",
                event_id=event_id,
                product_id=event.product_id,
                stored_hash=event.data_hash,
                computed_hash=computed_hash,
                problems="; ".join(problems),
            )

        chain_verified = None
        if check_chain and proof is not None:
            chain_verified = await self._check_chain(proof, event, problems)

        if is_valid and proof_hash_matches is not False and chain_verified is not False:
            message = "Event integrity verified"
            if chain_verified:
                message += f" and confirmed on {proof.network}"
        else:
            message = "Integrity check failed: " + "; ".join(problems)
        if proof is None:
            message += " (not anchored)"

        return VerificationResult(
            event_id=event.id,
            is_valid=is_valid,
            stored_hash=event.data_hash,
            computed_hash=computed_hash,
            verified=event.verified,
            proof_hash_matches=proof_hash_matches,
            anchor_status=proof.status if proof else None,
            transaction_ref=proof.transaction_ref if proof else None,
            chain_verified=chain_verified,
            message=message,
        )

    async def _check_chain(
        self,
        proof: AnchorProof,
        event: SupplyChainEvent,
        problems: list[str],
    ) -> Optional[bool]:
        client = self._anchor_client
        if proof.network != client.network:
            logger.info(
                "Proof network differs from configured ledger; skipping chain check",
                event_id=event.id,
                proof_network=proof.network,
                client_network=client.network,
            )
            return None

        try:
            confirmed = await asyncio.wait_for(
                client.verify_on_chain(proof.transaction_ref, event.data_hash),
                client.timeout_seconds,
            )
        except TransactionNotFoundError:
            problems.append(f"transaction {proof.transaction_ref} unknown to {proof.network}")
            return False
        except (LedgerUnavailableError, asyncio.TimeoutError) as e:
            logger.warning(
                "Ledger unreachable during verification",
                event_id=event.id,
                network=proof.network,
                error=str(e) or type(e).__name__,
            )
            return None

        if not confirmed:
            problems.append(f"ledger does not confirm hash for {proof.transaction_ref}")
        return confirmed

    # ================================================================
    # READS
    # ================================================================

    def get_event(self, event_id: str) -> SupplyChainEvent:
        """Raises NotFoundError for unknown ids."""
        return self._load_event(event_id)

    def get_anchor_proof(self, event_id: str) -> Optional[AnchorProof]:
        self._load_event(event_id)
        return self._store.load_anchor_proof(event_id)

    def list_product_events(self, product_id: str) -> list[SupplyChainEvent]:
        """Events of one product in trace order."""
        if not self._products.product_exists(product_id):
            raise NotFoundError(f"Product not found: {product_id}")
        return self._store.load_events_by_product(product_id)

    # ================================================================
    # HELPERS
    # ================================================================

    def _load_event(self, event_id: str) -> SupplyChainEvent:
        event = self._store.load_event(event_id)
        if event is None:
            raise NotFoundError(f"Event not found: {event_id}")
        return event

    @staticmethod
    def _require_id(value: Any, name: str) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f"{name} is required")
        return value.strip()

    @staticmethod
    def _coerce_event_type(value: Union[EventType, str]) -> EventType:
        try:
            return EventType(value)
        except ValueError:
            valid = ", ".join(t.value for t in EventType)
            raise ValidationError(f"Unknown event_type {value!r}. Valid values: {valid}") from None

    @staticmethod
    def _coerce_location(value: Optional[Union[GeoPoint, dict[str, Any]]]) -> Optional[GeoPoint]:
        if value is None or isinstance(value, GeoPoint):
            return value
        try:
            return GeoPoint(**value)
        except (PydanticValidationError, TypeError) as e:
            raise ValidationError(f"Invalid location: {e}") from e
