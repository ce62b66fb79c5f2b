"""
Chain-of-Custody Assembler

Builds the ordered, audited history of one product. Read-only: assembling
a trace never writes. (Recording a consumer scan is the HTTP adapter's
policy, done through the integrity service after the trace is built.)
"""

from typing import Optional

from ..db.directory import ProductDirectory
from ..db.store import TraceStore
from ..observability import get_logger
from ..schemas import Participant, ProductTrace, SupplyChainEvent, TraceEntry, TraceSummary
from .errors import CanonicalEncodingError, NotFoundError
from .hasher import Hasher

logger = get_logger(__name__)


class ChainOfCustodyAssembler:
    """Assemble product traces from stored events, proofs and participants."""

    def __init__(self, store: TraceStore, directory: ProductDirectory, hasher=Hasher):
        self._store = store
        self._directory = directory
        self._hasher = hasher

    def get_trace(self, product_id: str, verify_integrity: bool = False) -> ProductTrace:
        """
        Assemble the trace of one product.

        Events are ordered by timestamp ascending, ties broken by insertion
        order. With verify_integrity, every event's hash is recomputed and
        mismatches are counted in summary.integrity_failures.

        Raises:
            NotFoundError: Unknown product
        """
        if not self._directory.product_exists(product_id):
            raise NotFoundError(f"Product not found: {product_id}")

        events = self._store.load_events_by_product(product_id)
        proofs = self._store.load_anchor_proofs_by_product(product_id)

        performers: dict[str, Optional[Participant]] = {}
        for event in events:
            if event.performed_by not in performers:
                performers[event.performed_by] = self._directory.get_participant(event.performed_by)

        entries = []
        integrity_failures = 0
        for event in events:
            integrity_valid = None
            if verify_integrity:
                integrity_valid = self._check_integrity(event)
                if not integrity_valid:
                    integrity_failures += 1
            entries.append(TraceEntry(
                event=event,
                anchor_proof=proofs.get(event.id),
                performer=performers[event.performed_by],
                integrity_valid=integrity_valid,
            ))

        if integrity_failures:
            logger.error(
                "Trace contains events failing integrity checks",
                product_id=product_id,
                integrity_failures=integrity_failures,
            )

        summary = TraceSummary(
            total_events=len(events),
            verified_events=sum(1 for e in events if e.verified),
            anchored_events=sum(1 for e in events if e.id in proofs),
            participants_count=len(performers),
            integrity_failures=integrity_failures,
        )

        return ProductTrace(
            product_id=product_id,
            events=entries,
            proofs=[proofs[e.id] for e in events if e.id in proofs],
            participants=[p for p in performers.values() if p is not None],
            summary=summary,
        )

    def _check_integrity(self, event: SupplyChainEvent) -> bool:
        try:
            computed = self._hasher.hash_fields(event.logical_fields())
        except CanonicalEncodingError:
            return False
        return self._hasher.matches(computed, event.data_hash)
