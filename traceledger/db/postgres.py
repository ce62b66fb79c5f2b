"""
PostgreSQL Trace Store

Provides:
- Full ACID units of work (one transaction per begin() block)
- Unique proof per event enforced by the schema, not just by code
- Lock/statement timeouts to prevent hanging

THREAD SAFETY:
All transaction state (conn, cursor) is stored in the UnitOfWork, NOT on
the store. Reads open their own short-lived connection.

Requirements:
- PostgreSQL 12+
- Tables created from schema.sql (python -m tools.manage init-db)
- psycopg2 for connection
"""

from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Generator, Optional
from uuid import UUID

import psycopg2
from psycopg2.extras import Json

from ..schemas import AnchorProof, AnchorStatus, EventType, GeoPoint, SupplyChainEvent
from .store import AnchorLinkError, StoreBusyError, TraceStore, TraceStoreError, UnitOfWork


SCHEMA_PATH = Path(__file__).parent / "schema.sql"

_EVENT_COLUMNS = """
    id, product_id, event_type, performed_by, timestamp,
    latitude, longitude, location_accuracy,
    description, metadata, data_hash, anchor_ref, verified
"""

_PROOF_COLUMNS = """
    id, event_id, data_hash, transaction_ref, block_number, block_timestamp,
    network, cost_units, status, created_at
"""


def _prefixed(columns: str, alias: str) -> str:
    return ", ".join(f"{alias}.{c.strip()}" for c in columns.split(","))


def _is_uuid(value: str) -> bool:
    # Ids are UUID columns; anything else cannot exist and would fail the cast
    try:
        UUID(str(value))
    except ValueError:
        return False
    return True


class PostgresTraceStore(TraceStore):
    """
    PostgreSQL implementation of TraceStore.

    Usage:
        store = PostgresTraceStore(connection_factory)

        with store.begin() as uow:
            uow.save_event(event)
            uow.commit()
    """

    # Timeouts to prevent hanging under load
    LOCK_TIMEOUT_MS = 2000  # 2 seconds
    STATEMENT_TIMEOUT_MS = 10000  # 10 seconds

    # psycopg2 error codes
    PGCODE_LOCK_NOT_AVAILABLE = '55P03'
    PGCODE_QUERY_CANCELED = '57014'
    PGCODE_UNIQUE_VIOLATION = '23505'
    PGCODE_FOREIGN_KEY_VIOLATION = '23503'

    def __init__(
        self,
        connection_factory: Callable[[], Any],
        lock_timeout_ms: int = LOCK_TIMEOUT_MS,
        statement_timeout_ms: int = STATEMENT_TIMEOUT_MS,
    ):
        """
        Initialize PostgreSQL trace store.

        Args:
            connection_factory: Callable that returns a psycopg2 connection.
            lock_timeout_ms: How long to wait for row lock (ms). Default 2000.
            statement_timeout_ms: Max statement execution time (ms). Default 10000.
        """
        self._connection_factory = connection_factory
        self._lock_timeout_ms = lock_timeout_ms
        self._statement_timeout_ms = statement_timeout_ms

    def init_schema(self) -> None:
        """Create tables and indexes if they do not exist."""
        conn = self._connection_factory()
        try:
            with conn.cursor() as cursor:
                cursor.execute(SCHEMA_PATH.read_text(encoding="utf-8"))
            conn.commit()
        finally:
            conn.close()

    @contextmanager
    def begin(self) -> Generator[UnitOfWork, None, None]:
        conn = self._connection_factory()
        conn.autocommit = False
        cursor = conn.cursor()
        uow = None

        try:
            # SET LOCAL ensures timeouts are transaction-scoped and won't leak
            cursor.execute(f"SET LOCAL lock_timeout = '{self._lock_timeout_ms}ms'")
            cursor.execute(f"SET LOCAL statement_timeout = '{self._statement_timeout_ms}ms'")

            uow = UnitOfWork(_store=self, _conn=conn, _cursor=cursor)
            yield uow

        finally:
            # Single rollback path: if context exists and wasn't committed, rollback
            if uow is None or not uow._committed:
                try:
                    conn.rollback()
                except psycopg2.Error:
                    pass  # Connection might be broken
            try:
                cursor.close()
            finally:
                conn.close()

    def _translate(self, e: psycopg2.Error) -> TraceStoreError:
        """Map a driver error onto the store taxonomy."""
        pgcode = getattr(e, "pgcode", None)
        if pgcode in (self.PGCODE_UNIQUE_VIOLATION, self.PGCODE_FOREIGN_KEY_VIOLATION):
            return AnchorLinkError(str(e).strip())
        if pgcode in (self.PGCODE_LOCK_NOT_AVAILABLE, self.PGCODE_QUERY_CANCELED):
            return StoreBusyError("Trace store busy - lock or statement timeout. Try again.")
        return TraceStoreError(str(e).strip())

    def _execute(self, uow: UnitOfWork, sql: str, params: tuple) -> Any:
        if uow._cursor is None:
            raise TraceStoreError("Write called outside begin() context")
        try:
            uow._cursor.execute(sql, params)
        except psycopg2.Error as e:
            raise self._translate(e) from e
        return uow._cursor

    def _do_save_event(self, uow: UnitOfWork, event: SupplyChainEvent) -> SupplyChainEvent:
        if event.verified:
            raise TraceStoreError("New events must be saved unverified")
        location = event.location
        self._execute(uow, """
            INSERT INTO supply_chain_events (
                id, product_id, event_type, performed_by, timestamp,
                latitude, longitude, location_accuracy,
                description, metadata, data_hash, anchor_ref, verified
            ) VALUES (
                %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, NULL, FALSE
            )
        """, (
            event.id,
            event.product_id,
            event.event_type.value,
            event.performed_by,
            event.timestamp,
            location.latitude if location else None,
            location.longitude if location else None,
            location.accuracy if location else None,
            event.description,
            Json(event.metadata) if event.metadata is not None else None,
            event.data_hash,
        ))
        return event

    def _do_save_anchor_proof(self, uow: UnitOfWork, proof: AnchorProof) -> AnchorProof:
        self._execute(uow, """
            INSERT INTO anchor_proofs (
                id, event_id, data_hash, transaction_ref, block_number, block_timestamp,
                network, cost_units, status, created_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        """, (
            proof.id,
            proof.event_id,
            proof.data_hash,
            proof.transaction_ref,
            proof.block_number,
            proof.block_timestamp,
            proof.network,
            proof.cost_units,
            proof.status.value,
            proof.created_at,
        ))
        return proof

    def _do_link_anchor(self, uow: UnitOfWork, event_id: str, proof_id: str) -> SupplyChainEvent:
        # The proof must already be saved in this transaction and belong to the event
        cursor = self._execute(uow, """
            UPDATE supply_chain_events e
            SET anchor_ref = %s, verified = TRUE
            FROM anchor_proofs p
            WHERE e.id = %s
              AND e.anchor_ref IS NULL
              AND p.id = %s
              AND p.event_id = e.id
            RETURNING """ + _prefixed(_EVENT_COLUMNS, "e"),
            (proof_id, event_id, proof_id),
        )
        row = cursor.fetchone()
        if row is None:
            raise AnchorLinkError(
                f"Cannot link proof {proof_id} to event {event_id}: "
                "event missing, already anchored, or proof not owned by event"
            )
        return self._row_to_event(row)

    def _do_commit(self, uow: UnitOfWork) -> None:
        if uow._conn is None:
            raise TraceStoreError("_do_commit called outside begin() context")
        try:
            uow._conn.commit()
        except psycopg2.Error as e:
            raise self._translate(e) from e

    def _do_rollback(self, uow: UnitOfWork) -> None:
        if uow._conn is not None:
            try:
                uow._conn.rollback()
            except psycopg2.Error:
                pass

    # ================================================================
    # READS
    # ================================================================

    def _fetch(self, sql: str, params: tuple = ()) -> list[tuple]:
        conn = self._connection_factory()
        cursor = conn.cursor()
        try:
            cursor.execute(sql, params)
            return cursor.fetchall()
        finally:
            cursor.close()
            conn.close()

    def load_event(self, event_id: str) -> Optional[SupplyChainEvent]:
        if not _is_uuid(event_id):
            return None
        rows = self._fetch(
            f"SELECT {_EVENT_COLUMNS} FROM supply_chain_events WHERE id = %s",
            (event_id,),
        )
        return self._row_to_event(rows[0]) if rows else None

    def load_events_by_product(self, product_id: str) -> list[SupplyChainEvent]:
        rows = self._fetch(f"""
            SELECT {_EVENT_COLUMNS}
            FROM supply_chain_events
            WHERE product_id = %s
            ORDER BY timestamp ASC, insertion_seq ASC
        """, (product_id,))
        return [self._row_to_event(row) for row in rows]

    def load_anchor_proof(self, event_id: str) -> Optional[AnchorProof]:
        if not _is_uuid(event_id):
            return None
        rows = self._fetch(
            f"SELECT {_PROOF_COLUMNS} FROM anchor_proofs WHERE event_id = %s",
            (event_id,),
        )
        return self._row_to_proof(rows[0]) if rows else None

    def load_anchor_proofs_by_product(self, product_id: str) -> dict[str, AnchorProof]:
        rows = self._fetch(f"""
            SELECT {_prefixed(_PROOF_COLUMNS, "p")}
            FROM anchor_proofs p
            JOIN supply_chain_events e ON e.id = p.event_id
            WHERE e.product_id = %s
        """, (product_id,))
        proofs = (self._row_to_proof(row) for row in rows)
        return {proof.event_id: proof for proof in proofs}

    def list_unanchored(self, limit: int = 100) -> list[SupplyChainEvent]:
        rows = self._fetch(f"""
            SELECT {_EVENT_COLUMNS}
            FROM supply_chain_events
            WHERE anchor_ref IS NULL
            ORDER BY insertion_seq ASC
            LIMIT %s
        """, (limit,))
        return [self._row_to_event(row) for row in rows]

    def get_event_count(self) -> int:
        return self._fetch("SELECT COUNT(*) FROM supply_chain_events")[0][0]

    def _row_to_event(self, row: tuple) -> SupplyChainEvent:
        """Convert a database row to a SupplyChainEvent."""
        location = None
        if row[5] is not None and row[6] is not None:
            location = GeoPoint(latitude=row[5], longitude=row[6], accuracy=row[7])

        return SupplyChainEvent(
            id=str(row[0]),
            product_id=str(row[1]),
            event_type=EventType(row[2]),
            performed_by=str(row[3]),
            timestamp=row[4],
            location=location,
            description=row[8],
            metadata=row[9],
            data_hash=row[10],
            anchor_ref=str(row[11]) if row[11] is not None else None,
            verified=row[12],
        )

    def _row_to_proof(self, row: tuple) -> AnchorProof:
        """Convert a database row to an AnchorProof."""
        return AnchorProof(
            id=str(row[0]),
            event_id=str(row[1]),
            data_hash=row[2],
            transaction_ref=row[3],
            block_number=row[4],
            block_timestamp=row[5],
            network=row[6],
            cost_units=row[7],
            status=AnchorStatus(row[8]),
            created_at=row[9],
        )
