"""
Product Directory

The integrity subsystem does not own products or user profiles. It only
asks two questions of whoever does:
- does this product exist?
- who is this actor (name, organization, role)?

InMemoryProductDirectory backs development and tests. Its products can be
seeded from TRACELEDGER_MEMORY_PRODUCTS (comma-separated product ids).
PostgresProductDirectory reads the products/profiles tables managed elsewhere.
"""

import os
from abc import ABC, abstractmethod
from threading import Lock
from typing import Any, Callable, Optional

from ..schemas import Participant


MEMORY_PRODUCTS_ENV = "TRACELEDGER_MEMORY_PRODUCTS"


class ProductDirectory(ABC):
    """Read-only view of products and participants."""

    @abstractmethod
    def product_exists(self, product_id: str) -> bool:
        pass

    @abstractmethod
    def get_participant(self, actor_id: str) -> Optional[Participant]:
        pass


class InMemoryProductDirectory(ProductDirectory):
    """Dict-backed directory for development and testing."""

    def __init__(self):
        self._products: set[str] = set()
        self._participants: dict[str, Participant] = {}
        self._lock = Lock()

    @classmethod
    def from_env(cls) -> "InMemoryProductDirectory":
        """Directory holding the products listed in TRACELEDGER_MEMORY_PRODUCTS."""
        directory = cls()
        raw = os.environ.get(MEMORY_PRODUCTS_ENV, "")
        for product_id in raw.split(","):
            if product_id.strip():
                directory.add_product(product_id.strip())
        return directory

    def product_count(self) -> int:
        with self._lock:
            return len(self._products)

    def add_product(self, product_id: str) -> None:
        with self._lock:
            self._products.add(product_id)

    def add_participant(self, participant: Participant) -> None:
        with self._lock:
            self._participants[participant.id] = participant

    def product_exists(self, product_id: str) -> bool:
        with self._lock:
            return product_id in self._products

    def get_participant(self, actor_id: str) -> Optional[Participant]:
        with self._lock:
            return self._participants.get(actor_id)


class PostgresProductDirectory(ProductDirectory):
    """
    Directory backed by the externally managed products and profiles tables.

    Expects:
        products (id, ...)
        profiles (id, name, organization, role, ...)
    """

    def __init__(self, connection_factory: Callable[[], Any]):
        self._connection_factory = connection_factory

    def _fetchone(self, sql: str, params: tuple) -> Optional[tuple]:
        conn = self._connection_factory()
        cursor = conn.cursor()
        try:
            cursor.execute(sql, params)
            return cursor.fetchone()
        finally:
            cursor.close()
            conn.close()

    def product_exists(self, product_id: str) -> bool:
        row = self._fetchone("SELECT 1 FROM products WHERE id::text = %s", (product_id,))
        return row is not None

    def get_participant(self, actor_id: str) -> Optional[Participant]:
        row = self._fetchone(
            "SELECT id, name, organization, role FROM profiles WHERE id::text = %s",
            (actor_id,),
        )
        if row is None:
            return None
        return Participant(id=str(row[0]), name=row[1], organization=row[2], role=row[3])
