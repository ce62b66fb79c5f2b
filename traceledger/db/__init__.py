"""
Database Layer for TraceLedger

Provides:
- TraceStore abstraction (InMemory for dev, Postgres for prod)
- ProductDirectory lookups against externally managed tables
- Environment-based configuration
"""

from .store import (
    TraceStore,
    InMemoryTraceStore,
    UnitOfWork,
    TraceStoreError,
    AnchorLinkError,
    StoreBusyError,
)
from .directory import ProductDirectory, InMemoryProductDirectory, PostgresProductDirectory
from .config import DatabaseConfig, StoreDriver, get_database_config, get_store_driver

__all__ = [
    "TraceStore",
    "InMemoryTraceStore",
    "UnitOfWork",
    "TraceStoreError",
    "AnchorLinkError",
    "StoreBusyError",
    "ProductDirectory",
    "InMemoryProductDirectory",
    "PostgresProductDirectory",
    "DatabaseConfig",
    "StoreDriver",
    "get_database_config",
    "get_store_driver",
]
