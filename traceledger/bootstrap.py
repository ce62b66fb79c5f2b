"""
Service Wiring

Builds the store, product directory, anchor client and services once at
process start. The result is passed by reference (FastAPI app.state,
CLI commands); nothing else constructs services.

Mode is determined by environment variables:
- TRACESTORE_DRIVER: memory | postgres
- DATABASE_URL or DATABASE_HOST: database connection (auto-selects postgres)
- TRACELEDGER_ANCHOR_MODE: simulated | chain (see traceledger.core.anchor)
- TRACELEDGER_MEMORY_PRODUCTS: product ids known to the in-memory directory

A configured database that cannot be reached is a startup error. There is
no silent fallback to the in-memory store.
"""

from dataclasses import dataclass
from typing import Optional

from .core import (
    AnchorConfig,
    ChainOfCustodyAssembler,
    ConfigurationError,
    EventIntegrityService,
    LedgerAnchorClient,
    create_anchor_client,
)
from .db import (
    DatabaseConfig,
    InMemoryProductDirectory,
    InMemoryTraceStore,
    PostgresProductDirectory,
    ProductDirectory,
    StoreDriver,
    TraceStore,
    get_database_config,
    get_store_driver,
)
from .observability import get_logger

logger = get_logger(__name__)


@dataclass
class Services:
    """Everything a request handler or CLI command needs."""
    store: TraceStore
    directory: ProductDirectory
    anchor_client: LedgerAnchorClient
    integrity: EventIntegrityService
    custody: ChainOfCustodyAssembler

    async def aclose(self) -> None:
        await self.anchor_client.aclose()
        self.store.close()


def _create_postgres(config: DatabaseConfig) -> tuple[TraceStore, ProductDirectory]:
    import psycopg2

    from .db.postgres import PostgresTraceStore

    def connection_factory():
        return psycopg2.connect(config.to_dsn())

    # Fail fast on an unreachable database
    try:
        connection_factory().close()
    except psycopg2.Error as e:
        raise ConfigurationError(
            f"Could not connect to PostgreSQL at {config.to_url(include_password=False)}: {e}"
        ) from e

    logger.info("PostgreSQL connection established", url=config.to_url(include_password=False))
    return PostgresTraceStore(connection_factory), PostgresProductDirectory(connection_factory)


def create_store() -> tuple[TraceStore, ProductDirectory]:
    """
    Create the store and directory for the configured driver.

    Raises:
        ConfigurationError: postgres selected without a reachable database
    """
    driver = get_store_driver()

    if driver == StoreDriver.MEMORY:
        directory = InMemoryProductDirectory.from_env()
        logger.info("Using in-memory trace store (no persistence)", products=directory.product_count())
        if directory.product_count() == 0:
            logger.warning(
                "In-memory directory has no products; every event will be rejected. "
                "Set TRACELEDGER_MEMORY_PRODUCTS to a comma-separated list of product ids."
            )
        return InMemoryTraceStore(), directory

    config = get_database_config()
    if config is None:
        raise ConfigurationError(
            "TRACESTORE_DRIVER=postgres but neither DATABASE_URL nor DATABASE_HOST is set"
        )
    return _create_postgres(config)


def build_services(
    store: Optional[TraceStore] = None,
    directory: Optional[ProductDirectory] = None,
    anchor_client: Optional[LedgerAnchorClient] = None,
    anchor_config: Optional[AnchorConfig] = None,
) -> Services:
    """
    Build all services. Any collaborator passed in is used as-is.

    Raises:
        ConfigurationError: Invalid store or anchor configuration
    """
    if store is None or directory is None:
        default_store, default_directory = create_store()
        store = store if store is not None else default_store
        directory = directory if directory is not None else default_directory

    if anchor_client is None:
        anchor_client = create_anchor_client(anchor_config)

    return Services(
        store=store,
        directory=directory,
        anchor_client=anchor_client,
        integrity=EventIntegrityService(store, anchor_client, directory),
        custody=ChainOfCustodyAssembler(store, directory),
    )
