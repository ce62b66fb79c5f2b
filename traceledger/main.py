"""
TraceLedger - Supply-Chain Traceability Ledger

Every custody event is hashed, anchored to an external ledger, and
re-verifiable by anyone holding the event's fields.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .bootstrap import Services, build_services
from .observability import (
    setup_logging,
    get_logger,
    RequestContextMiddleware,
    check_health,
    get_metrics,
)

logger = get_logger(__name__)

API_PREFIX = "/api/v1"


def create_app(services: Optional[Services] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        services: Pre-built services (tests). Built from the environment
            at startup when omitted.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Wire services on startup; close the ones we built on shutdown."""
        owned = services is None
        app.state.services = services if services is not None else build_services()

        logger.info(
            "Application startup complete",
            event_count=app.state.services.store.get_event_count(),
            store_type=type(app.state.services.store).__name__,
            anchor_mode=app.state.services.anchor_client.mode,
            network=app.state.services.anchor_client.network,
        )

        yield

        if owned:
            await app.state.services.aclose()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="TraceLedger",
        description="""
## Supply-Chain Traceability Ledger

Records custody events for products and makes them tamper-evident.

### Guarantees

- **Deterministic**: every event has one canonical encoding and one SHA-256 hash
- **Anchored**: hashes are committed to an external append-only ledger
- **Verifiable**: any event can be re-hashed and compared with the stored and anchored hash
- **Honest about failure**: an event whose anchoring failed is stored unverified, never lost

### Anchor Backends

- **simulated**: in-process ledger (development/testing)
- **chain**: EVM recorder contract over JSON-RPC

Set `TRACELEDGER_ANCHOR_MODE` to choose.

### Storage Backends

- **InMemoryTraceStore**: Development/testing (default)
- **PostgresTraceStore**: Production with full durability

Set `DATABASE_URL` or `DATABASE_HOST` environment variables to use PostgreSQL.
        """,
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(RequestContextMiddleware)

    from .api.routes import router
    app.include_router(router, prefix=API_PREFIX)

    @app.get("/health", tags=["System"])
    async def health():
        """Liveness only. Store and ledger checks live at /health/detailed."""
        return {"status": "healthy", "service": "traceledger"}

    @app.get("/health/detailed", tags=["System"])
    async def health_detailed(request: Request):
        """Store reachability, unanchored backlog and anchor mode. 503 when any check is unhealthy."""
        svc = request.app.state.services
        health_status = check_health(store=svc.store, anchor_client=svc.anchor_client)

        return JSONResponse(
            status_code=200 if health_status.healthy else 503,
            content={
                "status": "healthy" if health_status.healthy else "unhealthy",
                "checks": health_status.checks,
                "duration_ms": health_status.duration_ms,
            },
        )

    @app.get("/metrics", tags=["System"])
    async def metrics():
        """Integrity counters (anchors failed, mismatches) and latency percentiles."""
        return get_metrics().get_summary()

    return app


def run() -> FastAPI:
    """Factory for `uvicorn --factory traceledger.main:run`."""
    setup_logging()
    return create_app()
