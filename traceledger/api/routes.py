"""
API Routes for the Traceability Ledger

Command endpoints:
- POST /events                       - Record (and anchor) a custody event
- POST /events/{id}/reanchor         - Retry anchoring for an unverified event

Query endpoints:
- GET /events/{id}                   - One event with its proof
- GET /events/{id}/verify            - Re-verify an event's integrity
- GET /events/product/{product_id}   - Events of one product, trace order
- GET /trace/product/{product_id}    - Chain of custody
- GET /trace/qr/{qr_code}            - Chain of custody from a scanned QR payload

No authentication is carried here; callers identify themselves with
performed_by / viewer_id and the X-Actor-ID header.
"""

import re
from typing import Any, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from ..bootstrap import Services
from ..core import (
    EventIntegrityService,
    NotFoundError,
    ValidationError,
)
from ..observability import get_logger
from ..schemas import (
    AnchorProof,
    EventType,
    ProductTrace,
    RecordedEvent,
    SupplyChainEvent,
    VerificationResult,
)

logger = get_logger(__name__)

router = APIRouter()

CONSUMER_ROLE = "consumer"

# QR payloads carry the product id as a pid=<uuid> parameter
QR_PRODUCT_ID_RE = re.compile(r"pid=([a-f0-9-]+)", re.IGNORECASE)


# ============================================================
# Dependency Injection
# ============================================================

def get_services(request: Request) -> Services:
    return request.app.state.services


def get_integrity(services: Services = Depends(get_services)) -> EventIntegrityService:
    return services.integrity


# ============================================================
# Request/Response Models
# ============================================================

class CreateEventRequest(BaseModel):
    """
    Request to record a custody event.

    Location is flat: latitude and longitude must be given together.
    (0, 0) is a valid position.
    """
    product_id: str = Field(..., min_length=1)
    event_type: EventType
    performed_by: Optional[str] = Field(
        default=None,
        description="Actor id; defaults to the X-Actor-ID header"
    )
    location_latitude: Optional[float] = None
    location_longitude: Optional[float] = None
    location_accuracy: Optional[float] = Field(default=None, ge=0)
    description: Optional[str] = Field(default=None, max_length=2000)
    metadata: Optional[dict[str, Any]] = None


class RecordEventResponse(BaseModel):
    """Outcome of a record or re-anchor command."""
    event: SupplyChainEvent
    anchor_proof: Optional[AnchorProof] = None
    anchored: bool
    message: str


class EventDetail(BaseModel):
    event: SupplyChainEvent
    anchor_proof: Optional[AnchorProof] = None


# ============================================================
# Helpers
# ============================================================

def _http_error(e: Exception) -> HTTPException:
    """Map NotFoundError to 404 and ValidationError to 400."""
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


def _to_response(result: RecordedEvent) -> RecordEventResponse:
    if result.anchored:
        message = "Event recorded and anchored"
    else:
        message = f"Event recorded; anchoring pending ({result.anchor_error})"
    return RecordEventResponse(
        event=result.event,
        anchor_proof=result.anchor_proof,
        anchored=result.anchored,
        message=message,
    )


def _location_from_request(body: CreateEventRequest) -> Optional[dict[str, Any]]:
    lat, lon = body.location_latitude, body.location_longitude
    if lat is None and lon is None:
        if body.location_accuracy is not None:
            raise ValidationError("location_accuracy given without coordinates")
        return None
    if lat is None or lon is None:
        raise ValidationError("location_latitude and location_longitude must be given together")
    return {"latitude": lat, "longitude": lon, "accuracy": body.location_accuracy}


# ============================================================
# Events
# ============================================================

@router.post(
    "/events",
    response_model=RecordEventResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Events"],
)
async def create_event(
    body: CreateEventRequest,
    integrity: EventIntegrityService = Depends(get_integrity),
    x_actor_id: Optional[str] = Header(default=None),
):
    """
    Record a custody event.

    Returns 201 even when anchoring failed: the event is stored
    (unverified) and can be re-anchored later.
    """
    try:
        result = await integrity.record_event(
            product_id=body.product_id,
            event_type=body.event_type,
            performed_by=body.performed_by or x_actor_id,
            location=_location_from_request(body),
            description=body.description,
            metadata=body.metadata,
        )
    except (ValidationError, NotFoundError) as e:
        raise _http_error(e) from e
    return _to_response(result)


@router.post("/events/{event_id}/reanchor", response_model=RecordEventResponse, tags=["Events"])
async def reanchor_event(
    event_id: str,
    integrity: EventIntegrityService = Depends(get_integrity),
):
    """Retry anchoring for an unverified event (idempotent once anchored)."""
    try:
        result = await integrity.reanchor_event(event_id)
    except (ValidationError, NotFoundError) as e:
        raise _http_error(e) from e
    return _to_response(result)


@router.get("/events/product/{product_id}", response_model=list[SupplyChainEvent], tags=["Events"])
async def list_product_events(
    product_id: str,
    integrity: EventIntegrityService = Depends(get_integrity),
):
    try:
        return integrity.list_product_events(product_id)
    except NotFoundError as e:
        raise _http_error(e) from e


@router.get("/events/{event_id}", response_model=EventDetail, tags=["Events"])
async def get_event(
    event_id: str,
    integrity: EventIntegrityService = Depends(get_integrity),
):
    try:
        return EventDetail(
            event=integrity.get_event(event_id),
            anchor_proof=integrity.get_anchor_proof(event_id),
        )
    except NotFoundError as e:
        raise _http_error(e) from e


@router.get("/events/{event_id}/verify", response_model=VerificationResult, tags=["Events"])
async def verify_event(
    event_id: str,
    check_chain: bool = Query(default=True, description="Also ask the ledger"),
    integrity: EventIntegrityService = Depends(get_integrity),
):
    """
    Recompute the event's hash and compare it with the stored record
    and, when anchored, with the ledger.
    """
    try:
        return await integrity.verify_event(event_id, check_chain=check_chain)
    except NotFoundError as e:
        raise _http_error(e) from e


# ============================================================
# Trace
# ============================================================

async def _record_consumer_scan(integrity: EventIntegrityService, product_id: str, viewer_id: str) -> None:
    """Best-effort SCAN event; runs after the trace response is sent."""
    try:
        await integrity.record_event(
            product_id=product_id,
            event_type=EventType.SCAN,
            performed_by=viewer_id,
            description="Consumer scanned product",
        )
    except Exception as e:
        logger.warning(
            "Failed to record consumer scan",
            product_id=product_id,
            viewer_id=viewer_id,
            error=str(e),
        )


@router.get("/trace/product/{product_id}", response_model=ProductTrace, tags=["Trace"])
async def get_product_trace(
    product_id: str,
    background_tasks: BackgroundTasks,
    viewer_id: Optional[str] = Query(default=None),
    viewer_role: Optional[str] = Query(default=None),
    verify: bool = Query(default=False, description="Recompute every event hash"),
    services: Services = Depends(get_services),
):
    """
    Chain of custody for one product.

    A consumer viewer leaves a SCAN event behind. It is recorded after the
    response is sent, so anchor latency never delays the trace and a
    recording failure never fails it.
    """
    try:
        trace = services.custody.get_trace(product_id, verify_integrity=verify)
    except NotFoundError as e:
        raise _http_error(e) from e

    if viewer_role == CONSUMER_ROLE and viewer_id:
        background_tasks.add_task(_record_consumer_scan, services.integrity, product_id, viewer_id)

    return trace


@router.get("/trace/qr/{qr_code:path}", response_model=ProductTrace, tags=["Trace"])
async def get_trace_by_qr(
    qr_code: str,
    background_tasks: BackgroundTasks,
    viewer_id: Optional[str] = Query(default=None),
    viewer_role: Optional[str] = Query(default=None),
    verify: bool = Query(default=False),
    services: Services = Depends(get_services),
):
    """Resolve a scanned QR payload (containing pid=<product id>) to its trace."""
    match = QR_PRODUCT_ID_RE.search(qr_code)
    if match is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid QR code: no pid parameter",
        )
    return await get_product_trace(
        product_id=match.group(1).lower(),
        background_tasks=background_tasks,
        viewer_id=viewer_id,
        viewer_role=viewer_role,
        verify=verify,
        services=services,
    )
