"""
Admin / observability endpoints
===============================

GET /api/v1/admin/dispatch         -- every PENDING / ACCEPTED booking
GET /api/v1/admin/active-bookings  -- every booking not yet finished
GET /api/v1/admin/assignment-gaps  -- matches whose RFID had no driverId
GET /api/v1/admin/health           -- simple health check
"""

from fastapi import APIRouter, Depends, Request

from src.api.dependencies import get_feed, get_store
from src.api.middleware import limiter
from src.api.schemas import AssignmentGapResponse, BookingResponse, HealthResponse
from src.config import settings
from src.domain.normalization import decode_int, decode_str
from src.infrastructure.repositories import ASSIGNMENT_GAPS
from src.infrastructure.tree_store import TreeStore
from src.services.feeds import BookingFeed, active_view, dispatch_view

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get(
    "/dispatch",
    response_model=list[BookingResponse],
    summary="Bookings waiting for or assigned to a driver",
)
@limiter.limit(settings.rate_limit)
async def dispatch(request: Request, feed: BookingFeed = Depends(get_feed)):
    return dispatch_view(await feed.snapshot())


@router.get(
    "/active-bookings",
    response_model=list[BookingResponse],
    summary="All unfinished bookings",
)
@limiter.limit(settings.rate_limit)
async def active_bookings(request: Request, feed: BookingFeed = Depends(get_feed)):
    return active_view(await feed.snapshot())


@router.get(
    "/assignment-gaps",
    response_model=list[AssignmentGapResponse],
    summary="Accepted bookings without a resolved driverId",
)
@limiter.limit(settings.rate_limit)
async def assignment_gaps(request: Request, store: TreeStore = Depends(get_store)):
    raw = await store.read(ASSIGNMENT_GAPS)
    if not isinstance(raw, dict):
        return []
    gaps = [
        AssignmentGapResponse(
            booking_id=booking_id,
            driver_rfid=decode_str(gap.get("driverRFID")),
            driver_name=decode_str(gap.get("driverName")),
            queue_key=decode_str(gap.get("queueKey")),
            timestamp=decode_int(gap.get("timestamp")),
        )
        for booking_id, gap in raw.items()
        if isinstance(gap, dict)
    ]
    return sorted(gaps, key=lambda g: g.timestamp)


@router.get("/health", response_model=HealthResponse, summary="Health check")
async def health(store: TreeStore = Depends(get_store)):
    return HealthResponse(active_subscriptions=store.subscriptions.active_count)
