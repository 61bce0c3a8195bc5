"""
Booking endpoints
=================

POST  /api/v1/bookings                   -- create a booking and try to match it
GET   /api/v1/bookings?customer_id=...   -- a passenger's active bookings (or history)
GET   /api/v1/bookings/{id}              -- booking details
PATCH /api/v1/bookings/{id}/status       -- state-machine transition
POST  /api/v1/bookings/{id}/cancel       -- cancel
POST  /api/v1/bookings/{id}/arrived      -- driver reached the pickup point
POST  /api/v1/bookings/{id}/no-show      -- passenger did not turn up
POST  /api/v1/bookings/{id}/match        -- retry matching against the queue
POST  /api/v1/bookings/{id}/rating       -- customer rating (once)
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request

from src.api.dependencies import get_booking_service, get_feed, get_matcher
from src.api.middleware import limiter
from src.api.schemas import (
    BookingCreatedResponse,
    BookingCreateRequest,
    BookingResponse,
    MatchResponse,
    RatingRequest,
    RatingResponse,
    StatusUpdateRequest,
)
from src.config import settings
from src.domain.entities import (
    Booking,
    BookingNotFound,
    GeoPoint,
    InvalidStateTransition,
    RatingAlreadySubmitted,
)
from src.services.bookings import BookingService
from src.services.feeds import BookingFeed, passenger_view
from src.services.queue_matcher import QueueMatcher

router = APIRouter(prefix="/bookings", tags=["bookings"])


async def _load(service: BookingService, booking_id: str) -> Booking:
    try:
        return await service.get_booking(booking_id)
    except BookingNotFound:
        raise HTTPException(status_code=404, detail="Booking not found")


@router.post(
    "",
    status_code=201,
    response_model=BookingCreatedResponse,
    summary="Create a booking",
    responses={503: {"description": "Store unavailable; safe to retry."}},
)
@limiter.limit(settings.rate_limit)
async def create_booking(
    request: Request,
    body: BookingCreateRequest,
    service: BookingService = Depends(get_booking_service),
    matcher: QueueMatcher = Depends(get_matcher),
):
    draft = Booking(
        customer_id=body.customer_id,
        customer_name=body.customer_name,
        phone_number=body.phone_number,
        is_phone_verified=body.is_phone_verified,
        pickup_location=body.pickup_location,
        destination=body.destination,
        pickup_geo_point=GeoPoint(body.pickup_lat, body.pickup_lng),
        dropoff_geo_point=GeoPoint(body.dropoff_lat, body.dropoff_lng),
        estimated_fare=body.estimated_fare,
        duration=body.duration,
        payment_method=body.payment_method,
        verification_code=body.verification_code or "",
    )
    booking_id = await service.create_booking(draft)

    # ── Immediate auto-match ──────────────────────────────────────
    result = await matcher.match_booking_to_first_driver(booking_id)
    booking = await _load(service, booking_id)
    return BookingCreatedResponse(
        booking=BookingResponse.model_validate(booking),
        match=MatchResponse.from_result(result),
    )


@router.get(
    "",
    response_model=list[BookingResponse],
    summary="List a passenger's bookings",
)
@limiter.limit(settings.rate_limit)
async def list_customer_bookings(
    request: Request,
    customer_id: str,
    history: bool = False,
    feed: BookingFeed = Depends(get_feed),
):
    return passenger_view(await feed.snapshot(), customer_id, history)


@router.get("/{booking_id}", response_model=BookingResponse, summary="Get a booking")
@limiter.limit(settings.rate_limit)
async def get_booking(
    request: Request,
    booking_id: str,
    service: BookingService = Depends(get_booking_service),
):
    return await _load(service, booking_id)


@router.patch(
    "/{booking_id}/status",
    response_model=BookingResponse,
    summary="Transition a booking",
    description=(
        "Applies one state-machine transition. Illegal transitions are "
        "rejected with 409; the booking and its index are updated together."
    ),
)
@limiter.limit(settings.rate_limit)
async def update_status(
    request: Request,
    booking_id: str,
    body: StatusUpdateRequest,
    service: BookingService = Depends(get_booking_service),
):
    try:
        ok = await service.update_booking_status(booking_id, body.status, body.driver_id)
    except BookingNotFound:
        raise HTTPException(status_code=404, detail="Booking not found")
    except InvalidStateTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    if not ok:
        raise HTTPException(status_code=503, detail="Store unavailable, retry")
    return await _load(service, booking_id)


@router.post("/{booking_id}/cancel", response_model=BookingResponse, summary="Cancel a booking")
@limiter.limit(settings.rate_limit)
async def cancel_booking(
    request: Request,
    booking_id: str,
    service: BookingService = Depends(get_booking_service),
):
    try:
        ok = await service.cancel_booking(booking_id)
    except BookingNotFound:
        raise HTTPException(status_code=404, detail="Booking not found")
    except InvalidStateTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    if not ok:
        raise HTTPException(status_code=503, detail="Store unavailable, retry")
    return await _load(service, booking_id)


@router.post(
    "/{booking_id}/arrived",
    response_model=BookingResponse,
    summary="Driver arrived at pickup",
)
@limiter.limit(settings.rate_limit)
async def mark_arrived(
    request: Request,
    booking_id: str,
    service: BookingService = Depends(get_booking_service),
):
    try:
        ok = await service.mark_arrived_at_pickup(booking_id)
    except BookingNotFound:
        raise HTTPException(status_code=404, detail="Booking not found")
    except InvalidStateTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    if not ok:
        raise HTTPException(status_code=503, detail="Store unavailable, retry")
    return await _load(service, booking_id)


@router.post(
    "/{booking_id}/no-show",
    response_model=BookingResponse,
    summary="Report a passenger no-show",
)
@limiter.limit(settings.rate_limit)
async def report_no_show(
    request: Request,
    booking_id: str,
    service: BookingService = Depends(get_booking_service),
):
    try:
        ok = await service.report_no_show(booking_id)
    except BookingNotFound:
        raise HTTPException(status_code=404, detail="Booking not found")
    except InvalidStateTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    if not ok:
        raise HTTPException(status_code=503, detail="Store unavailable, retry")
    return await _load(service, booking_id)


@router.post(
    "/{booking_id}/match",
    response_model=MatchResponse,
    summary="Retry matching against the driver queue",
)
@limiter.limit(settings.rate_limit)
async def match_booking(
    request: Request,
    booking_id: str,
    matcher: QueueMatcher = Depends(get_matcher),
):
    return MatchResponse.from_result(await matcher.match_booking_to_first_driver(booking_id))


@router.post(
    "/{booking_id}/rating",
    response_model=RatingResponse,
    summary="Rate a completed trip",
)
@limiter.limit(settings.rate_limit)
async def rate_booking(
    request: Request,
    booking_id: str,
    body: RatingRequest,
    service: BookingService = Depends(get_booking_service),
):
    try:
        return await service.submit_rating(booking_id, body.stars, body.feedback)
    except BookingNotFound:
        raise HTTPException(status_code=404, detail="Booking not found")
    except (InvalidStateTransition, RatingAlreadySubmitted) as exc:
        raise HTTPException(status_code=409, detail=str(exc))
