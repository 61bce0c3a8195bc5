"""
Driver queue & hardware endpoints
=================================

The physical terminal at the TODA stand reads the driver's RFID card and
calls these endpoints.

GET  /api/v1/queue                                -- queue in arrival order
POST /api/v1/queue/join                           -- card tapped: join, then match oldest PENDING
POST /api/v1/queue/leave                          -- card tapped again: leave
POST /api/v1/hardware/coins                       -- coin inserted (daily contribution)
GET  /api/v1/hardware/booking-index/{booking_id}  -- lightweight status mirror
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from src.api.dependencies import get_ledger, get_matcher, get_store
from src.api.middleware import limiter
from src.api.schemas import (
    BookingIndexResponse,
    CoinInsertionRequest,
    MatchResponse,
    OperationResponse,
    QueueEntryResponse,
    QueueJoinRequest,
    QueueJoinResponse,
    QueueLeaveRequest,
    QueueLeaveResponse,
)
from src.config import settings
from src.domain.matching import queue_order
from src.domain.normalization import decode_str
from src.infrastructure.repositories import BookingRepository
from src.infrastructure.tree_store import TreeStore
from src.services.drivers import DriverLedger
from src.services.queue_matcher import QueueMatcher

logger = logging.getLogger(__name__)

router = APIRouter(tags=["queue"])


@router.get("/queue", response_model=list[QueueEntryResponse], summary="Driver queue")
@limiter.limit(settings.rate_limit)
async def list_queue(request: Request, matcher: QueueMatcher = Depends(get_matcher)):
    return [QueueEntryResponse.from_entry(e) for e in queue_order(await matcher.queue.list_all())]


@router.post(
    "/queue/join",
    status_code=201,
    response_model=QueueJoinResponse,
    summary="Join the driver queue",
)
@limiter.limit(settings.rate_limit)
async def join_queue(
    request: Request,
    body: QueueJoinRequest,
    matcher: QueueMatcher = Depends(get_matcher),
):
    key = await matcher.join_queue(body.rfid, body.driver_name, body.toda_number)
    # a waiting passenger gets the new driver right away
    result = await matcher.match_oldest_pending()
    return QueueJoinResponse(
        key=key,
        match=MatchResponse.from_result(result) if result is not None else None,
    )


@router.post("/queue/leave", response_model=QueueLeaveResponse, summary="Leave the driver queue")
@limiter.limit(settings.rate_limit)
async def leave_queue(
    request: Request,
    body: QueueLeaveRequest,
    matcher: QueueMatcher = Depends(get_matcher),
):
    return QueueLeaveResponse(removed=await matcher.leave_queue(body.rfid))


@router.post(
    "/hardware/coins",
    response_model=OperationResponse,
    summary="Record a coin insertion",
    responses={404: {"description": "RFID not linked to any driver."}},
)
@limiter.limit(settings.rate_limit)
async def record_coin(
    request: Request,
    body: CoinInsertionRequest,
    ledger: DriverLedger = Depends(get_ledger),
):
    if await ledger.drivers.driver_id_for_rfid(body.rfid) is None:
        raise HTTPException(status_code=404, detail="Unknown RFID")
    ok = await ledger.record_coin_insertion(body.rfid, body.amount, body.device_id)
    if not ok:
        raise HTTPException(status_code=503, detail="Store unavailable, retry")
    return OperationResponse(ok=True)


@router.get(
    "/hardware/booking-index/{booking_id}",
    response_model=BookingIndexResponse,
    summary="Booking status mirror for hardware",
)
@limiter.limit(settings.rate_limit)
async def booking_index(
    request: Request,
    booking_id: str,
    store: TreeStore = Depends(get_store),
):
    entry = await BookingRepository(store).get_index(booking_id)
    if not isinstance(entry, dict):
        raise HTTPException(status_code=404, detail="Booking not found")
    return BookingIndexResponse(
        booking_id=booking_id,
        status=decode_str(entry.get("status")),
        driver_rfid=decode_str(entry.get("driverRFID")),
    )
