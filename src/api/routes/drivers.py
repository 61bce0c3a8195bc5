"""
Driver endpoints
================

GET  /api/v1/drivers                              -- all drivers
GET  /api/v1/drivers/{id}                         -- driver record
GET  /api/v1/drivers/{id}/status                  -- contribution / availability gate
GET  /api/v1/drivers/{id}/stats/today             -- trips, earnings, rating since midnight
GET  /api/v1/drivers/{id}/available-bookings      -- PENDING bookings (empty when offline)
GET  /api/v1/drivers/{id}/rfid-history            -- card assignment history
POST /api/v1/drivers/applications                 -- submit a registration
POST /api/v1/drivers/applications/{id}/approve    -- approve it (admin)
PUT  /api/v1/drivers/{id}/rfid                    -- link an RFID card (admin)
POST /api/v1/drivers/{id}/rfid/missing            -- report the card lost
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request

from src.api.dependencies import get_feed, get_ledger
from src.api.middleware import limiter
from src.api.schemas import (
    ApprovalRequest,
    BookingResponse,
    DriverApplicationRequest,
    DriverResponse,
    DriverStatusResponse,
    DriverTodayStatsResponse,
    MissingRfidRequest,
    RegistrationResponse,
    RfidAssignRequest,
)
from src.config import settings
from src.domain.entities import DriverNotFound, RfidAlreadyAssigned
from src.services.drivers import DriverLedger
from src.services.feeds import BookingFeed

router = APIRouter(prefix="/drivers", tags=["drivers"])


@router.get("", response_model=list[DriverResponse], summary="List drivers")
@limiter.limit(settings.rate_limit)
async def list_drivers(request: Request, ledger: DriverLedger = Depends(get_ledger)):
    return await ledger.list_drivers()


@router.post(
    "/applications",
    status_code=201,
    response_model=RegistrationResponse,
    summary="Submit a driver application",
)
@limiter.limit(settings.rate_limit)
async def submit_application(
    request: Request,
    body: DriverApplicationRequest,
    ledger: DriverLedger = Depends(get_ledger),
):
    result = await ledger.submit_application(
        applicant_name=body.applicant_name,
        phone_number=body.phone_number,
        toda_number=body.toda_number,
        address=body.address,
        license_number=body.license_number,
    )
    return RegistrationResponse.from_result(result)


@router.post(
    "/applications/{application_id}/approve",
    response_model=RegistrationResponse,
    summary="Approve a driver application",
)
@limiter.limit(settings.rate_limit)
async def approve_application(
    request: Request,
    application_id: str,
    body: ApprovalRequest,
    ledger: DriverLedger = Depends(get_ledger),
):
    return RegistrationResponse.from_result(
        await ledger.approve_application(application_id, body.approved_by)
    )


@router.get("/{driver_id}", response_model=DriverResponse, summary="Get a driver")
@limiter.limit(settings.rate_limit)
async def get_driver(
    request: Request,
    driver_id: str,
    ledger: DriverLedger = Depends(get_ledger),
):
    try:
        return await ledger.get_driver(driver_id)
    except DriverNotFound:
        raise HTTPException(status_code=404, detail="Driver not found")


@router.get(
    "/{driver_id}/status",
    response_model=DriverStatusResponse,
    summary="Contribution and availability gate",
)
@limiter.limit(settings.rate_limit)
async def driver_status(
    request: Request,
    driver_id: str,
    ledger: DriverLedger = Depends(get_ledger),
):
    return DriverStatusResponse(
        driver_id=driver_id,
        contributed_today=await ledger.get_driver_contribution_status(driver_id),
        can_receive_bookings=await ledger.can_receive_bookings(driver_id),
    )


@router.get(
    "/{driver_id}/stats/today",
    response_model=DriverTodayStatsResponse,
    summary="Today's trips, earnings and rating",
)
@limiter.limit(settings.rate_limit)
async def today_stats(
    request: Request,
    driver_id: str,
    ledger: DriverLedger = Depends(get_ledger),
):
    return await ledger.get_driver_today_stats(driver_id)


@router.get(
    "/{driver_id}/available-bookings",
    response_model=list[BookingResponse],
    summary="PENDING bookings this driver may take",
)
@limiter.limit(settings.rate_limit)
async def available_bookings(
    request: Request,
    driver_id: str,
    feed: BookingFeed = Depends(get_feed),
):
    return await feed.available_bookings(driver_id)


@router.get("/{driver_id}/rfid-history", response_model=list[dict], summary="RFID change history")
@limiter.limit(settings.rate_limit)
async def rfid_history(
    request: Request,
    driver_id: str,
    ledger: DriverLedger = Depends(get_ledger),
):
    return await ledger.rfid_history(driver_id)


@router.put("/{driver_id}/rfid", response_model=DriverResponse, summary="Assign an RFID card")
@limiter.limit(settings.rate_limit)
async def assign_rfid(
    request: Request,
    driver_id: str,
    body: RfidAssignRequest,
    ledger: DriverLedger = Depends(get_ledger),
):
    try:
        return await ledger.assign_rfid(driver_id, body.rfid, body.changed_by)
    except DriverNotFound:
        raise HTTPException(status_code=404, detail="Driver not found")
    except RfidAlreadyAssigned as exc:
        raise HTTPException(status_code=409, detail=str(exc))


@router.post(
    "/{driver_id}/rfid/missing",
    response_model=DriverResponse,
    summary="Report the RFID card missing",
)
@limiter.limit(settings.rate_limit)
async def report_missing_rfid(
    request: Request,
    driver_id: str,
    body: MissingRfidRequest,
    ledger: DriverLedger = Depends(get_ledger),
):
    try:
        return await ledger.report_missing_rfid(driver_id, body.reason)
    except DriverNotFound:
        raise HTTPException(status_code=404, detail="Driver not found")
