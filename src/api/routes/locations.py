"""
Location & emergency endpoints
==============================

PUT  /api/v1/drivers/{id}/location                -- driver app location ping
GET  /api/v1/drivers/{id}/location                -- latest location record
GET  /api/v1/locations/available-drivers          -- online and available drivers
POST /api/v1/emergency-alerts                     -- raise an alert
GET  /api/v1/emergency-alerts                     -- open alerts, oldest first
POST /api/v1/emergency-alerts/{id}/resolve        -- close an alert (operator)
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request

from src.api.dependencies import get_locations
from src.api.middleware import limiter
from src.api.schemas import (
    AlertCreatedResponse,
    AvailableDriverResponse,
    DriverLocationResponse,
    EmergencyAlertRequest,
    EmergencyAlertResponse,
    LocationUpdateRequest,
    OperationResponse,
    ResolveAlertRequest,
)
from src.config import settings
from src.domain.entities import AlertNotFound
from src.services.locations import LocationService

router = APIRouter(tags=["locations"])


@router.put(
    "/drivers/{driver_id}/location",
    response_model=OperationResponse,
    summary="Update a driver's location",
)
@limiter.limit(settings.rate_limit)
async def update_location(
    request: Request,
    driver_id: str,
    body: LocationUpdateRequest,
    locations: LocationService = Depends(get_locations),
):
    ok = await locations.update_driver_location(
        driver_id,
        body.tricycle_id,
        body.latitude,
        body.longitude,
        body.is_online,
        body.is_available,
        body.current_booking_id,
    )
    if not ok:
        raise HTTPException(status_code=503, detail="Store unavailable, retry")
    return OperationResponse(ok=True)


@router.get(
    "/drivers/{driver_id}/location",
    response_model=DriverLocationResponse,
    summary="Latest driver location",
)
@limiter.limit(settings.rate_limit)
async def get_location(
    request: Request,
    driver_id: str,
    locations: LocationService = Depends(get_locations),
):
    location = await locations.get_location(driver_id)
    if location is None:
        raise HTTPException(status_code=404, detail="No location for driver")
    return location


@router.get(
    "/locations/available-drivers",
    response_model=list[AvailableDriverResponse],
    summary="Drivers online and available",
)
@limiter.limit(settings.rate_limit)
async def available_drivers(request: Request, locations: LocationService = Depends(get_locations)):
    return await locations.available_drivers()


@router.post(
    "/emergency-alerts",
    status_code=201,
    response_model=AlertCreatedResponse,
    summary="Raise an emergency alert",
)
@limiter.limit(settings.rate_limit)
async def create_alert(
    request: Request,
    body: EmergencyAlertRequest,
    locations: LocationService = Depends(get_locations),
):
    alert_id = await locations.create_emergency_alert(
        body.user_id,
        body.user_name,
        body.latitude,
        body.longitude,
        body.message,
        body.booking_id,
    )
    return AlertCreatedResponse(alert_id=alert_id)


@router.get(
    "/emergency-alerts",
    response_model=list[EmergencyAlertResponse],
    summary="Open emergency alerts",
)
@limiter.limit(settings.rate_limit)
async def open_alerts(request: Request, locations: LocationService = Depends(get_locations)):
    return await locations.open_alerts()


@router.post(
    "/emergency-alerts/{alert_id}/resolve",
    response_model=EmergencyAlertResponse,
    summary="Resolve an emergency alert",
)
@limiter.limit(settings.rate_limit)
async def resolve_alert(
    request: Request,
    alert_id: str,
    body: ResolveAlertRequest,
    locations: LocationService = Depends(get_locations),
):
    try:
        return await locations.resolve_alert(alert_id, body.resolved_by)
    except AlertNotFound:
        raise HTTPException(status_code=404, detail="Alert not found")
