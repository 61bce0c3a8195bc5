"""Pydantic request / response schemas for the REST API."""

from __future__ import annotations

import math
from typing import Optional

from pydantic import BaseModel, Field

from src.domain.enums import BookingStatus, MessageType
from src.domain.results import (
    MatchError,
    Matched,
    MatchResult,
    RegistrationError,
    RegistrationPending,
    RegistrationResult,
    RegistrationSuccess,
)


# ── Requests ──────────────────────────────────────────────────────────


class BookingCreateRequest(BaseModel):
    customer_id: str = Field(..., min_length=1)
    customer_name: str = ""
    phone_number: str = ""
    is_phone_verified: bool = False
    pickup_location: str = ""
    destination: str = ""
    pickup_lat: float = Field(..., ge=-90, le=90)
    pickup_lng: float = Field(..., ge=-180, le=180)
    dropoff_lat: float = Field(..., ge=-90, le=90)
    dropoff_lng: float = Field(..., ge=-180, le=180)
    estimated_fare: float = Field(0.0, ge=0)
    duration: int = Field(0, ge=0, description="Estimated trip duration in minutes.")
    payment_method: str = "CASH"
    verification_code: Optional[str] = Field(
        None,
        pattern=r"^\d{4}$",
        description="Four-digit code; generated when omitted.",
    )


class StatusUpdateRequest(BaseModel):
    status: BookingStatus
    driver_id: Optional[str] = None


class RatingRequest(BaseModel):
    stars: int = Field(..., ge=1, le=5)
    feedback: str = Field("", max_length=500)


class QueueJoinRequest(BaseModel):
    rfid: str = Field(..., min_length=1, max_length=64)
    driver_name: str = ""
    toda_number: str = ""


class QueueLeaveRequest(BaseModel):
    rfid: str = Field(..., min_length=1, max_length=64)


class CoinInsertionRequest(BaseModel):
    rfid: str = Field(..., min_length=1, max_length=64)
    amount: float = Field(..., gt=0)
    device_id: str = ""


class DriverApplicationRequest(BaseModel):
    applicant_name: str = Field(..., min_length=1)
    phone_number: str = Field(..., min_length=4)
    toda_number: str
    address: str = ""
    license_number: str = ""


class ApprovalRequest(BaseModel):
    approved_by: str = Field(..., min_length=1)


class RfidAssignRequest(BaseModel):
    rfid: str = Field(..., min_length=1, max_length=64)
    changed_by: str = "admin"


class MissingRfidRequest(BaseModel):
    reason: str = ""


class ChatMessageRequest(BaseModel):
    sender_id: str = Field(..., min_length=1)
    sender_name: str = ""
    receiver_id: str = ""
    message: str = Field(..., min_length=1, max_length=2000)
    message_type: MessageType = MessageType.TEXT


class MarkReadRequest(BaseModel):
    reader_id: str = Field(..., min_length=1)


class LocationUpdateRequest(BaseModel):
    tricycle_id: str = Field(..., min_length=1)
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    is_online: bool = True
    is_available: bool = True
    current_booking_id: str = ""


class EmergencyAlertRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    user_name: str = ""
    booking_id: str = ""
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    message: str = Field("", max_length=1000)


class ResolveAlertRequest(BaseModel):
    resolved_by: str = Field(..., min_length=1)


# ── Responses ─────────────────────────────────────────────────────────


class GeoPointResponse(BaseModel):
    latitude: float
    longitude: float

    model_config = {"from_attributes": True}


class BookingResponse(BaseModel):
    id: str
    customer_id: str
    customer_name: str
    phone_number: str
    is_phone_verified: bool
    pickup_location: str
    destination: str
    pickup_geo_point: GeoPointResponse
    dropoff_geo_point: GeoPointResponse
    estimated_fare: float
    actual_fare: float
    distance: float
    duration: int
    status: BookingStatus
    timestamp: int
    completion_time: int
    arrived_at_pickup: bool
    is_no_show: bool
    assigned_driver_id: str
    driver_name: str
    driver_rfid: str
    assigned_tricycle_id: str
    toda_number: str
    verification_code: str
    rating: float
    feedback: str
    payment_method: str

    model_config = {"from_attributes": True}


class MatchResponse(BaseModel):
    booking_id: str
    matched: bool
    reason: Optional[str] = None
    error: Optional[str] = None
    queue_key: Optional[str] = None
    driver_rfid: Optional[str] = None
    driver_name: Optional[str] = None
    driver_id: Optional[str] = None

    @classmethod
    def from_result(cls, result: MatchResult) -> "MatchResponse":
        if isinstance(result, Matched):
            return cls(
                booking_id=result.booking_id,
                matched=True,
                queue_key=result.queue_key,
                driver_rfid=result.driver_rfid,
                driver_name=result.driver_name,
                driver_id=result.driver_id,
            )
        if isinstance(result, MatchError):
            return cls(booking_id=result.booking_id, matched=False, error=result.error)
        return cls(booking_id=result.booking_id, matched=False, reason=result.reason.value)


class BookingCreatedResponse(BaseModel):
    booking: BookingResponse
    match: MatchResponse


class QueueEntryResponse(BaseModel):
    key: str
    driver_rfid: str
    driver_name: str
    toda_number: str
    status: str
    claimed: bool
    queued_at: Optional[int] = Field(None, description="Resolved arrival time, epoch ms.")

    @classmethod
    def from_entry(cls, entry) -> "QueueEntryResponse":
        ts = entry.resolved_timestamp
        return cls(
            key=entry.key,
            driver_rfid=entry.driver_rfid,
            driver_name=entry.driver_name,
            toda_number=entry.toda_number,
            status=entry.status,
            claimed=entry.claimed,
            queued_at=int(ts) if math.isfinite(ts) else None,
        )


class QueueJoinResponse(BaseModel):
    key: str
    match: Optional[MatchResponse] = None


class QueueLeaveResponse(BaseModel):
    removed: int


class DriverResponse(BaseModel):
    driver_id: str
    rfid_uid: str
    driver_name: str
    toda_number: str
    phone_number: str
    is_active: bool
    can_receive_bookings: bool
    contribution_today: bool
    needs_rfid_assignment: bool
    registration_date: str

    model_config = {"from_attributes": True}


class DriverStatusResponse(BaseModel):
    driver_id: str
    contributed_today: bool
    can_receive_bookings: bool


class DriverTodayStatsResponse(BaseModel):
    trip_count: int
    earnings: float
    average_rating: float = Field(..., description="-1.0 when no customer rating today.")

    model_config = {"from_attributes": True}


class RegistrationResponse(BaseModel):
    status: str
    message: str
    application_id: Optional[str] = None
    driver: Optional[DriverResponse] = None

    @classmethod
    def from_result(cls, result: RegistrationResult) -> "RegistrationResponse":
        if isinstance(result, RegistrationSuccess):
            return cls(
                status="SUCCESS",
                message=result.message,
                driver=DriverResponse.model_validate(result.driver),
            )
        if isinstance(result, RegistrationPending):
            return cls(status="PENDING", message=result.message, application_id=result.application_id)
        assert isinstance(result, RegistrationError)
        return cls(status="ERROR", message=result.message)


class RatingResponse(BaseModel):
    key: str
    booking_id: str
    driver_id: str
    stars: int
    feedback: str
    timestamp: int

    model_config = {"from_attributes": True}


class ChatRoomResponse(BaseModel):
    id: str
    booking_id: str
    customer_id: str
    customer_name: str
    driver_id: str
    driver_name: str
    created_at: int
    last_message: str
    last_message_time: int
    is_active: bool

    model_config = {"from_attributes": True}


class ChatMessageResponse(BaseModel):
    id: str
    booking_id: str
    sender_id: str
    sender_name: str
    receiver_id: str
    message: str
    timestamp: int
    message_type: MessageType
    is_read: bool

    model_config = {"from_attributes": True}


class MarkReadResponse(BaseModel):
    marked: int


class DriverLocationResponse(BaseModel):
    driver_id: str
    tricycle_id: str
    location: GeoPointResponse
    timestamp: int
    is_online: bool
    is_available: bool
    current_booking_id: str

    model_config = {"from_attributes": True}


class AvailableDriverResponse(BaseModel):
    driver_id: str
    tricycle_id: str
    location: GeoPointResponse
    timestamp: int

    model_config = {"from_attributes": True}


class EmergencyAlertResponse(BaseModel):
    id: str
    user_id: str
    user_name: str
    booking_id: str
    location: GeoPointResponse
    message: str
    timestamp: int
    is_resolved: bool
    resolved_by: str
    resolved_at: int

    model_config = {"from_attributes": True}


class AlertCreatedResponse(BaseModel):
    alert_id: str


class BookingIndexResponse(BaseModel):
    booking_id: str
    status: str
    driver_rfid: str = ""


class AssignmentGapResponse(BaseModel):
    booking_id: str
    driver_rfid: str = ""
    driver_name: str = ""
    queue_key: str = ""
    timestamp: int = 0


class OperationResponse(BaseModel):
    ok: bool


class HealthResponse(BaseModel):
    status: str = "ok"
    active_subscriptions: int = 0


class ErrorResponse(BaseModel):
    detail: str
