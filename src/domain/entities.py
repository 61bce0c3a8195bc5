"""
Domain entities with business logic.

Patterns used
-------------
- **State Pattern** on ``Booking``: enforces valid lifecycle transitions
  (PENDING -> ACCEPTED -> IN_PROGRESS -> COMPLETED | CANCELLED | NO_SHOW).
- ``Driver.has_rfid`` plus a same-day contribution form the availability gate.

Entities are plain dataclasses; the store keeps camelCase dicts and
``src.domain.normalization`` converts between the two.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from .enums import BOOKING_TRANSITIONS, BookingStatus, MessageType, RatedBy


class InvalidStateTransition(Exception):
    """Raised when a booking status change violates the state machine."""


class BookingNotFound(Exception):
    """Raised when a booking id does not exist in the store."""


class DriverNotFound(Exception):
    """Raised when a driver id (or RFID) cannot be resolved."""


class RatingAlreadySubmitted(Exception):
    """Raised when a customer tries to rate the same booking twice."""


class RfidAlreadyAssigned(Exception):
    """Raised when an RFID card is already linked to another driver."""


class AlertNotFound(Exception):
    """Raised when an emergency alert id does not exist."""


# ── Value Object ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class GeoPoint:
    latitude: float
    longitude: float

    def to_dict(self) -> dict:
        return {"lat": self.latitude, "lng": self.longitude}


# ── Entities ──────────────────────────────────────────────────────────


@dataclass
class Booking:
    id: str = ""
    customer_id: str = ""
    customer_name: str = ""
    phone_number: str = ""
    is_phone_verified: bool = False
    pickup_location: str = ""
    destination: str = ""
    pickup_geo_point: GeoPoint = field(default_factory=lambda: GeoPoint(0.0, 0.0))
    dropoff_geo_point: GeoPoint = field(default_factory=lambda: GeoPoint(0.0, 0.0))
    estimated_fare: float = 0.0
    actual_fare: float = 0.0
    distance: float = 0.0
    duration: int = 0
    status: BookingStatus = BookingStatus.PENDING
    timestamp: int = 0
    completion_time: int = 0
    arrived_at_pickup: bool = False
    arrived_at_pickup_time: int = 0
    is_no_show: bool = False
    no_show_reported_time: int = 0
    assigned_driver_id: str = ""
    driver_name: str = ""
    driver_rfid: str = ""
    assigned_tricycle_id: str = ""
    toda_number: str = ""
    verification_code: str = ""
    feedback: str = ""
    rating: float = 0.0
    payment_method: str = "CASH"

    def transition_to(self, new_status: BookingStatus) -> None:
        """Move to *new_status* if the transition is legal, else raise."""
        allowed = BOOKING_TRANSITIONS.get(self.status, set())
        if new_status not in allowed:
            raise InvalidStateTransition(
                f"Cannot transition from {self.status.value} to {new_status.value}"
            )
        self.status = new_status

    def belongs_to_driver(self, driver_id: str = "", rfid: str = "") -> bool:
        """RFID and driverId are both checked; older bookings only carry RFID."""
        if rfid and self.driver_rfid == rfid:
            return True
        return bool(driver_id) and self.assigned_driver_id == driver_id

    @property
    def effective_fare(self) -> float:
        return self.actual_fare if self.actual_fare > 0 else self.estimated_fare

    @property
    def effective_time(self) -> int:
        return self.completion_time if self.completion_time > 0 else self.timestamp


@dataclass
class QueueEntry:
    key: str
    driver_rfid: str = ""
    driver_name: str = ""
    toda_number: str = ""
    status: str = ""
    claimed: bool = False
    resolved_timestamp: float = float("inf")


@dataclass
class Driver:
    driver_id: str
    rfid_uid: str = ""
    driver_name: str = ""
    toda_number: str = ""
    phone_number: str = ""
    is_active: bool = True
    can_receive_bookings: bool = False
    contribution_today: bool = False
    needs_rfid_assignment: bool = False
    registration_date: str = ""

    @property
    def has_rfid(self) -> bool:
        return bool(self.rfid_uid.strip())


@dataclass
class Contribution:
    key: str
    driver_id: str = ""
    rfid_uid: str = ""
    amount: float = 0.0
    timestamp: int = 0
    date: str = ""
    device_id: str = ""


@dataclass
class Rating:
    key: str
    booking_id: str = ""
    driver_id: str = ""
    driver_rfid: str = ""
    customer_id: str = ""
    stars: int = 0
    feedback: str = ""
    rated_by: RatedBy = RatedBy.CUSTOMER
    timestamp: int = 0


@dataclass
class ChatRoom:
    id: str
    booking_id: str = ""
    customer_id: str = ""
    customer_name: str = ""
    driver_id: str = ""
    driver_name: str = ""
    created_at: int = 0
    last_message: str = ""
    last_message_time: int = 0
    is_active: bool = True


@dataclass
class ChatMessage:
    id: str
    booking_id: str = ""
    sender_id: str = ""
    sender_name: str = ""
    receiver_id: str = ""
    message: str = ""
    timestamp: int = 0
    message_type: MessageType = MessageType.TEXT
    is_read: bool = False


@dataclass
class DriverLocation:
    driver_id: str
    tricycle_id: str = ""
    location: GeoPoint = field(default_factory=lambda: GeoPoint(0.0, 0.0))
    timestamp: int = 0
    is_online: bool = False
    is_available: bool = False
    current_booking_id: str = ""

    @property
    def listed_as_available(self) -> bool:
        return self.is_online and self.is_available


@dataclass
class AvailableDriver:
    driver_id: str
    tricycle_id: str = ""
    location: GeoPoint = field(default_factory=lambda: GeoPoint(0.0, 0.0))
    timestamp: int = 0


@dataclass
class EmergencyAlert:
    id: str
    user_id: str = ""
    user_name: str = ""
    booking_id: str = ""
    location: GeoPoint = field(default_factory=lambda: GeoPoint(0.0, 0.0))
    message: str = ""
    timestamp: int = 0
    is_resolved: bool = False
    resolved_by: str = ""
    resolved_at: int = 0


@dataclass(frozen=True)
class DriverTodayStats:
    trip_count: int
    earnings: float
    # -1.0 means "no customer rating yet today", distinct from a real score
    average_rating: float

    NO_RATING = -1.0
