"""
Store record normalisation
==========================

Records in the tree store were written by several generations of clients
(mobile app, hardware controller, admin console), so scalar fields arrive in
more than one shape: numbers as native numbers *or* numeric strings, booleans
as booleans or ``"true"``/``"false"``, timestamps in three encodings.

Each field is decoded by one of the ``decode_*`` functions below, whose
fallback order is fixed and documented here:

* ``decode_float``  number -> float; numeric string -> float; else default
* ``decode_int``    number -> int; integer or float string -> int; else default
* ``decode_bool``   bool; ``"true"``/``"false"`` (any case); number != 0; else default
* ``decode_str``    str; number -> ``str(number)``; else default

There is exactly one ``*_from_store`` function per entity.  They raise
``MalformedRecord`` when the record is not a mapping at all, or when a booking
carries a missing or unrecognised status; other garbled fields fall back to
their defaults.
"""

from __future__ import annotations

import math
from typing import Any, Mapping

from .clock import parse_local_datetime
from .entities import (
    AvailableDriver,
    Booking,
    ChatMessage,
    ChatRoom,
    Contribution,
    Driver,
    DriverLocation,
    EmergencyAlert,
    GeoPoint,
    QueueEntry,
    Rating,
)
from .enums import BookingStatus, MessageType, RatedBy


class MalformedRecord(ValueError):
    """The stored node is not a usable record (a bare scalar, a list, a booking without a known status)."""


# ── Scalar decoders ───────────────────────────────────────────────────


def decode_float(raw: Any, default: float = 0.0) -> float:
    if isinstance(raw, bool):
        return default
    if isinstance(raw, (int, float)):
        value = float(raw)
        return value if math.isfinite(value) else default
    if isinstance(raw, str):
        try:
            value = float(raw.strip())
        except ValueError:
            return default
        return value if math.isfinite(value) else default
    return default


def decode_int(raw: Any, default: int = 0) -> int:
    if isinstance(raw, bool):
        return default
    if isinstance(raw, int):
        return raw
    if isinstance(raw, float):
        return int(raw) if math.isfinite(raw) else default
    if isinstance(raw, str):
        text = raw.strip()
        try:
            return int(text)
        except ValueError:
            pass
        value = decode_float(text, math.nan)
        return int(value) if math.isfinite(value) else default
    return default


def decode_bool(raw: Any, default: bool = False) -> bool:
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, str):
        lowered = raw.strip().lower()
        if lowered in ("true", "false"):
            return lowered == "true"
        return default
    if isinstance(raw, (int, float)):
        return raw != 0
    return default


def decode_str(raw: Any, default: str = "") -> str:
    if isinstance(raw, str):
        return raw
    if isinstance(raw, bool):
        return default
    if isinstance(raw, (int, float)):
        return str(raw)
    return default


def decode_geo(raw: Any) -> GeoPoint:
    if not isinstance(raw, Mapping):
        return GeoPoint(0.0, 0.0)
    lat = raw.get("lat", raw.get("latitude"))
    lng = raw.get("lng", raw.get("longitude"))
    return GeoPoint(decode_float(lat), decode_float(lng))


def decode_status(raw: Any) -> BookingStatus:
    """Case-insensitive status; raises ``MalformedRecord`` for anything else."""
    try:
        return BookingStatus(decode_str(raw).strip().upper())
    except ValueError:
        raise MalformedRecord(f"unrecognised booking status {raw!r}") from None


def _record(raw: Any, what: str, key: str) -> Mapping[str, Any]:
    if not isinstance(raw, Mapping):
        raise MalformedRecord(f"{what} {key!r} is not a record: {type(raw).__name__}")
    return raw


# ── Booking ───────────────────────────────────────────────────────────


def booking_from_store(key: str, raw: Any) -> Booking:
    data = _record(raw, "booking", key)
    return Booking(
        id=decode_str(data.get("id")) or key,
        customer_id=decode_str(data.get("customerId")),
        customer_name=decode_str(data.get("customerName")),
        phone_number=decode_str(data.get("phoneNumber")),
        # older records used ``phoneVerified``
        is_phone_verified=decode_bool(
            data.get("isPhoneVerified", data.get("phoneVerified"))
        ),
        pickup_location=decode_str(data.get("pickupLocation")),
        destination=decode_str(data.get("destination")),
        pickup_geo_point=decode_geo(
            data.get("pickupGeoPoint", data.get("pickupCoordinates"))
        ),
        dropoff_geo_point=decode_geo(
            data.get("dropoffGeoPoint", data.get("dropoffCoordinates"))
        ),
        estimated_fare=decode_float(data.get("estimatedFare")),
        actual_fare=decode_float(data.get("actualFare")),
        distance=decode_float(data.get("distance")),
        duration=decode_int(data.get("duration")),
        status=decode_status(data.get("status")),
        timestamp=decode_int(data.get("timestamp")),
        completion_time=decode_int(data.get("completionTime")),
        arrived_at_pickup=decode_bool(data.get("arrivedAtPickup")),
        arrived_at_pickup_time=decode_int(data.get("arrivedAtPickupTime")),
        is_no_show=decode_bool(data.get("isNoShow")),
        no_show_reported_time=decode_int(data.get("noShowReportedTime")),
        assigned_driver_id=decode_str(data.get("assignedDriverId")),
        driver_name=decode_str(data.get("driverName")),
        driver_rfid=decode_str(data.get("driverRFID")),
        assigned_tricycle_id=decode_str(data.get("assignedTricycleId")),
        toda_number=decode_str(data.get("todaNumber")),
        verification_code=decode_str(data.get("verificationCode")),
        feedback=decode_str(data.get("feedback")),
        rating=decode_float(data.get("rating")),
        payment_method=decode_str(data.get("paymentMethod"), "CASH") or "CASH",
    )


def booking_to_store(booking: Booking) -> dict[str, Any]:
    return {
        "id": booking.id,
        "customerId": booking.customer_id,
        "customerName": booking.customer_name,
        "phoneNumber": booking.phone_number,
        "isPhoneVerified": booking.is_phone_verified,
        "pickupLocation": booking.pickup_location,
        "destination": booking.destination,
        "pickupGeoPoint": booking.pickup_geo_point.to_dict(),
        "dropoffGeoPoint": booking.dropoff_geo_point.to_dict(),
        "estimatedFare": booking.estimated_fare,
        "actualFare": booking.actual_fare,
        "distance": booking.distance,
        "duration": booking.duration,
        "status": booking.status.value,
        "timestamp": booking.timestamp,
        "completionTime": booking.completion_time,
        "arrivedAtPickup": booking.arrived_at_pickup,
        "arrivedAtPickupTime": booking.arrived_at_pickup_time,
        "isNoShow": booking.is_no_show,
        "noShowReportedTime": booking.no_show_reported_time,
        "assignedDriverId": booking.assigned_driver_id,
        "driverName": booking.driver_name,
        "driverRFID": booking.driver_rfid,
        "assignedTricycleId": booking.assigned_tricycle_id,
        "todaNumber": booking.toda_number,
        "verificationCode": booking.verification_code,
        "feedback": booking.feedback,
        "rating": booking.rating,
        "paymentMethod": booking.payment_method,
    }


# ── Queue entry ───────────────────────────────────────────────────────


def resolve_queue_timestamp(key: str, data: Mapping[str, Any], tz_name: str) -> float:
    """
    Arrival time of a queue entry in epoch ms.

    Priority: ``queueTime`` as seconds-since-epoch, ``timestamp`` as a
    ``yyyy-MM-dd HH:mm:ss`` local date, ``timestamp`` as raw epoch ms, the
    store key as an integer, and finally ``+inf`` so undatable entries lose.
    """
    seconds = decode_float(data.get("queueTime"), math.nan)
    if math.isfinite(seconds) and seconds > 0:
        return seconds * 1000.0

    stamp = data.get("timestamp")
    if isinstance(stamp, str):
        parsed = parse_local_datetime(stamp, tz_name)
        if parsed is not None:
            return float(parsed)

    millis = decode_float(stamp, math.nan)
    if math.isfinite(millis) and millis > 0:
        return millis

    try:
        return float(int(key))
    except ValueError:
        return math.inf


def queue_entry_from_store(key: str, raw: Any, tz_name: str) -> QueueEntry:
    data = _record(raw, "queue entry", key)
    return QueueEntry(
        key=key,
        driver_rfid=decode_str(data.get("driverRFID")).strip(),
        driver_name=decode_str(data.get("driverName")),
        toda_number=decode_str(data.get("todaNumber")),
        status=decode_str(data.get("status")),
        claimed=decode_bool(data.get("claimed")),
        resolved_timestamp=resolve_queue_timestamp(key, data, tz_name),
    )


# ── Driver / contribution ─────────────────────────────────────────────


def driver_from_store(driver_id: str, raw: Any) -> Driver:
    data = _record(raw, "driver", driver_id)
    return Driver(
        driver_id=decode_str(data.get("driverId")) or driver_id,
        rfid_uid=decode_str(data.get("rfidUID")),
        driver_name=decode_str(data.get("driverName")),
        toda_number=decode_str(data.get("todaNumber")),
        phone_number=decode_str(data.get("phoneNumber")),
        is_active=decode_bool(data.get("isActive"), True),
        can_receive_bookings=decode_bool(data.get("canReceiveBookings")),
        contribution_today=decode_bool(data.get("contributionToday")),
        needs_rfid_assignment=decode_bool(data.get("needsRfidAssignment")),
        registration_date=decode_str(data.get("registrationDate")),
    )


def driver_to_store(driver: Driver) -> dict[str, Any]:
    return {
        "driverId": driver.driver_id,
        "rfidUID": driver.rfid_uid,
        "driverName": driver.driver_name,
        "todaNumber": driver.toda_number,
        "phoneNumber": driver.phone_number,
        "isActive": driver.is_active,
        "canReceiveBookings": driver.can_receive_bookings,
        "contributionToday": driver.contribution_today,
        "needsRfidAssignment": driver.needs_rfid_assignment,
        "registrationDate": driver.registration_date,
    }


def contribution_from_store(key: str, raw: Any) -> Contribution:
    data = _record(raw, "contribution", key)
    return Contribution(
        key=key,
        driver_id=decode_str(data.get("driverId")),
        rfid_uid=decode_str(data.get("rfidUID")),
        amount=decode_float(data.get("amount")),
        timestamp=decode_int(data.get("timestamp")),
        date=decode_str(data.get("date")),
        device_id=decode_str(data.get("deviceId")),
    )


# ── Rating ────────────────────────────────────────────────────────────


def rating_from_store(key: str, raw: Any) -> Rating:
    data = _record(raw, "rating", key)
    try:
        rated_by = RatedBy(decode_str(data.get("ratedBy"), "CUSTOMER").upper())
    except ValueError:
        rated_by = RatedBy.CUSTOMER
    return Rating(
        key=key,
        booking_id=decode_str(data.get("bookingId")),
        driver_id=decode_str(data.get("driverId")),
        driver_rfid=decode_str(data.get("driverRFID")),
        customer_id=decode_str(data.get("customerId")),
        stars=decode_int(data.get("stars")),
        feedback=decode_str(data.get("feedback")),
        rated_by=rated_by,
        timestamp=decode_int(data.get("timestamp")),
    )


def rating_to_store(rating: Rating) -> dict[str, Any]:
    return {
        "bookingId": rating.booking_id,
        "driverId": rating.driver_id,
        "driverRFID": rating.driver_rfid,
        "customerId": rating.customer_id,
        "stars": rating.stars,
        "feedback": rating.feedback,
        "ratedBy": rating.rated_by.value,
        "timestamp": rating.timestamp,
    }


# ── Chat ──────────────────────────────────────────────────────────────


def chat_room_from_store(key: str, raw: Any) -> ChatRoom:
    data = _record(raw, "chat room", key)
    return ChatRoom(
        id=decode_str(data.get("id")) or key,
        booking_id=decode_str(data.get("bookingId")),
        customer_id=decode_str(data.get("customerId")),
        customer_name=decode_str(data.get("customerName")),
        driver_id=decode_str(data.get("driverId")),
        driver_name=decode_str(data.get("driverName")),
        created_at=decode_int(data.get("createdAt")),
        last_message=decode_str(data.get("lastMessage")),
        last_message_time=decode_int(data.get("lastMessageTime")),
        is_active=decode_bool(data.get("isActive"), True),
    )


def chat_room_to_store(room: ChatRoom) -> dict[str, Any]:
    return {
        "id": room.id,
        "bookingId": room.booking_id,
        "customerId": room.customer_id,
        "customerName": room.customer_name,
        "driverId": room.driver_id,
        "driverName": room.driver_name,
        "createdAt": room.created_at,
        "lastMessage": room.last_message,
        "lastMessageTime": room.last_message_time,
        "isActive": room.is_active,
    }


def chat_message_from_store(key: str, raw: Any) -> ChatMessage:
    data = _record(raw, "chat message", key)
    try:
        message_type = MessageType(decode_str(data.get("messageType"), "TEXT").upper())
    except ValueError:
        message_type = MessageType.TEXT
    return ChatMessage(
        id=decode_str(data.get("id")) or key,
        booking_id=decode_str(data.get("bookingId")),
        sender_id=decode_str(data.get("senderId")),
        sender_name=decode_str(data.get("senderName")),
        receiver_id=decode_str(data.get("receiverId")),
        message=decode_str(data.get("message")),
        timestamp=decode_int(data.get("timestamp")),
        message_type=message_type,
        is_read=decode_bool(data.get("isRead")),
    )


def chat_message_to_store(message: ChatMessage) -> dict[str, Any]:
    return {
        "id": message.id,
        "bookingId": message.booking_id,
        "senderId": message.sender_id,
        "senderName": message.sender_name,
        "receiverId": message.receiver_id,
        "message": message.message,
        "timestamp": message.timestamp,
        "messageType": message.message_type.value,
        "isRead": message.is_read,
    }


# ── Location / emergency ──────────────────────────────────────────────


def driver_location_to_store(location: DriverLocation) -> dict[str, Any]:
    return {
        "driverId": location.driver_id,
        "tricycleId": location.tricycle_id,
        "latitude": location.location.latitude,
        "longitude": location.location.longitude,
        "timestamp": location.timestamp,
        "isOnline": location.is_online,
        "isAvailable": location.is_available,
        "currentBookingId": location.current_booking_id,
    }


def driver_location_from_store(driver_id: str, raw: Any) -> DriverLocation:
    data = _record(raw, "driver location", driver_id)
    return DriverLocation(
        driver_id=decode_str(data.get("driverId")) or driver_id,
        tricycle_id=decode_str(data.get("tricycleId")),
        location=GeoPoint(decode_float(data.get("latitude")), decode_float(data.get("longitude"))),
        timestamp=decode_int(data.get("timestamp")),
        is_online=decode_bool(data.get("isOnline")),
        is_available=decode_bool(data.get("isAvailable")),
        current_booking_id=decode_str(data.get("currentBookingId")),
    )


def available_driver_from_store(driver_id: str, raw: Any) -> AvailableDriver:
    data = _record(raw, "available driver", driver_id)
    return AvailableDriver(
        driver_id=driver_id,
        tricycle_id=decode_str(data.get("tricycleId")),
        location=decode_geo(data),
        timestamp=decode_int(data.get("timestamp")),
    )


def emergency_alert_from_store(key: str, raw: Any) -> EmergencyAlert:
    data = _record(raw, "emergency alert", key)
    return EmergencyAlert(
        id=decode_str(data.get("id")) or key,
        user_id=decode_str(data.get("userId")),
        user_name=decode_str(data.get("userName")),
        booking_id=decode_str(data.get("bookingId")),
        location=decode_geo(data.get("location")),
        message=decode_str(data.get("message")),
        timestamp=decode_int(data.get("timestamp")),
        is_resolved=decode_bool(data.get("isResolved")),
        resolved_by=decode_str(data.get("resolvedBy")),
        resolved_at=decode_int(data.get("resolvedAt")),
    )


def emergency_alert_to_store(alert: EmergencyAlert) -> dict[str, Any]:
    return {
        "id": alert.id,
        "userId": alert.user_id,
        "userName": alert.user_name,
        "bookingId": alert.booking_id,
        "location": alert.location.to_dict(),
        "message": alert.message,
        "timestamp": alert.timestamp,
        "isResolved": alert.is_resolved,
        "resolvedBy": alert.resolved_by,
        "resolvedAt": alert.resolved_at,
    }
