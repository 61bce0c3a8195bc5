"""
Repository Pattern -- maps entities onto the tree store's path layout so the
services never build paths by hand.

Each repository receives the shared ``TreeStore`` and exposes the reads and
path helpers its entity needs.  Writes that must be atomic across entities
(booking + index, claim removal + booking) are composed by the services as a
single ``store.update`` using the ``*_path`` helpers.

Layout
------
``bookings/{id}``, ``bookingIndex/{id}``, ``driverQueue/{key}``,
``drivers/{driverId}``, ``rfidUIDIndex/{rfid}``,
``rfidChangeHistory/{driverId}/{key}``, ``driverApplications/{id}``,
``contributions/{key}``, ``driverStatusEvents/{key}``, ``ratings/{key}``,
``chatRooms/{key}``, ``chatMessages/{bookingId}/{key}``,
``notifications/{key}``, ``assignmentGaps/{bookingId}``,
``driverLocations/{driverId}``, ``tricycles/{tricycleId}``,
``availableDrivers/{driverId}``, ``emergencyAlerts/{id}``
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Mapping, Optional, TypeVar

from src.domain.entities import (
    AvailableDriver,
    Booking,
    ChatMessage,
    ChatRoom,
    Contribution,
    Driver,
    DriverLocation,
    EmergencyAlert,
    QueueEntry,
    Rating,
)
from src.domain.enums import BookingStatus
from src.domain.matching import parse_queue
from src.domain.normalization import (
    MalformedRecord,
    available_driver_from_store,
    booking_from_store,
    chat_message_from_store,
    chat_room_from_store,
    contribution_from_store,
    decode_status,
    decode_str,
    driver_from_store,
    driver_location_from_store,
    emergency_alert_from_store,
    rating_from_store,
)

from .tree_store import ABORT, TreeStore, join

logger = logging.getLogger(__name__)

BOOKINGS = "bookings"
BOOKING_INDEX = "bookingIndex"
DRIVER_QUEUE = "driverQueue"
DRIVERS = "drivers"
RFID_INDEX = "rfidUIDIndex"
RFID_HISTORY = "rfidChangeHistory"
DRIVER_APPLICATIONS = "driverApplications"
CONTRIBUTIONS = "contributions"
DRIVER_STATUS_EVENTS = "driverStatusEvents"
RATINGS = "ratings"
CHAT_ROOMS = "chatRooms"
CHAT_MESSAGES = "chatMessages"
NOTIFICATIONS = "notifications"
ASSIGNMENT_GAPS = "assignmentGaps"
DRIVER_LOCATIONS = "driverLocations"
TRICYCLES = "tricycles"
AVAILABLE_DRIVERS = "availableDrivers"
EMERGENCY_ALERTS = "emergencyAlerts"

T = TypeVar("T")


def parse_collection(
    raw: Any, parse: Callable[[str, Any], T], what: str
) -> list[T]:
    """Parse every child of a collection node; bad records are logged and skipped."""
    if not isinstance(raw, Mapping):
        return []
    items: list[T] = []
    for key, value in raw.items():
        try:
            items.append(parse(key, value))
        except MalformedRecord as exc:
            logger.warning("Skipping %s %s: %s", what, key, exc)
    return items


def parse_bookings(raw: Any) -> list[Booking]:
    return parse_collection(raw, booking_from_store, "booking")


def _status_or_none(raw: Any) -> Optional[BookingStatus]:
    if raw is None:
        return None
    try:
        return decode_status(raw)
    except MalformedRecord:
        return None


def claim_step(current: Any) -> Any:
    """``transact`` step for a queue entry's ``claimed`` flag: take it unless taken."""
    if current is True or (isinstance(current, str) and current.lower() == "true"):
        return ABORT
    return True


class BookingRepository:
    def __init__(self, store: TreeStore):
        self.store = store

    @staticmethod
    def path(booking_id: str, field: str = "") -> str:
        return join(BOOKINGS, booking_id, field)

    @staticmethod
    def index_path(booking_id: str, field: str = "") -> str:
        return join(BOOKING_INDEX, booking_id, field)

    async def new_id(self) -> str:
        return await self.store.push(BOOKINGS)

    async def get(self, booking_id: str) -> Optional[Booking]:
        raw = await self.store.read(self.path(booking_id))
        if raw is None:
            return None
        try:
            return booking_from_store(booking_id, raw)
        except MalformedRecord as exc:
            logger.warning("Unreadable booking %s: %s", booking_id, exc)
            return None

    async def get_status(self, booking_id: str) -> Optional[BookingStatus]:
        return _status_or_none(await self.store.read(self.path(booking_id, "status")))

    async def swap_status(
        self,
        booking_id: str,
        expected: BookingStatus,
        target: BookingStatus,
        max_retries: int = 5,
    ) -> bool:
        """
        Move the ``status`` leaf from *expected* to *target*; ``False`` when
        the booking is no longer in *expected*.  Of any number of concurrent
        swaps away from one status exactly one succeeds.
        """

        def step(current):
            if _status_or_none(current) != expected:
                return ABORT
            return target.value

        result = await self.store.transact(self.path(booking_id, "status"), step, max_retries)
        return result.committed

    async def get_index(self, booking_id: str) -> Optional[dict]:
        return await self.store.read(self.index_path(booking_id))

    async def list_all(self) -> list[Booking]:
        return parse_bookings(await self.store.read(BOOKINGS))

    async def pending_oldest_first(self) -> list[Booking]:
        bookings = [b for b in await self.list_all() if b.status == BookingStatus.PENDING]
        return sorted(bookings, key=lambda b: b.timestamp)


class QueueRepository:
    def __init__(self, store: TreeStore, tz_name: str):
        self.store = store
        self.tz_name = tz_name

    @staticmethod
    def path(key: str, field: str = "") -> str:
        return join(DRIVER_QUEUE, key, field)

    async def list_all(self) -> list[QueueEntry]:
        return parse_queue(await self.store.read(DRIVER_QUEUE), self.tz_name)

    async def read_raw(self) -> Any:
        return await self.store.read(DRIVER_QUEUE)

    async def add(self, entry: Mapping[str, Any]) -> str:
        return await self.store.push_value(DRIVER_QUEUE, dict(entry))

    async def keys_for_rfid(self, rfid: str) -> list[str]:
        return [e.key for e in await self.list_all() if e.driver_rfid == rfid]

    async def claim(self, key: str, max_retries: int = 5) -> bool:
        """Take the entry's ``claimed`` flag; ``True`` only for the one winner."""
        claimed_path = self.path(key, "claimed")
        result = await self.store.transact(claimed_path, claim_step, max_retries)
        return result.committed and await self.store.read(claimed_path) is True

    async def release(self, key: str) -> None:
        await self.store.compare_and_swap(self.path(key, "claimed"), True, False)


class DriverRepository:
    def __init__(self, store: TreeStore):
        self.store = store

    @staticmethod
    def path(driver_id: str, field: str = "") -> str:
        return join(DRIVERS, driver_id, field)

    @staticmethod
    def rfid_index_path(rfid: str) -> str:
        return join(RFID_INDEX, rfid)

    async def get(self, driver_id: str) -> Optional[Driver]:
        raw = await self.store.read(self.path(driver_id))
        if raw is None:
            return None
        try:
            return driver_from_store(driver_id, raw)
        except MalformedRecord as exc:
            logger.warning("Unreadable driver %s: %s", driver_id, exc)
            return None

    async def driver_id_for_rfid(self, rfid: str) -> Optional[str]:
        rfid = rfid.strip()
        if not rfid:
            return None
        value = decode_str(await self.store.read(self.rfid_index_path(rfid)))
        return value or None

    async def get_by_rfid(self, rfid: str) -> Optional[Driver]:
        driver_id = await self.driver_id_for_rfid(rfid)
        return await self.get(driver_id) if driver_id else None

    async def list_all(self) -> list[Driver]:
        return parse_collection(await self.store.read(DRIVERS), driver_from_store, "driver")


class ContributionRepository:
    def __init__(self, store: TreeStore):
        self.store = store

    async def new_key(self) -> str:
        return await self.store.push(CONTRIBUTIONS)

    async def for_driver(self, driver_id: str) -> list[Contribution]:
        contributions = parse_collection(
            await self.store.read(CONTRIBUTIONS), contribution_from_store, "contribution"
        )
        return [c for c in contributions if c.driver_id == driver_id]


class RatingRepository:
    def __init__(self, store: TreeStore):
        self.store = store

    async def new_key(self) -> str:
        return await self.store.push(RATINGS)

    async def list_all(self) -> list[Rating]:
        return parse_collection(await self.store.read(RATINGS), rating_from_store, "rating")

    async def for_booking(self, booking_id: str) -> Optional[Rating]:
        return next((r for r in await self.list_all() if r.booking_id == booking_id), None)


class ChatRepository:
    def __init__(self, store: TreeStore):
        self.store = store

    @staticmethod
    def room_path(room_id: str, field: str = "") -> str:
        return join(CHAT_ROOMS, room_id, field)

    @staticmethod
    def messages_path(booking_id: str, message_id: str = "", field: str = "") -> str:
        return join(CHAT_MESSAGES, booking_id, message_id, field)

    async def rooms(self) -> list[ChatRoom]:
        return parse_collection(await self.store.read(CHAT_ROOMS), chat_room_from_store, "chat room")

    async def room_for_booking(self, booking_id: str) -> Optional[ChatRoom]:
        return next((r for r in await self.rooms() if r.booking_id == booking_id), None)

    async def messages(self, booking_id: str) -> list[ChatMessage]:
        return parse_messages(await self.store.read(self.messages_path(booking_id)))


def parse_messages(raw: Any) -> list[ChatMessage]:
    messages = parse_collection(raw, chat_message_from_store, "chat message")
    return sorted(messages, key=lambda m: m.timestamp)


def parse_rooms(raw: Any) -> list[ChatRoom]:
    return parse_collection(raw, chat_room_from_store, "chat room")


class LocationRepository:
    def __init__(self, store: TreeStore):
        self.store = store

    @staticmethod
    def location_path(driver_id: str) -> str:
        return join(DRIVER_LOCATIONS, driver_id)

    @staticmethod
    def tricycle_path(tricycle_id: str, field: str = "") -> str:
        return join(TRICYCLES, tricycle_id, field)

    @staticmethod
    def available_path(driver_id: str) -> str:
        return join(AVAILABLE_DRIVERS, driver_id)

    async def get(self, driver_id: str) -> Optional[DriverLocation]:
        raw = await self.store.read(self.location_path(driver_id))
        if raw is None:
            return None
        try:
            return driver_location_from_store(driver_id, raw)
        except MalformedRecord as exc:
            logger.warning("Unreadable location of %s: %s", driver_id, exc)
            return None

    async def available(self) -> list[AvailableDriver]:
        return parse_available_drivers(await self.store.read(AVAILABLE_DRIVERS))


def parse_available_drivers(raw: Any) -> list[AvailableDriver]:
    drivers = parse_collection(raw, available_driver_from_store, "available driver")
    return sorted(drivers, key=lambda d: d.driver_id)


class EmergencyAlertRepository:
    def __init__(self, store: TreeStore):
        self.store = store

    @staticmethod
    def path(alert_id: str, field: str = "") -> str:
        return join(EMERGENCY_ALERTS, alert_id, field)

    async def new_id(self) -> str:
        return await self.store.push(EMERGENCY_ALERTS)

    async def get(self, alert_id: str) -> Optional[EmergencyAlert]:
        raw = await self.store.read(self.path(alert_id))
        if raw is None:
            return None
        try:
            return emergency_alert_from_store(alert_id, raw)
        except MalformedRecord as exc:
            logger.warning("Unreadable emergency alert %s: %s", alert_id, exc)
            return None

    async def list_all(self) -> list[EmergencyAlert]:
        return parse_alerts(await self.store.read(EMERGENCY_ALERTS))


def parse_alerts(raw: Any) -> list[EmergencyAlert]:
    alerts = parse_collection(raw, emergency_alert_from_store, "emergency alert")
    return sorted(alerts, key=lambda a: a.timestamp)
