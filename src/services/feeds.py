"""
Real-time booking feeds
=======================

Each feed is an async generator that owns one store subscription for as
long as the consumer iterates; closing the generator (or the consumer
raising) releases the subscription::

    async for bookings in feed.dispatch_feed():
        render(bookings)

A subscription cancelled by a store error yields one final empty value (the
consumer should treat its data as stale) and the feed ends.

The ``*_view`` functions are pure filters over parsed bookings, shared by
the feeds and the one-shot REST reads.
"""

from __future__ import annotations

import logging
from contextlib import aclosing
from typing import AsyncIterator, Iterable, Optional

from src.config import settings
from src.domain.entities import (
    AvailableDriver,
    Booking,
    ChatMessage,
    ChatRoom,
    EmergencyAlert,
    QueueEntry,
)
from src.domain.enums import (
    ACTIVE_STATUSES,
    DISPATCH_STATUSES,
    HISTORY_STATUSES,
    BookingStatus,
)
from src.domain.matching import parse_queue, queue_order
from src.infrastructure.repositories import (
    AVAILABLE_DRIVERS,
    BOOKINGS,
    CHAT_ROOMS,
    DRIVER_QUEUE,
    EMERGENCY_ALERTS,
    ChatRepository,
    parse_alerts,
    parse_available_drivers,
    parse_bookings,
    parse_messages,
    parse_rooms,
)
from src.infrastructure.tree_store import TreeStore

from .drivers import DriverLedger

logger = logging.getLogger(__name__)


# ── Pure views ────────────────────────────────────────────────────────


def _by_time(bookings: Iterable[Booking], newest_first: bool = False) -> list[Booking]:
    return sorted(bookings, key=lambda b: b.timestamp, reverse=newest_first)


def active_view(bookings: Iterable[Booking]) -> list[Booking]:
    return _by_time(b for b in bookings if b.status in ACTIVE_STATUSES)


def passenger_view(bookings: Iterable[Booking], customer_id: str, history: bool = False) -> list[Booking]:
    """A passenger's own bookings: active ones oldest first, or history newest first."""
    statuses = HISTORY_STATUSES if history else ACTIVE_STATUSES
    mine = (b for b in bookings if b.customer_id == customer_id and b.status in statuses)
    return _by_time(mine, newest_first=history)


def driver_view(
    bookings: Iterable[Booking], driver_id: str, rfid: str = "", online: bool = False
) -> list[Booking]:
    """The driver's own trips in progress, plus every PENDING booking when online."""
    selected = []
    for b in bookings:
        if b.status == BookingStatus.PENDING:
            if online:
                selected.append(b)
        elif b.status in ACTIVE_STATUSES and b.belongs_to_driver(driver_id, rfid):
            selected.append(b)
    return _by_time(selected)


def dispatch_view(bookings: Iterable[Booking]) -> list[Booking]:
    return _by_time(b for b in bookings if b.status in DISPATCH_STATUSES)


# ── Feeds ─────────────────────────────────────────────────────────────


class BookingFeed:
    def __init__(
        self,
        store: TreeStore,
        ledger: Optional[DriverLedger] = None,
        tz_name: str = settings.local_timezone,
    ):
        self.store = store
        self.tz_name = tz_name
        self.ledger = ledger or DriverLedger(store, tz_name)
        self.chat = ChatRepository(store)

    async def _watch(self, path: str) -> AsyncIterator:
        async with await self.store.subscribe(path) as sub:
            async for snapshot in sub:
                if snapshot.cancelled:
                    logger.warning("Feed on %s cancelled: %s", path, snapshot.error)
                    yield None
                    return
                yield snapshot.value

    async def bookings_feed(self) -> AsyncIterator[list[Booking]]:
        async with aclosing(self._watch(BOOKINGS)) as values:
            async for raw in values:
                yield parse_bookings(raw)

    async def active_bookings_feed(self) -> AsyncIterator[list[Booking]]:
        async with aclosing(self.bookings_feed()) as feed:
            async for bookings in feed:
                yield active_view(bookings)

    async def passenger_feed(self, customer_id: str, history: bool = False) -> AsyncIterator[list[Booking]]:
        async with aclosing(self.bookings_feed()) as feed:
            async for bookings in feed:
                yield passenger_view(bookings, customer_id, history)

    async def driver_feed(self, driver_id: str) -> AsyncIterator[list[Booking]]:
        async with aclosing(self.bookings_feed()) as feed:
            async for bookings in feed:
                driver = await self.ledger.drivers.get(driver_id)
                online = await self.ledger.can_receive_bookings(driver_id)
                yield driver_view(bookings, driver_id, driver.rfid_uid if driver else "", online)

    async def dispatch_feed(self) -> AsyncIterator[list[Booking]]:
        async with aclosing(self.bookings_feed()) as feed:
            async for bookings in feed:
                yield dispatch_view(bookings)

    async def queue_feed(self) -> AsyncIterator[list[QueueEntry]]:
        async with aclosing(self._watch(DRIVER_QUEUE)) as values:
            async for raw in values:
                yield queue_order(parse_queue(raw, self.tz_name))

    async def available_drivers_feed(self) -> AsyncIterator[list[AvailableDriver]]:
        async with aclosing(self._watch(AVAILABLE_DRIVERS)) as values:
            async for raw in values:
                yield parse_available_drivers(raw)

    async def emergency_alerts_feed(self) -> AsyncIterator[list[EmergencyAlert]]:
        """Open alerts, oldest first."""
        async with aclosing(self._watch(EMERGENCY_ALERTS)) as values:
            async for raw in values:
                yield [a for a in parse_alerts(raw) if not a.is_resolved]

    async def chat_messages_feed(self, booking_id: str) -> AsyncIterator[list[ChatMessage]]:
        async with aclosing(self._watch(self.chat.messages_path(booking_id))) as values:
            async for raw in values:
                yield parse_messages(raw)

    async def chat_room_feed(self, booking_id: str) -> AsyncIterator[Optional[ChatRoom]]:
        async with aclosing(self._watch(CHAT_ROOMS)) as values:
            async for raw in values:
                yield next((r for r in parse_rooms(raw) if r.booking_id == booking_id), None)

    # ── one-shot reads ───────────────────────────────────────────────

    async def available_bookings(self, driver_id: str) -> list[Booking]:
        """PENDING bookings a driver may take; empty unless the driver is online."""
        if not await self.ledger.can_receive_bookings(driver_id):
            return []
        bookings = parse_bookings(await self.store.read(BOOKINGS))
        return _by_time(b for b in bookings if b.status == BookingStatus.PENDING)

    async def snapshot(self) -> list[Booking]:
        return parse_bookings(await self.store.read(BOOKINGS))
