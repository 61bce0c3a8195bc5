"""
Queue Matcher -- assigns a PENDING booking to the earliest waiting driver
=========================================================================

Algorithm
---------
1.  **Pre-check**  -- the booking must exist and be PENDING (not atomic;
    enforced in step 5).
2.  **Select**     -- read ``driverQueue`` and pick the earliest eligible
    entry (``src.domain.matching.select_earliest``).
3.  **Claim**      -- ``transact("driverQueue/{key}/claimed")`` flips the flag
    from false/absent to ``True`` and aborts when it is already ``True``.
    Of any number of concurrent matchers exactly one wins a given entry.
4.  **Confirm**    -- re-read the flag and the entry.  An entry removed by the
    driver leaving the queue in the meantime leaves an orphan ``claimed``
    leaf, which is deleted.
5.  **Take**       -- swap the booking's ``status`` leaf from PENDING to
    ACCEPTED (``BookingRepository.swap_status``).  A manual accept goes
    through the same swap, so a booking is taken at most once.  If the swap
    loses, the claim is released (``claimed = False``) so the driver stays
    queued.
6.  **Assign**     -- booking fields, the index mirror and the removal of the
    queue entry go out as one multi-path update.  If that write fails the
    status is swapped back to PENDING and the claim released.

An RFID that does not resolve to a driverId still produces an ACCEPTED
booking; the gap is logged and recorded under ``assignmentGaps``.

Complexity: O(n) per attempt in the queue size.
"""

from __future__ import annotations

import logging
from typing import Optional

from src.config import settings
from src.domain.clock import now_ms
from src.domain.enums import BookingStatus, NotificationKind, QUEUE_WAITING
from src.domain.matching import select_earliest
from src.domain.results import (
    MatchError,
    MatchFailureReason,
    Matched,
    MatchResult,
    NotMatched,
)
from src.infrastructure.errors import StoreError
from src.infrastructure.repositories import (
    ASSIGNMENT_GAPS,
    BookingRepository,
    DriverRepository,
    QueueRepository,
)
from src.infrastructure.tree_store import TreeStore, join

from .notifications import NotificationEmitter

logger = logging.getLogger(__name__)


class QueueMatcher:
    def __init__(
        self,
        store: TreeStore,
        tz_name: str = settings.local_timezone,
        claim_max_retries: int = settings.claim_max_retries,
        notifications: Optional[NotificationEmitter] = None,
    ):
        self.store = store
        self.bookings = BookingRepository(store)
        self.queue = QueueRepository(store, tz_name)
        self.drivers = DriverRepository(store)
        self.claim_max_retries = claim_max_retries
        self.notifications = notifications or NotificationEmitter(store)

    async def match_booking_to_first_driver(self, booking_id: str) -> MatchResult:
        try:
            return await self._match(booking_id)
        except StoreError as exc:
            logger.error("Matching booking %s failed: %s", booking_id, exc)
            return MatchError(booking_id, str(exc))

    async def matches(self, booking_id: str) -> bool:
        """Boolean form for callers that only care whether a driver was assigned."""
        return isinstance(await self.match_booking_to_first_driver(booking_id), Matched)

    async def match_oldest_pending(self) -> Optional[MatchResult]:
        """Try the oldest PENDING booking; ``None`` when nothing is pending."""
        pending = await self.bookings.pending_oldest_first()
        if not pending:
            return None
        return await self.match_booking_to_first_driver(pending[0].id)

    # ── queue membership (hardware / driver app) ─────────────────────

    async def join_queue(self, rfid: str, driver_name: str = "", toda_number: str = "") -> str:
        """Append a waiting entry for *rfid* and return its key."""
        rfid = rfid.strip()
        if not rfid:
            raise ValueError("RFID must not be blank")
        joined_at = now_ms()
        key = await self.queue.add(
            {
                "driverRFID": rfid,
                "driverName": driver_name,
                "todaNumber": toda_number,
                "status": QUEUE_WAITING,
                "claimed": False,
                "queueTime": str(joined_at // 1000),
                "timestamp": joined_at,
            }
        )
        logger.info("Driver %s joined the queue as %s", rfid, key)
        return key

    async def leave_queue(self, rfid: str) -> int:
        """Remove every queue entry of *rfid*; returns how many were removed."""
        keys = await self.queue.keys_for_rfid(rfid.strip())
        if keys:
            await self.store.update({self.queue.path(k): None for k in keys})
            logger.info("Driver %s left the queue (%d entries)", rfid, len(keys))
        return len(keys)

    # ── algorithm ────────────────────────────────────────────────────

    async def _match(self, booking_id: str) -> MatchResult:
        status = await self.bookings.get_status(booking_id)
        if status is None:
            return NotMatched(booking_id, MatchFailureReason.BOOKING_NOT_FOUND)
        if status != BookingStatus.PENDING:
            return NotMatched(booking_id, MatchFailureReason.BOOKING_NOT_PENDING)

        entries = await self.queue.list_all()
        if not entries:
            return NotMatched(booking_id, MatchFailureReason.QUEUE_EMPTY)
        entry = select_earliest(entries)
        if entry is None:
            return NotMatched(booking_id, MatchFailureReason.NO_ELIGIBLE_DRIVER)

        claimed_path = self.queue.path(entry.key, "claimed")
        if not await self.queue.claim(entry.key, self.claim_max_retries):
            logger.info("Queue entry %s was claimed by another matcher", entry.key)
            return NotMatched(booking_id, MatchFailureReason.CLAIM_CONFLICT)

        if await self.store.read(self.queue.path(entry.key, "driverRFID")) is None:
            # entry left the queue between select and claim
            await self.store.remove(claimed_path)
            return NotMatched(booking_id, MatchFailureReason.CLAIM_CONFLICT)

        driver_id = await self.drivers.driver_id_for_rfid(entry.driver_rfid)
        if not await self.bookings.swap_status(
            booking_id, BookingStatus.PENDING, BookingStatus.ACCEPTED, self.claim_max_retries
        ):
            await self.queue.release(entry.key)
            logger.info("Booking %s stopped being PENDING; released %s", booking_id, entry.key)
            return NotMatched(booking_id, MatchFailureReason.BOOKING_NOT_PENDING)

        booking_fields = {
            "driverRFID": entry.driver_rfid,
            "driverName": entry.driver_name,
            "assignedTricycleId": entry.toda_number,
            "todaNumber": entry.toda_number,
            "status": BookingStatus.ACCEPTED.value,
        }
        if driver_id:
            booking_fields["assignedDriverId"] = driver_id

        updates = {self.bookings.path(booking_id, f): v for f, v in booking_fields.items()}
        updates[self.bookings.index_path(booking_id, "status")] = BookingStatus.ACCEPTED.value
        updates[self.bookings.index_path(booking_id, "driverRFID")] = entry.driver_rfid
        updates[self.queue.path(entry.key)] = None
        if not driver_id:
            logger.warning(
                "RFID %s has no driverId in the index; booking %s accepted without one",
                entry.driver_rfid,
                booking_id,
            )
            updates[join(ASSIGNMENT_GAPS, booking_id)] = {
                "driverRFID": entry.driver_rfid,
                "driverName": entry.driver_name,
                "queueKey": entry.key,
                "timestamp": now_ms(),
            }

        try:
            await self.store.update(updates)
        except StoreError:
            # hand the booking and the driver back untouched
            await self.bookings.swap_status(booking_id, BookingStatus.ACCEPTED, BookingStatus.PENDING)
            await self.queue.release(entry.key)
            raise

        logger.info("Matched booking %s to driver %s (%s)", booking_id, entry.driver_rfid, entry.key)
        await self.notifications.emit(
            NotificationKind.BOOKING_STATUS,
            bookingId=booking_id,
            status=BookingStatus.ACCEPTED.value,
            driverRFID=entry.driver_rfid,
            driverId=driver_id or "",
        )
        return Matched(
            booking_id=booking_id,
            queue_key=entry.key,
            driver_rfid=entry.driver_rfid,
            driver_name=entry.driver_name,
            driver_id=driver_id,
        )
