"""
Booking lifecycle service
=========================

Every status change goes through ``update_booking_status`` (or one of the
specialised operations built on it), which:

1. reads the booking and validates the transition against
   ``BOOKING_TRANSITIONS``, raising ``InvalidStateTransition`` otherwise,
2. swaps the ``status`` leaf from the status it read to the new one
   (``BookingRepository.swap_status``), so of two concurrent writers moving
   a booking out of one status only the first succeeds and the second gets
   ``InvalidStateTransition``,
3. writes the rest of the booking and its ``bookingIndex`` mirror in ONE
   multi-path update, swapping the status back if that write fails,
4. runs the side effects of the new state: a rating record on COMPLETED,
   a chat room on IN_PROGRESS, a status notification always.

Side effects are best-effort; a failure there is logged and never rolls the
status back.

The queue matcher takes PENDING bookings through the same swap; see
``queue_matcher.py``.
"""

from __future__ import annotations

import logging
import random
from typing import Optional

from src.config import settings
from src.domain.clock import now_ms
from src.domain.distance import booking_distance_km
from src.domain.entities import (
    Booking,
    BookingNotFound,
    Driver,
    InvalidStateTransition,
    Rating,
    RatingAlreadySubmitted,
)
from src.domain.enums import BookingStatus, NotificationKind, RatedBy
from src.domain.normalization import booking_to_store, rating_to_store
from src.infrastructure.errors import StoreError
from src.infrastructure.repositories import (
    BookingRepository,
    DriverRepository,
    QueueRepository,
    RatingRepository,
    RATINGS,
)
from src.infrastructure.tree_store import TreeStore, join

from .chat import ChatService
from .notifications import NotificationEmitter

logger = logging.getLogger(__name__)


def generate_verification_code() -> str:
    """Four ASCII digits shown to the passenger; uniqueness is not required."""
    return str(random.randint(1000, 9999))


class BookingService:
    def __init__(
        self,
        store: TreeStore,
        chat: Optional[ChatService] = None,
        notifications: Optional[NotificationEmitter] = None,
        no_show_grace_minutes: int = settings.no_show_grace_minutes,
        claim_max_retries: int = settings.claim_max_retries,
    ):
        self.store = store
        self.repo = BookingRepository(store)
        self.drivers = DriverRepository(store)
        self.queue = QueueRepository(store, settings.local_timezone)
        self.ratings = RatingRepository(store)
        self.notifications = notifications or NotificationEmitter(store)
        self.chat = chat or ChatService(store, self.notifications)
        self.no_show_grace_ms = no_show_grace_minutes * 60_000
        self.claim_max_retries = claim_max_retries

    # ── creation / lookup ────────────────────────────────────────────

    async def create_booking(self, draft: Booking) -> str:
        """
        Persist a new PENDING booking and return its id.

        Raises ``StoreError`` if the store is unreachable; the caller may
        retry since nothing was written.
        """
        booking_id = await self.repo.new_id()
        draft.id = booking_id
        draft.status = BookingStatus.PENDING
        draft.timestamp = draft.timestamp or now_ms()
        draft.verification_code = draft.verification_code or generate_verification_code()
        draft.distance = booking_distance_km(draft.pickup_geo_point, draft.dropoff_geo_point)
        if draft.actual_fare <= 0:
            draft.actual_fare = draft.estimated_fare
        # a new booking is never assigned
        draft.assigned_driver_id = ""
        draft.completion_time = 0

        await self.store.update(
            {
                self.repo.path(booking_id): booking_to_store(draft),
                self.repo.index_path(booking_id): {
                    "status": draft.status.value,
                    "driverRFID": "",
                },
            }
        )
        logger.info("Created booking %s for customer %s", booking_id, draft.customer_id)
        return booking_id

    async def get_booking(self, booking_id: str) -> Booking:
        booking = await self.repo.get(booking_id)
        if booking is None:
            raise BookingNotFound(f"Booking {booking_id} not found")
        return booking

    # ── status transitions ───────────────────────────────────────────

    async def update_booking_status(
        self,
        booking_id: str,
        status: BookingStatus,
        driver_id: Optional[str] = None,
    ) -> bool:
        """
        Move a booking to *status*.  Returns ``False`` when the store failed;
        raises ``BookingNotFound`` / ``InvalidStateTransition`` on logical errors,
        including losing the status swap to a concurrent writer.

        Accepting with a *driver_id* also takes that driver's queue entries
        (the same claim the matcher uses) and removes them in the update, so a
        driver who accepts by hand cannot be matched to a second booking.
        """
        try:
            booking = await self.get_booking(booking_id)
            driver = await self.drivers.get(driver_id) if driver_id else None
        except StoreError as exc:
            logger.warning("Status update of %s to %s failed: %s", booking_id, status.value, exc)
            return False

        prior = booking.status
        booking.transition_to(status)
        updates = self._status_updates(booking)

        if driver_id:
            booking.assigned_driver_id = driver_id
            updates[self.repo.path(booking_id, "assignedDriverId")] = driver_id
            if driver is not None:
                updates.update(self._driver_fields(booking, driver))
            else:
                logger.warning("Driver %s not found while updating booking %s", driver_id, booking_id)

        if status == BookingStatus.COMPLETED:
            booking.completion_time = now_ms()
            updates[self.repo.path(booking_id, "completionTime")] = booking.completion_time

        queue_keys: list[str] = []
        committed = False
        try:
            if status == BookingStatus.ACCEPTED and driver is not None and driver.has_rfid:
                queue_keys = await self._claim_queue_entries(driver)
                updates.update({self.queue.path(key): None for key in queue_keys})
            committed = await self._commit(booking, prior, updates)
        except StoreError as exc:
            logger.warning("Status update of %s to %s failed: %s", booking_id, status.value, exc)
        finally:
            if not committed:
                await self._release_queue_entries(queue_keys)
        if not committed:
            return False

        logger.info("Booking %s -> %s", booking_id, status.value)
        await self._after_transition(booking, driver)
        return True

    async def cancel_booking(self, booking_id: str) -> bool:
        return await self.update_booking_status(booking_id, BookingStatus.CANCELLED)

    async def mark_arrived_at_pickup(self, booking_id: str) -> bool:
        """Driver reached the pickup point; starts the no-show grace period."""
        try:
            booking = await self.get_booking(booking_id)
        except StoreError as exc:
            logger.warning("Arrival on %s not recorded: %s", booking_id, exc)
            return False
        if booking.status != BookingStatus.ACCEPTED:
            raise InvalidStateTransition(
                f"Arrival can only be marked on an ACCEPTED booking, not {booking.status.value}"
            )
        try:
            await self.store.update(
                {
                    self.repo.path(booking_id, "arrivedAtPickup"): True,
                    self.repo.path(booking_id, "arrivedAtPickupTime"): now_ms(),
                }
            )
        except StoreError as exc:
            logger.warning("Arrival on %s not recorded: %s", booking_id, exc)
            return False
        return True

    async def report_no_show(self, booking_id: str, now: Optional[int] = None) -> bool:
        """
        Passenger did not turn up.  Allowed only on an ACCEPTED booking whose
        driver marked arrival at least ``no_show_grace_minutes`` ago.
        """
        try:
            booking = await self.get_booking(booking_id)
        except StoreError as exc:
            logger.warning("No-show on %s not recorded: %s", booking_id, exc)
            return False

        current = now if now is not None else now_ms()
        if booking.status == BookingStatus.ACCEPTED:
            if not booking.arrived_at_pickup:
                raise InvalidStateTransition("Driver has not marked arrival at pickup")
            if current - booking.arrived_at_pickup_time < self.no_show_grace_ms:
                raise InvalidStateTransition("No-show grace period has not elapsed")
        prior = booking.status
        booking.transition_to(BookingStatus.NO_SHOW)

        updates = self._status_updates(booking)
        updates[self.repo.path(booking_id, "isNoShow")] = True
        updates[self.repo.path(booking_id, "noShowReportedTime")] = current
        try:
            await self._commit(booking, prior, updates)
        except StoreError as exc:
            logger.warning("No-show on %s not recorded: %s", booking_id, exc)
            return False

        logger.info("Booking %s reported as no-show", booking_id)
        await self._notify_status(booking)
        return True

    # ── ratings ──────────────────────────────────────────────────────

    async def seed_rating(self, booking: Booking) -> str:
        """Create the unrated (``stars=0``) record for a booking; idempotent."""
        existing = await self.ratings.for_booking(booking.id)
        if existing is not None:
            return existing.key
        key = await self.ratings.new_key()
        rating = Rating(
            key=key,
            booking_id=booking.id,
            driver_id=booking.assigned_driver_id,
            driver_rfid=booking.driver_rfid,
            customer_id=booking.customer_id,
            stars=0,
            rated_by=RatedBy.CUSTOMER,
            timestamp=now_ms(),
        )
        await self.store.write(join(RATINGS, key), rating_to_store(rating))
        return key

    async def submit_rating(self, booking_id: str, stars: int, feedback: str = "") -> Rating:
        """
        Record the customer's rating.  The ``stars`` leaf is swapped from 0 to
        the new value with a CAS, so a second submission always loses.
        """
        if not 1 <= stars <= 5:
            raise ValueError("stars must be between 1 and 5")
        booking = await self.get_booking(booking_id)
        if booking.status != BookingStatus.COMPLETED:
            raise InvalidStateTransition("Only completed bookings can be rated")

        rating = await self.ratings.for_booking(booking_id)
        if rating is None:
            await self.seed_rating(booking)
            rating = await self.ratings.for_booking(booking_id)
        if rating is None or rating.stars > 0:
            raise RatingAlreadySubmitted(f"Booking {booking_id} is already rated")

        stars_path = join(RATINGS, rating.key, "stars")
        if not await self.store.compare_and_swap(stars_path, 0, stars):
            raise RatingAlreadySubmitted(f"Booking {booking_id} is already rated")

        rated_at = now_ms()
        await self.store.update(
            {
                join(RATINGS, rating.key, "feedback"): feedback,
                join(RATINGS, rating.key, "timestamp"): rated_at,
                self.repo.path(booking_id, "rating"): float(stars),
                self.repo.path(booking_id, "feedback"): feedback,
            }
        )
        rating.stars, rating.feedback, rating.timestamp = stars, feedback, rated_at
        return rating

    # ── internals ────────────────────────────────────────────────────

    async def _commit(self, booking: Booking, prior: BookingStatus, updates: dict) -> bool:
        """
        Swap the ``status`` leaf from *prior* to ``booking.status``, then write
        *updates*.  If the write fails the status is swapped back and the
        ``StoreError`` re-raised.
        """
        if not await self.repo.swap_status(booking.id, prior, booking.status):
            current = await self.repo.get_status(booking.id)
            raise InvalidStateTransition(
                f"Booking {booking.id} is no longer {prior.value} "
                f"(now {current.value if current else 'unreadable'})"
            )
        try:
            await self.store.update(updates)
        except StoreError:
            await self.repo.swap_status(booking.id, booking.status, prior)
            raise
        return True

    async def _claim_queue_entries(self, driver: Driver) -> list[str]:
        """Claim every queue entry of *driver*; all or none."""
        claimed: list[str] = []
        try:
            for key in await self.queue.keys_for_rfid(driver.rfid_uid):
                if not await self.queue.claim(key, self.claim_max_retries):
                    raise InvalidStateTransition(
                        f"Driver {driver.driver_id} is being matched to another booking"
                    )
                if await self.store.read(self.queue.path(key, "driverRFID")) is None:
                    # entry left the queue in the meantime
                    await self.store.remove(self.queue.path(key, "claimed"))
                    continue
                claimed.append(key)
        except (InvalidStateTransition, StoreError):
            await self._release_queue_entries(claimed)
            raise
        return claimed

    async def _release_queue_entries(self, keys: list[str]) -> None:
        for key in keys:
            try:
                await self.queue.release(key)
            except StoreError as exc:
                logger.warning("Queue entry %s left claimed: %s", key, exc)

    def _status_updates(self, booking: Booking) -> dict:
        return {
            self.repo.path(booking.id, "status"): booking.status.value,
            self.repo.index_path(booking.id, "status"): booking.status.value,
        }

    def _driver_fields(self, booking: Booking, driver: Driver) -> dict:
        booking.driver_name = driver.driver_name
        booking.toda_number = driver.toda_number
        fields = {
            self.repo.path(booking.id, "driverName"): driver.driver_name,
            self.repo.path(booking.id, "todaNumber"): driver.toda_number,
            self.repo.path(booking.id, "assignedTricycleId"): driver.toda_number,
        }
        # an empty card (reported missing) never overwrites the booking RFID
        if driver.has_rfid:
            booking.driver_rfid = driver.rfid_uid
            fields[self.repo.path(booking.id, "driverRFID")] = driver.rfid_uid
            fields[self.repo.index_path(booking.id, "driverRFID")] = driver.rfid_uid
        return fields

    async def _after_transition(self, booking: Booking, driver: Optional[Driver]) -> None:
        if booking.status == BookingStatus.COMPLETED:
            try:
                await self.seed_rating(booking)
            except StoreError as exc:
                logger.warning("Rating record for %s not created: %s", booking.id, exc)
        elif booking.status == BookingStatus.IN_PROGRESS:
            await self._open_chat(booking, driver)
        await self._notify_status(booking)

    async def _open_chat(self, booking: Booking, driver: Optional[Driver]) -> None:
        try:
            if driver is None and booking.assigned_driver_id:
                driver = await self.drivers.get(booking.assigned_driver_id)
            if driver is None:
                logger.warning("No resolvable driver for booking %s; chat room skipped", booking.id)
                return
            await self.chat.ensure_chat_room(
                booking_id=booking.id,
                customer_id=booking.customer_id,
                customer_name=booking.customer_name,
                driver_id=driver.driver_id,
                driver_name=driver.driver_name or booking.driver_name,
            )
        except StoreError as exc:
            logger.warning("Chat room for booking %s not created: %s", booking.id, exc)

    async def _notify_status(self, booking: Booking) -> None:
        await self.notifications.emit(
            NotificationKind.BOOKING_STATUS,
            bookingId=booking.id,
            status=booking.status.value,
            customerId=booking.customer_id,
            driverId=booking.assigned_driver_id,
        )
