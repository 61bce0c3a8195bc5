"""Booking state machine: entity transitions and the lifecycle service."""

from __future__ import annotations

import asyncio

import pytest

from src.domain.clock import now_ms
from src.domain.entities import (
    Booking,
    BookingNotFound,
    GeoPoint,
    InvalidStateTransition,
    RatingAlreadySubmitted,
)
from src.domain.enums import BookingStatus
from src.infrastructure.errors import StoreError
from src.domain.results import Matched, MatchFailureReason, NotMatched
from src.services.bookings import BookingService
from src.services.queue_matcher import QueueMatcher
from tests.conftest import TZ, add_booking, add_driver, add_queue_entry, queue_keys


class TestBookingStateMachine:
    def test_initial_status_is_pending(self):
        assert Booking().status == BookingStatus.PENDING

    # ── Valid transitions ─────────────────────────────────────────

    @pytest.mark.parametrize(
        "start, target",
        [
            (BookingStatus.PENDING, BookingStatus.ACCEPTED),
            (BookingStatus.PENDING, BookingStatus.CANCELLED),
            (BookingStatus.ACCEPTED, BookingStatus.IN_PROGRESS),
            (BookingStatus.ACCEPTED, BookingStatus.CANCELLED),
            (BookingStatus.ACCEPTED, BookingStatus.NO_SHOW),
            (BookingStatus.IN_PROGRESS, BookingStatus.COMPLETED),
            (BookingStatus.IN_PROGRESS, BookingStatus.CANCELLED),
        ],
    )
    def test_valid(self, start, target):
        booking = Booking(status=start)
        booking.transition_to(target)
        assert booking.status == target

    # ── Invalid transitions ───────────────────────────────────────

    @pytest.mark.parametrize(
        "start, target",
        [
            (BookingStatus.PENDING, BookingStatus.COMPLETED),
            (BookingStatus.PENDING, BookingStatus.NO_SHOW),
            (BookingStatus.IN_PROGRESS, BookingStatus.NO_SHOW),
            (BookingStatus.COMPLETED, BookingStatus.CANCELLED),
            (BookingStatus.CANCELLED, BookingStatus.PENDING),
            (BookingStatus.NO_SHOW, BookingStatus.ACCEPTED),
        ],
    )
    def test_invalid(self, start, target):
        booking = Booking(status=start)
        with pytest.raises(InvalidStateTransition):
            booking.transition_to(target)
        assert booking.status == start

    def test_effective_fare_and_time(self):
        booking = Booking(estimated_fare=40.0, timestamp=10)
        assert (booking.effective_fare, booking.effective_time) == (40.0, 10)
        booking.actual_fare, booking.completion_time = 55.0, 20
        assert (booking.effective_fare, booking.effective_time) == (55.0, 20)

    def test_belongs_to_driver_by_id_or_rfid(self):
        booking = Booking(driver_rfid="A1")
        assert booking.belongs_to_driver("d-9", "A1")
        assert not booking.belongs_to_driver("d-9", "B2")
        booking.assigned_driver_id = "d-9"
        assert booking.belongs_to_driver("d-9")


async def _status_pair(store, booking_id):
    return (
        await store.read(f"bookings/{booking_id}/status"),
        await store.read(f"bookingIndex/{booking_id}/status"),
    )


class TestBookingService:
    @pytest.mark.asyncio
    async def test_create_booking(self, store):
        service = BookingService(store)
        booking_id = await service.create_booking(
            Booking(
                customer_id="cust-1",
                pickup_geo_point=GeoPoint(14.7600, 121.0440),
                dropoff_geo_point=GeoPoint(14.7340, 121.0570),
                estimated_fare=45.0,
                status=BookingStatus.COMPLETED,
            )
        )

        booking = await service.get_booking(booking_id)
        assert booking.status == BookingStatus.PENDING
        assert len(booking.verification_code) == 4 and booking.verification_code.isdigit()
        assert 3.0 < booking.distance < 3.5
        assert booking.actual_fare == 45.0
        assert booking.timestamp > 0
        assert await store.read(f"bookingIndex/{booking_id}") == {"driverRFID": "", "status": "PENDING"}

    @pytest.mark.asyncio
    async def test_create_keeps_client_verification_code(self, store):
        booking_id = await BookingService(store).create_booking(Booking(customer_id="c", verification_code="0042"))
        assert await store.read(f"bookings/{booking_id}/verificationCode") == "0042"

    @pytest.mark.asyncio
    async def test_status_and_index_move_together(self, store):
        await add_booking(store, "B1")
        await add_driver(store, "driver-1", rfid="A1", name="Juan", toda="017")
        service = BookingService(store)

        assert await service.update_booking_status("B1", BookingStatus.ACCEPTED, "driver-1")
        assert await _status_pair(store, "B1") == ("ACCEPTED", "ACCEPTED")
        booking = await service.get_booking("B1")
        assert booking.assigned_driver_id == "driver-1"
        assert booking.driver_rfid == "A1"
        assert booking.toda_number == "017"
        assert await store.read("bookingIndex/B1/driverRFID") == "A1"

        assert await service.update_booking_status("B1", BookingStatus.IN_PROGRESS)
        assert await _status_pair(store, "B1") == ("IN_PROGRESS", "IN_PROGRESS")

    @pytest.mark.asyncio
    async def test_illegal_transition_writes_nothing(self, store):
        await add_booking(store, "B1")
        with pytest.raises(InvalidStateTransition):
            await BookingService(store).update_booking_status("B1", BookingStatus.COMPLETED)
        assert await _status_pair(store, "B1") == ("PENDING", "PENDING")

    @pytest.mark.asyncio
    async def test_unknown_booking(self, store):
        with pytest.raises(BookingNotFound):
            await BookingService(store).update_booking_status("nope", BookingStatus.CANCELLED)

    @pytest.mark.asyncio
    async def test_store_failure_returns_false(self, store, monkeypatch):
        await add_booking(store, "B1")

        async def broken(values):
            raise StoreError("timeout")

        monkeypatch.setattr(store, "update", broken)
        assert await BookingService(store).update_booking_status("B1", BookingStatus.CANCELLED) is False
        # the status swap is undone
        assert await _status_pair(store, "B1") == ("PENDING", "PENDING")

    @pytest.mark.asyncio
    async def test_in_progress_opens_one_chat_room(self, store):
        await add_booking(store, "B1", status="ACCEPTED", customerName="Liza")
        await add_driver(store, "driver-1", rfid="A1", name="Juan")
        service = BookingService(store)

        assert await service.update_booking_status("B1", BookingStatus.IN_PROGRESS, "driver-1")

        rooms = await store.read("chatRooms")
        assert len(rooms) == 1
        room = next(iter(rooms.values()))
        assert room["bookingId"] == "B1"
        assert room["driverId"] == "driver-1"
        messages = await service.chat.messages("B1")
        assert [m.message_type.value for m in messages] == ["SYSTEM"]
        assert "Liza" in messages[0].message and "Juan" in messages[0].message

        await service.chat.ensure_chat_room("B1", "cust-1", "Liza", "driver-1", "Juan")
        assert len(await store.read("chatRooms")) == 1

    @pytest.mark.asyncio
    async def test_in_progress_without_driver_skips_chat(self, store):
        await add_booking(store, "B1", status="ACCEPTED")
        assert await BookingService(store).update_booking_status("B1", BookingStatus.IN_PROGRESS)
        assert await store.read("chatRooms") is None

    @pytest.mark.asyncio
    async def test_completion_stamps_time_and_seeds_rating(self, store):
        await add_booking(store, "B1", status="IN_PROGRESS", assignedDriverId="driver-1", driverRFID="A1")
        service = BookingService(store)

        assert await service.update_booking_status("B1", BookingStatus.COMPLETED)

        booking = await service.get_booking("B1")
        assert booking.completion_time > 0
        ratings = await store.read("ratings")
        assert len(ratings) == 1
        rating = next(iter(ratings.values()))
        assert rating["stars"] == 0
        assert rating["driverId"] == "driver-1"

    @pytest.mark.asyncio
    async def test_status_change_emits_notification(self, store):
        await add_booking(store, "B1")
        await BookingService(store).update_booking_status("B1", BookingStatus.CANCELLED)
        events = list((await store.read("notifications")).values())
        assert events[-1]["type"] == "BOOKING_STATUS"
        assert events[-1]["status"] == "CANCELLED"


class TestRatings:
    @pytest.mark.asyncio
    async def test_seed_twice_creates_one_record(self, store):
        await add_booking(store, "B1", status="COMPLETED")
        service = BookingService(store)
        booking = await service.get_booking("B1")

        first = await service.seed_rating(booking)
        second = await service.seed_rating(booking)

        assert first == second
        assert len(await store.read("ratings")) == 1

    @pytest.mark.asyncio
    async def test_submit_once(self, store):
        await add_booking(store, "B1", status="COMPLETED")
        service = BookingService(store)
        await service.seed_rating(await service.get_booking("B1"))

        rating = await service.submit_rating("B1", 5, "Smooth ride")

        assert rating.stars == 5
        assert await store.read("bookings/B1/rating") == 5.0
        with pytest.raises(RatingAlreadySubmitted):
            await service.submit_rating("B1", 1)
        assert len(await store.read("ratings")) == 1

    @pytest.mark.asyncio
    async def test_submit_seeds_missing_record(self, store):
        await add_booking(store, "B1", status="COMPLETED")
        rating = await BookingService(store).submit_rating("B1", 4)
        assert rating.stars == 4
        assert len(await store.read("ratings")) == 1

    @pytest.mark.asyncio
    async def test_only_completed_bookings_rated(self, store):
        await add_booking(store, "B1", status="ACCEPTED")
        with pytest.raises(InvalidStateTransition):
            await BookingService(store).submit_rating("B1", 4)

    @pytest.mark.asyncio
    async def test_stars_range(self, store):
        with pytest.raises(ValueError):
            await BookingService(store).submit_rating("B1", 6)


class TestNoShow:
    @pytest.mark.asyncio
    async def test_requires_arrival(self, store):
        await add_booking(store, "B1", status="ACCEPTED")
        with pytest.raises(InvalidStateTransition):
            await BookingService(store).report_no_show("B1")

    @pytest.mark.asyncio
    async def test_requires_grace_period(self, store):
        await add_booking(store, "B1", status="ACCEPTED")
        service = BookingService(store, no_show_grace_minutes=5)
        assert await service.mark_arrived_at_pickup("B1")

        with pytest.raises(InvalidStateTransition, match="grace"):
            await service.report_no_show("B1")

        assert await service.report_no_show("B1", now=now_ms() + 5 * 60_000 + 1000)
        booking = await service.get_booking("B1")
        assert booking.status == BookingStatus.NO_SHOW
        assert booking.is_no_show is True
        assert booking.no_show_reported_time > 0
        assert await store.read("bookingIndex/B1/status") == "NO_SHOW"

    @pytest.mark.asyncio
    async def test_arrival_only_when_accepted(self, store):
        await add_booking(store, "B1")
        with pytest.raises(InvalidStateTransition):
            await BookingService(store).mark_arrived_at_pickup("B1")


class TestAcceptance:
    @pytest.mark.asyncio
    async def test_concurrent_accepts_assign_one_driver(self, store):
        await add_booking(store, "B1")
        await add_driver(store, "d1", rfid="R1")
        await add_driver(store, "d2", rfid="R2")
        service = BookingService(store)

        results = await asyncio.gather(
            service.update_booking_status("B1", BookingStatus.ACCEPTED, "d1"),
            service.update_booking_status("B1", BookingStatus.ACCEPTED, "d2"),
            return_exceptions=True,
        )

        assert results.count(True) == 1
        assert sum(isinstance(r, InvalidStateTransition) for r in results) == 1
        winner = "d1" if results[0] is True else "d2"
        booking = await service.get_booking("B1")
        assert booking.assigned_driver_id == winner
        assert await store.read("bookingIndex/B1/driverRFID") == booking.driver_rfid

    @pytest.mark.asyncio
    async def test_accept_removes_driver_from_queue(self, store):
        await add_booking(store, "B1", timestamp=1_700_000_000_000)
        await add_booking(store, "B2", timestamp=1_700_000_100_000)
        await add_driver(store, "d1", rfid="R1")
        await add_queue_entry(store, "q1", "R1", queueTime="1700000000")
        await add_queue_entry(store, "q2", "R1", queueTime="1700000005")

        assert await BookingService(store).update_booking_status("B1", BookingStatus.ACCEPTED, "d1")
        assert await queue_keys(store) == set()

        result = await QueueMatcher(store, TZ).match_booking_to_first_driver("B2")
        assert result == NotMatched("B2", MatchFailureReason.QUEUE_EMPTY)

    @pytest.mark.asyncio
    async def test_accept_refused_while_matcher_holds_driver(self, store):
        await add_booking(store, "B1")
        await add_driver(store, "d1", rfid="R1")
        await add_queue_entry(store, "q1", "R1", claimed=True, queueTime="1700000000")

        with pytest.raises(InvalidStateTransition, match="another booking"):
            await BookingService(store).update_booking_status("B1", BookingStatus.ACCEPTED, "d1")

        assert await _status_pair(store, "B1") == ("PENDING", "PENDING")
        assert await store.read("driverQueue/q1/claimed") is True

    @pytest.mark.asyncio
    async def test_accept_after_match_is_refused(self, store):
        await add_booking(store, "B1")
        await add_driver(store, "d1", rfid="R1")
        await add_driver(store, "d2", rfid="R2")
        await add_queue_entry(store, "q1", "R1", queueTime="1700000000")
        service = BookingService(store)

        assert isinstance(await QueueMatcher(store, TZ).match_booking_to_first_driver("B1"), Matched)
        with pytest.raises(InvalidStateTransition):
            await service.update_booking_status("B1", BookingStatus.ACCEPTED, "d2")
        assert (await service.get_booking("B1")).assigned_driver_id == "d1"

    @pytest.mark.asyncio
    async def test_failed_accept_gives_queue_entries_back(self, store, monkeypatch):
        await add_booking(store, "B1")
        await add_driver(store, "d1", rfid="R1")
        await add_queue_entry(store, "q1", "R1", queueTime="1700000000")

        async def broken(values):
            raise StoreError("timeout")

        monkeypatch.setattr(store, "update", broken)
        assert await BookingService(store).update_booking_status("B1", BookingStatus.ACCEPTED, "d1") is False

        assert await _status_pair(store, "B1") == ("PENDING", "PENDING")
        assert await store.read("driverQueue/q1/claimed") is False

    @pytest.mark.asyncio
    async def test_legacy_rejected_booking_cannot_be_accepted(self, store):
        await add_booking(store, "B1", status="REJECTED")
        with pytest.raises(InvalidStateTransition):
            await BookingService(store).update_booking_status("B1", BookingStatus.ACCEPTED)

    @pytest.mark.asyncio
    async def test_driver_without_card_keeps_booking_rfid(self, store):
        await add_booking(store, "B1", status="ACCEPTED", assignedDriverId="d1", driverRFID="A1")
        await add_driver(store, "d1", rfid="", name="Juan")
        service = BookingService(store)

        assert await service.update_booking_status("B1", BookingStatus.IN_PROGRESS, "d1")

        booking = await service.get_booking("B1")
        assert booking.driver_rfid == "A1"
        assert booking.driver_name == "Juan"
        assert await store.read("bookingIndex/B1/driverRFID") == "A1"
