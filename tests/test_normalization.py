"""Decoding of store records written by different client generations."""

import math

import pytest

from src.domain.enums import BOOKING_TRANSITIONS, BookingStatus, MessageType
from src.domain.normalization import (
    MalformedRecord,
    booking_from_store,
    chat_message_from_store,
    decode_bool,
    decode_float,
    decode_int,
    decode_str,
    queue_entry_from_store,
    resolve_queue_timestamp,
)
from tests.conftest import TZ, local_ms


class TestScalarDecoders:
    @pytest.mark.parametrize(
        "raw, expected",
        [(12.5, 12.5), (3, 3.0), ("40.25", 40.25), (" 7 ", 7.0), ("abc", 0.0), (None, 0.0), (True, 0.0)],
    )
    def test_decode_float(self, raw, expected):
        assert decode_float(raw) == expected

    def test_decode_float_rejects_non_finite(self):
        assert decode_float("nan") == 0.0
        assert decode_float(float("inf"), 1.0) == 1.0

    @pytest.mark.parametrize("raw, expected", [(5, 5), ("5", 5), ("5.9", 5), (5.9, 5), ("x", 0), (None, 0)])
    def test_decode_int(self, raw, expected):
        assert decode_int(raw) == expected

    @pytest.mark.parametrize(
        "raw, expected",
        [(True, True), ("true", True), ("FALSE", False), (1, True), (0, False), ("yes", False), (None, False)],
    )
    def test_decode_bool(self, raw, expected):
        assert decode_bool(raw) is expected

    def test_decode_str(self):
        assert decode_str(17) == "17"
        assert decode_str(None) == ""
        assert decode_str({"a": 1}, "x") == "x"


class TestBookingDecoding:
    def test_legacy_field_names(self):
        booking = booking_from_store(
            "b1",
            {
                "phoneVerified": "true",
                "pickupCoordinates": {"latitude": 14.7, "longitude": 121.0},
                "dropoffGeoPoint": {"lat": "14.8", "lng": 121.1},
                "estimatedFare": "45",
                "timestamp": "1700000000000",
                "status": "accepted",
            },
        )
        assert booking.id == "b1"
        assert booking.is_phone_verified is True
        assert booking.pickup_geo_point.latitude == 14.7
        assert booking.dropoff_geo_point.latitude == 14.8
        assert booking.estimated_fare == 45.0
        assert booking.timestamp == 1_700_000_000_000
        assert booking.status == BookingStatus.ACCEPTED

    def test_legacy_rejected_status_is_terminal(self):
        booking = booking_from_store("b1", {"status": "rejected"})
        assert booking.status == BookingStatus.REJECTED
        assert BOOKING_TRANSITIONS[booking.status] == set()

    @pytest.mark.parametrize("status", ["TELEPORTED", "", None, 3])
    def test_unrecognised_status_is_malformed(self, status):
        with pytest.raises(MalformedRecord):
            booking_from_store("b1", {"status": status})

    def test_defaults(self):
        booking = booking_from_store("b1", {"status": "PENDING"})
        assert booking.payment_method == "CASH"
        assert booking.assigned_driver_id == ""

    def test_non_record_raises(self):
        with pytest.raises(MalformedRecord):
            booking_from_store("b1", "garbage")


class TestQueueTimestamp:
    def test_queue_time_seconds_first(self):
        data = {"queueTime": "1700000000", "timestamp": 5}
        assert resolve_queue_timestamp("k", data, TZ) == 1_700_000_000_000

    def test_formatted_local_timestamp(self):
        data = {"timestamp": "2026-10-18 07:30:00"}
        assert resolve_queue_timestamp("k", data, TZ) == local_ms(2026, 10, 18, 7, 30)

    def test_raw_millis_timestamp(self):
        assert resolve_queue_timestamp("k", {"timestamp": 1_700_000_000_123}, TZ) == 1_700_000_000_123
        assert resolve_queue_timestamp("k", {"timestamp": "1700000000123"}, TZ) == 1_700_000_000_123

    def test_key_as_integer(self):
        assert resolve_queue_timestamp("1700000000999", {}, TZ) == 1_700_000_000_999

    def test_undatable_entry_sorts_last(self):
        assert math.isinf(resolve_queue_timestamp("-Nabc", {"timestamp": "soon"}, TZ))

    def test_entry_fields(self):
        entry = queue_entry_from_store("q1", {"driverRFID": " A1 ", "claimed": "true", "status": "Waiting"}, TZ)
        assert entry.driver_rfid == "A1"
        assert entry.claimed is True


def test_chat_message_unknown_type_is_text():
    message = chat_message_from_store("m1", {"messageType": "STICKER", "timestamp": "12"})
    assert message.message_type == MessageType.TEXT
    assert message.timestamp == 12
