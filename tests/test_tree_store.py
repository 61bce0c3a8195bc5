"""Tree store: path reads/writes, atomic updates, CAS, transactions, subscriptions."""

from __future__ import annotations

import asyncio

import pytest

from src.infrastructure.errors import InvalidPath, StoreError
from src.infrastructure.push_ids import PushIdGenerator
from src.infrastructure.subscriptions import SubscriptionManager, paths_overlap
from src.infrastructure.tree_store import ABORT, flatten, normalize_path


class TestPaths:
    def test_normalize_strips_slashes(self):
        assert normalize_path("/bookings/abc/") == "bookings/abc"

    def test_empty_path_rejected(self):
        with pytest.raises(InvalidPath):
            normalize_path("  ")

    def test_root_allowed_when_asked(self):
        assert normalize_path("/", allow_root=True) == ""

    @pytest.mark.parametrize("bad", ["bookings/a.b", "bookings/$x", "a//b", "q/[0]"])
    def test_forbidden_segments(self, bad):
        with pytest.raises(InvalidPath):
            normalize_path(bad)

    def test_flatten_drops_none_and_nests(self):
        rows = flatten("b/1", {"status": "PENDING", "geo": {"lat": 1.5}, "gone": None})
        assert dict(rows) == {"b/1/status": '"PENDING"', "b/1/geo/lat": "1.5"}


class TestReadWrite:
    @pytest.mark.asyncio
    async def test_missing_path_reads_none(self, store):
        assert await store.read("bookings/nope") is None
        assert await store.exists("bookings/nope") is False

    @pytest.mark.asyncio
    async def test_write_and_read_subtree(self, store):
        await store.write("bookings/b1", {"status": "PENDING", "pickupGeoPoint": {"lat": 14.7, "lng": 121.0}})

        assert await store.read("bookings/b1/status") == "PENDING"
        assert await store.read("bookings/b1/pickupGeoPoint") == {"lat": 14.7, "lng": 121.0}
        assert await store.read("bookings") == {
            "b1": {"pickupGeoPoint": {"lat": 14.7, "lng": 121.0}, "status": "PENDING"}
        }

    @pytest.mark.asyncio
    async def test_write_replaces_whole_subtree(self, store):
        await store.write("drivers/d1", {"driverName": "Juan", "rfidUID": "A1"})
        await store.write("drivers/d1", {"driverName": "Pedro"})
        assert await store.read("drivers/d1") == {"driverName": "Pedro"}

    @pytest.mark.asyncio
    async def test_leaf_write_over_subtree_and_back(self, store):
        await store.write("x/y", {"a": 1})
        await store.write("x/y", 5)
        assert await store.read("x") == {"y": 5}
        await store.write("x/y/z", True)
        assert await store.read("x/y") == {"z": True}

    @pytest.mark.asyncio
    async def test_remove(self, store):
        await store.write("driverQueue/q1", {"driverRFID": "A"})
        await store.remove("driverQueue/q1")
        assert await store.read("driverQueue") is None

    @pytest.mark.asyncio
    async def test_prefix_siblings_not_mixed(self, store):
        await store.write("bookings/ab", {"status": "PENDING"})
        await store.write("bookings/abc", {"status": "ACCEPTED"})
        await store.write("bookings/AB", {"status": "CANCELLED"})

        assert await store.read("bookings/ab") == {"status": "PENDING"}
        await store.remove("bookings/ab")
        assert set(await store.read("bookings")) == {"abc", "AB"}


class TestUpdate:
    @pytest.mark.asyncio
    async def test_multi_path_update_applies_all(self, store):
        await store.write("bookings/b1", {"status": "PENDING"})
        await store.update(
            {
                "bookings/b1/status": "ACCEPTED",
                "bookingIndex/b1": {"status": "ACCEPTED", "driverRFID": "A1"},
                "driverQueue/q1": None,
            }
        )
        assert await store.read("bookings/b1/status") == "ACCEPTED"
        assert await store.read("bookingIndex/b1/status") == "ACCEPTED"

    @pytest.mark.asyncio
    async def test_overlapping_paths_rejected(self, store):
        with pytest.raises(InvalidPath):
            await store.update({"bookings/b1": {"status": "X"}, "bookings/b1/status": "Y"})

    @pytest.mark.asyncio
    async def test_invalid_key_in_value_rejected_before_writing(self, store):
        with pytest.raises(InvalidPath):
            await store.update({"a/ok": 1, "b": {"bad.key": 2}})
        assert await store.read("a") is None


class TestPush:
    def test_ids_are_chronological_and_unique(self):
        gen = PushIdGenerator()
        ids = [gen.next_id(now_ms=1_700_000_000_000) for _ in range(50)]
        ids.append(gen.next_id(now_ms=1_700_000_000_001))
        assert len(set(ids)) == len(ids)
        assert ids == sorted(ids)

    @pytest.mark.asyncio
    async def test_push_value_stores_under_new_key(self, store):
        key = await store.push_value("notifications", {"type": "X"})
        assert await store.read(f"notifications/{key}/type") == "X"


class TestCompareAndSwap:
    @pytest.mark.asyncio
    async def test_swap_when_expected_matches(self, store):
        await store.write("driverQueue/q1/claimed", False)
        assert await store.compare_and_swap("driverQueue/q1/claimed", False, True) is True
        assert await store.read("driverQueue/q1/claimed") is True

    @pytest.mark.asyncio
    async def test_no_swap_when_expected_differs(self, store):
        await store.write("driverQueue/q1/claimed", True)
        assert await store.compare_and_swap("driverQueue/q1/claimed", False, True) is False

    @pytest.mark.asyncio
    async def test_absent_expected_creates(self, store):
        assert await store.compare_and_swap("driverQueue/q1/claimed", None, True) is True
        assert await store.compare_and_swap("driverQueue/q1/claimed", None, True) is False

    @pytest.mark.asyncio
    async def test_swap_to_none_deletes(self, store):
        await store.write("k", 3)
        assert await store.compare_and_swap("k", 3, None) is True
        assert await store.read("k") is None

    @pytest.mark.asyncio
    async def test_subtree_values_rejected(self, store):
        with pytest.raises(ValueError):
            await store.compare_and_swap("k", None, {"a": 1})


class TestTransact:
    @pytest.mark.asyncio
    async def test_applies_function(self, store):
        await store.write("counter", 1)
        result = await store.transact("counter", lambda v: (v or 0) + 1)
        assert result.committed and result.value == 2
        assert await store.read("counter") == 2

    @pytest.mark.asyncio
    async def test_abort_leaves_value(self, store):
        await store.write("driverQueue/q1/claimed", True)
        result = await store.transact("driverQueue/q1/claimed", lambda v: ABORT if v else True)
        assert result.committed is False
        assert result.value is True

    @pytest.mark.asyncio
    async def test_exactly_one_concurrent_claim_wins(self, store):
        await store.write("driverQueue/q1", {"driverRFID": "A1", "claimed": False})

        def claim(current):
            return ABORT if current is True else True

        results = await asyncio.gather(
            *[store.transact("driverQueue/q1/claimed", claim) for _ in range(8)]
        )
        assert sum(r.committed for r in results) == 1
        assert all(r.value is True for r in results)

    @pytest.mark.asyncio
    async def test_concurrent_increments_all_land(self, store):
        await store.write("counter", 0)
        await asyncio.gather(*[store.transact("counter", lambda v: v + 1, max_retries=20) for _ in range(5)])
        assert await store.read("counter") == 5


class TestSubscriptions:
    def test_paths_overlap(self):
        assert paths_overlap("bookings", "bookings/b1/status")
        assert paths_overlap("bookings/b1", "bookings")
        assert not paths_overlap("bookings", "bookingIndex/b1")
        assert not paths_overlap("chatMessages/b1", "chatMessages/b2/m1")

    @pytest.mark.asyncio
    async def test_replays_current_value_then_changes(self, store):
        await store.write("bookings/b1/status", "PENDING")
        async with await store.subscribe("bookings/b1") as sub:
            first = await asyncio.wait_for(sub.get(), 1)
            assert first.value == {"status": "PENDING"}

            await store.write("bookings/b1/status", "ACCEPTED")
            second = await asyncio.wait_for(sub.get(), 1)
            assert second.value == {"status": "ACCEPTED"}

    @pytest.mark.asyncio
    async def test_unrelated_change_not_delivered(self, store):
        async with await store.subscribe("chatMessages/b1") as sub:
            await sub.get()
            await store.write("chatMessages/b2/m1", {"message": "hi"})
            await store.write("chatMessages/b1/m1", {"message": "yo"})
            snap = await asyncio.wait_for(sub.get(), 1)
            assert snap.value == {"m1": {"message": "yo"}}

    @pytest.mark.asyncio
    async def test_cancel_releases_handle(self, store):
        sub = await store.subscribe("bookings")
        assert store.subscriptions.active_count == 1
        sub.cancel()
        assert store.subscriptions.active_count == 0
        snapshots = [s async for s in sub]
        assert [s.value for s in snapshots] == [None]

    @pytest.mark.asyncio
    async def test_context_exit_on_error_releases(self, store):
        with pytest.raises(RuntimeError):
            async with await store.subscribe("bookings"):
                raise RuntimeError("consumer failed")
        assert store.subscriptions.active_count == 0

    @pytest.mark.asyncio
    async def test_read_error_emits_cancelled_snapshot(self):
        calls = 0

        async def reader(path):
            nonlocal calls
            calls += 1
            if calls > 1:
                raise StoreError("connection lost")
            return {"b1": {}}

        manager = SubscriptionManager(reader)
        sub = await manager.subscribe("bookings")
        await manager.publish(["bookings/b1"])

        snapshots = [s async for s in sub]
        assert snapshots[0].value == {"b1": {}}
        assert snapshots[-1].cancelled is True
        assert "connection lost" in snapshots[-1].error
        assert manager.active_count == 0

    @pytest.mark.asyncio
    async def test_external_changes_are_delivered(self, store):
        async with await store.subscribe("driverQueue") as sub:
            await sub.get()
            await store.notify_external(["driverQueue/q9"])
            snap = await asyncio.wait_for(sub.get(), 1)
            assert snap.value is None
