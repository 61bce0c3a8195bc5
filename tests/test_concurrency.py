"""
Concurrency safety tests.

Demonstrates:
1. Distributed lock prevents simultaneous sweeper cycles.
2. The change relay forwards other processes' writes and ignores its own.
3. The sweeper matches the oldest PENDING bookings and stops once the queue
   runs dry.
"""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, patch

import pytest

from src.infrastructure.change_relay import RedisChangeRelay
from src.infrastructure.locks import DistributedLock
from src.workers.matcher import run_matching_cycle
from tests.conftest import add_booking, add_queue_entry, queue_keys


class TestDistributedLock:
    """Tests the Redis distributed lock logic (mocked Redis)."""

    @pytest.mark.asyncio
    async def test_acquire_succeeds(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=True)

        lock = DistributedLock(mock_redis, "test-key", ttl_seconds=10)
        assert await lock.acquire() is True
        mock_redis.set.assert_awaited_once_with("toda:lock:test-key", lock.token, nx=True, ex=10)

    @pytest.mark.asyncio
    async def test_acquire_fails_if_held(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=False)

        lock = DistributedLock(mock_redis, "test-key", ttl_seconds=10)
        assert await lock.acquire() is False

    @pytest.mark.asyncio
    async def test_release_only_own_token(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=True)
        mock_redis.eval = AsyncMock(return_value=0)

        lock = DistributedLock(mock_redis, "test-key", ttl_seconds=10)
        await lock.acquire()

        assert await lock.release() is False
        args = mock_redis.eval.await_args.args
        assert args[1:] == (1, "toda:lock:test-key", lock.token)

    @pytest.mark.asyncio
    async def test_context_manager_acquire_fail_raises(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=False)

        lock = DistributedLock(mock_redis, "test-key", ttl_seconds=10)
        with pytest.raises(RuntimeError, match="Could not acquire lock"):
            async with lock:
                pass


class TestChangeRelay:
    def _relay(self, store=None):
        return RedisChangeRelay(AsyncMock(), store or AsyncMock(), "toda:changes")

    @pytest.mark.asyncio
    async def test_forwards_foreign_changes(self):
        relay = self._relay()
        await relay.handle_message(json.dumps({"origin": "other", "paths": ["bookings/b1"]}))
        relay.store.notify_external.assert_awaited_once_with(["bookings/b1"])

    @pytest.mark.asyncio
    async def test_ignores_own_echo(self):
        relay = self._relay()
        await relay.handle_message(json.dumps({"origin": relay.origin, "paths": ["bookings/b1"]}))
        relay.store.notify_external.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("data", ["not json", "{}", '{"origin": "x"}', "[1, 2]"])
    async def test_ignores_malformed(self, data):
        relay = self._relay()
        await relay.handle_message(data)
        relay.store.notify_external.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_local_write_is_published(self, store):
        relay = self._relay(store)
        store.add_change_listener(relay.publish)

        await store.write("driverQueue/q1", {"driverRFID": "A1"})

        channel, body = relay.redis.publish.await_args.args
        assert channel == "toda:changes"
        assert json.loads(body) == {"origin": relay.origin, "paths": ["driverQueue/q1"]}


def _redis(lock_free: bool = True) -> AsyncMock:
    client = AsyncMock()
    client.set = AsyncMock(return_value=lock_free)
    client.eval = AsyncMock(return_value=1)
    return client


class TestPendingSweeper:
    @pytest.mark.asyncio
    async def test_matches_oldest_and_stops_when_queue_empty(self, store):
        await add_booking(store, "late", timestamp=1_700_000_300_000)
        await add_booking(store, "early", timestamp=1_700_000_100_000)
        await add_booking(store, "done", status="COMPLETED", timestamp=1_700_000_000_000)
        await add_queue_entry(store, "q1", "D1", queueTime="1700000000")
        client = _redis()

        with patch("src.workers.matcher.get_redis", AsyncMock(return_value=client)):
            matched = await run_matching_cycle(store)

        assert matched == 1
        assert await store.read("bookings/early/status") == "ACCEPTED"
        assert await store.read("bookings/late/status") == "PENDING"
        assert await queue_keys(store) == set()
        client.eval.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_skips_cycle_when_lock_held(self, store):
        await add_booking(store, "B1")
        await add_queue_entry(store, "q1", "D1", queueTime="1700000000")

        with patch("src.workers.matcher.get_redis", AsyncMock(return_value=_redis(lock_free=False))):
            assert await run_matching_cycle(store) == 0

        assert await store.read("bookings/B1/status") == "PENDING"
        assert await queue_keys(store) == {"q1"}
