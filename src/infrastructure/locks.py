"""
Redis-based distributed lock for the pending-booking sweeper.

Several API processes may run the sweeper loop; only the holder of this lock
runs a cycle.  The lock is a throughput guard, not a correctness guard: two
overlapping cycles would still be safe because queue claims go through the
store's compare-and-swap.

SET NX EX to acquire; a Lua script deletes the key only if the stored token
is ours, so an expired-and-reacquired lock is never released by the old
holder.
"""

from __future__ import annotations

import uuid

import redis.asyncio as aioredis

RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class LockNotAcquired(RuntimeError):
    """Raised by ``async with`` when another worker holds the lock."""


class DistributedLock:
    def __init__(
        self, client: aioredis.Redis, name: str, ttl_seconds: int = 30
    ):
        self.redis = client
        self.key = f"toda:lock:{name}"
        self.ttl = ttl_seconds
        self.token = uuid.uuid4().hex

    async def acquire(self) -> bool:
        """Try once; ``True`` if this instance now holds the lock."""
        return bool(
            await self.redis.set(self.key, self.token, nx=True, ex=self.ttl)
        )

    async def release(self) -> bool:
        """``True`` if the key was ours and got deleted."""
        return bool(await self.redis.eval(RELEASE_SCRIPT, 1, self.key, self.token))

    async def __aenter__(self) -> "DistributedLock":
        if not await self.acquire():
            raise LockNotAcquired(f"Could not acquire lock: {self.key}")
        return self

    async def __aexit__(self, *args) -> None:
        await self.release()
