"""
Cross-process change relay over Redis pub/sub.

Each API process keeps its own ``SubscriptionManager``.  After a local
commit the store hands the changed paths to ``RedisChangeRelay.publish``;
every other process receives them and re-reads the affected subscriptions
through ``TreeStore.notify_external``.  Messages carry an origin id so a
process ignores its own echoes.

Message format (JSON): ``{"origin": "<hex>", "paths": ["bookings/abc", ...]}``
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid

import redis.asyncio as aioredis

from .tree_store import TreeStore

logger = logging.getLogger(__name__)


class RedisChangeRelay:
    def __init__(self, client: aioredis.Redis, store: TreeStore, channel: str):
        self.redis = client
        self.store = store
        self.channel = channel
        self.origin = uuid.uuid4().hex
        self._pubsub = None
        self._task: asyncio.Task | None = None

    async def publish(self, paths: list[str]) -> None:
        await self.redis.publish(
            self.channel, json.dumps({"origin": self.origin, "paths": paths})
        )

    async def handle_message(self, data: str) -> None:
        try:
            payload = json.loads(data)
            origin = payload["origin"]
            paths = [str(p) for p in payload["paths"]]
        except (ValueError, KeyError, TypeError):
            logger.warning("Ignoring malformed change message: %r", data)
            return
        if origin == self.origin:
            return
        await self.store.notify_external(paths)

    async def start(self) -> None:
        self.store.add_change_listener(self.publish)
        self._pubsub = self.redis.pubsub()
        await self._pubsub.subscribe(self.channel)
        self._task = asyncio.create_task(self._listen())
        logger.info("Change relay listening on %s", self.channel)

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        if self._pubsub is not None:
            await self._pubsub.unsubscribe(self.channel)
            await self._pubsub.aclose()
        logger.info("Change relay stopped")

    async def _listen(self) -> None:
        assert self._pubsub is not None
        async for message in self._pubsub.listen():
            if message.get("type") != "message":
                continue
            try:
                await self.handle_message(message["data"])
            except Exception:
                logger.exception("Failed to apply relayed change")
