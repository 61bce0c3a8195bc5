"""
Subscription manager for tree-store change notifications.

Each ``Subscription`` is a cancellable handle on one store path:

* the current value is delivered immediately on subscribe,
* after every committed write at, above or below the path a fresh snapshot
  of the path is delivered,
* if re-reading the path fails, a terminal snapshot with ``cancelled=True``
  is delivered and the subscription ends; consumers treat the data as stale.

Handles are async context managers, so registration and de-registration
pair up even when the consumer raises::

    async with await store.subscribe("bookings") as sub:
        async for snapshot in sub:
            ...
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Optional

from .errors import StoreError

logger = logging.getLogger(__name__)

Reader = Callable[[str], Awaitable[Any]]

_CLOSED = object()


@dataclass(frozen=True)
class Snapshot:
    path: str
    value: Any
    cancelled: bool = False
    error: Optional[str] = None


def paths_overlap(watched: str, changed: str) -> bool:
    """True if a change at *changed* can alter the value at *watched*."""
    if not watched or not changed or watched == changed:
        return True
    return changed.startswith(watched + "/") or watched.startswith(changed + "/")


class Subscription:
    def __init__(self, manager: "SubscriptionManager", sub_id: int, path: str, maxsize: int):
        self.id = sub_id
        self.path = path
        self._manager = manager
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._refresh_lock = asyncio.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def get(self) -> Snapshot:
        """Next snapshot; raises ``StopAsyncIteration`` once the handle is closed."""
        return await self.__anext__()

    def cancel(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._manager._unregister(self)
        self._put(_CLOSED)

    # internal ------------------------------------------------------------

    def _put(self, item: Any) -> None:
        # keep the newest snapshots when a slow consumer falls behind
        while True:
            try:
                self._queue.put_nowait(item)
                return
            except asyncio.QueueFull:
                self._queue.get_nowait()

    def _deliver(self, snapshot: Snapshot) -> None:
        if not self._closed:
            self._put(snapshot)

    def _terminate(self, error: str) -> None:
        if self._closed:
            return
        self._put(Snapshot(self.path, None, cancelled=True, error=error))
        self.cancel()

    # async iteration / context management -------------------------------

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Snapshot:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *args) -> None:
        self.cancel()


class SubscriptionManager:
    """Explicit registry of live subscriptions; no process-wide globals."""

    def __init__(self, reader: Reader, maxsize: int = 64):
        self._reader = reader
        self._maxsize = maxsize
        self._ids = itertools.count(1)
        self._subscriptions: dict[int, Subscription] = {}

    @property
    def active_count(self) -> int:
        return len(self._subscriptions)

    async def subscribe(self, path: str) -> Subscription:
        sub = Subscription(self, next(self._ids), path, self._maxsize)
        self._subscriptions[sub.id] = sub
        await self._refresh(sub)
        return sub

    async def publish(self, changed_paths: Iterable[str]) -> None:
        """Re-read and deliver to every subscription touched by *changed_paths*."""
        changed = list(changed_paths)
        if not changed:
            return
        for sub in list(self._subscriptions.values()):
            if any(paths_overlap(sub.path, c) for c in changed):
                await self._refresh(sub)

    def close_all(self) -> None:
        for sub in list(self._subscriptions.values()):
            sub.cancel()

    def _unregister(self, sub: Subscription) -> None:
        self._subscriptions.pop(sub.id, None)

    async def _refresh(self, sub: Subscription) -> None:
        async with sub._refresh_lock:
            if sub.closed:
                return
            try:
                value = await self._reader(sub.path)
            except StoreError as exc:
                logger.warning("Subscription on %r cancelled: %s", sub.path, exc)
                sub._terminate(str(exc))
                return
            sub._deliver(Snapshot(sub.path, value))
