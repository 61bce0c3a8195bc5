"""
Pending-Booking Sweeper
=======================

Runs every ``MATCHING_INTERVAL_SECONDS`` (default 20 s).

Bookings are matched immediately on creation and again whenever a driver
joins the queue.  A booking created while the queue was empty would
otherwise stay PENDING until the next join, so this loop retries PENDING
bookings periodically.

Concurrency safety
------------------
* **Redis distributed lock** ensures only one instance runs the sweep at a
  time across multiple API processes.
* Overlapping sweeps would still be safe: every assignment goes through the
  queue matcher's compare-and-swap claim.

Algorithm per cycle
-------------------
1. Fetch all PENDING bookings, oldest first.
2. Try to match each one against the driver queue.
3. Stop at the first "no driver available" outcome; later bookings would
   find the same empty queue.
"""

from __future__ import annotations

import asyncio
import logging

from src.config import settings
from src.domain.results import Matched, MatchError, NotMatched
from src.infrastructure.locks import DistributedLock
from src.infrastructure.redis_client import get_redis
from src.infrastructure.repositories import BookingRepository
from src.infrastructure.tree_store import TreeStore
from src.services.queue_matcher import QueueMatcher

logger = logging.getLogger(__name__)

_task: asyncio.Task | None = None
_stop_event: asyncio.Event | None = None


# ── Public API ────────────────────────────────────────────────────────


async def start_matching_loop(store: TreeStore) -> None:
    global _task, _stop_event
    _stop_event = asyncio.Event()
    _task = asyncio.create_task(_loop(store))
    logger.info(
        "Pending-booking sweeper started (interval=%ds)", settings.matching_interval_seconds
    )


async def stop_matching_loop() -> None:
    if _stop_event:
        _stop_event.set()
    if _task:
        _task.cancel()
        try:
            await _task
        except asyncio.CancelledError:
            pass
    logger.info("Pending-booking sweeper stopped")


# ── Internals ─────────────────────────────────────────────────────────


async def _loop(store: TreeStore) -> None:
    """Periodic loop: run a sweep then sleep."""
    assert _stop_event is not None
    while not _stop_event.is_set():
        try:
            await run_matching_cycle(store)
        except Exception:
            logger.exception("Unhandled error in sweeper cycle")
        # Wait for the interval or until stop is signalled
        try:
            await asyncio.wait_for(
                _stop_event.wait(), timeout=settings.matching_interval_seconds
            )
            break
        except asyncio.TimeoutError:
            pass  # next cycle


async def run_matching_cycle(store: TreeStore) -> int:
    """Execute one sweep.  Returns the number of bookings matched."""
    redis = await get_redis()
    lock = DistributedLock(redis, "pending_sweeper", ttl_seconds=60)

    if not await lock.acquire():
        logger.debug("Lock held by another worker – skipping cycle")
        return 0

    matched = 0
    try:
        pending = await BookingRepository(store).pending_oldest_first()
        matcher = QueueMatcher(store)
        for booking in pending:
            result = await matcher.match_booking_to_first_driver(booking.id)
            if isinstance(result, Matched):
                matched += 1
            elif isinstance(result, NotMatched) and result.reason.no_driver_available:
                break
            elif isinstance(result, MatchError):
                logger.warning("Sweep aborted on %s: %s", booking.id, result.error)
                break
        if matched:
            logger.info("Sweeper cycle: %d bookings matched", matched)
    except Exception:
        logger.exception("Error in sweeper cycle")
    finally:
        await lock.release()

    return matched
