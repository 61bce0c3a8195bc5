"""
Earliest-Arrival Queue Selection
================================

Pure selection step of the queue matcher (no I/O):

1. **Eligibility** -- an entry is eligible while its ``status`` is
   ``"waiting"`` (case-insensitive), its ``driverRFID`` is non-blank and it
   has not been claimed yet.
2. **Ordering**    -- each entry's arrival time is resolved from one of three
   timestamp encodings (see ``resolve_queue_timestamp``).
3. **Selection**   -- the entry with the minimum resolved time wins; ties go
   to the entry seen first, i.e. the store's key order.

Complexity: O(n) in the number of queue entries.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping, Optional

from .entities import QueueEntry
from .enums import QUEUE_WAITING
from .normalization import MalformedRecord, queue_entry_from_store

logger = logging.getLogger(__name__)


def parse_queue(raw_queue: Any, tz_name: str) -> list[QueueEntry]:
    """Parse the ``driverQueue`` node, skipping records that are not mappings."""
    if not isinstance(raw_queue, Mapping):
        return []
    entries: list[QueueEntry] = []
    for key, raw in raw_queue.items():
        try:
            entries.append(queue_entry_from_store(key, raw, tz_name))
        except MalformedRecord as exc:
            logger.warning("Skipping queue entry: %s", exc)
    return entries


def is_eligible(entry: QueueEntry) -> bool:
    return (
        entry.status.strip().lower() == QUEUE_WAITING
        and bool(entry.driver_rfid.strip())
        and not entry.claimed
    )


def eligible_entries(entries: Iterable[QueueEntry]) -> list[QueueEntry]:
    return [e for e in entries if is_eligible(e)]


def select_earliest(entries: Iterable[QueueEntry]) -> Optional[QueueEntry]:
    """Earliest eligible entry, or ``None``.  ``min`` keeps the first of equals."""
    candidates = eligible_entries(entries)
    if not candidates:
        return None
    return min(candidates, key=lambda e: e.resolved_timestamp)


def queue_order(entries: Iterable[QueueEntry]) -> list[QueueEntry]:
    """Entries in arrival order, for queue displays."""
    return sorted(entries, key=lambda e: e.resolved_timestamp)
