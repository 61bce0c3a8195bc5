"""FastAPI dependency injection helpers."""

from __future__ import annotations

from typing import Optional

from fastapi import Depends

from src.config import settings
from src.infrastructure.database import async_session_factory
from src.infrastructure.tree_store import TreeStore
from src.services.bookings import BookingService
from src.services.chat import ChatService
from src.services.drivers import DriverLedger
from src.services.feeds import BookingFeed
from src.services.locations import LocationService
from src.services.queue_matcher import QueueMatcher

_store: Optional[TreeStore] = None


def get_store() -> TreeStore:
    """Process-wide store; its subscription registry is shared by all requests."""
    global _store
    if _store is None:
        _store = TreeStore(async_session_factory, write_retries=settings.store_write_retries)
    return _store


def get_booking_service(store: TreeStore = Depends(get_store)) -> BookingService:
    return BookingService(store)


def get_matcher(store: TreeStore = Depends(get_store)) -> QueueMatcher:
    return QueueMatcher(store)


def get_ledger(store: TreeStore = Depends(get_store)) -> DriverLedger:
    return DriverLedger(store)


def get_chat(store: TreeStore = Depends(get_store)) -> ChatService:
    return ChatService(store)


def get_feed(store: TreeStore = Depends(get_store)) -> BookingFeed:
    return BookingFeed(store)


def get_locations(store: TreeStore = Depends(get_store)) -> LocationService:
    return LocationService(store)
