"""
Shared test fixtures.

Uses an in-memory SQLite database (via aiosqlite) so tests run without
Docker / PostgreSQL / Redis.  One connection is shared (``StaticPool``) and
sessions are serialised with an ``asyncio.Lock`` so each store transaction
is isolated the way it would be on PostgreSQL.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncGenerator, Optional
from zoneinfo import ZoneInfo

import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from src.config import settings
from src.domain.entities import Booking, Driver, GeoPoint
from src.domain.normalization import booking_to_store, driver_to_store
from src.infrastructure.database import Base, session_factory_for
from src.infrastructure.models import TreeNodeModel  # noqa: F401  (registers the table)
from src.infrastructure.tree_store import TreeStore, join

TEST_DB_URL = "sqlite+aiosqlite:///:memory:"
TZ = settings.local_timezone


class SerializedSessions:
    """Session factory wrapper: one open session at a time."""

    def __init__(self, factory):
        self._factory = factory
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def __call__(self):
        async with self._lock:
            async with self._factory() as session:
                yield session


# ── Fixtures ──────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def engine():
    """Create the tree table, yield the engine, then drop everything."""
    eng = create_async_engine(TEST_DB_URL, echo=False, poolclass=StaticPool)
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await eng.dispose()


@pytest_asyncio.fixture
async def store(engine) -> AsyncGenerator[TreeStore, None]:
    tree = TreeStore(SerializedSessions(session_factory_for(engine)))
    yield tree
    tree.subscriptions.close_all()


# ── Data helpers ──────────────────────────────────────────────────────


def local_ms(year: int, month: int, day: int, hour: int = 0, minute: int = 0, second: int = 0) -> int:
    """Epoch ms of a wall-clock time in the service timezone."""
    moment = datetime(year, month, day, hour, minute, second, tzinfo=ZoneInfo(TZ))
    return int(moment.timestamp() * 1000)


async def add_driver(
    store: TreeStore,
    driver_id: str,
    rfid: str = "",
    name: str = "",
    toda: str = "",
    phone: str = "",
) -> Driver:
    driver = Driver(
        driver_id=driver_id,
        rfid_uid=rfid,
        driver_name=name or driver_id,
        toda_number=toda,
        phone_number=phone,
    )
    updates = {join("drivers", driver_id): driver_to_store(driver)}
    if rfid:
        updates[join("rfidUIDIndex", rfid)] = driver_id
    await store.update(updates)
    return driver


async def add_contribution(store: TreeStore, driver_id: str, timestamp: int, rfid: str = "") -> str:
    return await store.push_value(
        "contributions",
        {"driverId": driver_id, "rfidUID": rfid, "amount": 5.0, "timestamp": timestamp},
    )


async def add_queue_entry(store: TreeStore, key: str, rfid: str, **fields) -> None:
    entry = {"driverRFID": rfid, "driverName": fields.pop("name", rfid), "status": "waiting"}
    entry.update(fields)
    await store.write(join("driverQueue", key), entry)


async def add_booking(
    store: TreeStore,
    booking_id: str,
    status: str = "PENDING",
    customer_id: str = "cust-1",
    timestamp: int = 1_700_000_000_000,
    **fields,
) -> None:
    booking = Booking(
        id=booking_id,
        customer_id=customer_id,
        pickup_geo_point=GeoPoint(14.76, 121.044),
        dropoff_geo_point=GeoPoint(14.734, 121.057),
        timestamp=timestamp,
        estimated_fare=40.0,
    )
    record = booking_to_store(booking)
    record["status"] = status
    record.update(fields)
    await store.update(
        {
            join("bookings", booking_id): record,
            join("bookingIndex", booking_id): {"status": status, "driverRFID": record["driverRFID"]},
        }
    )


async def queue_keys(store: TreeStore) -> set[str]:
    raw: Optional[dict] = await store.read("driverQueue")
    return set(raw or {})
