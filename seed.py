"""
Seed script -- populates the tree store with sample data for reviewers.

Run after migrations:
    python seed.py

Creates:
  - 5 sample drivers (4 with RFID cards, 1 awaiting a card)
  - today's contributions for 3 of them (so they are online)
  - 3 queue entries, one per timestamp encoding the hardware has used
  - 4 sample bookings (mix of PENDING, ACCEPTED, COMPLETED)
"""

import asyncio

from src.config import settings
from src.domain.clock import format_local_datetime, local_date, now_ms
from src.domain.entities import Booking, Driver, GeoPoint
from src.domain.enums import BookingStatus
from src.domain.normalization import driver_to_store
from src.infrastructure.database import async_session_factory, engine
from src.infrastructure.repositories import (
    CONTRIBUTIONS,
    DRIVERS,
    DRIVER_QUEUE,
    DriverRepository,
)
from src.infrastructure.tree_store import TreeStore, join
from src.services.bookings import BookingService

# Barangay 177, Caloocan terminal (approx)
TERMINAL_LAT, TERMINAL_LNG = 14.7600, 121.0440

DRIVERS_DATA = [
    {"driver_id": "driver_demo_0001", "name": "Juan Dela Cruz", "rfid": "A1B2C3D4", "toda": "017", "phone": "09171230001"},
    {"driver_id": "driver_demo_0002", "name": "Pedro Santos", "rfid": "B2C3D4E5", "toda": "023", "phone": "09171230002"},
    {"driver_id": "driver_demo_0003", "name": "Maria Reyes", "rfid": "C3D4E5F6", "toda": "031", "phone": "09171230003"},
    {"driver_id": "driver_demo_0004", "name": "Jose Garcia", "rfid": "D4E5F6A7", "toda": "042", "phone": "09171230004"},
    {"driver_id": "driver_demo_0005", "name": "Ana Mendoza", "rfid": "", "toda": "055", "phone": "09171230005"},
]

BOOKINGS_DATA = [
    {"customer": ("cust_001", "Liza Soberano"), "from": "Brgy 177 Terminal", "to": "SM Fairview",
     "pickup": (14.7600, 121.0440), "dropoff": (14.7340, 121.0570), "fare": 45.0},
    {"customer": ("cust_002", "Carlo Aquino"), "from": "Deparo Road", "to": "Camarin Market",
     "pickup": (14.7550, 121.0330), "dropoff": (14.7590, 121.0460), "fare": 30.0},
    {"customer": ("cust_003", "Bea Alonzo"), "from": "Zabarte Road", "to": "Novaliches Bayan",
     "pickup": (14.7430, 121.0410), "dropoff": (14.7290, 121.0370), "fare": 40.0},
    {"customer": ("cust_004", "Paulo Avelino"), "from": "Bagong Silang", "to": "Brgy 177 Terminal",
     "pickup": (14.7730, 121.0470), "dropoff": (14.7600, 121.0440), "fare": 35.0},
]


async def seed():
    store = TreeStore(async_session_factory, write_retries=settings.store_write_retries)
    if await store.exists(DRIVERS):
        print("Store already seeded. Skipping.")
        return

    now = now_ms()
    tz = settings.local_timezone
    drivers = DriverRepository(store)

    # ── Drivers + RFID index ──────────────────────────────────────────
    updates = {}
    for d in DRIVERS_DATA:
        driver = Driver(
            driver_id=d["driver_id"],
            rfid_uid=d["rfid"],
            driver_name=d["name"],
            toda_number=d["toda"],
            phone_number=d["phone"],
            needs_rfid_assignment=not d["rfid"],
            registration_date=local_date(tz, now),
        )
        updates[drivers.path(driver.driver_id)] = driver_to_store(driver)
        if driver.rfid_uid:
            updates[drivers.rfid_index_path(driver.rfid_uid)] = driver.driver_id
    await store.update(updates)
    print(f"  Created {len(DRIVERS_DATA)} drivers")

    # ── Contributions (first three drivers are online today) ──────────
    updates = {}
    for d in DRIVERS_DATA[:3]:
        key = await store.push(CONTRIBUTIONS)
        updates[join(CONTRIBUTIONS, key)] = {
            "driverId": d["driver_id"],
            "rfidUID": d["rfid"],
            "amount": 5.0,
            "timestamp": now,
            "date": local_date(tz, now),
            "deviceId": "terminal-01",
        }
        updates[drivers.path(d["driver_id"], "canReceiveBookings")] = True
        updates[drivers.path(d["driver_id"], "contributionToday")] = True
    await store.update(updates)
    print("  Recorded 3 contributions")

    # ── Queue (one entry per timestamp encoding) ──────────────────────
    d1, d2, d3 = DRIVERS_DATA[:3]
    await store.update(
        {
            join(DRIVER_QUEUE, await store.push(DRIVER_QUEUE)): {
                "driverRFID": d1["rfid"], "driverName": d1["name"], "todaNumber": d1["toda"],
                "status": "waiting", "claimed": False, "queueTime": str((now - 600_000) // 1000),
            },
            join(DRIVER_QUEUE, await store.push(DRIVER_QUEUE)): {
                "driverRFID": d2["rfid"], "driverName": d2["name"], "todaNumber": d2["toda"],
                "status": "waiting", "timestamp": format_local_datetime(now - 300_000, tz),
            },
            join(DRIVER_QUEUE, await store.push(DRIVER_QUEUE)): {
                "driverRFID": d3["rfid"], "driverName": d3["name"], "todaNumber": d3["toda"],
                "status": "waiting", "claimed": False, "timestamp": now - 60_000,
            },
        }
    )
    print("  Queued 3 drivers")

    # ── Bookings ──────────────────────────────────────────────────────
    service = BookingService(store)
    ids = []
    for b in BOOKINGS_DATA:
        ids.append(
            await service.create_booking(
                Booking(
                    customer_id=b["customer"][0],
                    customer_name=b["customer"][1],
                    pickup_location=b["from"],
                    destination=b["to"],
                    pickup_geo_point=GeoPoint(*b["pickup"]),
                    dropoff_geo_point=GeoPoint(*b["dropoff"]),
                    estimated_fare=b["fare"],
                )
            )
        )
    # one trip already done today by the fourth driver, one accepted
    d4 = DRIVERS_DATA[3]
    await service.update_booking_status(ids[0], BookingStatus.ACCEPTED, d4["driver_id"])
    await service.update_booking_status(ids[0], BookingStatus.IN_PROGRESS)
    await service.update_booking_status(ids[0], BookingStatus.COMPLETED)
    await service.update_booking_status(ids[1], BookingStatus.ACCEPTED, d4["driver_id"])
    print(f"  Created {len(ids)} bookings (2 PENDING)")

    print("\nSeed complete!")


async def main():
    print("Seeding store...")
    await seed()
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
