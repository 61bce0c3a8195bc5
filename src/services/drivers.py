"""
Driver availability, contributions and registration
===================================================

Availability gate
-----------------
A driver may receive PENDING bookings only when

* an RFID card is assigned (``rfidUID`` non-blank), and
* a contribution exists with ``timestamp >= local midnight`` of today.

"Today" is computed in ``settings.local_timezone``, never in UTC, so a coin
inserted at 07:00 Manila time counts for the Manila day.

Coin insertion (hardware)
-------------------------
``record_coin_insertion`` resolves the RFID through ``rfidUIDIndex`` and then
writes, in one update, the contribution, the driver's availability flags and
a ``driverStatusEvents`` entry.

Registration
------------
Applications land in ``driverApplications`` as PENDING.  Approval creates
the driver record with ``needsRfidAssignment`` set; an admin links a card
later with ``assign_rfid``.  A lost card is reported with
``report_missing_rfid``, which unlinks it and takes the driver offline.
Both card operations append to ``rfidChangeHistory/{driverId}``.
"""

from __future__ import annotations

import logging
from typing import Optional

from src.config import settings
from src.domain.clock import local_date, now_ms, start_of_today_ms
from src.domain.entities import (
    Driver,
    DriverNotFound,
    DriverTodayStats,
    RfidAlreadyAssigned,
)
from src.domain.enums import BookingStatus, RatedBy
from src.domain.normalization import decode_str, driver_to_store
from src.domain.results import (
    RegistrationError,
    RegistrationPending,
    RegistrationResult,
    RegistrationSuccess,
)
from src.infrastructure.errors import StoreError
from src.infrastructure.repositories import (
    CONTRIBUTIONS,
    DRIVER_APPLICATIONS,
    DRIVER_STATUS_EVENTS,
    RFID_HISTORY,
    BookingRepository,
    ContributionRepository,
    DriverRepository,
    QueueRepository,
    RatingRepository,
)
from src.infrastructure.tree_store import TreeStore, join

logger = logging.getLogger(__name__)

DAY_MS = 24 * 60 * 60 * 1000
MIN_TODA_NUMBER_LENGTH = 3


class DriverLedger:
    def __init__(self, store: TreeStore, tz_name: str = settings.local_timezone):
        self.store = store
        self.tz_name = tz_name
        self.drivers = DriverRepository(store)
        self.contributions = ContributionRepository(store)
        self.bookings = BookingRepository(store)
        self.ratings = RatingRepository(store)
        self.queue = QueueRepository(store, tz_name)

    # ── lookup ───────────────────────────────────────────────────────

    async def get_driver(self, driver_id: str) -> Driver:
        driver = await self.drivers.get(driver_id)
        if driver is None:
            raise DriverNotFound(f"Driver {driver_id} not found")
        return driver

    async def list_drivers(self) -> list[Driver]:
        return sorted(await self.drivers.list_all(), key=lambda d: d.driver_name)

    # ── availability gate ────────────────────────────────────────────

    async def get_driver_contribution_status(self, driver_id: str, now: Optional[int] = None) -> bool:
        """True if the driver has contributed since local midnight."""
        today = start_of_today_ms(self.tz_name, now)
        return any(c.timestamp >= today for c in await self.contributions.for_driver(driver_id))

    async def can_receive_bookings(self, driver_id: str, now: Optional[int] = None) -> bool:
        driver = await self.drivers.get(driver_id)
        if driver is None or not driver.is_active or not driver.has_rfid:
            return False
        return await self.get_driver_contribution_status(driver_id, now)

    async def record_coin_insertion(self, rfid: str, amount: float, device_id: str = "") -> bool:
        """Hardware reports a coin; returns ``False`` for unknown cards or store failures."""
        try:
            driver = await self.drivers.get_by_rfid(rfid)
            if driver is None:
                logger.warning("Coin inserted with unregistered RFID %s on %s", rfid, device_id)
                return False

            inserted_at = now_ms()
            contribution_key = await self.contributions.new_key()
            event_key = await self.store.push(DRIVER_STATUS_EVENTS)
            await self.store.update(
                {
                    join(CONTRIBUTIONS, contribution_key): {
                        "driverId": driver.driver_id,
                        "rfidUID": driver.rfid_uid,
                        "amount": amount,
                        "timestamp": inserted_at,
                        "date": local_date(self.tz_name, inserted_at),
                        "deviceId": device_id,
                    },
                    self.drivers.path(driver.driver_id, "canReceiveBookings"): True,
                    self.drivers.path(driver.driver_id, "contributionToday"): True,
                    join(DRIVER_STATUS_EVENTS, event_key): {
                        "driverId": driver.driver_id,
                        "rfidUID": driver.rfid_uid,
                        "status": "ONLINE",
                        "reason": "CONTRIBUTION",
                        "amount": amount,
                        "deviceId": device_id,
                        "timestamp": inserted_at,
                    },
                }
            )
        except StoreError as exc:
            logger.warning("Coin insertion for %s not recorded: %s", rfid, exc)
            return False

        logger.info("Driver %s contributed %.2f via %s", driver.driver_id, amount, device_id)
        return True

    # ── daily stats ──────────────────────────────────────────────────

    async def get_driver_today_stats(self, driver_id: str, now: Optional[int] = None) -> DriverTodayStats:
        """
        Trips, earnings and average customer rating since local midnight.

        Trips are COMPLETED bookings matched by driverId OR RFID (older
        bookings carry only the RFID), timed by ``completionTime`` falling
        back to ``timestamp``, and valued at ``actualFare`` falling back to
        ``estimatedFare``.
        """
        driver = await self.drivers.get(driver_id)
        rfid = driver.rfid_uid if driver else ""
        start = start_of_today_ms(self.tz_name, now)
        end = start + DAY_MS

        trips = [
            b
            for b in await self.bookings.list_all()
            if b.status == BookingStatus.COMPLETED
            and b.belongs_to_driver(driver_id, rfid)
            and start <= b.effective_time < end
        ]
        stars = [
            r.stars
            for r in await self.ratings.list_all()
            if (r.driver_id == driver_id or (rfid and r.driver_rfid == rfid))
            and r.rated_by == RatedBy.CUSTOMER
            and r.stars > 0
            and start <= r.timestamp < end
        ]
        average = sum(stars) / len(stars) if stars else DriverTodayStats.NO_RATING
        return DriverTodayStats(
            trip_count=len(trips),
            earnings=round(sum(b.effective_fare for b in trips), 2),
            average_rating=average,
        )

    # ── registration ─────────────────────────────────────────────────

    async def submit_application(
        self,
        applicant_name: str,
        phone_number: str,
        toda_number: str,
        address: str = "",
        license_number: str = "",
    ) -> RegistrationResult:
        if not applicant_name.strip():
            return RegistrationError("Applicant name is required")
        if len(toda_number.strip()) < MIN_TODA_NUMBER_LENGTH:
            return RegistrationError("Invalid TODA membership number")
        try:
            if any(d.phone_number == phone_number for d in await self.drivers.list_all()):
                return RegistrationError("Phone number already registered")
            application_id = await self.store.push_value(
                DRIVER_APPLICATIONS,
                {
                    "applicantName": applicant_name.strip(),
                    "phoneNumber": phone_number,
                    "todaNumber": toda_number.strip(),
                    "address": address,
                    "licenseNumber": license_number,
                    "status": "PENDING",
                    "applicationDate": now_ms(),
                },
            )
        except StoreError as exc:
            return RegistrationError(f"Registration failed: {exc}")
        logger.info("Driver application %s submitted", application_id)
        return RegistrationPending(
            application_id=application_id,
            message="Application submitted and awaiting approval",
        )

    async def approve_application(self, application_id: str, approved_by: str) -> RegistrationResult:
        try:
            application = await self.store.read(join(DRIVER_APPLICATIONS, application_id))
            if not isinstance(application, dict):
                return RegistrationError("Application not found")
            if decode_str(application.get("status")) != "PENDING":
                return RegistrationError("Application was already processed")

            phone = decode_str(application.get("phoneNumber"))
            approved_at = now_ms()
            driver = Driver(
                driver_id=f"driver_{approved_at}_{phone[-4:]}",
                driver_name=decode_str(application.get("applicantName")),
                toda_number=decode_str(application.get("todaNumber")),
                phone_number=phone,
                is_active=True,
                needs_rfid_assignment=True,
                registration_date=local_date(self.tz_name, approved_at),
            )
            await self.store.update(
                {
                    self.drivers.path(driver.driver_id): driver_to_store(driver),
                    join(DRIVER_APPLICATIONS, application_id, "status"): "APPROVED",
                    join(DRIVER_APPLICATIONS, application_id, "approvedBy"): approved_by,
                    join(DRIVER_APPLICATIONS, application_id, "approvalDate"): approved_at,
                    join(DRIVER_APPLICATIONS, application_id, "driverId"): driver.driver_id,
                }
            )
        except StoreError as exc:
            return RegistrationError(f"Approval failed: {exc}")
        logger.info("Application %s approved as %s", application_id, driver.driver_id)
        return RegistrationSuccess(driver=driver, message="Driver approved; RFID assignment pending")

    # ── RFID card management ─────────────────────────────────────────

    async def assign_rfid(self, driver_id: str, rfid: str, changed_by: str = "admin") -> Driver:
        rfid = rfid.strip()
        if not rfid:
            raise ValueError("RFID must not be blank")
        driver = await self.get_driver(driver_id)
        owner = await self.drivers.driver_id_for_rfid(rfid)
        if owner and owner != driver_id:
            raise RfidAlreadyAssigned(f"RFID {rfid} already belongs to {owner}")

        updates = {
            self.drivers.path(driver_id, "rfidUID"): rfid,
            self.drivers.path(driver_id, "needsRfidAssignment"): False,
            self.drivers.rfid_index_path(rfid): driver_id,
        }
        if driver.has_rfid and driver.rfid_uid != rfid:
            updates[self.drivers.rfid_index_path(driver.rfid_uid)] = None
        updates.update(await self._history_entry(driver, "ASSIGNED", rfid, changed_by))
        await self.store.update(updates)

        logger.info("RFID %s assigned to driver %s", rfid, driver_id)
        driver.rfid_uid, driver.needs_rfid_assignment = rfid, False
        return driver

    async def report_missing_rfid(self, driver_id: str, reason: str = "", changed_by: str = "driver") -> Driver:
        """Unlink the driver's card, drop its queue entries and take the driver offline."""
        driver = await self.get_driver(driver_id)
        updates = {
            self.drivers.path(driver_id, "rfidUID"): "",
            self.drivers.path(driver_id, "needsRfidAssignment"): True,
            self.drivers.path(driver_id, "canReceiveBookings"): False,
        }
        if driver.has_rfid:
            updates[self.drivers.rfid_index_path(driver.rfid_uid)] = None
            for key in await self.queue.keys_for_rfid(driver.rfid_uid):
                updates[self.queue.path(key)] = None
        updates.update(await self._history_entry(driver, "REPORTED_MISSING", "", changed_by, reason))
        await self.store.update(updates)

        logger.warning("RFID %s of driver %s reported missing", driver.rfid_uid or "-", driver_id)
        driver.rfid_uid, driver.needs_rfid_assignment, driver.can_receive_bookings = "", True, False
        return driver

    async def rfid_history(self, driver_id: str) -> list[dict]:
        raw = await self.store.read(join(RFID_HISTORY, driver_id))
        if not isinstance(raw, dict):
            return []
        entries = [v for v in raw.values() if isinstance(v, dict)]
        return sorted(entries, key=lambda e: e.get("timestamp", 0))

    async def _history_entry(
        self, driver: Driver, action: str, new_rfid: str, changed_by: str, reason: str = ""
    ) -> dict:
        key = await self.store.push(join(RFID_HISTORY, driver.driver_id))
        return {
            join(RFID_HISTORY, driver.driver_id, key): {
                "action": action,
                "oldRfidUID": driver.rfid_uid,
                "newRfidUID": new_rfid,
                "reason": reason,
                "changedBy": changed_by,
                "timestamp": now_ms(),
            }
        }
