"""
Driver location tracking and emergency alerts
=============================================

``update_driver_location`` writes three things in ONE multi-path update:

* ``driverLocations/{driverId}``  the driver's latest fix and flags,
* ``tricycles/{tricycleId}``      ``currentLocation`` and ``isOnline``,
* ``availableDrivers/{driverId}`` present only while the driver is online
  AND available; otherwise the same update deletes it.

Subscribers of ``availableDrivers`` therefore never see a driver listed
whose own location record says offline.

Emergency alerts are appended under ``emergencyAlerts`` and stay open until
an operator resolves them.  Resolution flips ``isResolved`` with a CAS, so
the first resolver is the one recorded.
"""

from __future__ import annotations

import logging
from typing import Optional

from src.domain.clock import now_ms
from src.domain.entities import (
    AlertNotFound,
    AvailableDriver,
    DriverLocation,
    EmergencyAlert,
    GeoPoint,
)
from src.domain.enums import NotificationKind
from src.domain.normalization import driver_location_to_store, emergency_alert_to_store
from src.infrastructure.errors import StoreError
from src.infrastructure.repositories import EmergencyAlertRepository, LocationRepository
from src.infrastructure.tree_store import TreeStore

from .notifications import NotificationEmitter

logger = logging.getLogger(__name__)


def _check_point(latitude: float, longitude: float) -> GeoPoint:
    if not (-90.0 <= latitude <= 90.0 and -180.0 <= longitude <= 180.0):
        raise ValueError(f"Invalid coordinates ({latitude}, {longitude})")
    return GeoPoint(latitude, longitude)


class LocationService:
    def __init__(self, store: TreeStore, notifications: Optional[NotificationEmitter] = None):
        self.store = store
        self.locations = LocationRepository(store)
        self.alerts = EmergencyAlertRepository(store)
        self.notifications = notifications or NotificationEmitter(store)

    # ── driver location ──────────────────────────────────────────────

    async def update_driver_location(
        self,
        driver_id: str,
        tricycle_id: str,
        latitude: float,
        longitude: float,
        is_online: bool,
        is_available: bool,
        current_booking_id: str = "",
    ) -> bool:
        """Returns ``False`` when the store failed; nothing is half-written."""
        if not driver_id.strip() or not tricycle_id.strip():
            raise ValueError("driver_id and tricycle_id are required")
        location = DriverLocation(
            driver_id=driver_id,
            tricycle_id=tricycle_id,
            location=_check_point(latitude, longitude),
            timestamp=now_ms(),
            is_online=is_online,
            is_available=is_available,
            current_booking_id=current_booking_id,
        )

        updates = {
            self.locations.location_path(driver_id): driver_location_to_store(location),
            self.locations.tricycle_path(tricycle_id, "currentLocation"): location.location.to_dict(),
            self.locations.tricycle_path(tricycle_id, "isOnline"): is_online,
        }
        if location.listed_as_available:
            updates[self.locations.available_path(driver_id)] = {
                **location.location.to_dict(),
                "tricycleId": tricycle_id,
                "timestamp": location.timestamp,
            }
        else:
            updates[self.locations.available_path(driver_id)] = None

        try:
            await self.store.update(updates)
        except StoreError as exc:
            logger.warning("Location of driver %s not updated: %s", driver_id, exc)
            return False
        return True

    async def get_location(self, driver_id: str) -> Optional[DriverLocation]:
        return await self.locations.get(driver_id)

    async def available_drivers(self) -> list[AvailableDriver]:
        return await self.locations.available()

    # ── emergency alerts ─────────────────────────────────────────────

    async def create_emergency_alert(
        self,
        user_id: str,
        user_name: str,
        latitude: float,
        longitude: float,
        message: str,
        booking_id: str = "",
    ) -> str:
        """
        Record an alert and return its id.  Raises ``StoreError`` when it
        could not be stored; an alert is never silently dropped.
        """
        alert_id = await self.alerts.new_id()
        alert = EmergencyAlert(
            id=alert_id,
            user_id=user_id,
            user_name=user_name,
            booking_id=booking_id,
            location=_check_point(latitude, longitude),
            message=message,
            timestamp=now_ms(),
        )
        await self.store.write(self.alerts.path(alert_id), emergency_alert_to_store(alert))
        logger.warning("Emergency alert %s from %s (booking %s)", alert_id, user_id, booking_id or "-")
        await self.notifications.emit(
            NotificationKind.EMERGENCY_ALERT,
            alertId=alert_id,
            userId=user_id,
            bookingId=booking_id,
        )
        return alert_id

    async def open_alerts(self) -> list[EmergencyAlert]:
        return [a for a in await self.alerts.list_all() if not a.is_resolved]

    async def resolve_alert(self, alert_id: str, resolved_by: str) -> EmergencyAlert:
        alert = await self.alerts.get(alert_id)
        if alert is None:
            raise AlertNotFound(f"Emergency alert {alert_id} not found")
        if alert.is_resolved:
            return alert

        flag = self.alerts.path(alert_id, "isResolved")
        if not await self.store.compare_and_swap(flag, False, True):
            # resolved by someone else in the meantime
            return await self.alerts.get(alert_id) or alert

        alert.is_resolved = True
        alert.resolved_by = resolved_by
        alert.resolved_at = now_ms()
        await self.store.update(
            {
                self.alerts.path(alert_id, "resolvedBy"): alert.resolved_by,
                self.alerts.path(alert_id, "resolvedAt"): alert.resolved_at,
            }
        )
        logger.info("Emergency alert %s resolved by %s", alert_id, resolved_by)
        return alert
