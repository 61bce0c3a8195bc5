"""
Straight-line trip distance for bookings (Haversine).

The booking's ``distance`` field is informational: it is computed once at
creation from the pickup and drop-off geo points the passenger app sends.
Road distance would need a routing service, which is an external concern.
"""

import math

from .entities import GeoPoint

EARTH_RADIUS_KM = 6_371.0


def haversine_km(
    lat1: float, lng1: float, lat2: float, lng2: float
) -> float:
    """Return the great-circle distance in **km** between two points."""
    lat1_r, lat2_r = math.radians(lat1), math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlng = math.radians(lng2 - lng1)

    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(lat1_r) * math.cos(lat2_r) * math.sin(dlng / 2) ** 2
    )
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))


def booking_distance_km(pickup: GeoPoint, dropoff: GeoPoint) -> float:
    """Distance between two booking points; 0 when either point is unset."""
    if pickup == GeoPoint(0.0, 0.0) or dropoff == GeoPoint(0.0, 0.0):
        return 0.0
    return round(
        haversine_km(pickup.latitude, pickup.longitude, dropoff.latitude, dropoff.longitude),
        3,
    )
