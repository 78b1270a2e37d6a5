"""Great-circle distance and geofence checks.

Distances use the haversine formula on a mean Earth radius. Inputs are decimal
degrees and are not range-checked; any finite input gives a finite result.
"""

from math import asin, cos, radians, sin, sqrt
from typing import NamedTuple, Optional

EARTH_RADIUS_M = 6371000.0


def haversine(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Return the distance in meters between two lat/lon points."""
    d_lat = radians(lat2 - lat1)
    d_lon = radians(lon2 - lon1)
    a = sin(d_lat / 2) ** 2 + cos(radians(lat1)) * cos(radians(lat2)) * sin(d_lon / 2) ** 2
    # rounding can push a slightly outside [0, 1] near antipodes
    a = min(1.0, max(0.0, a))
    return 2 * EARTH_RADIUS_M * asin(sqrt(a))


class GeofenceCheck(NamedTuple):
    distance: Optional[float]
    radius: float
    valid: bool


def check_geofence(lat: float, lon: float, anchor_lat: float, anchor_lon: float, radius: float) -> GeofenceCheck:
    distance = haversine(lat, lon, anchor_lat, anchor_lon)
    return GeofenceCheck(distance=distance, radius=radius, valid=distance <= radius)
