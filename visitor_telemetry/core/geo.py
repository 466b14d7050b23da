# ==============================================================================
# Geodesic Helpers
# ==============================================================================
"""
Great-circle distance and proximity ranking.

Used by the backends without a native geospatial index (file, sqlite),
which answer proximity queries with a full scan.
"""

import math
from typing import Iterable

from visitor_telemetry.core.models import LocationFix, NearbyFix

# Mean Earth radius (IUGG), meters
EARTH_RADIUS_M = 6371008.8


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Great-circle distance between two points.

    Args:
        lat1: Latitude of the first point in decimal degrees
        lon1: Longitude of the first point in decimal degrees
        lat2: Latitude of the second point in decimal degrees
        lon2: Longitude of the second point in decimal degrees

    Returns:
        Distance in meters
    """
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(a)))


def rank_by_distance(
    fixes: Iterable[LocationFix],
    longitude: float,
    latitude: float,
    max_distance_m: float,
) -> list[NearbyFix]:
    """
    Keep fixes within max_distance_m of the query point, nearest first.

    Fixes without coordinates are skipped. Ties keep their input order.
    """
    results = []
    for fix in fixes:
        if fix.latitude is None or fix.longitude is None:
            continue
        distance = haversine_m(latitude, longitude, fix.latitude, fix.longitude)
        if distance <= max_distance_m:
            results.append(NearbyFix(fix=fix, distance_m=distance))

    results.sort(key=lambda item: item.distance_m)
    return results
