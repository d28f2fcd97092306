"""Great-circle distances between driver positions, stops and depots."""

from collections.abc import Sequence
from math import asin, cos, isfinite, radians, sin, sqrt

EARTH_RADIUS_M = 6_371_000

LatLon = tuple[float, float]


def haversine_distance_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Distance in meters between two points given in degrees."""
    phi1, phi2 = radians(lat1), radians(lat2)
    half_dphi = (phi2 - phi1) / 2
    half_dlambda = radians(lon2 - lon1) / 2

    h = sin(half_dphi) ** 2 + cos(phi1) * cos(phi2) * sin(half_dlambda) ** 2
    # Rounding can push h a hair past 1 for antipodal points.
    return 2 * EARTH_RADIUS_M * asin(sqrt(min(1.0, h)))


def haversine_distance_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    return haversine_distance_m(lat1, lon1, lat2, lon2) / 1000.0


def is_valid_coordinate(lat: float, lon: float) -> bool:
    """True for finite lat in [-90, 90] and lon in [-180, 180]."""
    if not (isfinite(lat) and isfinite(lon)):
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0


def leg_distances_m(path: Sequence[LatLon]) -> list[float]:
    """Distances between consecutive points of a path.

    A path of n points has n - 1 legs; fewer than two points have none.
    """
    return [
        haversine_distance_m(a[0], a[1], b[0], b[1]) for a, b in zip(path, path[1:])
    ]
