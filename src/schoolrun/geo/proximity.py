"""Brute-force proximity search over small position sets."""

from collections.abc import Iterable
from dataclasses import dataclass

from .distance import haversine_distance_km


@dataclass(frozen=True)
class GeoPoint:
    lat: float
    lon: float


@dataclass(frozen=True)
class PositionEntry:
    id: str
    lat: float
    lon: float


@dataclass(frozen=True)
class NearbyEntry:
    id: str
    distance_km: float


def nearby_from(
    positions: Iterable[PositionEntry],
    origin: GeoPoint,
    radius_km: float,
) -> list[NearbyEntry]:
    """Return positions within radius_km of origin, nearest first.

    Entries exactly on the radius are included. Equal distances are
    ordered by id so results are deterministic.
    """
    nearby: list[NearbyEntry] = []
    for position in positions:
        distance = haversine_distance_km(origin.lat, origin.lon, position.lat, position.lon)
        if distance <= radius_km:
            nearby.append(NearbyEntry(id=position.id, distance_km=distance))

    nearby.sort(key=lambda entry: (entry.distance_km, entry.id))
    return nearby
