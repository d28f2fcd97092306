"""Builders for route sessions and stops used across tests."""

from datetime import date
from typing import Any

from schoolrun.db.repositories import SessionRepository
from schoolrun.db.transaction import unit_of_work
from schoolrun.routes.session import RouteSession, RouteStop, SessionStatus

# Reference point in São Paulo; offsets are applied northwards in metres.
BASE_LAT = -23.5505
BASE_LON = -46.6333
METERS_PER_DEGREE_LAT = 111_195.0


def north_of(meters: float, lat: float = BASE_LAT, lon: float = BASE_LON) -> tuple[float, float]:
    """Point roughly `meters` north of (lat, lon)."""
    return (lat + meters / METERS_PER_DEGREE_LAT, lon)


def make_stop(stop_id: str, order: int, meters_north: float, **overrides: Any) -> RouteStop:
    lat, lon = north_of(meters_north)
    defaults: dict[str, Any] = {
        "id": stop_id,
        "order": order,
        "lat": lat,
        "lon": lon,
        "geofence_radius_m": 50.0,
        "recipient_ids": [f"parent-{stop_id}"],
        "student_id": f"student-{stop_id}",
    }
    defaults.update(overrides)
    return RouteStop(**defaults)


def make_session(
    session_id: str,
    driver_id: str,
    service_date: date,
    stops: list[RouteStop] | None = None,
    **overrides: Any,
) -> RouteSession:
    defaults: dict[str, Any] = {
        "id": session_id,
        "driver_id": driver_id,
        "service_date": service_date,
        "status": SessionStatus.SCHEDULED,
        "school_id": "school-1",
        "origin": (BASE_LAT, BASE_LON),
        "destination": north_of(5_000),
        "stops": stops if stops is not None else [],
    }
    defaults.update(overrides)
    return RouteSession(**defaults)


def persist_session(session_maker: Any, route_session: RouteSession) -> RouteSession:
    """Write a session directly through the repository, bypassing the service."""

    with unit_of_work(session_maker) as session:
        SessionRepository(session).create(route_session)
    return route_session
