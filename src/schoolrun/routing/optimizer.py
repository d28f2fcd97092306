"""Stop-sequence optimizer: nearest-neighbour construction plus bounded 2-opt.

Distances are great-circle distances; durations assume a constant average
speed since no live traffic data is consulted.
"""

import logging
from dataclasses import dataclass

import polyline
from pydantic import BaseModel, Field

from ..geo.distance import haversine_distance_m, is_valid_coordinate, leg_distances_m

logger = logging.getLogger(__name__)

START_ID = "start"
END_ID = "end"

# Reversals must beat the current path by more than this to count as improvements
_IMPROVEMENT_EPSILON_M = 1e-6


@dataclass(frozen=True)
class StopInput:
    id: str
    lat: float
    lon: float


class Segment(BaseModel):
    from_id: str
    to_id: str
    distance_m: float
    duration_s: float


class OptimizedRoute(BaseModel):
    order: list[str] = Field(default_factory=list)
    total_distance_m: float = 0.0
    total_duration_s: float = 0.0
    segments: list[Segment] = Field(default_factory=list)
    polyline: str | None = None
    feasible: bool = True
    invalid_stop_ids: list[str] = Field(default_factory=list)


class RouteOptimizer:
    """Orders stops between a fixed start and end point.

    Args:
        average_speed_kmh: Speed used to turn segment distance into duration.
        max_iterations: Upper bound on 2-opt improvement passes over the route.
    """

    def __init__(self, average_speed_kmh: float = 36.0, max_iterations: int = 1000):
        if average_speed_kmh <= 0:
            raise ValueError("average_speed_kmh must be positive")
        self._speed_mps = average_speed_kmh * 1000 / 3600
        self._max_iterations = max_iterations

    def optimize(
        self,
        start: tuple[float, float],
        end: tuple[float, float],
        stops: list[StopInput],
    ) -> OptimizedRoute:
        invalid = [stop.id for stop in stops if not is_valid_coordinate(stop.lat, stop.lon)]
        if not is_valid_coordinate(*start):
            invalid.insert(0, START_ID)
        if not is_valid_coordinate(*end):
            invalid.append(END_ID)
        if invalid:
            logger.warning(f"Route infeasible, invalid coordinates for: {invalid}")
            return OptimizedRoute(feasible=False, invalid_stop_ids=invalid)

        ordered = self._nearest_neighbour(start, stops)
        if len(ordered) > 1 and self._max_iterations > 0:
            ordered = self._two_opt(start, end, ordered)

        return self._build_result(start, end, ordered)

    def _nearest_neighbour(
        self, start: tuple[float, float], stops: list[StopInput]
    ) -> list[StopInput]:
        remaining = sorted(stops, key=lambda stop: stop.id)
        ordered: list[StopInput] = []
        current = start

        while remaining:
            nearest = min(
                remaining,
                key=lambda stop: (
                    haversine_distance_m(current[0], current[1], stop.lat, stop.lon),
                    stop.id,
                ),
            )
            ordered.append(nearest)
            remaining.remove(nearest)
            current = (nearest.lat, nearest.lon)

        return ordered

    def _two_opt(
        self,
        start: tuple[float, float],
        end: tuple[float, float],
        ordered: list[StopInput],
    ) -> list[StopInput]:
        # Start and end stay fixed; only the interior stops are reversed.
        path = [start, *[(stop.lat, stop.lon) for stop in ordered], end]
        route = list(ordered)
        last = len(path) - 2

        def dist(a: int, b: int) -> float:
            return haversine_distance_m(path[a][0], path[a][1], path[b][0], path[b][1])

        for _ in range(self._max_iterations):
            improved = False
            for i in range(1, last):
                for k in range(i + 1, last + 1):
                    delta = dist(i - 1, k) + dist(i, k + 1) - dist(i - 1, i) - dist(k, k + 1)
                    if delta < -_IMPROVEMENT_EPSILON_M:
                        path[i : k + 1] = reversed(path[i : k + 1])
                        route[i - 1 : k] = reversed(route[i - 1 : k])
                        improved = True
            if not improved:
                break

        return route

    def _build_result(
        self,
        start: tuple[float, float],
        end: tuple[float, float],
        ordered: list[StopInput],
    ) -> OptimizedRoute:
        waypoints = [
            (START_ID, start),
            *[(stop.id, (stop.lat, stop.lon)) for stop in ordered],
            (END_ID, end),
        ]
        legs = leg_distances_m([point for _, point in waypoints])

        segments = [
            Segment(
                from_id=from_id,
                to_id=to_id,
                distance_m=distance,
                duration_s=distance / self._speed_mps,
            )
            for (from_id, _), (to_id, _), distance in zip(waypoints, waypoints[1:], legs)
        ]

        return OptimizedRoute(
            order=[stop.id for stop in ordered],
            total_distance_m=sum(segment.distance_m for segment in segments),
            total_duration_s=sum(segment.duration_s for segment in segments),
            segments=segments,
            polyline=polyline.encode([point for _, point in waypoints], 5),
        )
