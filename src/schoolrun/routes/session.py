"""Route session and stop models with their state machines."""

from datetime import date, datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator, model_validator

from ..geo.distance import is_valid_coordinate


class SessionStatus(str, Enum):
    """Route session lifecycle states."""

    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class StopStatus(str, Enum):
    """Per-stop arrival states, ordered from first to last."""

    PENDING = "pending"
    APPROACHING = "approaching"
    ARRIVED = "arrived"
    PICKED_UP = "picked_up"
    DROPPED_OFF = "dropped_off"
    SKIPPED = "skipped"


VALID_SESSION_TRANSITIONS: dict[SessionStatus, set[SessionStatus]] = {
    SessionStatus.SCHEDULED: {SessionStatus.IN_PROGRESS, SessionStatus.CANCELLED},
    SessionStatus.IN_PROGRESS: {SessionStatus.COMPLETED, SessionStatus.CANCELLED},
    SessionStatus.COMPLETED: set(),
    SessionStatus.CANCELLED: set(),
}

VALID_STOP_TRANSITIONS: dict[StopStatus, set[StopStatus]] = {
    StopStatus.PENDING: {StopStatus.APPROACHING, StopStatus.SKIPPED},
    StopStatus.APPROACHING: {StopStatus.ARRIVED, StopStatus.SKIPPED},
    StopStatus.ARRIVED: {StopStatus.PICKED_UP, StopStatus.DROPPED_OFF, StopStatus.SKIPPED},
    StopStatus.PICKED_UP: set(),
    StopStatus.DROPPED_OFF: set(),
    StopStatus.SKIPPED: set(),
}

RESOLVED_STOP_STATUSES = frozenset(
    {StopStatus.PICKED_UP, StopStatus.DROPPED_OFF, StopStatus.SKIPPED}
)
ARCHIVED_SESSION_STATUSES = frozenset({SessionStatus.COMPLETED, SessionStatus.CANCELLED})


def is_stop_resolved(status: StopStatus) -> bool:
    return status in RESOLVED_STOP_STATUSES


def can_transition_stop(current: StopStatus, target: StopStatus) -> bool:
    return target in VALID_STOP_TRANSITIONS[current]


def is_session_archived(status: SessionStatus) -> bool:
    return status in ARCHIVED_SESSION_STATUSES


def can_transition_session(current: SessionStatus, target: SessionStatus) -> bool:
    return target in VALID_SESSION_TRANSITIONS[current]


class RouteStop(BaseModel):
    """A stop owned by a route session."""

    id: str
    order: int = Field(ge=1)
    lat: float
    lon: float
    geofence_radius_m: float = Field(default=50.0, gt=0)
    status: StopStatus = StopStatus.PENDING
    student_id: str | None = None
    recipient_ids: list[str] = Field(default_factory=list)
    arrived_at: datetime | None = None
    resolved_at: datetime | None = None

    @model_validator(mode="after")
    def validate_location(self) -> "RouteStop":
        if not is_valid_coordinate(self.lat, self.lon):
            raise ValueError(f"Stop {self.id} has invalid coordinates ({self.lat}, {self.lon})")
        return self

    @property
    def is_resolved(self) -> bool:
        return is_stop_resolved(self.status)


class RouteSession(BaseModel):
    """A driver's run of a route on a given service day."""

    id: str
    driver_id: str
    status: SessionStatus = SessionStatus.SCHEDULED
    service_date: date
    school_id: str | None = None
    origin: tuple[float, float] | None = None
    destination: tuple[float, float] | None = None
    current_position: tuple[float, float] | None = None
    position_recorded_at: datetime | None = None
    stops: list[RouteStop] = Field(default_factory=list)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @field_validator("stops")
    @classmethod
    def validate_stop_order(cls, stops: list[RouteStop]) -> list[RouteStop]:
        orders = [stop.order for stop in stops]
        if len(set(orders)) != len(orders):
            raise ValueError("Stop order must be unique within a session")
        return sorted(stops, key=lambda stop: stop.order)

    @field_validator("origin", "destination", "current_position")
    @classmethod
    def validate_point(cls, point: tuple[float, float] | None) -> tuple[float, float] | None:
        if point is not None and not is_valid_coordinate(*point):
            raise ValueError(f"Invalid coordinate {point}")
        return point

    def next_unresolved_stop(self) -> RouteStop | None:
        """Lowest-order stop that has not been picked up, dropped off or skipped."""
        for stop in self.stops:
            if not stop.is_resolved:
                return stop
        return None

    def get_stop(self, stop_id: str) -> RouteStop | None:
        for stop in self.stops:
            if stop.id == stop_id:
                return stop
        return None

    @property
    def all_stops_resolved(self) -> bool:
        return all(stop.is_resolved for stop in self.stops)
