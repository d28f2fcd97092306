"""Arrival detection for route stops.

``GeofenceEngine`` is a pure function of (stops, position): it only looks
at the next unresolved stop in order, so a route that crosses a later
stop never triggers it early. ``GeofenceService`` applies the result to
the Domain Store with compare-and-swap writes and emits notifications
for the transitions it actually won.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.orm import Session, sessionmaker

from ..core.exceptions import NotFoundError
from ..db.repositories import SessionRepository
from ..db.transaction import unit_of_work
from ..db.utils import as_utc
from ..geo.distance import haversine_distance_m
from ..metrics.prometheus_exporter import geofence_transitions_total
from ..notify.channels import StopEventMessage, session_tracking_topic
from ..notify.notifier import Notifier
from ..notify.realtime import RealtimeChannel
from ..routes.session import RouteStop, SessionStatus, StopStatus
from ..run_logging import log_context

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StopTransition:
    stop_id: str
    stop_order: int
    from_status: StopStatus
    to_status: StopStatus
    distance_m: float


@dataclass
class GeofenceResult:
    stop_id: str | None = None
    distance_m: float | None = None
    transitions: list[StopTransition] = field(default_factory=list)


class GeofenceEngine:
    """Per-stop forward-only state machine driven by positions."""

    def __init__(self, approach_multiplier: float = 3.0):
        self._approach_multiplier = approach_multiplier

    def evaluate(self, stops: list[RouteStop], lat: float, lon: float) -> GeofenceResult:
        target = next(
            (stop for stop in sorted(stops, key=lambda s: s.order) if not stop.is_resolved),
            None,
        )
        if target is None:
            return GeofenceResult()

        distance = haversine_distance_m(lat, lon, target.lat, target.lon)
        result = GeofenceResult(stop_id=target.id, distance_m=distance)
        approach_radius = target.geofence_radius_m * self._approach_multiplier
        status = target.status

        # A stop already inside its radius passes through approaching in one evaluation
        if status == StopStatus.PENDING and distance <= approach_radius:
            result.transitions.append(
                self._transition(target, status, StopStatus.APPROACHING, distance)
            )
            status = StopStatus.APPROACHING

        if status == StopStatus.APPROACHING and distance <= target.geofence_radius_m:
            result.transitions.append(
                self._transition(target, status, StopStatus.ARRIVED, distance)
            )

        return result

    @staticmethod
    def _transition(
        stop: RouteStop, from_status: StopStatus, to_status: StopStatus, distance: float
    ) -> StopTransition:
        return StopTransition(
            stop_id=stop.id,
            stop_order=stop.order,
            from_status=from_status,
            to_status=to_status,
            distance_m=distance,
        )


_NOTIFICATION_TEXT = {
    StopStatus.APPROACHING: ("Bus approaching", "The bus is approaching your stop"),
    StopStatus.ARRIVED: ("Bus arrived", "The bus has arrived at your stop"),
}


class GeofenceService:
    """Applies geofence evaluation to persisted route sessions."""

    def __init__(
        self,
        session_maker: sessionmaker[Session],
        engine: GeofenceEngine,
        notifier: Notifier,
        channel: RealtimeChannel,
    ):
        self._session_maker = session_maker
        self._engine = engine
        self._notifier = notifier
        self._channel = channel

    def process_position(
        self,
        session_id: str,
        lat: float,
        lon: float,
        recorded_at: datetime,
    ) -> list[StopTransition]:
        """Evaluate one fix for a session and return the transitions that were applied.

        Fixes older than the last applied one are ignored, so a late batch
        upload never moves a stop backwards or re-fires a notification.

        Raises:
            NotFoundError: the session does not exist
        """
        recorded_at = as_utc(recorded_at)
        with log_context(session_id=session_id):
            with unit_of_work(self._session_maker) as session:
                repo = SessionRepository(session)
                route_session = repo.get(session_id)
                if route_session is None:
                    raise NotFoundError(
                        f"Session {session_id} not found", {"session_id": session_id}
                    )
                if route_session.status != SessionStatus.IN_PROGRESS:
                    logger.debug(f"Ignoring fix for {route_session.status.value} session")
                    return []
                if (
                    route_session.position_recorded_at is not None
                    and recorded_at < route_session.position_recorded_at
                ):
                    logger.debug(
                        f"Ignoring late fix from {recorded_at.isoformat()}, "
                        f"already at {route_session.position_recorded_at.isoformat()}"
                    )
                    return []
                if not repo.update_position(session_id, lat, lon, recorded_at):
                    return []

                result = self._engine.evaluate(route_session.stops, lat, lon)
                applied: list[StopTransition] = []
                for transition in result.transitions:
                    values = {}
                    if transition.to_status == StopStatus.ARRIVED:
                        values["arrived_at"] = recorded_at
                    if not repo.transition_stop(
                        transition.stop_id,
                        transition.from_status,
                        transition.to_status,
                        **values,
                    ):
                        # Another worker already moved this stop
                        break
                    applied.append(transition)

            stop = route_session.get_stop(result.stop_id) if result.stop_id else None
            for transition in applied:
                geofence_transitions_total.labels(status=transition.to_status.value).inc()
                logger.info(
                    f"Stop {transition.stop_id} {transition.from_status.value} -> "
                    f"{transition.to_status.value} at {transition.distance_m:.0f}m"
                )
                self._emit(session_id, stop, transition, recorded_at)

        return applied

    def _emit(
        self,
        session_id: str,
        stop: RouteStop | None,
        transition: StopTransition,
        recorded_at: datetime,
    ) -> None:
        title, body = _NOTIFICATION_TEXT[transition.to_status]
        if stop is not None:
            for recipient_id in stop.recipient_ids:
                self._notifier.notify(
                    recipient_id,
                    title,
                    body,
                    {
                        "session_id": session_id,
                        "stop_id": transition.stop_id,
                        "student_id": stop.student_id,
                        "status": transition.to_status.value,
                    },
                )

        message = StopEventMessage(
            type=f"stop_{transition.to_status.value}",
            session_id=session_id,
            stop_id=transition.stop_id,
            stop_order=transition.stop_order,
            status=transition.to_status.value,
            distance_m=round(transition.distance_m, 1),
            timestamp=recorded_at.isoformat(),
        )
        self._channel.publish(session_tracking_topic(session_id), message.model_dump())
