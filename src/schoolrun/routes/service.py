"""Route session lifecycle: start, attendance, skipping, completion and stop ordering."""

import logging
import time
from collections.abc import Callable
from datetime import datetime
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from ..core.exceptions import ConflictError, NotFoundError, StateError, ValidationError
from ..db.repositories import SessionRepository
from ..db.transaction import unit_of_work
from ..db.utils import utc_now
from ..metrics.prometheus_exporter import route_optimization_seconds
from ..notify.channels import session_tracking_topic
from ..notify.notifier import Notifier
from ..notify.realtime import RealtimeChannel
from ..routing.optimizer import OptimizedRoute, RouteOptimizer, StopInput
from .session import (
    RouteSession,
    SessionStatus,
    StopStatus,
    can_transition_session,
    can_transition_stop,
)

logger = logging.getLogger(__name__)

ATTENDANCE_OUTCOMES = (StopStatus.PICKED_UP, StopStatus.DROPPED_OFF)

_ATTENDANCE_TEXT = {
    StopStatus.PICKED_UP: ("Student picked up", "Your student boarded the bus"),
    StopStatus.DROPPED_OFF: ("Student dropped off", "Your student left the bus"),
}


class RouteSessionService:
    """Application service for route sessions.

    Every state change is a compare-and-swap update committed in its own
    transaction; notifications and realtime publishes happen afterwards.
    """

    def __init__(
        self,
        session_maker: sessionmaker[Session],
        optimizer: RouteOptimizer,
        notifier: Notifier | None = None,
        channel: RealtimeChannel | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._session_maker = session_maker
        self._optimizer = optimizer
        self._notifier = notifier
        self._channel = channel
        self._clock = clock

    def schedule(self, route_session: RouteSession) -> RouteSession:
        if route_session.status != SessionStatus.SCHEDULED:
            raise ValidationError(
                "New sessions must be scheduled",
                {"session_id": route_session.id, "status": route_session.status.value},
            )
        try:
            with unit_of_work(self._session_maker) as session:
                SessionRepository(session).create(route_session)
        except IntegrityError as e:
            raise ConflictError(
                f"Session {route_session.id} already exists", {"session_id": route_session.id}
            ) from e
        logger.info(f"Scheduled session {route_session.id} with {len(route_session.stops)} stops")
        return route_session

    def get(self, session_id: str) -> RouteSession:
        with self._session_maker() as session:
            route_session = SessionRepository(session).get(session_id)
        if route_session is None:
            raise NotFoundError(f"Session {session_id} not found", {"session_id": session_id})
        return route_session

    def start(self, session_id: str) -> RouteSession:
        """Move a scheduled session to in_progress.

        Raises:
            ConflictError: the driver already has an in-progress session that day
        """
        now = self._clock()
        try:
            with unit_of_work(self._session_maker) as session:
                repo = SessionRepository(session)
                current = self._load(repo, session_id)
                self._require_session_transition(current, SessionStatus.IN_PROGRESS)
                if not repo.transition(
                    session_id,
                    SessionStatus.SCHEDULED,
                    SessionStatus.IN_PROGRESS,
                    started_at=now,
                ):
                    raise StateError(
                        f"Session {session_id} changed state concurrently",
                        {"session_id": session_id},
                    )
        except IntegrityError as e:
            raise ConflictError(
                f"Driver already has a session in progress for {current.service_date}",
                {"session_id": session_id, "driver_id": current.driver_id},
            ) from e

        logger.info(f"Session {session_id} started by driver {current.driver_id}")
        return self.get(session_id)

    def complete(self, session_id: str) -> RouteSession:
        return self._finish(session_id, SessionStatus.COMPLETED)

    def cancel(self, session_id: str) -> RouteSession:
        return self._finish(session_id, SessionStatus.CANCELLED)

    def record_attendance(self, session_id: str, stop_id: str, outcome: StopStatus) -> RouteSession:
        """Confirm boarding or alighting at an arrived stop."""
        if outcome not in ATTENDANCE_OUTCOMES:
            raise ValidationError(
                f"Attendance outcome must be picked_up or dropped_off, got {outcome.value}",
                {"stop_id": stop_id},
            )
        return self._resolve_stop(session_id, stop_id, outcome)

    def skip_stop(self, session_id: str, stop_id: str) -> RouteSession:
        return self._resolve_stop(session_id, stop_id, StopStatus.SKIPPED)

    def optimize_session(self, session_id: str) -> OptimizedRoute:
        """Recompute the order of the session's pending stops and persist it.

        Stops that have already progressed keep their position ahead of the
        pending ones. The route runs from the current position (or origin)
        to the destination (or back to the start when none is set).
        """
        with unit_of_work(self._session_maker) as session:
            repo = SessionRepository(session)
            current = self._load(repo, session_id)
            if current.status not in (SessionStatus.SCHEDULED, SessionStatus.IN_PROGRESS):
                raise StateError(
                    f"Session {session_id} is {current.status.value}",
                    {"session_id": session_id},
                )

            start = current.current_position or current.origin
            if start is None:
                raise ValidationError(
                    f"Session {session_id} has no origin or current position",
                    {"session_id": session_id},
                )
            end = current.destination or start

            fixed = [stop for stop in current.stops if stop.status != StopStatus.PENDING]
            pending = [stop for stop in current.stops if stop.status == StopStatus.PENDING]

            started = time.perf_counter()
            route = self._optimizer.optimize(
                start,
                end,
                [StopInput(id=stop.id, lat=stop.lat, lon=stop.lon) for stop in pending],
            )
            route_optimization_seconds.observe(time.perf_counter() - started)

            if not route.feasible:
                raise ValidationError(
                    "Route has invalid coordinates",
                    {"session_id": session_id, "invalid_stop_ids": route.invalid_stop_ids},
                )
            repo.reorder_stops(session_id, [stop.id for stop in fixed] + route.order)

        logger.info(
            f"Optimized session {session_id}: {len(route.order)} stops, "
            f"{route.total_distance_m:.0f}m"
        )
        self._publish(
            session_id,
            {"type": "route_optimized", "session_id": session_id, "order": route.order},
        )
        return route

    def _finish(self, session_id: str, target: SessionStatus) -> RouteSession:
        now = self._clock()
        with unit_of_work(self._session_maker) as session:
            repo = SessionRepository(session)
            current = self._load(repo, session_id)
            self._require_session_transition(current, target)
            values: dict[str, Any] = {"completed_at": now}
            if not repo.transition(session_id, current.status, target, **values):
                raise StateError(
                    f"Session {session_id} changed state concurrently",
                    {"session_id": session_id},
                )
        logger.info(f"Session {session_id} {target.value}")
        return self.get(session_id)

    def _resolve_stop(self, session_id: str, stop_id: str, target: StopStatus) -> RouteSession:
        now = self._clock()
        with unit_of_work(self._session_maker) as session:
            repo = SessionRepository(session)
            current = self._load(repo, session_id)
            if current.status != SessionStatus.IN_PROGRESS:
                raise StateError(
                    f"Session {session_id} is {current.status.value}",
                    {"session_id": session_id},
                )
            stop = current.get_stop(stop_id)
            if stop is None:
                raise NotFoundError(
                    f"Stop {stop_id} not found in session {session_id}",
                    {"session_id": session_id, "stop_id": stop_id},
                )
            if not can_transition_stop(stop.status, target):
                raise StateError(
                    f"Stop {stop_id} cannot move from {stop.status.value} to {target.value}",
                    {"stop_id": stop_id, "status": stop.status.value},
                )
            if not repo.transition_stop(stop_id, stop.status, target, resolved_at=now):
                raise StateError(
                    f"Stop {stop_id} changed state concurrently", {"stop_id": stop_id}
                )

            completed = self._complete_if_done(repo, session_id, now)

        logger.info(f"Stop {stop_id} in session {session_id} -> {target.value}")
        if target in _ATTENDANCE_TEXT and self._notifier is not None:
            title, body = _ATTENDANCE_TEXT[target]
            for recipient_id in stop.recipient_ids:
                self._notifier.notify(
                    recipient_id,
                    title,
                    body,
                    {"session_id": session_id, "stop_id": stop_id, "student_id": stop.student_id},
                )
        self._publish(
            session_id,
            {
                "type": "stop_resolved",
                "session_id": session_id,
                "stop_id": stop_id,
                "status": target.value,
                "session_completed": completed,
            },
        )
        return self.get(session_id)

    def _complete_if_done(self, repo: SessionRepository, session_id: str, now: datetime) -> bool:
        refreshed = repo.get(session_id)
        if refreshed is None or not refreshed.all_stops_resolved:
            return False
        if repo.transition(
            session_id, SessionStatus.IN_PROGRESS, SessionStatus.COMPLETED, completed_at=now
        ):
            logger.info(f"Session {session_id} completed: all stops resolved")
            return True
        return False

    def _load(self, repo: SessionRepository, session_id: str) -> RouteSession:
        current = repo.get(session_id)
        if current is None:
            raise NotFoundError(f"Session {session_id} not found", {"session_id": session_id})
        return current

    def _require_session_transition(self, current: RouteSession, target: SessionStatus) -> None:
        if not can_transition_session(current.status, target):
            raise StateError(
                f"Session {current.id} cannot move from {current.status.value} to {target.value}",
                {"session_id": current.id, "status": current.status.value},
            )

    def _publish(self, session_id: str, payload: dict[str, Any]) -> None:
        if self._channel is not None:
            self._channel.publish(session_tracking_topic(session_id), payload)
