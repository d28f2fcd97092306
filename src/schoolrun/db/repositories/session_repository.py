"""Route session repository with compare-and-swap state updates."""

from datetime import datetime
from typing import Any

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session, selectinload

from ...routes.session import RouteSession as RouteSessionDomain
from ...routes.session import RouteStop as RouteStopDomain
from ...routes.session import SessionStatus, StopStatus
from ..schema import RouteSession, RouteStop
from ..utils import as_utc


def _format_point(point: tuple[float, float] | None) -> str | None:
    if point is None:
        return None
    lat, lon = point
    return f"{lat},{lon}"


def _parse_point(raw: str | None) -> tuple[float, float] | None:
    if not raw:
        return None
    lat, lon = map(float, raw.split(","))
    return (lat, lon)


class SessionRepository:
    """Repository for route sessions and the stops they own."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, route_session: RouteSessionDomain) -> None:
        """Persist a new session with its stops."""
        row = RouteSession(
            id=route_session.id,
            driver_id=route_session.driver_id,
            school_id=route_session.school_id,
            status=route_session.status.value,
            service_date=route_session.service_date,
            origin=_format_point(route_session.origin),
            destination=_format_point(route_session.destination),
            started_at=route_session.started_at,
        )
        row.stops = [
            RouteStop(
                id=stop.id,
                stop_order=stop.order,
                lat=stop.lat,
                lon=stop.lon,
                geofence_radius_m=stop.geofence_radius_m,
                status=stop.status.value,
                student_id=stop.student_id,
                recipient_ids=list(stop.recipient_ids),
            )
            for stop in route_session.stops
        ]
        self.session.add(row)
        self.session.flush()

    def get(self, session_id: str) -> RouteSessionDomain | None:
        """Get session by ID with its stops in order."""
        stmt = (
            select(RouteSession)
            .execution_options(populate_existing=True)
            .where(RouteSession.id == session_id)
            .options(selectinload(RouteSession.stops))
        )
        row = self.session.execute(stmt).scalar_one_or_none()
        if row is None:
            return None
        return self._to_domain(row)

    def list_in_progress(self) -> list[RouteSessionDomain]:
        """List sessions currently being driven."""
        stmt = (
            select(RouteSession)
            .execution_options(populate_existing=True)
            .where(RouteSession.status == SessionStatus.IN_PROGRESS.value)
            .options(selectinload(RouteSession.stops))
            .order_by(RouteSession.id)
        )
        result = self.session.execute(stmt)
        return [self._to_domain(row) for row in result.scalars().all()]

    def find_in_progress_for_driver(self, driver_id: str) -> RouteSessionDomain | None:
        stmt = (
            select(RouteSession)
            .execution_options(populate_existing=True)
            .where(
                RouteSession.driver_id == driver_id,
                RouteSession.status == SessionStatus.IN_PROGRESS.value,
            )
            .options(selectinload(RouteSession.stops))
            .order_by(RouteSession.started_at.desc())
        )
        row = self.session.execute(stmt).scalars().first()
        return self._to_domain(row) if row is not None else None

    def transition(
        self,
        session_id: str,
        expected: SessionStatus,
        new_status: SessionStatus,
        **values: Any,
    ) -> bool:
        """Move a session from expected to new_status; False if it was not in expected."""
        stmt = (
            update(RouteSession)
            .execution_options(synchronize_session=False)
            .where(RouteSession.id == session_id, RouteSession.status == expected.value)
            .values(status=new_status.value, **values)
        )
        result = self.session.execute(stmt)
        return result.rowcount == 1

    def update_position(
        self,
        session_id: str,
        lat: float,
        lon: float,
        recorded_at: datetime,
    ) -> bool:
        """Store the current position unless a newer fix is already applied."""
        stmt = (
            update(RouteSession)
            .execution_options(synchronize_session=False)
            .where(
                RouteSession.id == session_id,
                or_(
                    RouteSession.position_recorded_at.is_(None),
                    RouteSession.position_recorded_at <= recorded_at,
                ),
            )
            .values(current_lat=lat, current_lon=lon, position_recorded_at=recorded_at)
        )
        result = self.session.execute(stmt)
        return result.rowcount == 1

    def transition_stop(
        self,
        stop_id: str,
        expected: StopStatus,
        new_status: StopStatus,
        **values: Any,
    ) -> bool:
        """Move a stop forward; False if another worker already moved it."""
        stmt = (
            update(RouteStop)
            .execution_options(synchronize_session=False)
            .where(RouteStop.id == stop_id, RouteStop.status == expected.value)
            .values(status=new_status.value, **values)
        )
        result = self.session.execute(stmt)
        return result.rowcount == 1

    def reorder_stops(self, session_id: str, ordered_stop_ids: list[str]) -> None:
        """Assign orders 1..N following ordered_stop_ids.

        Orders are first moved to negative values so the unique
        (session_id, stop_order) constraint holds at every step.
        """
        for index, stop_id in enumerate(ordered_stop_ids, start=1):
            self.session.execute(
                update(RouteStop)
                .execution_options(synchronize_session=False)
                .where(RouteStop.id == stop_id, RouteStop.session_id == session_id)
                .values(stop_order=-index)
            )
        for index, stop_id in enumerate(ordered_stop_ids, start=1):
            self.session.execute(
                update(RouteStop)
                .execution_options(synchronize_session=False)
                .where(RouteStop.id == stop_id, RouteStop.session_id == session_id)
                .values(stop_order=index)
            )

    def _to_domain(self, row: RouteSession) -> RouteSessionDomain:
        """Convert ORM model to domain model."""
        current_position = None
        if row.current_lat is not None and row.current_lon is not None:
            current_position = (row.current_lat, row.current_lon)

        return RouteSessionDomain(
            id=row.id,
            driver_id=row.driver_id,
            school_id=row.school_id,
            status=SessionStatus(row.status),
            service_date=row.service_date,
            origin=_parse_point(row.origin),
            destination=_parse_point(row.destination),
            current_position=current_position,
            position_recorded_at=as_utc(row.position_recorded_at),
            started_at=as_utc(row.started_at),
            completed_at=as_utc(row.completed_at),
            stops=[
                RouteStopDomain(
                    id=stop.id,
                    order=stop.stop_order,
                    lat=stop.lat,
                    lon=stop.lon,
                    geofence_radius_m=stop.geofence_radius_m,
                    status=StopStatus(stop.status),
                    student_id=stop.student_id,
                    recipient_ids=list(stop.recipient_ids or []),
                    arrived_at=as_utc(stop.arrived_at),
                    resolved_at=as_utc(stop.resolved_at),
                )
                for stop in row.stops
            ],
        )
