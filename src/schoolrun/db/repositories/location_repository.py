"""Durable GPS location log."""

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..schema import LocationUpdate
from ..utils import as_utc


@dataclass(frozen=True)
class LoggedFix:
    driver_id: str
    lat: float
    lon: float
    recorded_at: datetime
    session_id: str | None = None
    speed: float | None = None
    heading: float | None = None
    accuracy: float | None = None


class LocationRepository:
    def __init__(self, session: Session):
        self.session = session

    def append(
        self,
        driver_id: str,
        lat: float,
        lon: float,
        recorded_at: datetime,
        session_id: str | None = None,
        speed: float | None = None,
        heading: float | None = None,
        accuracy: float | None = None,
    ) -> None:
        self.session.add(
            LocationUpdate(
                driver_id=driver_id,
                session_id=session_id,
                lat=lat,
                lon=lon,
                speed=speed,
                heading=heading,
                accuracy=accuracy,
                recorded_at=recorded_at,
            )
        )

    def latest(self, driver_id: str) -> LoggedFix | None:
        """Newest logged fix for a driver by recorded time."""
        stmt = (
            select(LocationUpdate)
            .where(LocationUpdate.driver_id == driver_id)
            .order_by(LocationUpdate.recorded_at.desc(), LocationUpdate.id.desc())
            .limit(1)
        )
        row = self.session.execute(stmt).scalar_one_or_none()
        return self._to_domain(row) if row else None

    def history(
        self,
        driver_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = None,
        newest_first: bool = True,
    ) -> list[LoggedFix]:
        """Fixes recorded within [start, end]; either bound may be open."""
        stmt = select(LocationUpdate).where(LocationUpdate.driver_id == driver_id)
        if start is not None:
            stmt = stmt.where(LocationUpdate.recorded_at >= as_utc(start))
        if end is not None:
            stmt = stmt.where(LocationUpdate.recorded_at <= as_utc(end))
        if newest_first:
            stmt = stmt.order_by(LocationUpdate.recorded_at.desc(), LocationUpdate.id.desc())
        else:
            stmt = stmt.order_by(LocationUpdate.recorded_at, LocationUpdate.id)
        if limit is not None:
            stmt = stmt.limit(limit)
        return [self._to_domain(row) for row in self.session.execute(stmt).scalars()]

    @staticmethod
    def _to_domain(row: LocationUpdate) -> LoggedFix:
        return LoggedFix(
            driver_id=row.driver_id,
            lat=row.lat,
            lon=row.lon,
            recorded_at=as_utc(row.recorded_at),
            session_id=row.session_id,
            speed=row.speed,
            heading=row.heading,
            accuracy=row.accuracy,
        )
