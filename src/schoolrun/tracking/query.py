"""Read side of driver tracking: current position and location history."""

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Literal

from pydantic import BaseModel
from sqlalchemy.orm import Session, sessionmaker

from ..core.exceptions import ValidationError
from ..db.repositories import LocationRepository
from ..db.repositories.location_repository import LoggedFix
from ..db.utils import as_utc, utc_now
from .location_cache import LocationCache

logger = logging.getLogger(__name__)


class DriverLocation(BaseModel):
    """A driver position and where it was read from.

    Cache hits carry the time the position was cached; log reads carry
    the time the device recorded the fix.
    """

    driver_id: str
    lat: float
    lon: float
    timestamp: datetime
    speed: float | None = None
    heading: float | None = None
    accuracy: float | None = None
    source: Literal["cache", "db"]


def _from_log(fix: LoggedFix) -> DriverLocation:
    return DriverLocation(
        driver_id=fix.driver_id,
        lat=fix.lat,
        lon=fix.lon,
        timestamp=fix.recorded_at,
        speed=fix.speed,
        heading=fix.heading,
        accuracy=fix.accuracy,
        source="db",
    )


class LocationQueryService:
    """Answers "where is this driver" for dashboards and parents.

    The display-fresh cache is consulted first. Once the cached value has
    passed its TTL the newest row of the durable log is returned instead,
    so a driver who went quiet still has a last known position.
    """

    def __init__(
        self,
        session_maker: sessionmaker[Session],
        cache: LocationCache,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._session_maker = session_maker
        self._cache = cache
        self._clock = clock

    def latest_position(self, driver_id: str) -> DriverLocation | None:
        cached = self._cache.get(driver_id, now=self._clock())
        if cached is not None:
            return DriverLocation(
                driver_id=driver_id,
                lat=cached.lat,
                lon=cached.lon,
                timestamp=cached.cached_at,
                speed=cached.speed,
                heading=cached.heading,
                source="cache",
            )

        with self._session_maker() as session:
            fix = LocationRepository(session).latest(driver_id)
        if fix is None:
            logger.debug(f"No location known for driver {driver_id}")
            return None
        return _from_log(fix)

    def history(self, driver_id: str, start: datetime, end: datetime) -> list[DriverLocation]:
        """Logged fixes between start and end inclusive, oldest first.

        Raises:
            ValidationError: start is after end
        """
        if as_utc(start) > as_utc(end):
            raise ValidationError(
                f"History start {start.isoformat()} is after end {end.isoformat()}",
                {"driver_id": driver_id},
            )
        with self._session_maker() as session:
            fixes = LocationRepository(session).history(
                driver_id, start=start, end=end, newest_first=False
            )
        return [_from_log(fix) for fix in fixes]
