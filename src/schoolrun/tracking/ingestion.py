"""GPS fix ingestion: durable log, latest-position cache and downstream dispatch."""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

import pydantic
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session, sessionmaker

from ..bus.messages import LocationUpdated
from ..core.exceptions import ValidationError
from ..db.repositories import LocationRepository, SessionRepository
from ..db.transaction import unit_of_work
from ..db.utils import as_utc, utc_now
from ..geo.distance import is_valid_coordinate
from ..metrics.prometheus_exporter import gps_fixes_ingested_total
from ..run_logging import log_context
from .location_cache import LocationCache

logger = logging.getLogger(__name__)


class MessageDispatcher(Protocol):
    def dispatch(self, message: Any) -> bool: ...


class LocationFix(BaseModel):
    """One GPS fix as reported by a driver device."""

    lat: float = Field(ge=-90.0, le=90.0)
    lon: float = Field(ge=-180.0, le=180.0)
    recorded_at: datetime | None = None
    speed: float | None = Field(default=None, ge=0.0)
    heading: float | None = Field(default=None, ge=0.0, le=360.0)
    accuracy: float | None = Field(default=None, ge=0.0)


@dataclass
class BatchResult:
    processed_count: int = 0
    total_count: int = 0
    errors: list[str] = field(default_factory=list)


class LocationIngestor:
    """Accepts GPS fixes for drivers.

    Each accepted fix is appended to the location log, cached as the
    driver's latest position and announced as a ``LocationUpdated``
    message so geofence evaluation can run for the driver's session.
    """

    def __init__(
        self,
        session_maker: sessionmaker[Session],
        cache: LocationCache,
        bus: MessageDispatcher | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._session_maker = session_maker
        self._cache = cache
        self._bus = bus
        self._clock = clock

    def ingest(
        self,
        driver_id: str,
        lat: float,
        lon: float,
        recorded_at: datetime | None = None,
        speed: float | None = None,
        heading: float | None = None,
        accuracy: float | None = None,
    ) -> LocationUpdated:
        """Accept a single live fix.

        Raises:
            ValidationError: coordinates out of range
        """
        if not is_valid_coordinate(lat, lon):
            gps_fixes_ingested_total.labels(outcome="rejected").inc()
            raise ValidationError(
                f"Invalid coordinates ({lat}, {lon})", {"driver_id": driver_id}
            )
        try:
            fix = LocationFix(
                lat=lat,
                lon=lon,
                recorded_at=recorded_at,
                speed=speed,
                heading=heading,
                accuracy=accuracy,
            )
        except pydantic.ValidationError as e:
            gps_fixes_ingested_total.labels(outcome="rejected").inc()
            raise ValidationError(f"Invalid fix: {e}", {"driver_id": driver_id}) from e
        messages = self._store(driver_id, [fix])
        return messages[0]

    def ingest_batch(self, driver_id: str, locations: list[dict[str, Any]]) -> BatchResult:
        """Accept fixes uploaded after an offline period.

        Items are validated one by one; invalid items are reported in
        ``errors`` and the rest are stored and dispatched oldest first.
        """
        result = BatchResult(total_count=len(locations))
        fixes: list[LocationFix] = []
        for index, item in enumerate(locations):
            try:
                fixes.append(LocationFix.model_validate(item))
            except pydantic.ValidationError as e:
                reason = "; ".join(error["msg"] for error in e.errors())
                result.errors.append(f"Location at index {index} rejected: {reason}")

        if result.errors:
            gps_fixes_ingested_total.labels(outcome="rejected").inc(len(result.errors))
        if fixes:
            result.processed_count = len(self._store(driver_id, fixes))

        with log_context(driver_id=driver_id):
            logger.info(
                f"Batch ingested {result.processed_count}/{result.total_count} fixes "
                f"({len(result.errors)} rejected)"
            )
        return result

    def _store(self, driver_id: str, fixes: list[LocationFix]) -> list[LocationUpdated]:
        now = self._clock()
        stamped = sorted(
            ((as_utc(fix.recorded_at) if fix.recorded_at else now, fix) for fix in fixes),
            key=lambda pair: pair[0],
        )

        with unit_of_work(self._session_maker) as session:
            active = SessionRepository(session).find_in_progress_for_driver(driver_id)
            session_id = active.id if active else None
            log = LocationRepository(session)
            for recorded_at, fix in stamped:
                log.append(
                    driver_id,
                    fix.lat,
                    fix.lon,
                    recorded_at,
                    session_id=session_id,
                    speed=fix.speed,
                    heading=fix.heading,
                    accuracy=fix.accuracy,
                )

        _, latest = stamped[-1]
        self._cache.put(
            driver_id,
            latest.lat,
            latest.lon,
            speed=latest.speed,
            heading=latest.heading,
            route_id=session_id,
            now=now,
        )
        gps_fixes_ingested_total.labels(outcome="accepted").inc(len(stamped))

        messages = [
            LocationUpdated(
                driver_id=driver_id,
                session_id=session_id,
                lat=fix.lat,
                lon=fix.lon,
                recorded_at=recorded_at,
                correlation_id=session_id,
            )
            for recorded_at, fix in stamped
        ]
        if self._bus is not None:
            for message in messages:
                self._bus.dispatch(message)
        return messages
