"""GPS silence detection for in-progress sessions."""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy.orm import Session, sessionmaker

from ..core.exceptions import ConflictError
from ..db.repositories import AlertRepository, SessionRepository
from ..db.utils import utc_now
from ..routes.session import RouteSession
from ..run_logging import log_context
from ..tracking.location_cache import LocationCache
from .coordinator import DistressCoordinator

logger = logging.getLogger(__name__)

FALLBACK_LOCATION = (0.0, 0.0)


class GpsAnomalyDetector:
    """Raises distress alerts for drivers whose GPS has gone quiet.

    A driver is anomalous when their last contact is older than the
    threshold, or when they were never seen and their session has been
    running longer than the threshold.
    """

    def __init__(
        self,
        session_maker: sessionmaker[Session],
        cache: LocationCache,
        coordinator: DistressCoordinator,
        threshold_seconds: int = 120,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._session_maker = session_maker
        self._cache = cache
        self._coordinator = coordinator
        self._threshold = timedelta(seconds=threshold_seconds)
        self._clock = clock

    def sweep(self) -> list[str]:
        """Check every in-progress session once; return ids of alerts created."""
        now = self._clock()
        with self._session_maker() as session:
            in_progress = SessionRepository(session).list_in_progress()
            open_drivers = AlertRepository(session).open_driver_ids()

        created: list[str] = []
        for route_session in in_progress:
            driver_id = route_session.driver_id
            if driver_id in open_drivers or not self._is_anomalous(route_session, now):
                continue

            with log_context(driver_id=driver_id, session_id=route_session.id):
                location = route_session.current_position
                if location is None:
                    logger.warning("No known position for silent driver, alerting at (0, 0)")
                    location = FALLBACK_LOCATION
                try:
                    alert_id = self._coordinator.trigger(
                        driver_id,
                        location,
                        session_id=route_session.id,
                        source="gps_anomaly",
                    )
                except ConflictError:
                    logger.debug("Alert already open, skipping")
                    continue
                except Exception as e:
                    # The alert may already be committed; either way the
                    # remaining sessions still get checked this sweep.
                    logger.error(f"Alerting silent driver failed: {e}", exc_info=True)
                    continue

            open_drivers.add(driver_id)
            created.append(alert_id)

        if created:
            logger.info(f"GPS sweep raised {len(created)} alerts over {len(in_progress)} sessions")
        return created

    def _is_anomalous(self, route_session: RouteSession, now: datetime) -> bool:
        last_seen = self._cache.last_seen(route_session.driver_id, now=now)
        if last_seen is not None:
            return now - last_seen > self._threshold
        if route_session.started_at is None:
            return False
        return now - route_session.started_at > self._threshold
