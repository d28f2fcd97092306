"""Driver distress alert lifecycle and nearby-driver broadcast."""

import logging
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Any, Literal, Protocol

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from ..bus.messages import DistressTriggered
from ..core.exceptions import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    StateError,
    ValidationError,
)
from ..db.repositories import AlertRepository, SessionRepository
from ..db.transaction import unit_of_work
from ..db.utils import utc_now
from ..geo.distance import is_valid_coordinate
from ..geo.proximity import GeoPoint, NearbyEntry, PositionEntry, nearby_from
from ..metrics.prometheus_exporter import distress_alerts_total
from ..notify.channels import AlertMessage, admin_alert_topic, driver_alert_topic
from ..notify.notifier import Notifier
from ..notify.realtime import RealtimeChannel
from ..run_logging import log_context
from ..tracking.location_cache import LocationCache
from .alert import AlertStatus, DriverAlert, is_alert_open

logger = logging.getLogger(__name__)


class MessageDispatcher(Protocol):
    def dispatch(self, message: Any) -> bool: ...


class DistressCoordinator:
    """Opens, broadcasts, answers and closes distress alerts.

    At most one open alert per driver is guaranteed by the store's partial
    unique index, so two concurrent triggers for the same driver end with
    one alert and one ``ConflictError``.
    """

    def __init__(
        self,
        session_maker: sessionmaker[Session],
        cache: LocationCache,
        notifier: Notifier,
        channel: RealtimeChannel,
        proximity_radius_km: float = 5.0,
        bus: MessageDispatcher | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._session_maker = session_maker
        self._cache = cache
        self._notifier = notifier
        self._channel = channel
        self._proximity_radius_km = proximity_radius_km
        self._bus = bus
        self._clock = clock

    def trigger(
        self,
        driver_id: str,
        location: tuple[float, float],
        session_id: str | None = None,
        source: Literal["driver", "gps_anomaly"] = "driver",
    ) -> str:
        """Open a PENDING alert for driver_id and return its id.

        The alert is committed before ``DistressTriggered`` is dispatched.
        Handlers run synchronously, so an exception raised by the broadcast
        propagates from here even though the alert exists; a retry by the
        caller then gets ``ConflictError``.

        Raises:
            ValidationError: location is not a valid coordinate
            ConflictError: the driver already has an open alert
        """
        if not is_valid_coordinate(*location):
            raise ValidationError(f"Invalid alert location {location}", {"driver_id": driver_id})

        alert_id = str(uuid.uuid4())
        try:
            with unit_of_work(self._session_maker) as session:
                alerts = AlertRepository(session)
                existing = alerts.find_open_by_driver(driver_id)
                if existing is not None:
                    raise ConflictError(
                        f"Driver {driver_id} already has an open alert",
                        {"driver_id": driver_id, "alert_id": existing.alert_id},
                    )
                if session_id is None:
                    active = SessionRepository(session).find_in_progress_for_driver(driver_id)
                    session_id = active.id if active else None

                alerts.create(
                    DriverAlert(
                        alert_id=alert_id,
                        distressed_driver_id=driver_id,
                        session_id=session_id,
                        location=location,
                        source=source,
                        triggered_at=self._clock(),
                    )
                )
        except IntegrityError as e:
            raise ConflictError(
                f"Driver {driver_id} already has an open alert", {"driver_id": driver_id}
            ) from e

        distress_alerts_total.labels(source=source).inc()
        with log_context(alert_id=alert_id, driver_id=driver_id):
            logger.warning(f"Distress alert triggered ({source}) at {location}")

        if self._bus is not None:
            self._bus.dispatch(
                DistressTriggered(
                    alert_id=alert_id,
                    driver_id=driver_id,
                    source=source,
                    correlation_id=alert_id,
                )
            )
        return alert_id

    def broadcast_to_nearby(
        self, alert_id: str, proximity_radius_km: float | None = None
    ) -> list[NearbyEntry]:
        """Notify in-progress drivers near the alert and record who was told.

        Drivers without a display-fresh cached position are skipped. The
        recorded set only grows, so a driver notified by an earlier
        broadcast can still respond.
        """
        radius_km = proximity_radius_km
        if radius_km is None:
            radius_km = self._proximity_radius_km
        now = self._clock()

        with unit_of_work(self._session_maker) as session:
            alerts = AlertRepository(session)
            alert = self._load(alerts, alert_id)
            if not is_alert_open(alert.status):
                raise StateError(
                    f"Alert {alert_id} is already resolved", {"alert_id": alert_id}
                )

            sessions = SessionRepository(session)
            candidates = {
                s.driver_id
                for s in sessions.list_in_progress()
                if s.driver_id != alert.distressed_driver_id
            }
            positions = self._cache.get_many(sorted(candidates), now=now)
            lat, lon = alert.location
            nearby = nearby_from(
                [PositionEntry(id=p.driver_id, lat=p.lat, lon=p.lon) for p in positions.values()],
                GeoPoint(lat=lat, lon=lon),
                radius_km,
            )

            notified = list(alert.nearby_driver_ids)
            notified += [entry.id for entry in nearby if entry.id not in notified]
            alerts.set_nearby(alert_id, notified)

            school_id = None
            if alert.session_id:
                distressed_session = sessions.get(alert.session_id)
                school_id = distressed_session.school_id if distressed_session else None

        with log_context(alert_id=alert_id, driver_id=alert.distressed_driver_id):
            logger.info(
                f"Broadcasting alert to {len(nearby)} nearby drivers "
                f"of {len(candidates)} in progress within {radius_km}km"
            )

        timestamp = now.isoformat()
        for entry in nearby:
            self._notifier.notify(
                entry.id,
                "Driver needs help",
                f"A driver {entry.distance_km:.1f} km from you triggered a distress alert",
                {"alert_id": alert_id, "distance_km": round(entry.distance_km, 2)},
            )
            message = AlertMessage(
                type="distress_nearby",
                alert_id=alert_id,
                distressed_driver_id=alert.distressed_driver_id,
                location=alert.location,
                distance_km=round(entry.distance_km, 2),
                timestamp=timestamp,
            )
            self._channel.publish(driver_alert_topic(entry.id), message.model_dump())

        admin_message = AlertMessage(
            type="distress_triggered",
            alert_id=alert_id,
            distressed_driver_id=alert.distressed_driver_id,
            location=alert.location,
            timestamp=timestamp,
        )
        self._channel.publish(admin_alert_topic(school_id), admin_message.model_dump())
        return nearby

    def respond(self, alert_id: str, driver_id: str) -> DriverAlert:
        """Assign driver_id as responder of a PENDING alert they were notified about.

        Raises:
            NotFoundError: unknown alert
            StateError: the alert is not PENDING
            ForbiddenError: driver_id was not in the broadcast set
        """
        with unit_of_work(self._session_maker) as session:
            alerts = AlertRepository(session)
            alert = self._load(alerts, alert_id)
            if alert.status != AlertStatus.PENDING:
                raise StateError(
                    f"Alert {alert_id} is not pending",
                    {"alert_id": alert_id, "status": alert.status.value},
                )
            if driver_id not in alert.nearby_driver_ids:
                raise ForbiddenError(
                    f"Driver {driver_id} was not notified of alert {alert_id}",
                    {"alert_id": alert_id, "driver_id": driver_id},
                )
            if not alerts.transition(
                alert_id,
                AlertStatus.PENDING,
                AlertStatus.RESPONDED,
                responding_driver_id=driver_id,
            ):
                raise StateError(
                    f"Alert {alert_id} is not pending", {"alert_id": alert_id}
                )
            updated = self._load(alerts, alert_id)

        with log_context(alert_id=alert_id, driver_id=driver_id):
            logger.info(f"Driver {driver_id} responding to alert")

        self._notifier.notify(
            alert.distressed_driver_id,
            "Help is on the way",
            "A nearby driver is responding to your alert",
            {"alert_id": alert_id, "responding_driver_id": driver_id},
        )
        message = AlertMessage(
            type="responder_assigned",
            alert_id=alert_id,
            distressed_driver_id=alert.distressed_driver_id,
            location=alert.location,
            responding_driver_id=driver_id,
            timestamp=self._clock().isoformat(),
        )
        self._channel.publish(driver_alert_topic(alert.distressed_driver_id), message.model_dump())
        return updated

    def resolve(self, alert_id: str, caller_id: str, is_admin: bool = False) -> DriverAlert:
        """Close an alert. Allowed for the distressed driver, the responder or an admin.

        Raises:
            NotFoundError: unknown alert
            StateError: the alert is already resolved
            ForbiddenError: caller is not allowed to resolve it
        """
        with unit_of_work(self._session_maker) as session:
            alerts = AlertRepository(session)
            alert = self._load(alerts, alert_id)
            if alert.status == AlertStatus.RESOLVED:
                raise StateError(f"Alert {alert_id} is already resolved", {"alert_id": alert_id})
            allowed = is_admin or caller_id in (
                alert.distressed_driver_id,
                alert.responding_driver_id,
            )
            if not allowed:
                raise ForbiddenError(
                    f"{caller_id} may not resolve alert {alert_id}",
                    {"alert_id": alert_id, "caller_id": caller_id},
                )
            if not alerts.transition(
                alert_id,
                alert.status,
                AlertStatus.RESOLVED,
                resolved_at=self._clock(),
                resolved_by=caller_id,
            ):
                raise StateError(f"Alert {alert_id} is already resolved", {"alert_id": alert_id})
            updated = self._load(alerts, alert_id)

        with log_context(alert_id=alert_id):
            logger.info(f"Alert resolved by {caller_id}")
        return updated

    def get_alert(self, alert_id: str) -> DriverAlert:
        with self._session_maker() as session:
            return self._load(AlertRepository(session), alert_id)

    def has_open_alert(self, driver_id: str) -> bool:
        with self._session_maker() as session:
            return AlertRepository(session).find_open_by_driver(driver_id) is not None

    @staticmethod
    def _load(alerts: AlertRepository, alert_id: str) -> DriverAlert:
        alert = alerts.get(alert_id)
        if alert is None:
            raise NotFoundError(f"Alert {alert_id} not found", {"alert_id": alert_id})
        return alert
