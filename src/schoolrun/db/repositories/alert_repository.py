"""Driver alert repository."""

from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from ...distress.alert import OPEN_ALERT_STATUSES, AlertStatus
from ...distress.alert import DriverAlert as DriverAlertDomain
from ..schema import DriverAlert
from ..utils import as_utc


class AlertRepository:
    """Repository for distress alerts.

    ``create`` flushes immediately so a second open alert for the same
    driver surfaces as an ``IntegrityError`` from the partial unique index.
    """

    def __init__(self, session: Session):
        self.session = session

    def create(self, alert: DriverAlertDomain) -> None:
        lat, lon = alert.location
        self.session.add(
            DriverAlert(
                alert_id=alert.alert_id,
                distressed_driver_id=alert.distressed_driver_id,
                session_id=alert.session_id,
                status=alert.status.value,
                location_lat=lat,
                location_lon=lon,
                nearby_driver_ids=list(alert.nearby_driver_ids),
                source=alert.source,
                triggered_at=alert.triggered_at,
            )
        )
        self.session.flush()

    def get(self, alert_id: str) -> DriverAlertDomain | None:
        row = self.session.get(DriverAlert, alert_id, populate_existing=True)
        if row is None:
            return None
        return self._to_domain(row)

    def find_open_by_driver(self, driver_id: str) -> DriverAlertDomain | None:
        """Get the open (pending or responded) alert for a driver, if any."""
        stmt = select(DriverAlert).where(
            DriverAlert.distressed_driver_id == driver_id,
            DriverAlert.status.in_([s.value for s in OPEN_ALERT_STATUSES]),
        )
        row = self.session.execute(stmt).scalars().first()
        return self._to_domain(row) if row is not None else None

    def open_driver_ids(self) -> set[str]:
        stmt = select(DriverAlert.distressed_driver_id).where(
            DriverAlert.status.in_([s.value for s in OPEN_ALERT_STATUSES])
        )
        return set(self.session.execute(stmt).scalars().all())

    def set_nearby(self, alert_id: str, driver_ids: list[str]) -> None:
        self.session.execute(
            update(DriverAlert)
            .execution_options(synchronize_session=False)
            .where(DriverAlert.alert_id == alert_id)
            .values(nearby_driver_ids=list(driver_ids))
        )

    def transition(
        self,
        alert_id: str,
        expected: AlertStatus,
        new_status: AlertStatus,
        **values: Any,
    ) -> bool:
        """Compare-and-swap the alert status; False when it was not in expected."""
        stmt = (
            update(DriverAlert)
            .execution_options(synchronize_session=False)
            .where(DriverAlert.alert_id == alert_id, DriverAlert.status == expected.value)
            .values(status=new_status.value, **values)
        )
        result = self.session.execute(stmt)
        return result.rowcount == 1

    def _to_domain(self, row: DriverAlert) -> DriverAlertDomain:
        return DriverAlertDomain(
            alert_id=row.alert_id,
            distressed_driver_id=row.distressed_driver_id,
            session_id=row.session_id,
            status=AlertStatus(row.status),
            location=(row.location_lat, row.location_lon),
            responding_driver_id=row.responding_driver_id,
            nearby_driver_ids=list(row.nearby_driver_ids or []),
            source=row.source,
            triggered_at=as_utc(row.triggered_at),
            resolved_at=as_utc(row.resolved_at),
            resolved_by=row.resolved_by,
        )
