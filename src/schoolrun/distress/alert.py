"""Driver distress alert model and state machine."""

from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field


class AlertStatus(str, Enum):
    """Distress alert lifecycle states."""

    PENDING = "PENDING"
    RESPONDED = "RESPONDED"
    RESOLVED = "RESOLVED"


VALID_ALERT_TRANSITIONS: dict[AlertStatus, set[AlertStatus]] = {
    AlertStatus.PENDING: {AlertStatus.RESPONDED, AlertStatus.RESOLVED},
    AlertStatus.RESPONDED: {AlertStatus.RESOLVED},
    AlertStatus.RESOLVED: set(),
}

# Open means some transition is still possible.
OPEN_ALERT_STATUSES = frozenset(s for s, nexts in VALID_ALERT_TRANSITIONS.items() if nexts)


def is_alert_open(status: AlertStatus) -> bool:
    return status in OPEN_ALERT_STATUSES


class DriverAlert(BaseModel):
    """Distress alert raised by or on behalf of a driver."""

    alert_id: str
    distressed_driver_id: str
    session_id: str | None = None
    status: AlertStatus = AlertStatus.PENDING
    location: tuple[float, float]
    responding_driver_id: str | None = None
    nearby_driver_ids: list[str] = Field(default_factory=list)
    source: Literal["driver", "gps_anomaly"] = "driver"
    triggered_at: datetime
    resolved_at: datetime | None = None
    resolved_by: str | None = None
