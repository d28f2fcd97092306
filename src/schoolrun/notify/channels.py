"""Realtime topic names and message payloads."""

from pydantic import BaseModel

ADMIN_ALERTS_TOPIC = "/alerts/admin"


def driver_alert_topic(driver_id: str) -> str:
    return f"/alerts/driver/{driver_id}"


def admin_alert_topic(school_id: str | None) -> str:
    """School-scoped admin channel, or the global admin channel when the school is unknown."""
    if school_id:
        return f"{ADMIN_ALERTS_TOPIC}/{school_id}"
    return ADMIN_ALERTS_TOPIC


def session_tracking_topic(session_id: str) -> str:
    return f"/tracking/session/{session_id}"


class StopEventMessage(BaseModel):
    """Geofence transition for a stop, published on the session topic."""

    type: str
    session_id: str
    stop_id: str
    stop_order: int
    status: str
    distance_m: float
    timestamp: str


class AlertMessage(BaseModel):
    """Distress alert broadcast to nearby drivers and school admins."""

    type: str
    alert_id: str
    distressed_driver_id: str
    location: tuple[float, float]
    distance_km: float | None = None
    responding_driver_id: str | None = None
    timestamp: str
