"""Typed messages routed through the in-process bus."""

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class CorrelationMixin(BaseModel):
    """Mixin adding tracing fields to messages."""

    correlation_id: str | None = Field(
        default=None, description="Primary correlation ID (e.g., session_id or payment_id)"
    )
    causation_id: str | None = Field(default=None, description="ID of message that caused this one")


class LocationUpdated(CorrelationMixin):
    """A GPS fix was accepted for a driver."""

    event_id: UUID = Field(default_factory=uuid4)
    driver_id: str
    session_id: str | None = None
    lat: float
    lon: float
    recorded_at: datetime


class DistressTriggered(CorrelationMixin):
    """A distress alert was opened and needs broadcasting."""

    event_id: UUID = Field(default_factory=uuid4)
    alert_id: str
    driver_id: str
    source: str = "driver"
    proximity_radius_km: float | None = None


class WebhookReceived(CorrelationMixin):
    """A provider reported a payment status."""

    event_id: UUID = Field(default_factory=uuid4)
    payment_id: str
    reported_status: str
    raw_payload: dict[str, Any] = Field(default_factory=dict)
    provider_id: str | None = None


class StudentReadyForPickup(CorrelationMixin):
    """A student joined a session; its stop order should be recomputed."""

    event_id: UUID = Field(default_factory=uuid4)
    session_id: str
    student_id: str | None = None
