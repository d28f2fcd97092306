"""Repository layer for Domain Store reads and atomic updates."""

from .alert_repository import AlertRepository
from .idempotency_repository import IdempotencyRepository
from .location_repository import LocationRepository
from .payment_repository import PaymentRepository
from .session_repository import SessionRepository
from .subscription_repository import SubscriptionRepository

__all__ = [
    "AlertRepository",
    "IdempotencyRepository",
    "LocationRepository",
    "PaymentRepository",
    "SessionRepository",
    "SubscriptionRepository",
]
