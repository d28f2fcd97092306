from .dispatcher import InProcessMessageBus
from .messages import DistressTriggered, LocationUpdated, StudentReadyForPickup, WebhookReceived

__all__ = [
    "DistressTriggered",
    "InProcessMessageBus",
    "LocationUpdated",
    "StudentReadyForPickup",
    "WebhookReceived",
]
