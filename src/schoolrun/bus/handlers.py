"""Message handlers wiring bus messages to the engine's services."""

import logging

from ..core.exceptions import NotFoundError, StateError
from ..distress.coordinator import DistressCoordinator
from ..geofence.engine import GeofenceService
from ..payments.ledger import PaymentLedger
from ..payments.webhook import map_provider_status
from ..routes.service import RouteSessionService
from .dispatcher import InProcessMessageBus
from .messages import DistressTriggered, LocationUpdated, StudentReadyForPickup, WebhookReceived

logger = logging.getLogger(__name__)


class MessageHandlers:
    """One handler per message type.

    A message whose primary entity no longer exists is logged and
    dropped; any other failure propagates to the dispatcher.
    """

    def __init__(
        self,
        geofence: GeofenceService,
        coordinator: DistressCoordinator,
        ledger: PaymentLedger,
        sessions: RouteSessionService,
    ):
        self._geofence = geofence
        self._coordinator = coordinator
        self._ledger = ledger
        self._sessions = sessions

    def register(self, bus: InProcessMessageBus) -> None:
        bus.register(LocationUpdated, self.handle_location_updated)
        bus.register(DistressTriggered, self.handle_distress_triggered)
        bus.register(WebhookReceived, self.handle_webhook_received)
        bus.register(StudentReadyForPickup, self.handle_student_ready)

    def handle_location_updated(self, message: LocationUpdated) -> None:
        if message.session_id is None:
            return
        try:
            self._geofence.process_position(
                message.session_id, message.lat, message.lon, message.recorded_at
            )
        except NotFoundError:
            logger.warning(f"Session {message.session_id} not found, dropping location update")

    def handle_distress_triggered(self, message: DistressTriggered) -> None:
        try:
            self._coordinator.broadcast_to_nearby(message.alert_id, message.proximity_radius_km)
        except NotFoundError:
            logger.warning(f"Alert {message.alert_id} not found, skipping broadcast")
        except StateError:
            logger.info(f"Alert {message.alert_id} already resolved, skipping broadcast")

    def handle_webhook_received(self, message: WebhookReceived) -> None:
        try:
            self._ledger.apply_webhook_update(
                message.payment_id,
                map_provider_status(message.reported_status),
                message.raw_payload,
                provider_id=message.provider_id,
            )
        except NotFoundError:
            logger.warning(f"Payment {message.payment_id} not found, dropping webhook")

    def handle_student_ready(self, message: StudentReadyForPickup) -> None:
        try:
            self._sessions.optimize_session(message.session_id)
        except NotFoundError:
            logger.warning(f"Session {message.session_id} not found, skipping optimization")
        except StateError as e:
            logger.info(f"Not optimizing session {message.session_id}: {e.message}")
