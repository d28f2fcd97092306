"""Notification delivery seam."""

import logging
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def notify(
        self,
        recipient_id: str,
        title: str,
        body: str,
        metadata: dict[str, Any] | None = None,
    ) -> None: ...


class LoggingNotifier:
    """Notifier that only records deliveries in the log."""

    def notify(
        self,
        recipient_id: str,
        title: str,
        body: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        logger.info(f"Notify {recipient_id}: {title} - {body}")


class BestEffortNotifier:
    """Wraps a Notifier so delivery failures are logged instead of raised.

    Notifications never roll back the state change that produced them.
    """

    def __init__(self, inner: Notifier):
        self._inner = inner
        self.failures = 0

    def notify(
        self,
        recipient_id: str,
        title: str,
        body: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        try:
            self._inner.notify(recipient_id, title, body, metadata or {})
        except Exception as e:
            self.failures += 1
            logger.error(f"Failed to notify {recipient_id} ({title}): {e}")
