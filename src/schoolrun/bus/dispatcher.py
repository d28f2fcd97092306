"""In-process message bus with explicit handler registration."""

import logging
from collections.abc import Callable
from typing import Any

from ..core.correlation import correlation_id_for, with_correlation
from ..metrics.prometheus_exporter import bus_messages_total
from ..run_logging import log_context
from .deduplication import MessageDeduplicator

logger = logging.getLogger(__name__)

Handler = Callable[[Any], None]


class InProcessMessageBus:
    """Routes each message type to the handlers registered for it.

    Handlers run synchronously in the dispatching thread and their
    exceptions propagate to the caller. When a deduplicator is given,
    a redelivered ``event_id`` is dropped; a failed handler releases
    the id so the redelivery is processed again.
    """

    def __init__(self, deduplicator: MessageDeduplicator | None = None):
        self._handlers: dict[type, list[Handler]] = {}
        self._deduplicator = deduplicator
        self.messages_dispatched = 0

    def register(self, message_type: type, handler: Handler) -> None:
        self._handlers.setdefault(message_type, []).append(handler)
        name = getattr(handler, "__name__", repr(handler))
        logger.info(f"Registered {name} for {message_type.__name__}")

    def handlers_for(self, message_type: type) -> list[Handler]:
        return list(self._handlers.get(message_type, []))

    def dispatch(self, message: Any) -> bool:
        """Deliver message to its handlers; False when it was dropped."""
        type_name = type(message).__name__
        handlers = self._handlers.get(type(message))
        if not handlers:
            bus_messages_total.labels(message_type=type_name, outcome="unrouted").inc()
            logger.warning(f"No handler for message: {type_name}")
            return False

        event_id = str(message.event_id)
        if self._deduplicator is not None and not self._deduplicator.claim(type_name, event_id):
            bus_messages_total.labels(message_type=type_name, outcome="duplicate").inc()
            return False

        correlation_id = correlation_id_for(message)
        try:
            with with_correlation(correlation_id), log_context(event_id=event_id):
                for handler in handlers:
                    handler(message)
        except Exception:
            bus_messages_total.labels(message_type=type_name, outcome="failed").inc()
            if self._deduplicator is not None:
                self._deduplicator.release(type_name, event_id)
            raise

        bus_messages_total.labels(message_type=type_name, outcome="handled").inc()
        self.messages_dispatched += 1
        return True
