"""Redelivery guard for bus messages, shared between workers through Redis."""

import logging
from datetime import timedelta

import redis

logger = logging.getLogger(__name__)


class MessageDeduplicator:
    """Claims each ``event_id`` once per message type for a TTL window.

    A claim is a single ``SET NX EX``, so two workers receiving the same
    redelivery cannot both win. The winner releases its claim when
    handling fails, which lets the next redelivery through.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        ttl: timedelta = timedelta(hours=1),
        namespace: str = "schoolrun:bus",
    ):
        self._redis = redis_client
        self._ttl_seconds = max(1, int(ttl.total_seconds()))
        self._namespace = namespace

    def _key(self, message_type: str, event_id: str) -> str:
        return f"{self._namespace}:{message_type}:{event_id}"

    def claim(self, message_type: str, event_id: str) -> bool:
        """True when the caller should handle the message."""
        if not event_id:
            return True
        claimed = bool(
            self._redis.set(self._key(message_type, event_id), "1", nx=True, ex=self._ttl_seconds)
        )
        if not claimed:
            logger.debug(f"{message_type} {event_id} already claimed, dropping redelivery")
        return claimed

    def release(self, message_type: str, event_id: str) -> None:
        if event_id:
            self._redis.delete(self._key(message_type, event_id))
