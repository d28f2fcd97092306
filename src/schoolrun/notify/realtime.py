"""Realtime publish channel for live map and alert subscribers."""

import json
import logging
from typing import Any, Protocol

import redis
from opentelemetry import trace
from redis.exceptions import ConnectionError

from ..core.correlation import get_current_correlation_id

logger = logging.getLogger(__name__)

_tracer = trace.get_tracer(__name__)


class RealtimeChannel(Protocol):
    def publish(self, topic: str, payload: dict[str, Any]) -> None: ...


class RedisRealtimeChannel:
    """Publishes JSON payloads over Redis pub/sub.

    Uses the sync Redis client so it can be called from worker threads
    as well as the anomaly sweep thread.
    """

    def __init__(self, client: redis.Redis):
        self._client = client

    def publish(self, topic: str, payload: dict[str, Any]) -> None:
        with _tracer.start_as_current_span("redis.publish") as span:
            span.set_attribute("db.system", "redis")
            span.set_attribute("db.redis.channel", topic)

            correlation_id = get_current_correlation_id()
            if correlation_id:
                span.set_attribute("correlation_id", correlation_id)

            try:
                self._client.publish(topic, json.dumps(payload, default=str))
            except ConnectionError as e:
                span.record_exception(e)
                logger.error(f"Failed to publish to channel {topic}: {e}")

    def close(self) -> None:
        self._client.close()


class NullRealtimeChannel:
    """Channel used when no realtime transport is configured."""

    def publish(self, topic: str, payload: dict[str, Any]) -> None:
        logger.debug(f"Dropping realtime message for {topic}")


class BestEffortChannel:
    """Wraps a RealtimeChannel so publish failures are logged instead of raised."""

    def __init__(self, inner: RealtimeChannel):
        self._inner = inner
        self.failures = 0

    def publish(self, topic: str, payload: dict[str, Any]) -> None:
        try:
            self._inner.publish(topic, payload)
        except Exception as e:
            self.failures += 1
            logger.error(f"Failed to publish to {topic}: {e}")
