"""Tests for the in-process message bus and event de-duplication."""

from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest

from schoolrun.bus.deduplication import MessageDeduplicator
from schoolrun.bus.dispatcher import InProcessMessageBus
from schoolrun.bus.messages import DistressTriggered, LocationUpdated
from schoolrun.core.correlation import get_current_correlation_id
from schoolrun.run_logging import LogContext


class FakeRedis:
    """Just enough of SET NX / DELETE for de-duplication."""

    def __init__(self):
        self.store: dict[str, tuple[str, int | None]] = {}

    def set(self, key, value, nx=False, ex=None):
        if nx and key in self.store:
            return None
        self.store[key] = (value, ex)
        return True

    def delete(self, key):
        return 1 if self.store.pop(key, None) is not None else 0


def _location(**overrides) -> LocationUpdated:
    fields = {
        "driver_id": "d1",
        "session_id": "s1",
        "lat": 1.0,
        "lon": 2.0,
        "recorded_at": datetime(2026, 3, 2, 7, 0, tzinfo=UTC),
    }
    fields.update(overrides)
    return LocationUpdated(**fields)


@pytest.mark.unit
class TestMessageDeduplicator:
    def test_first_claim_wins(self) -> None:
        redis = FakeRedis()
        dedup = MessageDeduplicator(redis, ttl=timedelta(minutes=5))

        assert dedup.claim("LocationUpdated", "e1")
        assert not dedup.claim("LocationUpdated", "e1")
        assert redis.store["schoolrun:bus:LocationUpdated:e1"] == ("1", 300)

    def test_claims_are_per_message_type(self) -> None:
        dedup = MessageDeduplicator(FakeRedis())
        assert dedup.claim("LocationUpdated", "e1")
        assert dedup.claim("WebhookReceived", "e1")

    def test_release_allows_reprocessing(self) -> None:
        dedup = MessageDeduplicator(FakeRedis())
        dedup.claim("LocationUpdated", "e1")
        dedup.release("LocationUpdated", "e1")
        assert dedup.claim("LocationUpdated", "e1")

    def test_empty_event_id_always_handled(self) -> None:
        redis = MagicMock()
        dedup = MessageDeduplicator(redis)
        assert dedup.claim("LocationUpdated", "")
        redis.set.assert_not_called()


@pytest.mark.unit
class TestInProcessMessageBus:
    def test_dispatch_routes_by_type(self) -> None:
        bus = InProcessMessageBus()
        locations, alerts = [], []
        bus.register(LocationUpdated, locations.append)
        bus.register(DistressTriggered, alerts.append)

        message = _location()
        assert bus.dispatch(message)

        assert locations == [message]
        assert alerts == []
        assert bus.messages_dispatched == 1

    def test_multiple_handlers_run_in_registration_order(self) -> None:
        bus = InProcessMessageBus()
        calls = []
        bus.register(LocationUpdated, lambda m: calls.append("first"))
        bus.register(LocationUpdated, lambda m: calls.append("second"))

        bus.dispatch(_location())
        assert calls == ["first", "second"]
        assert len(bus.handlers_for(LocationUpdated)) == 2

    def test_unhandled_type_is_dropped(self) -> None:
        assert not InProcessMessageBus().dispatch(_location())

    def test_handler_sees_correlation_and_event_context(self) -> None:
        bus = InProcessMessageBus()
        seen = {}

        def handler(message):
            seen["correlation_id"] = get_current_correlation_id()
            seen["event_id"] = LogContext.get().get("event_id")

        bus.register(LocationUpdated, handler)
        message = _location(correlation_id="s1")
        bus.dispatch(message)

        assert seen == {"correlation_id": "s1", "event_id": str(message.event_id)}
        assert get_current_correlation_id() is None

    def test_correlation_defaults_to_event_id(self) -> None:
        bus = InProcessMessageBus()
        seen = []
        bus.register(LocationUpdated, lambda m: seen.append(get_current_correlation_id()))

        message = _location()
        bus.dispatch(message)
        assert seen == [str(message.event_id)]

    def test_redelivered_event_is_skipped(self) -> None:
        bus = InProcessMessageBus(MessageDeduplicator(FakeRedis()))
        handled = []
        bus.register(LocationUpdated, handled.append)

        message = _location()
        assert bus.dispatch(message)
        assert not bus.dispatch(message)
        assert handled == [message]

    def test_failed_handler_propagates_and_allows_redelivery(self) -> None:
        bus = InProcessMessageBus(MessageDeduplicator(FakeRedis()))
        attempts = []

        def flaky(message):
            attempts.append(message)
            if len(attempts) == 1:
                raise RuntimeError("store unavailable")

        bus.register(LocationUpdated, flaky)
        message = _location()

        with pytest.raises(RuntimeError):
            bus.dispatch(message)
        assert bus.dispatch(message)
        assert len(attempts) == 2
        assert bus.messages_dispatched == 1
