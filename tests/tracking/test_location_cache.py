"""Tests for the latest-position cache implementations."""

import json
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from redis.exceptions import ConnectionError

from schoolrun.tracking.location_cache import (
    LAST_SEEN_KEY_PREFIX,
    LOCATION_KEY_PREFIX,
    InMemoryLocationCache,
    RedisLocationCache,
)


@pytest.mark.unit
class TestInMemoryLocationCache:
    def test_put_then_get_returns_position(self, clock) -> None:
        cache = InMemoryLocationCache(clock=clock)
        cache.put("d1", -23.55, -46.63, speed=10.0, heading=90.0, route_id="s1")

        position = cache.get("d1")
        assert position is not None
        assert (position.lat, position.lon) == (-23.55, -46.63)
        assert position.speed == 10.0
        assert position.route_id == "s1"
        assert position.cached_at == clock.now

    def test_get_unknown_driver_returns_none(self, clock) -> None:
        assert InMemoryLocationCache(clock=clock).get("ghost") is None

    def test_put_overwrites(self, clock) -> None:
        cache = InMemoryLocationCache(clock=clock)
        cache.put("d1", 1.0, 1.0)
        cache.put("d1", 2.0, 2.0)
        assert cache.get("d1").lat == 2.0

    def test_position_expires_after_ttl(self, clock) -> None:
        """A position is display-fresh for exactly the TTL."""
        cache = InMemoryLocationCache(ttl_seconds=15, clock=clock)
        cache.put("d1", 1.0, 1.0)

        clock.advance(15)
        assert cache.get("d1") is not None
        clock.advance(1)
        assert cache.get("d1") is None

    def test_last_seen_survives_position_ttl(self, clock) -> None:
        """Liveness outlives display freshness."""
        cache = InMemoryLocationCache(ttl_seconds=15, last_seen_retention_seconds=600, clock=clock)
        seen_at = clock.now
        cache.put("d1", 1.0, 1.0)

        clock.advance(120)
        assert cache.get("d1") is None
        assert cache.last_seen("d1") == seen_at

    def test_last_seen_dropped_after_retention(self, clock) -> None:
        cache = InMemoryLocationCache(last_seen_retention_seconds=600, clock=clock)
        cache.put("d1", 1.0, 1.0)
        clock.advance(601)
        assert cache.last_seen("d1") is None

    def test_last_seen_never_seen(self, clock) -> None:
        assert InMemoryLocationCache(clock=clock).last_seen("ghost") is None

    def test_get_many_skips_stale_and_missing(self, clock) -> None:
        cache = InMemoryLocationCache(ttl_seconds=15, clock=clock)
        cache.put("stale", 1.0, 1.0)
        clock.advance(30)
        cache.put("fresh", 2.0, 2.0)

        positions = cache.get_many(["fresh", "stale", "missing"])
        assert set(positions) == {"fresh"}

    def test_explicit_now_overrides_clock(self, clock) -> None:
        cache = InMemoryLocationCache(ttl_seconds=15, clock=clock)
        cache.put("d1", 1.0, 1.0)
        assert cache.get("d1", now=clock.now + timedelta(seconds=60)) is None

    def test_concurrent_put_get(self, clock) -> None:
        """Concurrent writers and readers never observe a torn entry."""
        cache = InMemoryLocationCache(clock=clock)

        def writer(i: int) -> None:
            for j in range(200):
                cache.put(f"d{i % 5}", float(j % 90), float(j % 90))

        def reader(i: int) -> None:
            for _ in range(200):
                position = cache.get(f"d{i % 5}")
                if position is not None:
                    assert position.lat == position.lon

        with ThreadPoolExecutor(max_workers=10) as executor:
            futures = [executor.submit(writer, i) for i in range(5)]
            futures += [executor.submit(reader, i) for i in range(5)]
            for future in futures:
                future.result()


@pytest.mark.unit
class TestRedisLocationCache:
    def test_put_writes_both_keys_in_one_pipeline(self, clock) -> None:
        client = MagicMock()
        pipe = client.pipeline.return_value
        cache = RedisLocationCache(
            client, ttl_seconds=15, last_seen_retention_seconds=600, clock=clock
        )

        cache.put("d1", 1.5, 2.5, speed=3.0)

        calls = pipe.set.call_args_list
        assert calls[0].args[0] == f"{LOCATION_KEY_PREFIX}d1"
        assert calls[0].kwargs["ex"] == 15
        assert json.loads(calls[0].args[1])["lat"] == 1.5
        assert calls[1].args == (f"{LAST_SEEN_KEY_PREFIX}d1", clock.now.isoformat())
        assert calls[1].kwargs["ex"] == 600
        pipe.execute.assert_called_once()

    def test_get_checks_freshness_by_timestamp(self, clock) -> None:
        """Freshness is decided from cached_at even if Redis has not evicted the key."""
        client = MagicMock()
        payload = {"lat": 1.0, "lon": 2.0, "cached_at": clock.now.isoformat()}
        client.get.return_value = json.dumps(payload)
        cache = RedisLocationCache(client, ttl_seconds=15, clock=clock)

        assert cache.get("d1").lon == 2.0
        clock.advance(20)
        assert cache.get("d1") is None

    def test_get_missing_key(self, clock) -> None:
        client = MagicMock()
        client.get.return_value = None
        assert RedisLocationCache(client, clock=clock).get("d1") is None

    def test_last_seen_decodes_bytes(self, clock) -> None:
        client = MagicMock()
        client.get.return_value = clock.now.isoformat().encode()
        cache = RedisLocationCache(client, clock=clock)

        clock.advance(100)
        assert cache.last_seen("d1") == clock.now - timedelta(seconds=100)

    def test_connection_error_on_get_returns_none(self, clock) -> None:
        client = MagicMock()
        client.get.side_effect = ConnectionError("down")
        cache = RedisLocationCache(client, clock=clock)

        assert cache.get("d1") is None
        assert cache.last_seen("d1") is None

    def test_connection_error_on_put_is_logged(self, clock, caplog) -> None:
        client = MagicMock()
        client.pipeline.return_value.execute.side_effect = ConnectionError("down")
        cache = RedisLocationCache(client, clock=clock)

        position = cache.put("d1", 1.0, 1.0)
        assert position.driver_id == "d1"
        assert "Failed to cache position" in caplog.text
