"""Latest-position cache with read-time freshness checks.

Two views are kept per driver: the display-fresh position, which goes
stale after ``location_ttl_seconds``, and the last-contact timestamp,
which is retained much longer so liveness checks can tell "silent for
two minutes" apart from "never seen".
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta

import redis
from redis.exceptions import ConnectionError

from ..db.utils import utc_now

logger = logging.getLogger(__name__)

LOCATION_KEY_PREFIX = "driver.location."
LAST_SEEN_KEY_PREFIX = "driver.last_seen."


@dataclass(frozen=True)
class CachedPosition:
    driver_id: str
    lat: float
    lon: float
    cached_at: datetime
    speed: float | None = None
    heading: float | None = None
    route_id: str | None = None


class LocationCache(ABC):
    """Latest known position per driver."""

    def __init__(
        self,
        ttl_seconds: int = 15,
        last_seen_retention_seconds: int = 600,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._ttl = timedelta(seconds=ttl_seconds)
        self._retention = timedelta(seconds=last_seen_retention_seconds)
        self._clock = clock

    @property
    def ttl_seconds(self) -> int:
        return int(self._ttl.total_seconds())

    @abstractmethod
    def put(
        self,
        driver_id: str,
        lat: float,
        lon: float,
        speed: float | None = None,
        heading: float | None = None,
        route_id: str | None = None,
        now: datetime | None = None,
    ) -> CachedPosition:
        """Overwrite the driver's position and refresh last-contact time."""

    @abstractmethod
    def get(self, driver_id: str, now: datetime | None = None) -> CachedPosition | None:
        """Display-fresh position, or None once older than the TTL."""

    @abstractmethod
    def last_seen(self, driver_id: str, now: datetime | None = None) -> datetime | None:
        """Time of the last put, or None when never seen or past retention."""

    def get_many(
        self, driver_ids: Iterable[str], now: datetime | None = None
    ) -> dict[str, CachedPosition]:
        """Display-fresh positions for the given drivers; stale or missing ones are omitted."""
        now = now or self._clock()
        positions: dict[str, CachedPosition] = {}
        for driver_id in driver_ids:
            position = self.get(driver_id, now=now)
            if position is not None:
                positions[driver_id] = position
        return positions

    def _is_fresh(self, cached_at: datetime, now: datetime) -> bool:
        return now - cached_at <= self._ttl

    def _is_retained(self, seen_at: datetime, now: datetime) -> bool:
        return now - seen_at <= self._retention


class InMemoryLocationCache(LocationCache):
    """Process-local cache guarded by a lock."""

    def __init__(
        self,
        ttl_seconds: int = 15,
        last_seen_retention_seconds: int = 600,
        clock: Callable[[], datetime] = utc_now,
    ):
        super().__init__(ttl_seconds, last_seen_retention_seconds, clock)
        self._positions: dict[str, CachedPosition] = {}
        self._lock = threading.Lock()

    def put(
        self,
        driver_id: str,
        lat: float,
        lon: float,
        speed: float | None = None,
        heading: float | None = None,
        route_id: str | None = None,
        now: datetime | None = None,
    ) -> CachedPosition:
        position = CachedPosition(
            driver_id=driver_id,
            lat=lat,
            lon=lon,
            cached_at=now or self._clock(),
            speed=speed,
            heading=heading,
            route_id=route_id,
        )
        with self._lock:
            self._positions[driver_id] = position
        return position

    def get(self, driver_id: str, now: datetime | None = None) -> CachedPosition | None:
        now = now or self._clock()
        with self._lock:
            position = self._positions.get(driver_id)
        if position is None or not self._is_fresh(position.cached_at, now):
            return None
        return position

    def last_seen(self, driver_id: str, now: datetime | None = None) -> datetime | None:
        now = now or self._clock()
        with self._lock:
            position = self._positions.get(driver_id)
        if position is None or not self._is_retained(position.cached_at, now):
            return None
        return position.cached_at


class RedisLocationCache(LocationCache):
    """Cache shared between workers through Redis.

    Each put writes the position and the last-contact timestamp in one
    pipeline. Redis key expiry only evicts; freshness is still decided
    by comparing ``cached_at`` against the caller's clock.
    """

    def __init__(
        self,
        client: redis.Redis,
        ttl_seconds: int = 15,
        last_seen_retention_seconds: int = 600,
        clock: Callable[[], datetime] = utc_now,
    ):
        super().__init__(ttl_seconds, last_seen_retention_seconds, clock)
        self._client = client

    def put(
        self,
        driver_id: str,
        lat: float,
        lon: float,
        speed: float | None = None,
        heading: float | None = None,
        route_id: str | None = None,
        now: datetime | None = None,
    ) -> CachedPosition:
        position = CachedPosition(
            driver_id=driver_id,
            lat=lat,
            lon=lon,
            cached_at=now or self._clock(),
            speed=speed,
            heading=heading,
            route_id=route_id,
        )
        payload = {
            "lat": lat,
            "lon": lon,
            "speed": speed,
            "heading": heading,
            "route_id": route_id,
            "cached_at": position.cached_at.isoformat(),
        }
        try:
            pipe = self._client.pipeline()
            pipe.set(
                f"{LOCATION_KEY_PREFIX}{driver_id}",
                json.dumps(payload),
                ex=int(self._ttl.total_seconds()),
            )
            pipe.set(
                f"{LAST_SEEN_KEY_PREFIX}{driver_id}",
                position.cached_at.isoformat(),
                ex=int(self._retention.total_seconds()),
            )
            pipe.execute()
        except ConnectionError as e:
            logger.error(f"Failed to cache position for driver {driver_id}: {e}")
        return position

    def get(self, driver_id: str, now: datetime | None = None) -> CachedPosition | None:
        now = now or self._clock()
        try:
            raw = self._client.get(f"{LOCATION_KEY_PREFIX}{driver_id}")
        except ConnectionError as e:
            logger.error(f"Failed to read cached position for driver {driver_id}: {e}")
            return None
        if not raw:
            return None

        data = json.loads(raw)
        cached_at = datetime.fromisoformat(data["cached_at"])
        if not self._is_fresh(cached_at, now):
            return None
        return CachedPosition(
            driver_id=driver_id,
            lat=data["lat"],
            lon=data["lon"],
            cached_at=cached_at,
            speed=data.get("speed"),
            heading=data.get("heading"),
            route_id=data.get("route_id"),
        )

    def last_seen(self, driver_id: str, now: datetime | None = None) -> datetime | None:
        now = now or self._clock()
        try:
            raw = self._client.get(f"{LAST_SEEN_KEY_PREFIX}{driver_id}")
        except ConnectionError as e:
            logger.error(f"Failed to read last contact for driver {driver_id}: {e}")
            return None
        if not raw:
            return None

        if isinstance(raw, bytes):
            raw = raw.decode()
        seen_at = datetime.fromisoformat(raw)
        if not self._is_retained(seen_at, now):
            return None
        return seen_at
