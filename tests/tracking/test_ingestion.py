"""Tests for GPS fix ingestion."""

from datetime import timedelta
from unittest.mock import Mock

import pytest

from schoolrun.core.exceptions import ValidationError
from schoolrun.db.repositories import LocationRepository
from schoolrun.routes.session import SessionStatus
from schoolrun.tracking.ingestion import LocationIngestor
from schoolrun.tracking.location_cache import InMemoryLocationCache
from tests.factories import make_session, persist_session


@pytest.fixture
def cache(clock):
    return InMemoryLocationCache(clock=clock)


@pytest.fixture
def bus():
    return Mock()


@pytest.fixture
def ingestor(session_maker, cache, bus, clock):
    return LocationIngestor(session_maker, cache, bus=bus, clock=clock)


def _history(session_maker, driver_id):
    with session_maker() as session:
        return [
            (fix.lat, fix.lon, fix.recorded_at)
            for fix in LocationRepository(session).history(driver_id)
        ]


@pytest.mark.unit
class TestIngest:
    def test_accepted_fix_is_logged_cached_and_dispatched(
        self, ingestor, session_maker, cache, bus, clock
    ) -> None:
        message = ingestor.ingest("d1", -23.55, -46.63, speed=8.0)

        assert message.driver_id == "d1"
        assert message.recorded_at == clock.now
        assert message.session_id is None
        assert cache.get("d1").lat == -23.55
        assert _history(session_maker, "d1") == [(-23.55, -46.63, clock.now)]
        bus.dispatch.assert_called_once_with(message)

    def test_fix_attached_to_in_progress_session(
        self, ingestor, session_maker, cache, service_date, clock
    ) -> None:
        persist_session(
            session_maker,
            make_session(
                "s1", "d1", service_date, status=SessionStatus.IN_PROGRESS, started_at=clock.now
            ),
        )

        message = ingestor.ingest("d1", -23.55, -46.63)

        assert message.session_id == "s1"
        assert message.correlation_id == "s1"
        assert cache.get("d1").route_id == "s1"

    @pytest.mark.parametrize("lat,lon", [(91.0, 0.0), (0.0, -181.0), (-90.5, 10.0)])
    def test_invalid_coordinates_rejected(self, ingestor, session_maker, bus, lat, lon) -> None:
        with pytest.raises(ValidationError):
            ingestor.ingest("d1", lat, lon)

        assert _history(session_maker, "d1") == []
        bus.dispatch.assert_not_called()

    def test_negative_speed_rejected(self, ingestor) -> None:
        with pytest.raises(ValidationError):
            ingestor.ingest("d1", 0.0, 0.0, speed=-1.0)

    def test_works_without_bus(self, session_maker, cache, clock) -> None:
        ingestor = LocationIngestor(session_maker, cache, clock=clock)
        ingestor.ingest("d1", 1.0, 1.0)
        assert cache.get("d1") is not None


@pytest.mark.unit
class TestIngestBatch:
    def test_valid_items_stored_oldest_first(self, ingestor, session_maker, cache, bus, clock):
        """Offline uploads are dispatched in recorded order whatever order they arrive in."""
        t0 = clock.now - timedelta(minutes=5)
        locations = [
            {"lat": 1.2, "lon": 1.2, "recorded_at": (t0 + timedelta(seconds=20)).isoformat()},
            {"lat": 1.0, "lon": 1.0, "recorded_at": t0.isoformat()},
            {"lat": 1.1, "lon": 1.1, "recorded_at": (t0 + timedelta(seconds=10)).isoformat()},
        ]

        result = ingestor.ingest_batch("d1", locations)

        assert result.processed_count == 3
        assert result.total_count == 3
        assert result.errors == []
        dispatched = [call.args[0].lat for call in bus.dispatch.call_args_list]
        assert dispatched == [1.0, 1.1, 1.2]
        assert cache.get("d1").lat == 1.2
        assert [lat for lat, _, _ in _history(session_maker, "d1")] == [1.2, 1.1, 1.0]

    def test_invalid_items_reported_with_index(self, ingestor, session_maker) -> None:
        locations = [
            {"lat": 1.0, "lon": 1.0},
            {"lat": 95.0, "lon": 1.0},
            {"lon": 1.0},
        ]

        result = ingestor.ingest_batch("d1", locations)

        assert result.processed_count == 1
        assert result.total_count == 3
        assert len(result.errors) == 2
        assert result.errors[0].startswith("Location at index 1 rejected")
        assert result.errors[1].startswith("Location at index 2 rejected")
        assert len(_history(session_maker, "d1")) == 1

    def test_all_invalid_stores_nothing(self, ingestor, session_maker, bus) -> None:
        result = ingestor.ingest_batch("d1", [{"lat": "north", "lon": 1.0}])

        assert result.processed_count == 0
        assert len(result.errors) == 1
        assert _history(session_maker, "d1") == []
        bus.dispatch.assert_not_called()

    def test_empty_batch(self, ingestor) -> None:
        result = ingestor.ingest_batch("d1", [])
        assert (result.processed_count, result.total_count, result.errors) == (0, 0, [])
