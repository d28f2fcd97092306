"""Tests for the pure geofence evaluation."""

import pytest

from schoolrun.geofence.engine import GeofenceEngine
from schoolrun.routes.session import StopStatus
from tests.factories import make_stop, north_of


def _at(meters_north: float) -> tuple[float, float]:
    return north_of(meters_north)


@pytest.mark.unit
class TestGeofenceEngine:
    def test_far_position_changes_nothing(self) -> None:
        stops = [make_stop("a", 1, 0)]
        result = GeofenceEngine().evaluate(stops, *_at(400))

        assert result.stop_id == "a"
        assert result.distance_m == pytest.approx(400, rel=0.01)
        assert result.transitions == []

    def test_within_approach_band_marks_approaching(self) -> None:
        """Approach band is three times the 50 m radius."""
        stops = [make_stop("a", 1, 0)]
        result = GeofenceEngine().evaluate(stops, *_at(149))

        assert [(t.from_status, t.to_status) for t in result.transitions] == [
            (StopStatus.PENDING, StopStatus.APPROACHING)
        ]

    def test_inside_radius_from_approaching_marks_arrived(self) -> None:
        stops = [make_stop("a", 1, 0, status=StopStatus.APPROACHING)]
        result = GeofenceEngine().evaluate(stops, *_at(40))

        assert [t.to_status for t in result.transitions] == [StopStatus.ARRIVED]
        assert result.transitions[0].distance_m == pytest.approx(40, rel=0.01)

    def test_jump_inside_radius_passes_through_approaching(self) -> None:
        stops = [make_stop("a", 1, 0)]
        result = GeofenceEngine().evaluate(stops, *_at(10))

        assert [t.to_status for t in result.transitions] == [
            StopStatus.APPROACHING,
            StopStatus.ARRIVED,
        ]

    def test_sequence_400_149_40(self) -> None:
        engine = GeofenceEngine()
        stop = make_stop("a", 1, 0)
        statuses = []
        for meters in (400, 149, 40):
            result = engine.evaluate([stop], *_at(meters))
            for transition in result.transitions:
                stop = stop.model_copy(update={"status": transition.to_status})
            statuses.append(stop.status)

        assert statuses == [StopStatus.PENDING, StopStatus.APPROACHING, StopStatus.ARRIVED]

    def test_arrived_never_moves_back_to_approaching(self) -> None:
        stops = [make_stop("a", 1, 0, status=StopStatus.ARRIVED)]
        result = GeofenceEngine().evaluate(stops, *_at(120))
        assert result.transitions == []

    def test_repeated_fix_is_idempotent(self) -> None:
        stops = [make_stop("a", 1, 0, status=StopStatus.APPROACHING)]
        result = GeofenceEngine().evaluate(stops, *_at(100))
        assert result.transitions == []

    def test_only_next_unresolved_stop_is_considered(self) -> None:
        """Passing over a later stop does not trigger it early."""
        stops = [
            make_stop("a", 1, 1_000),
            make_stop("b", 2, 0),
        ]
        result = GeofenceEngine().evaluate(stops, *_at(0))

        assert result.stop_id == "a"
        assert result.transitions == []

    def test_resolved_stops_are_skipped(self) -> None:
        stops = [
            make_stop("a", 1, 1_000, status=StopStatus.SKIPPED),
            make_stop("b", 2, 0),
        ]
        result = GeofenceEngine().evaluate(stops, *_at(0))
        assert result.stop_id == "b"
        assert len(result.transitions) == 2

    def test_all_resolved_returns_empty_result(self) -> None:
        stops = [make_stop("a", 1, 0, status=StopStatus.PICKED_UP)]
        result = GeofenceEngine().evaluate(stops, *_at(0))
        assert result.stop_id is None
        assert result.transitions == []

    def test_custom_multiplier(self) -> None:
        stops = [make_stop("a", 1, 0)]
        assert GeofenceEngine(approach_multiplier=2.0).evaluate(stops, *_at(149)).transitions == []
