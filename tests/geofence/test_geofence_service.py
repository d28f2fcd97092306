"""Tests for applying geofence evaluation to stored sessions."""

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from schoolrun.core.exceptions import NotFoundError
from schoolrun.db.repositories import SessionRepository
from schoolrun.geofence.engine import GeofenceEngine, GeofenceService
from schoolrun.routes.session import SessionStatus, StopStatus
from tests.factories import make_session, make_stop, north_of, persist_session


@pytest.fixture
def service(session_maker, mock_notifier, mock_channel):
    return GeofenceService(session_maker, GeofenceEngine(), mock_notifier, mock_channel)


@pytest.fixture
def running_session(session_maker, service_date, clock):
    return persist_session(
        session_maker,
        make_session(
            "s1",
            "d1",
            service_date,
            stops=[make_stop("a", 1, 1_000), make_stop("b", 2, 2_000)],
            status=SessionStatus.IN_PROGRESS,
            started_at=clock.now,
        ),
    )


def _load(session_maker, session_id="s1"):
    with session_maker() as session:
        return SessionRepository(session).get(session_id)


@pytest.mark.unit
class TestGeofenceService:
    def test_approach_then_arrive(
        self, service, running_session, session_maker, clock, mock_notifier, mock_channel
    ) -> None:
        fixes = [(600, 0), (851, 10), (960, 20)]
        applied = []
        for meters, offset in fixes:
            applied += service.process_position(
                "s1", *north_of(meters), clock.now + timedelta(seconds=offset)
            )

        assert [t.to_status for t in applied] == [StopStatus.APPROACHING, StopStatus.ARRIVED]
        stored = _load(session_maker)
        stop = stored.get_stop("a")
        assert stop.status == StopStatus.ARRIVED
        assert stop.arrived_at == clock.now + timedelta(seconds=20)
        assert stored.get_stop("b").status == StopStatus.PENDING
        assert stored.current_position == pytest.approx(north_of(960))

        titles = [call.args[1] for call in mock_notifier.notify.call_args_list]
        assert titles == ["Bus approaching", "Bus arrived"]
        assert {call.args[0] for call in mock_notifier.notify.call_args_list} == {"parent-a"}
        published = [call.args for call in mock_channel.publish.call_args_list]
        assert [topic for topic, _ in published] == ["/tracking/session/s1"] * 2
        assert [payload["type"] for _, payload in published] == ["stop_approaching", "stop_arrived"]

    def test_late_fix_is_ignored(self, service, running_session, session_maker, clock) -> None:
        """A fix older than the last applied one never moves state."""
        service.process_position("s1", *north_of(500), clock.now)

        applied = service.process_position(
            "s1", *north_of(1_000), clock.now - timedelta(seconds=30)
        )

        assert applied == []
        stored = _load(session_maker)
        assert stored.get_stop("a").status == StopStatus.PENDING
        assert stored.position_recorded_at == clock.now
        assert stored.current_position == pytest.approx(north_of(500))

    def test_repeated_fix_does_not_renotify(
        self, service, running_session, clock, mock_notifier
    ) -> None:
        service.process_position("s1", *north_of(1_000), clock.now)
        service.process_position("s1", *north_of(1_000), clock.now + timedelta(seconds=5))

        assert mock_notifier.notify.call_count == 2

    def test_session_not_in_progress_is_ignored(
        self, service, session_maker, service_date, clock, mock_notifier
    ) -> None:
        persist_session(
            session_maker, make_session("s2", "d2", service_date, stops=[make_stop("x", 1, 0)])
        )

        assert service.process_position("s2", *north_of(0), clock.now) == []
        mock_notifier.notify.assert_not_called()

    def test_unknown_session(self, service, clock) -> None:
        with pytest.raises(NotFoundError):
            service.process_position("missing", 0.0, 0.0, clock.now)

    def test_concurrent_identical_fixes_apply_once(
        self, service, running_session, session_maker, clock, mock_notifier
    ) -> None:
        """Workers racing on the same fix produce one set of transitions."""
        position = north_of(1_000)

        with ThreadPoolExecutor(max_workers=4) as executor:
            futures = [
                executor.submit(service.process_position, "s1", *position, clock.now)
                for _ in range(4)
            ]
            results = [future.result() for future in futures]

        applied = [t.to_status for result in results for t in result]
        assert sorted(applied) == sorted([StopStatus.APPROACHING, StopStatus.ARRIVED])
        assert mock_notifier.notify.call_count == 2
        assert _load(session_maker).get_stop("a").status == StopStatus.ARRIVED
