"""End-to-end tests for the wired dispatch engine."""

from unittest.mock import Mock

import pytest

from schoolrun.bus.messages import LocationUpdated, WebhookReceived
from schoolrun.distress.alert import AlertStatus
from schoolrun.main import build_engine, create_redis_client, main
from schoolrun.payments.payment import PaymentStatus
from schoolrun.routes.session import SessionStatus, StopStatus
from schoolrun.settings import DatabaseSettings, MetricsSettings, RedisSettings, Settings
from schoolrun.tracking.location_cache import InMemoryLocationCache, RedisLocationCache
from tests.factories import BASE_LAT, BASE_LON, make_session, make_stop, north_of


@pytest.fixture
def settings(temp_sqlite_db):
    return Settings(database=DatabaseSettings(url=f"sqlite:///{temp_sqlite_db}"))


@pytest.fixture
def notifier():
    return Mock()


@pytest.fixture
def engine(settings, notifier):
    return build_engine(settings, notifier=notifier)


@pytest.mark.unit
class TestBuildEngine:
    def test_in_process_wiring_without_redis(self, engine) -> None:
        assert isinstance(engine.cache, InMemoryLocationCache)
        assert engine.checkout is None
        assert len(engine.bus.handlers_for(LocationUpdated)) == 1

    def test_redis_wiring(self, settings, mock_redis_client) -> None:
        engine = build_engine(settings, redis_client=mock_redis_client)
        assert isinstance(engine.cache, RedisLocationCache)

    def test_checkout_built_with_gateway(self, settings) -> None:
        assert build_engine(settings, gateway=Mock()).checkout is not None

    def test_background_tasks(self, engine) -> None:
        names = [task.name for task in engine.tasks]
        assert names == ["gps-sweep", "subscription-billing", "idempotency-purge"]

    def test_no_redis_client_when_disabled(self, settings) -> None:
        assert create_redis_client(settings) is None

    def test_redis_client_when_enabled(self, settings) -> None:
        settings.redis = RedisSettings(enabled=True, host="redis.local")
        client = create_redis_client(settings)
        assert client.connection_pool.connection_kwargs["host"] == "redis.local"

    def test_default_channel_is_redis_when_available(self, settings, mock_redis_client) -> None:
        engine = build_engine(settings, redis_client=mock_redis_client)
        engine.coordinator.trigger("d1", (BASE_LAT, BASE_LON))
        assert mock_redis_client.publish.call_args.args[0] == "/alerts/admin"


@pytest.mark.unit
class TestEngineFlows:
    def test_gps_fixes_drive_stop_arrival(self, engine, service_date, notifier) -> None:
        """Fixes ingested for a driver reach the geofence through the bus."""
        engine.sessions.schedule(
            make_session("s1", "d1", service_date, stops=[make_stop("a", 1, 1_000)])
        )
        engine.sessions.start("s1")

        engine.ingestor.ingest("d1", *north_of(600))
        engine.ingestor.ingest("d1", *north_of(990))

        stop = engine.sessions.get("s1").get_stop("a")
        assert stop.status == StopStatus.ARRIVED
        titles = [call.args[1] for call in notifier.notify.call_args_list]
        assert titles == ["Bus approaching", "Bus arrived"]

        engine.sessions.record_attendance("s1", "a", StopStatus.PICKED_UP)
        assert engine.sessions.get("s1").status == SessionStatus.COMPLETED

    def test_distress_trigger_broadcasts_through_bus(
        self, engine, service_date, notifier
    ) -> None:
        for driver_id in ("d1", "d2"):
            engine.sessions.schedule(make_session(f"s-{driver_id}", driver_id, service_date))
            engine.sessions.start(f"s-{driver_id}")
        engine.ingestor.ingest("d2", *north_of(800))

        alert_id = engine.coordinator.trigger("d1", (BASE_LAT, BASE_LON))

        alert = engine.coordinator.get_alert(alert_id)
        assert alert.nearby_driver_ids == ["d2"]
        assert alert.session_id == "s-d1"
        assert engine.coordinator.respond(alert_id, "d2").status == AlertStatus.RESPONDED

    def test_webhook_message_settles_payment(self, engine) -> None:
        payment = engine.ledger.create_payment("key-1", "30.00", "BRL", "parent-1")
        engine.bus.dispatch(
            WebhookReceived(payment_id=payment.id, reported_status="approved", provider_id="mp-1")
        )

        assert engine.ledger.get_payment(payment.id).status == PaymentStatus.APPROVED

    def test_latest_position_served_from_cache(self, engine) -> None:
        engine.ingestor.ingest("d1", *north_of(100))

        position = engine.locations.latest_position("d1")

        assert position.source == "cache"
        assert (position.lat, position.lon) == pytest.approx(north_of(100))


@pytest.mark.unit
class TestMain:
    @pytest.fixture
    def run_main(self, monkeypatch, settings):
        """Run main() with a shutdown signal delivered as soon as handlers register."""

        def deliver_immediately(signum, handler):
            handler(signum, None)

        monkeypatch.setattr("schoolrun.main.get_settings", lambda: settings)
        monkeypatch.setattr("schoolrun.main.setup_logging", Mock())
        monkeypatch.setattr("schoolrun.main.signal.signal", deliver_immediately)
        metrics_server = Mock()
        monkeypatch.setattr("schoolrun.main.start_metrics_server", metrics_server)

        def _run() -> Mock:
            main()
            return metrics_server

        return _run

    def test_serves_metrics_when_enabled(self, run_main) -> None:
        metrics_server = run_main()
        metrics_server.assert_called_once_with(9108, "0.0.0.0")

    def test_no_metrics_server_when_disabled(self, run_main, settings) -> None:
        settings.metrics = MetricsSettings(enabled=False)
        run_main().assert_not_called()
