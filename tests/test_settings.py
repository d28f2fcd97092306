from decimal import Decimal

import pytest
from pydantic import ValidationError

from schoolrun.settings import (
    BillingSettings,
    DatabaseSettings,
    DistressSettings,
    GeofenceSettings,
    MetricsSettings,
    PaymentSettings,
    RedisSettings,
    Settings,
    TrackingSettings,
    get_settings,
)


@pytest.mark.unit
class TestTrackingSettings:
    def test_defaults(self):
        settings = TrackingSettings()
        assert settings.location_ttl_seconds == 15
        assert settings.last_seen_retention_seconds == 600

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("TRACKING_LOCATION_TTL_SECONDS", "30")
        assert TrackingSettings().location_ttl_seconds == 30

    def test_validation(self):
        with pytest.raises(ValidationError):
            TrackingSettings(location_ttl_seconds=0)


@pytest.mark.unit
class TestDomainSettings:
    def test_geofence_defaults(self):
        assert GeofenceSettings().approach_multiplier == 3.0

    def test_approach_multiplier_must_widen_radius(self):
        with pytest.raises(ValidationError):
            GeofenceSettings(approach_multiplier=0.5)

    def test_distress_defaults(self):
        settings = DistressSettings()
        assert settings.proximity_radius_km == 5.0
        assert settings.anomaly_threshold_seconds == 120
        assert settings.sweep_interval_seconds == 90.0

    def test_payment_defaults(self):
        settings = PaymentSettings()
        assert settings.idempotency_ttl_seconds == 86_400
        assert settings.webhook_secret == ""
        assert settings.max_amount == Decimal("100000.00")
        assert settings.idempotency_purge_interval_seconds == 3600.0

    def test_payment_env(self, monkeypatch):
        monkeypatch.setenv("PAYMENT_WEBHOOK_SECRET", "s3cret")
        monkeypatch.setenv("PAYMENT_WEBHOOK_TOLERANCE_SECONDS", "60")
        settings = PaymentSettings()
        assert settings.webhook_secret == "s3cret"
        assert settings.webhook_tolerance_seconds == 60

    def test_billing_defaults(self):
        settings = BillingSettings()
        assert settings.interval_seconds == 300.0
        assert settings.batch_limit == 100
        assert settings.max_failed_attempts == 3

    def test_billing_env(self, monkeypatch):
        monkeypatch.setenv("BILLING_MAX_FAILED_ATTEMPTS", "5")
        assert BillingSettings().max_failed_attempts == 5

    def test_billing_needs_one_attempt(self):
        with pytest.raises(ValidationError):
            BillingSettings(max_failed_attempts=0)


@pytest.mark.unit
class TestInfrastructureSettings:
    def test_redis_disabled_by_default(self):
        settings = RedisSettings()
        assert settings.enabled is False
        assert settings.port == 6379

    def test_metrics_defaults(self):
        settings = MetricsSettings()
        assert settings.enabled is True
        assert settings.port == 9108

    def test_metrics_env(self, monkeypatch):
        monkeypatch.setenv("METRICS_ENABLED", "false")
        assert MetricsSettings().enabled is False

    def test_database_url_requires_scheme(self):
        with pytest.raises(ValidationError):
            DatabaseSettings(url="data/schoolrun.db")

    def test_database_env(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "sqlite:///tmp/other.db")
        assert DatabaseSettings().url == "sqlite:///tmp/other.db"


@pytest.mark.unit
class TestSettings:
    def test_aggregates_sections(self):
        settings = get_settings()
        assert isinstance(settings, Settings)
        assert settings.routing.max_two_opt_iterations == 1000
        assert settings.logging.level == "INFO"
