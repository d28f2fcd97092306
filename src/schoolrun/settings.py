from decimal import Decimal
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class TrackingSettings(BaseSettings):
    location_ttl_seconds: int = Field(
        default=15,
        ge=1,
        le=300,
        description="Seconds a cached position stays display-fresh",
    )
    last_seen_retention_seconds: int = Field(
        default=600,
        ge=60,
        description="Seconds the last-contact timestamp is retained for liveness checks",
    )

    model_config = SettingsConfigDict(env_prefix="TRACKING_")


class GeofenceSettings(BaseSettings):
    approach_multiplier: float = Field(
        default=3.0,
        ge=1.0,
        le=10.0,
        description="Approach band as a multiple of the stop geofence radius",
    )

    model_config = SettingsConfigDict(env_prefix="GEOFENCE_")


class RoutingSettings(BaseSettings):
    average_speed_kmh: float = Field(
        default=36.0,
        gt=0.0,
        le=150.0,
        description="Average bus speed used to derive segment durations",
    )
    max_two_opt_iterations: int = Field(default=1000, ge=0, le=100_000)

    model_config = SettingsConfigDict(env_prefix="ROUTING_")


class DistressSettings(BaseSettings):
    proximity_radius_km: float = Field(default=5.0, gt=0.0, le=100.0)
    anomaly_threshold_seconds: int = Field(
        default=120,
        ge=30,
        description="Silence after which an in-progress driver is considered anomalous",
    )
    sweep_interval_seconds: float = Field(default=90.0, ge=5.0, le=600.0)

    model_config = SettingsConfigDict(env_prefix="DISTRESS_")


class PaymentSettings(BaseSettings):
    idempotency_ttl_seconds: int = Field(default=86_400, ge=60)
    idempotency_purge_interval_seconds: float = Field(
        default=3600.0,
        ge=60.0,
        description="How often expired idempotency records are deleted",
    )
    webhook_secret: str = ""
    webhook_tolerance_seconds: int = Field(default=300, ge=1)
    preference_max_attempts: int = Field(default=3, ge=1, le=10)
    preference_retry_base_delay: float = Field(default=1.0, ge=0.0, le=10.0)
    max_amount: Decimal = Field(default=Decimal("100000.00"), gt=0)

    model_config = SettingsConfigDict(env_prefix="PAYMENT_")


class BillingSettings(BaseSettings):
    interval_seconds: float = Field(default=300.0, ge=10.0, le=86_400.0)
    batch_limit: int = Field(default=100, ge=1, le=10_000)
    max_failed_attempts: int = Field(
        default=3,
        ge=1,
        description="Failed charges after which a subscription is marked payment_failed",
    )

    model_config = SettingsConfigDict(env_prefix="BILLING_")


class MetricsSettings(BaseSettings):
    enabled: bool = True
    port: int = Field(default=9108, ge=1, le=65_535)
    addr: str = "0.0.0.0"

    model_config = SettingsConfigDict(env_prefix="METRICS_")


class RedisSettings(BaseSettings):
    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: str | None = None
    ssl: bool = False
    enabled: bool = False

    model_config = SettingsConfigDict(env_prefix="REDIS_")


class DatabaseSettings(BaseSettings):
    url: str = "sqlite:///data/schoolrun.db"

    model_config = SettingsConfigDict(env_prefix="DATABASE_")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if "://" not in v:
            raise ValueError("Database URL must include a scheme (e.g. sqlite:///path.db)")
        return v


class LoggingSettings(BaseSettings):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    format: Literal["text", "json"] = "text"
    environment: str = "development"

    model_config = SettingsConfigDict(env_prefix="LOG_")


class Settings(BaseSettings):
    tracking: TrackingSettings = Field(default_factory=TrackingSettings)
    geofence: GeofenceSettings = Field(default_factory=GeofenceSettings)
    routing: RoutingSettings = Field(default_factory=RoutingSettings)
    distress: DistressSettings = Field(default_factory=DistressSettings)
    payment: PaymentSettings = Field(default_factory=PaymentSettings)
    billing: BillingSettings = Field(default_factory=BillingSettings)
    metrics: MetricsSettings = Field(default_factory=MetricsSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        case_sensitive=False,
    )


def get_settings() -> Settings:
    """Load and validate settings from environment variables."""
    return Settings()
