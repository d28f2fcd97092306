"""Dispatch worker entry point."""

import logging
import signal
import sys
import threading
from dataclasses import dataclass, field
from datetime import timedelta

import redis

from .bus.deduplication import MessageDeduplicator
from .bus.dispatcher import InProcessMessageBus
from .bus.handlers import MessageHandlers
from .core.scheduler import PeriodicTask
from .db.database import init_database
from .distress.anomaly import GpsAnomalyDetector
from .distress.coordinator import DistressCoordinator
from .geofence.engine import GeofenceEngine, GeofenceService
from .metrics import start_metrics_server
from .notify.notifier import BestEffortNotifier, LoggingNotifier, Notifier
from .notify.realtime import (
    BestEffortChannel,
    NullRealtimeChannel,
    RealtimeChannel,
    RedisRealtimeChannel,
)
from .payments.billing import SubscriptionBiller
from .payments.checkout import CheckoutService
from .payments.gateway import PaymentGateway
from .payments.ledger import PaymentLedger
from .payments.webhook import WebhookValidator
from .routes.service import RouteSessionService
from .routing.optimizer import RouteOptimizer
from .run_logging import setup_logging
from .settings import Settings, get_settings
from .tracking.ingestion import LocationIngestor
from .tracking.location_cache import InMemoryLocationCache, LocationCache, RedisLocationCache
from .tracking.query import LocationQueryService

logger = logging.getLogger(__name__)


@dataclass
class DispatchEngine:
    """All services of one worker, wired together."""

    settings: Settings
    bus: InProcessMessageBus
    cache: LocationCache
    ingestor: LocationIngestor
    locations: LocationQueryService
    sessions: RouteSessionService
    geofence: GeofenceService
    coordinator: DistressCoordinator
    detector: GpsAnomalyDetector
    ledger: PaymentLedger
    billing: SubscriptionBiller
    webhooks: WebhookValidator
    checkout: CheckoutService | None = None
    tasks: list[PeriodicTask] = field(default_factory=list)


def create_redis_client(settings: Settings) -> redis.Redis | None:
    """Create Redis client with settings, or None when Redis is disabled."""
    if not settings.redis.enabled:
        return None
    return redis.Redis(
        host=settings.redis.host,
        port=settings.redis.port,
        db=settings.redis.db,
        password=settings.redis.password,
        ssl=settings.redis.ssl,
        decode_responses=True,
    )


def build_engine(
    settings: Settings,
    redis_client: redis.Redis | None = None,
    notifier: Notifier | None = None,
    channel: RealtimeChannel | None = None,
    gateway: PaymentGateway | None = None,
) -> DispatchEngine:
    session_maker = init_database(settings.database.url)

    if redis_client is not None:
        cache: LocationCache = RedisLocationCache(
            redis_client,
            ttl_seconds=settings.tracking.location_ttl_seconds,
            last_seen_retention_seconds=settings.tracking.last_seen_retention_seconds,
        )
        deduplicator = MessageDeduplicator(redis_client, ttl=timedelta(hours=1))
        channel = channel or RedisRealtimeChannel(redis_client)
    else:
        cache = InMemoryLocationCache(
            ttl_seconds=settings.tracking.location_ttl_seconds,
            last_seen_retention_seconds=settings.tracking.last_seen_retention_seconds,
        )
        deduplicator = None
        channel = channel or NullRealtimeChannel()

    best_effort_notifier = BestEffortNotifier(notifier or LoggingNotifier())
    best_effort_channel = BestEffortChannel(channel)
    bus = InProcessMessageBus(deduplicator=deduplicator)

    optimizer = RouteOptimizer(
        average_speed_kmh=settings.routing.average_speed_kmh,
        max_iterations=settings.routing.max_two_opt_iterations,
    )
    sessions = RouteSessionService(
        session_maker, optimizer, best_effort_notifier, best_effort_channel
    )
    geofence = GeofenceService(
        session_maker,
        GeofenceEngine(approach_multiplier=settings.geofence.approach_multiplier),
        best_effort_notifier,
        best_effort_channel,
    )
    coordinator = DistressCoordinator(
        session_maker,
        cache,
        best_effort_notifier,
        best_effort_channel,
        proximity_radius_km=settings.distress.proximity_radius_km,
        bus=bus,
    )
    detector = GpsAnomalyDetector(
        session_maker,
        cache,
        coordinator,
        threshold_seconds=settings.distress.anomaly_threshold_seconds,
    )
    ledger = PaymentLedger(
        session_maker,
        idempotency_ttl_seconds=settings.payment.idempotency_ttl_seconds,
        max_amount=settings.payment.max_amount,
    )
    biller = SubscriptionBiller(
        session_maker, ledger, max_failed_attempts=settings.billing.max_failed_attempts
    )
    checkout = None
    if gateway is not None:
        checkout = CheckoutService(
            session_maker,
            ledger,
            gateway,
            max_attempts=settings.payment.preference_max_attempts,
            retry_base_delay=settings.payment.preference_retry_base_delay,
        )

    MessageHandlers(geofence, coordinator, ledger, sessions).register(bus)

    return DispatchEngine(
        settings=settings,
        bus=bus,
        cache=cache,
        ingestor=LocationIngestor(session_maker, cache, bus=bus),
        locations=LocationQueryService(session_maker, cache),
        sessions=sessions,
        geofence=geofence,
        coordinator=coordinator,
        detector=detector,
        ledger=ledger,
        billing=biller,
        webhooks=WebhookValidator(
            settings.payment.webhook_secret,
            tolerance_seconds=settings.payment.webhook_tolerance_seconds,
        ),
        checkout=checkout,
        tasks=[
            PeriodicTask("gps-sweep", detector.sweep, settings.distress.sweep_interval_seconds),
            PeriodicTask(
                "subscription-billing",
                lambda: biller.run(settings.billing.batch_limit),
                settings.billing.interval_seconds,
            ),
            PeriodicTask(
                "idempotency-purge",
                ledger.purge_expired_keys,
                settings.payment.idempotency_purge_interval_seconds,
            ),
        ],
    )


def main() -> None:
    """Main entry point for the dispatch worker."""
    settings = get_settings()

    setup_logging(
        level=settings.logging.level,
        json_output=settings.logging.format == "json",
        environment=settings.logging.environment,
    )

    logger.info("Starting dispatch worker...")
    logger.info(f"Database: {settings.database.url.split('://', 1)[0]}")
    if settings.redis.enabled:
        logger.info(f"Redis: {settings.redis.host}:{settings.redis.port}")
    else:
        logger.info("Redis disabled, using in-process location cache")

    try:
        engine = build_engine(settings, create_redis_client(settings))
    except Exception as e:
        logger.exception(f"Fatal error initializing dispatch worker: {e}")
        sys.exit(1)

    stop_event = threading.Event()

    def shutdown_handler(signum: int, frame: object) -> None:
        sig_name = signal.Signals(signum).name
        logger.info(f"Received {sig_name}, initiating graceful shutdown...")
        stop_event.set()

    signal.signal(signal.SIGTERM, shutdown_handler)
    signal.signal(signal.SIGINT, shutdown_handler)

    if settings.metrics.enabled:
        start_metrics_server(settings.metrics.port, settings.metrics.addr)
        logger.info(f"Metrics: http://{settings.metrics.addr}:{settings.metrics.port}/metrics")

    for task in engine.tasks:
        task.start()
    stop_event.wait()
    for task in engine.tasks:
        task.stop()

    logger.info("Dispatch worker exited")


if __name__ == "__main__":
    main()
