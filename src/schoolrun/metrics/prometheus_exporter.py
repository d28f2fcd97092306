"""Prometheus metrics for the dispatch engine."""

from prometheus_client import CollectorRegistry, Counter, Histogram, start_http_server

# Use a separate registry to avoid default Python metrics
REGISTRY = CollectorRegistry()

# --- Counters (cumulative values) ---

gps_fixes_ingested_total = Counter(
    "schoolrun_gps_fixes_ingested_total",
    "Total GPS fixes ingested by outcome",
    ["outcome"],
    registry=REGISTRY,
)

geofence_transitions_total = Counter(
    "schoolrun_geofence_transitions_total",
    "Total stop transitions emitted by the geofence engine",
    ["status"],
    registry=REGISTRY,
)

distress_alerts_total = Counter(
    "schoolrun_distress_alerts_total",
    "Total distress alerts triggered by source",
    ["source"],
    registry=REGISTRY,
)

payments_created_total = Counter(
    "schoolrun_payments_created_total",
    "Total payments created (idempotent replays excluded)",
    registry=REGISTRY,
)

webhook_updates_total = Counter(
    "schoolrun_webhook_updates_total",
    "Total payment webhook updates by result",
    ["result"],
    registry=REGISTRY,
)

refunds_total = Counter(
    "schoolrun_refunds_total",
    "Total refunds applied by resulting status",
    ["status"],
    registry=REGISTRY,
)

bus_messages_total = Counter(
    "schoolrun_bus_messages_total",
    "Total bus messages by type and outcome",
    ["message_type", "outcome"],
    registry=REGISTRY,
)

subscription_billings_total = Counter(
    "schoolrun_subscription_billings_total",
    "Total subscription billing attempts by outcome",
    ["outcome"],
    registry=REGISTRY,
)

idempotency_records_purged_total = Counter(
    "schoolrun_idempotency_records_purged_total",
    "Total expired idempotency records deleted by the purge task",
    registry=REGISTRY,
)

# --- Histograms (latency distributions) ---

OPTIMIZER_LATENCY_BUCKETS = (0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, float("inf"))

route_optimization_seconds = Histogram(
    "schoolrun_route_optimization_seconds",
    "Route optimization wall time in seconds",
    buckets=OPTIMIZER_LATENCY_BUCKETS,
    registry=REGISTRY,
)


def start_metrics_server(port: int, addr: str = "0.0.0.0") -> None:
    """Serve the engine's registry over HTTP for Prometheus to scrape."""
    start_http_server(port, addr=addr, registry=REGISTRY)
