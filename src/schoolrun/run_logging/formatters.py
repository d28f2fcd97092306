"""Log formatters for JSON and human-readable output."""

import json
import logging
from datetime import UTC, datetime

# Entity ids a dispatch log line may carry, in display order.
ENTITY_FIELDS = (
    "driver_id",
    "session_id",
    "stop_id",
    "alert_id",
    "payment_id",
    "subscription_id",
    "event_id",
)


class JSONFormatter(logging.Formatter):
    """One JSON object per line for log shipping."""

    def __init__(self, environment: str = "development"):
        super().__init__()
        self.environment = environment

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "env": self.environment,
            "correlation_id": getattr(record, "correlation_id", "-"),
        }
        log_data.update(
            (field, getattr(record, field)) for field in ENTITY_FIELDS if hasattr(record, field)
        )
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class DevFormatter(logging.Formatter):
    """Single-line console format with the bound entity ids appended."""

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s [%(levelname)8s] [corr=%(correlation_id)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        if not hasattr(record, "correlation_id"):
            record.correlation_id = "-"
        line = super().format(record)
        ids = " ".join(
            f"{field[:-3]}={getattr(record, field)}"
            for field in ENTITY_FIELDS
            if hasattr(record, field)
        )
        return f"{line} ({ids})" if ids else line
