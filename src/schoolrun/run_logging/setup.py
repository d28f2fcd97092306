"""Root logger configuration for the dispatch worker."""

import logging
import sys
from typing import TextIO

from .context import ContextFilter
from .filters import CorrelationFilter, PIIFilter
from .formatters import DevFormatter, JSONFormatter

# Libraries that log every statement or command at INFO and below.
QUIET_LOGGERS = ("sqlalchemy.engine", "sqlalchemy.pool", "redis")


def setup_logging(
    level: str = "INFO",
    json_output: bool = False,
    environment: str = "development",
    stream: TextIO | None = None,
) -> logging.Handler:
    """Replace root handlers with one stream handler and return it.

    PII masking runs before the correlation and context filters so the
    ids those filters add are never rewritten.
    """
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(JSONFormatter(environment) if json_output else DevFormatter())
    for log_filter in (PIIFilter(), CorrelationFilter(), ContextFilter()):
        handler.addFilter(log_filter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return handler
