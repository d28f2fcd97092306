from .context import LogContext, log_context
from .setup import setup_logging

__all__ = ["LogContext", "log_context", "setup_logging"]
