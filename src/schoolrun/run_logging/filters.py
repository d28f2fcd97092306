"""Log filters: contact-detail masking and correlation id injection."""

import logging
import re

from ..core.correlation import get_current_correlation_id

# Guardian contact details that reach log lines through notifier errors.
MASKS = (
    (re.compile(r"[\w.+-]+@[\w-]+\.[\w.-]+"), "[EMAIL]"),
    (
        re.compile(
            r"(?<![\w.-])(?:\+?\d{1,3}[-.\s]?)?\(?\d{2,3}\)?[-.\s]?\d{3,5}[-.\s]?\d{4}(?![\w.-])"
        ),
        "[PHONE]",
    ),
)


class PIIFilter(logging.Filter):
    """Masks e-mail addresses and phone numbers in the rendered message.

    Arguments are merged into the message first so ``%s`` values are
    masked as well.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        for pattern, replacement in MASKS:
            message = pattern.sub(replacement, message)
        record.msg, record.args = message, ()
        return True


class CorrelationFilter(logging.Filter):
    """Adds the active correlation_id (or "-") to every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "correlation_id"):
            record.correlation_id = get_current_correlation_id() or "-"
        return True
