"""Exponential backoff for calls to external collaborators."""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

from .exceptions import DispatchError, TransientError

T = TypeVar("T")
logger = logging.getLogger(__name__)


@dataclass
class RetryConfig:
    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    retryable_exceptions: tuple[type[Exception], ...] = field(
        default_factory=lambda: (TransientError,)
    )

    def delay_for(self, attempt: int, error: Exception | None = None) -> float:
        """Seconds to wait after the given zero-based failed attempt.

        A provider's ``retry_after`` hint in the error details replaces
        the computed backoff; both are capped at ``max_delay``.
        """
        hint = error.details.get("retry_after") if isinstance(error, DispatchError) else None
        delay = float(hint) if hint is not None else self.base_delay * self.multiplier**attempt
        return min(delay, self.max_delay)


def with_retry_sync(
    operation: Callable[[], T],
    config: RetryConfig | None = None,
    operation_name: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call operation until it succeeds or attempts run out.

    Only ``config.retryable_exceptions`` are retried; anything else,
    and the last retryable failure, propagates unchanged.
    """
    config = config or RetryConfig()
    attempt = 0
    while True:
        try:
            return operation()
        except config.retryable_exceptions as e:
            attempt += 1
            if attempt >= config.max_attempts:
                logger.error(f"{operation_name} gave up after {attempt} attempts: {e}")
                raise
            delay = config.delay_for(attempt - 1, e)
            logger.warning(
                f"{operation_name} attempt {attempt}/{config.max_attempts} failed, "
                f"next try in {delay:.1f}s: {e}"
            )
            sleep(delay)
