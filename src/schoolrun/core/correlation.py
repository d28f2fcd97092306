"""Correlation ids that tie log lines of one message or session together."""

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any

current_correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)


def correlation_id_for(message: Any) -> str:
    """A message's own correlation id, else its event id."""
    return getattr(message, "correlation_id", None) or str(message.event_id)


@contextmanager
def with_correlation(correlation_id: str) -> Iterator[None]:
    """Make correlation_id current for the block, restoring the outer one after."""
    token = current_correlation_id.set(correlation_id)
    try:
        yield
    finally:
        current_correlation_id.reset(token)


def get_current_correlation_id() -> str | None:
    return current_correlation_id.get()
