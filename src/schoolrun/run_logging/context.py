"""Structured fields (driver, session, payment ids) attached to log records."""

import logging
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from types import MappingProxyType
from typing import Any

_fields: ContextVar[Mapping[str, Any]] = ContextVar("log_fields", default=MappingProxyType({}))


class LogContext:
    """Read access to the fields bound by enclosing ``log_context`` blocks.

    Fields live in a context variable, so each thread and each task sees
    only what it bound itself.
    """

    @staticmethod
    def get() -> dict[str, Any]:
        return dict(_fields.get())

    @staticmethod
    def clear() -> None:
        _fields.set(MappingProxyType({}))


class ContextFilter(logging.Filter):
    """Copies bound fields onto records that do not already carry them."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _fields.get().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Bind fields for the duration of the block.

    Blocks nest: an inner ``stop_id`` adds to an outer ``session_id``,
    and leaving the inner block restores the outer fields.
    """
    token = _fields.set(MappingProxyType({**_fields.get(), **fields}))
    try:
        yield
    finally:
        _fields.reset(token)
