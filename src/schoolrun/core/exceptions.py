"""Standardized exception hierarchy for the dispatch engine."""

from typing import Any


class DispatchError(Exception):
    """Base exception for all dispatch engine errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class TransientError(DispatchError):
    """Errors that may succeed on retry."""

    pass


class UpstreamError(TransientError):
    """External collaborator (payment gateway, notifier, channel) failed."""

    pass


class NetworkError(UpstreamError):
    """Network-related transient errors (timeout, connection refused)."""

    pass


class PermanentError(DispatchError):
    """Errors that will not succeed on retry."""

    pass


class ValidationError(PermanentError):
    """Invalid argument (malformed coordinates, over-refund amount)."""

    pass


class NotFoundError(PermanentError):
    """Requested entity does not exist."""

    pass


class ConflictError(PermanentError):
    """Uniqueness violation (duplicate open alert, duplicate in-progress session)."""

    pass


class StateError(PermanentError):
    """Invalid state transition."""

    pass


class ForbiddenError(PermanentError):
    """Caller is not allowed to act on the entity."""

    pass
