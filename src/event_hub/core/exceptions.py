"""Common exceptions for domain, repository and delivery layers."""
from __future__ import annotations

from typing import Any


class EventHubError(Exception):
    """Base error for the hub."""


class ValidationError(EventHubError):
    """Raised when a publish/subscribe request is malformed.

    Nothing is persisted when this is raised.
    """

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None):
        super().__init__(message)
        self.errors = errors or []


class RepositoryError(EventHubError):
    """Raised when repository operations fail."""


class NotFoundError(RepositoryError):
    """Raised when requested entity is missing."""


class InvalidStatusTransitionError(EventHubError):
    """Raised when an event attempts an unsupported status change."""


class StatusConflictError(RepositoryError):
    """Raised when a conditional status update finds the row in another state."""


class DeliveryFailure(EventHubError):
    """A single webhook attempt failed (network error, timeout or non-2xx)."""

    def __init__(
        self,
        message: str,
        *,
        http_status_code: int | None = None,
        response_body: str | None = None,
    ):
        super().__init__(message)
        self.http_status_code = http_status_code
        self.response_body = response_body


class RetryExhausted(EventHubError):
    """The event has used its whole retry budget."""


class SchedulerFault(EventHubError):
    """A scheduler sweep could not read due events."""
