"""Common exceptions for domain and repository layers."""
from __future__ import annotations


class WebhookDispatcherError(Exception):
    """Base error for service layer."""


class RepositoryError(WebhookDispatcherError):
    """Raised when repository operations fail."""


class NotFoundError(RepositoryError):
    """Raised when requested entity is missing."""


class StoreUnavailableError(RepositoryError):
    """Raised when the delivery store cannot be reached."""


class InvalidStatusTransitionError(WebhookDispatcherError):
    """Raised when a delivery attempts an unsupported status change."""


class InvalidEventTypeError(WebhookDispatcherError, ValueError):
    """Raised when a producer enqueues an unknown event type."""


class InactiveSubscriptionError(WebhookDispatcherError):
    """Raised when an operation requires an active subscription."""
