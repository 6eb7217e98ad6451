"""
Domain exceptions for idempotent publishing and the delivery outbox.

Handlers map these onto RFC-7807 responses in ``newsletter.obs.errors``.
"""
from typing import Optional


class NewsletterError(Exception):
    """Base class for all domain errors raised by the service."""


class ValidationError(NewsletterError):
    """Raised when caller-provided input fails validation."""


class InvalidIdempotencyKey(ValidationError):
    """Raised when an idempotency key is empty or longer than 50 characters."""


class InvalidSubscriberEmail(ValidationError):
    """Raised when a stored or submitted subscriber address is not a valid email."""


class InvalidNewsletterForm(ValidationError):
    """Raised when the publish form is missing a title or a body."""


class ConflictRace(NewsletterError):
    """A concurrent request owns the idempotency key and has not finished yet."""


class NoSavedResponse(ConflictRace):
    """
    The idempotency row exists but carries no saved response.

    Raised under the ``error`` in-flight policy.
    """

    def __init__(self, message: str = "We expected a saved response, we didn't find it"):
        super().__init__(message)


class IdempotencyConflict(ConflictRace):
    """
    The idempotency key is still being processed by another request.

    Raised under the ``conflict`` policy and when the ``wait`` policy times out.
    """

    def __init__(self, message: str = "A request with this idempotency key is still in flight",
                 retry_after: Optional[int] = None):
        super().__init__(message)
        self.retry_after = retry_after


class StoreError(NewsletterError):
    """Wraps a failure reported by the relational store."""

    def __init__(self, message: str, original: Optional[Exception] = None):
        super().__init__(message)
        self.original = original


class TransactionAlreadyConsumed(NewsletterError):
    """Raised when a committed or rolled-back transaction handle is used again."""
