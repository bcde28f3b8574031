"""Service error hierarchy for generation and payment operations.

This module defines the exception hierarchy for service-level errors:
- ServiceError: Base for all service errors
- TransientError: Failures that may succeed if the user retries later
- PermanentError: Failures that will not succeed on retry

Every error carries a stable ``kind`` (rendered to clients as the ``error``
field), an HTTP status code and a ``details`` dict with structured context.
Nothing in the core retries automatically; retrying is the user's decision.
"""

from typing import Any


class ServiceError(Exception):
    """Base exception for all service errors."""

    kind: str = "ServiceError"
    status_code: int = 500

    def __init__(self, message: str = "", **details: Any):
        super().__init__(message or self.kind)
        self.message = message or self.kind
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        """Structured error body for API responses."""
        return {"success": False, "error": self.kind, "message": self.message, **self.details}


class TransientError(ServiceError):
    """Transient error that may succeed on a later attempt.

    Examples:
    - Provider timeouts
    - Rate limit exceeded (429)
    - Service unavailable (503)
    """

    pass


class PermanentError(ServiceError):
    """Permanent error that will not succeed on retry.

    Examples:
    - Authentication failures (401, 403)
    - Invalid request parameters (400)
    - Content rejected by the provider
    """

    pass


# Quota errors
class QuotaExceededError(PermanentError):
    """No free generations left today and no credits.

    Recoverable by buying credits or waiting for the daily reset.
    """

    kind = "QuotaExceeded"
    status_code = 403

    def __init__(self, remaining: int, credit_balance: int, daily_limit: int, used: int):
        super().__init__(
            "Daily free generations used up. Buy credits to keep generating.",
            remaining=remaining,
            creditBalance=credit_balance,
            dailyLimit=daily_limit,
            used=used,
            canPurchase=True,
        )
        self.remaining = remaining
        self.credit_balance = credit_balance


# Request payload errors
class InvalidImageError(PermanentError):
    """Source photo is missing or not valid base64."""

    kind = "InvalidImage"
    status_code = 400


class ImageTooLargeError(PermanentError):
    kind = "ImageTooLarge"
    status_code = 413


# AI provider errors
class ProviderError(ServiceError):
    """Base exception for AI provider failures."""

    kind = "ProviderError"
    status_code = 502


class ProviderUnavailableError(ProviderError, TransientError):
    """Provider unreachable, rate limited or failing on its side."""

    kind = "ProviderUnavailable"
    status_code = 503


class ProviderTimeoutError(ProviderError, TransientError):
    """Provider did not answer within the generation timeout."""

    kind = "ProviderTimeout"
    status_code = 504


class ProviderRejectedError(ProviderError, PermanentError):
    """Provider refused the request (content policy, invalid input, auth)."""

    kind = "ProviderRejected"
    status_code = 422


# Payment errors
class PaymentError(ServiceError):
    """Base exception for payment errors."""

    kind = "PaymentError"


class ForbiddenError(PaymentError, PermanentError):
    """Payment session belongs to a different user."""

    kind = "Forbidden"
    status_code = 403


class PaymentSessionNotFoundError(PaymentError, PermanentError):
    """No checkout session recorded under this identifier."""

    kind = "PaymentSessionNotFound"
    status_code = 404


class PaymentNotCompletedError(PaymentError, PermanentError):
    """Processor reports the checkout as not paid."""

    kind = "PaymentNotCompleted"
    status_code = 400


class InvalidPackageError(PaymentError, PermanentError):
    """Unknown credit package identifier."""

    kind = "InvalidPackage"
    status_code = 400


class PaymentProcessorError(PaymentError, TransientError):
    """Payment processor API call failed or is not configured."""

    kind = "PaymentProcessorError"
    status_code = 502
