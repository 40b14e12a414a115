"""
Typed failures raised by the credit ledger core, and the sanitizer that maps
them onto the fixed vocabulary returned to external callers.

Internal code raises these with full diagnostic detail in the message and
``details``; only ``safe_message`` and ``code`` ever leave the process.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from .models.api_models import SanitizedError


GENERIC_ERROR_MESSAGE = "An error occurred. Please try again or contact support."
INTERNAL_ERROR_CODE = "INTERNAL_ERROR"


class CreditError(Exception):
    """Base class for failures the boundary knows how to report."""

    code: str = INTERNAL_ERROR_CODE
    safe_message: str = GENERIC_ERROR_MESSAGE
    http_status: int = 500

    def __init__(self, message: str | None = None, **details: Any) -> None:
        super().__init__(message or self.safe_message)
        self.details: Dict[str, Any] = details


class AuthenticationRequiredError(CreditError):
    code = "AUTH_REQUIRED"
    safe_message = "Authentication required"
    http_status = 401


class AccessDeniedError(CreditError):
    code = "ACCESS_DENIED"
    safe_message = "Access denied"
    http_status = 403


class InsufficientCreditsError(CreditError, ValueError):
    code = "INSUFFICIENT_CREDITS"
    safe_message = "Insufficient credits"
    http_status = 402


class InvalidTokenError(CreditError):
    code = "INVALID_TOKEN"
    safe_message = "Security verification failed"
    http_status = 400


class UserNotFoundError(CreditError):
    code = "USER_NOT_FOUND"
    safe_message = "Account not found"
    http_status = 404


class InvalidInputError(CreditError, ValueError):
    code = "INVALID_INPUT"
    safe_message = "Invalid input provided"
    http_status = 400


class DuplicatePurchaseError(InvalidInputError):
    """A purchase entry for this order id already exists."""


class SessionNotFoundError(InvalidInputError):
    http_status = 404


class RateLimitExceededError(CreditError):
    code = "RATE_LIMIT_EXCEEDED"
    safe_message = "Too many requests. Please try again later."
    http_status = 429


class PaymentFailedError(CreditError):
    code = "PAYMENT_FAILED"
    safe_message = "Payment processing failed"
    http_status = 502


class SessionExpiredError(CreditError):
    code = "SESSION_EXPIRED"
    safe_message = "Your session has expired"
    http_status = 410


class TransientFailureError(CreditError):
    """A bounded call to an external dependency timed out or was unreachable."""

    http_status = 503


class ProviderTimeoutError(PaymentFailedError, TransientFailureError):
    http_status = 504


class StoreUnavailableError(TransientFailureError):
    pass


# Plain messages used by older call sites and by collaborators that only
# hand us a string.
_LEGACY_MESSAGES: Dict[str, type[CreditError]] = {
    "Unauthorized": AuthenticationRequiredError,
    "Forbidden": AccessDeniedError,
    "Insufficient credits": InsufficientCreditsError,
    "Invalid token": InvalidTokenError,
    "User not found": UserNotFoundError,
    "Invalid input": InvalidInputError,
    "Rate limit exceeded": RateLimitExceededError,
    "Payment failed": PaymentFailedError,
    "Session expired": SessionExpiredError,
}


def classify_error(error: Any) -> Optional[type[CreditError]]:
    if isinstance(error, CreditError):
        return type(error)
    message = error if isinstance(error, str) else None
    if message is None:
        return None
    return _LEGACY_MESSAGES.get(message)


def sanitize_error(error: Any, default_message: str = GENERIC_ERROR_MESSAGE) -> SanitizedError:
    """
    Map an exception (or a plain message) to a safe ``{error, code}`` pair.

    Recognised kinds keep their fixed message and code. Everything else,
    including transient failures, collapses to the generic pair so no
    store, provider or stack detail reaches the caller.
    """
    kind = classify_error(error)
    if kind is None or kind.code == INTERNAL_ERROR_CODE:
        return SanitizedError(error=default_message, code=INTERNAL_ERROR_CODE)
    return SanitizedError(error=kind.safe_message, code=kind.code)


def http_status_for(error: Any) -> int:
    kind = classify_error(error)
    return kind.http_status if kind is not None else 500
