from __future__ import annotations

import pytest

from credit_ledger.errors import (
    GENERIC_ERROR_MESSAGE,
    AccessDeniedError,
    AuthenticationRequiredError,
    DuplicatePurchaseError,
    InsufficientCreditsError,
    InvalidInputError,
    InvalidTokenError,
    PaymentFailedError,
    ProviderTimeoutError,
    RateLimitExceededError,
    SessionExpiredError,
    SessionNotFoundError,
    StoreUnavailableError,
    UserNotFoundError,
    http_status_for,
    sanitize_error,
)


@pytest.mark.parametrize(
    "error, code, status",
    [
        (AuthenticationRequiredError(), "AUTH_REQUIRED", 401),
        (AccessDeniedError(), "ACCESS_DENIED", 403),
        (InsufficientCreditsError(), "INSUFFICIENT_CREDITS", 402),
        (InvalidTokenError(), "INVALID_TOKEN", 400),
        (UserNotFoundError(), "USER_NOT_FOUND", 404),
        (InvalidInputError(), "INVALID_INPUT", 400),
        (RateLimitExceededError(), "RATE_LIMIT_EXCEEDED", 429),
        (PaymentFailedError(), "PAYMENT_FAILED", 502),
        (SessionExpiredError(), "SESSION_EXPIRED", 410),
    ],
)
def test_known_kinds_map_to_fixed_codes(error, code, status):
    sanitized = sanitize_error(error)
    assert sanitized.code == code
    assert sanitized.error == type(error).safe_message
    assert http_status_for(error) == status


def test_internal_detail_never_leaks():
    error = InvalidInputError("price_abc not found in table prices at db-1.internal:5432")
    sanitized = sanitize_error(error)
    assert sanitized.error == "Invalid input provided"
    assert "db-1" not in sanitized.model_dump_json()


@pytest.mark.parametrize(
    "error",
    [
        RuntimeError("connection refused to 10.0.0.7"),
        KeyError("metadata"),
        StoreUnavailableError("server selection timed out"),
        "Something odd happened",
        None,
    ],
)
def test_unknown_errors_collapse_to_generic(error):
    sanitized = sanitize_error(error)
    assert sanitized.code == "INTERNAL_ERROR"
    assert sanitized.error == GENERIC_ERROR_MESSAGE


def test_custom_default_message():
    sanitized = sanitize_error(RuntimeError("boom"), default_message="Checkout unavailable")
    assert (sanitized.error, sanitized.code) == ("Checkout unavailable", "INTERNAL_ERROR")


@pytest.mark.parametrize(
    "message, code",
    [
        ("Unauthorized", "AUTH_REQUIRED"),
        ("Insufficient credits", "INSUFFICIENT_CREDITS"),
        ("Invalid token", "INVALID_TOKEN"),
        ("Rate limit exceeded", "RATE_LIMIT_EXCEEDED"),
        ("Session expired", "SESSION_EXPIRED"),
    ],
)
def test_legacy_messages(message, code):
    assert sanitize_error(message).code == code


def test_subclasses_keep_parent_code():
    assert sanitize_error(DuplicatePurchaseError("order 1")).code == "INVALID_INPUT"
    assert sanitize_error(SessionNotFoundError("s-1")).code == "INVALID_INPUT"
    assert http_status_for(SessionNotFoundError()) == 404
    assert sanitize_error(ProviderTimeoutError()).code == "PAYMENT_FAILED"
    assert http_status_for(ProviderTimeoutError()) == 504
    assert http_status_for(StoreUnavailableError()) == 503
    assert http_status_for(RuntimeError()) == 500


def test_errors_carry_details_for_logs():
    error = InsufficientCreditsError("balance 5 cannot cover -10", user_id="u1", current=5)
    assert str(error) == "balance 5 cannot cover -10"
    assert error.details == {"user_id": "u1", "current": 5}
    assert isinstance(error, ValueError)
