"""
Centralized error handling: a small taxonomy of error categories, the
exceptions raised by billing/access code, and helpers that turn any caught
exception into a user-safe JSON response.
"""
import logging
from dataclasses import dataclass
from typing import Optional

import httpx
from sqlalchemy.exc import IntegrityError, NoResultFound

from utils.responses import error_response

logger = logging.getLogger(__name__)

# Error categories
AUTH = "auth"
VALIDATION = "validation"
NETWORK = "network"
SERVER = "server"
NOT_FOUND = "notFound"
RATE_LIMIT = "rateLimit"

CATEGORY_STATUS = {
    AUTH: 401,
    VALIDATION: 400,
    NETWORK: 503,
    SERVER: 500,
    NOT_FOUND: 404,
    RATE_LIMIT: 429,
}

# Store error codes
NOT_FOUND_CODE = "PGRST116"
UNIQUE_VIOLATION_CODE = "23505"

FRIENDLY_MESSAGES = {
    "jwt expired": "Your session has expired. Please sign in again.",
    "invalid token": "Your session is invalid. Please sign in again.",
    "failed to fetch": "Network connection lost. Please check your internet.",
    "timeout": "The request took too long. Please try again.",
    NOT_FOUND_CODE.lower(): "The requested item was not found.",
    "duplicate key": "This item already exists.",
    UNIQUE_VIOLATION_CODE: "This item already exists.",
    "rate limit": "Too many requests. Please wait a moment.",
}

GENERIC_MESSAGE = "An unexpected error occurred. Please try again."


@dataclass
class AppError:
    category: str
    message: str
    status_code: int
    details: Optional[str] = None


class BillingError(Exception):
    """Base class for errors raised by checkout, webhook and provider code."""
    category = SERVER


class AlreadySubscribedError(BillingError):
    """The caller already holds a paid subscription."""
    category = VALIDATION


class ProviderNotConfiguredError(BillingError):
    """A payment rail was called without its operator-provided credentials."""
    category = NETWORK


class ProviderUnavailableError(BillingError):
    """The provider could not be reached after the allowed attempts."""
    category = NETWORK


class ProviderResponseError(BillingError):
    """The provider answered, but not with something we can use."""
    category = SERVER


class WebhookSignatureError(BillingError):
    category = AUTH


class MalformedWebhookError(BillingError):
    category = VALIDATION


def friendly_message(error_message: str) -> str:
    """Get a user-friendly message for an error string."""
    lower_message = error_message.lower()
    for key, friendly in FRIENDLY_MESSAGES.items():
        if key.lower() in lower_message:
            return friendly
    return error_message


def _error_code(error: Exception) -> Optional[str]:
    code = getattr(error, "code", None)
    if code:
        return str(code)
    # asyncpg / psycopg errors surface the SQLSTATE on the wrapped driver exception
    orig = getattr(error, "orig", None)
    for attr in ("sqlstate", "pgcode"):
        value = getattr(orig, attr, None)
        if value:
            return str(value)
    return None


def parse_error(error: object) -> AppError:
    """Classify an exception (or message) into an AppError."""
    if isinstance(error, str):
        return AppError(category=SERVER, message=error, status_code=500)

    if isinstance(error, BillingError):
        message = str(error) or GENERIC_MESSAGE
        return AppError(
            category=error.category,
            message=message,
            status_code=CATEGORY_STATUS[error.category],
            details=message,
        )

    if isinstance(error, NoResultFound):
        return AppError(NOT_FOUND, FRIENDLY_MESSAGES[NOT_FOUND_CODE.lower()], 404, str(error))

    if isinstance(error, httpx.TransportError):
        return AppError(NETWORK, friendly_message(str(error) or "failed to fetch"), 503, str(error))

    if isinstance(error, Exception):
        code = _error_code(error)
        if code == NOT_FOUND_CODE:
            return AppError(NOT_FOUND, "The requested item was not found.", 404, str(error))
        if code == UNIQUE_VIOLATION_CODE or isinstance(error, IntegrityError) and "unique" in str(error).lower():
            return AppError(VALIDATION, "This item already exists.", 400, str(error))

        message = str(error)
        lower = message.lower()

        if "jwt" in lower or "unauthorized" in lower or "token" in lower:
            return AppError(AUTH, friendly_message(message), 401, message)

        if "fetch" in lower or "network" in lower or "timeout" in lower:
            return AppError(NETWORK, friendly_message(message), 503, message)

        if "rate limit" in lower:
            return AppError(RATE_LIMIT, friendly_message(message), 429, message)

        if "invalid" in lower or "required" in lower or "validation" in lower:
            return AppError(VALIDATION, message, 400, message)

        # Raw store/provider text never reaches the caller
        return AppError(SERVER, GENERIC_MESSAGE, 500, message)

    return AppError(SERVER, GENERIC_MESSAGE, 500, repr(error))


def is_retryable_error(error: object) -> bool:
    """Only network failures are worth retrying."""
    return parse_error(error).category == NETWORK


def is_auth_error(error: object) -> bool:
    return parse_error(error).category == AUTH


def api_error(error: object, default_message: str = "An error occurred"):
    """Log the full error server-side and answer with a coarse, safe message."""
    app_error = parse_error(error)
    logger.error(f"[API Error] {app_error.category}: {app_error.details or app_error.message}")
    return error_response(
        app_error.message or default_message,
        status=app_error.status_code,
        code=app_error.category,
    )
