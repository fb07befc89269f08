"""
Credits Ledger Errors

Every ledger-level failure is converted to a CreditsApiError carrying a
machine code and a user-readable message before it reaches the interface layer.
"""

import asyncio
import logging
from typing import Optional

import httpx

from .config import ERROR_MESSAGES

logger = logging.getLogger(__name__)

# Error codes
UNAUTHENTICATED = "unauthenticated"
FAILED_PRECONDITION = "failed-precondition"
INSUFFICIENT_CREDITS = "insufficient-credits"
INTERNAL = "internal"
UNAVAILABLE = "unavailable"
DEADLINE_EXCEEDED = "deadline-exceeded"
INVALID_ARGUMENT = "invalid-argument"
NOT_FOUND = "not-found"
PURCHASE_REJECTED = "purchase-rejected"
UNKNOWN = "unknown"

# Retrying cannot change the outcome of these
NON_RETRYABLE_CODES = {
    UNAUTHENTICATED,
    FAILED_PRECONDITION,
    INSUFFICIENT_CREDITS,
    INVALID_ARGUMENT,
    NOT_FOUND,
    PURCHASE_REJECTED,
}

HTTP_STATUS_CODES = {
    UNAUTHENTICATED: 401,
    INSUFFICIENT_CREDITS: 402,
    FAILED_PRECONDITION: 412,
    INVALID_ARGUMENT: 400,
    NOT_FOUND: 404,
    PURCHASE_REJECTED: 422,
    UNAVAILABLE: 503,
    DEADLINE_EXCEEDED: 504,
    INTERNAL: 500,
    UNKNOWN: 500,
}


def user_message_for(code: str) -> str:
    return ERROR_MESSAGES.get(code, ERROR_MESSAGES["unknown"])


class CreditsApiError(Exception):
    """Error raised by remote credits operations."""

    def __init__(self, message: str, code: str = UNKNOWN, user_message: Optional[str] = None):
        super().__init__(message)
        self.code = code
        self.user_message = user_message or user_message_for(code)

    @property
    def retryable(self) -> bool:
        return self.code not in NON_RETRYABLE_CODES

    @property
    def status_code(self) -> int:
        return HTTP_STATUS_CODES.get(self.code, 500)

    def to_dict(self):
        """Convert to API response format."""
        return {
            "error_code": self.code,
            "message": self.user_message
        }


class NotAuthenticatedError(CreditsApiError):
    """No account context for a ledger operation."""

    def __init__(self, account_id: Optional[str] = None):
        message = "No signed-in account"
        if account_id:
            message = f"Account {account_id} is not loaded"
        super().__init__(message, UNAUTHENTICATED)


class InsufficientCreditsError(CreditsApiError):
    """Balance does not cover the cost of a feature."""

    def __init__(self, required: int, balance: int):
        self.required = required
        self.balance = balance
        super().__init__(
            f"Insufficient credits: required {required}, balance {balance}",
            INSUFFICIENT_CREDITS,
            f"This feature needs {required} credits and you have {balance}. "
            f"Would you like to buy more credits?"
        )


# HTTP status -> error code for responses of the credits API
_STATUS_TO_CODE = {
    400: INVALID_ARGUMENT,
    401: UNAUTHENTICATED,
    402: INSUFFICIENT_CREDITS,
    403: UNAUTHENTICATED,
    404: NOT_FOUND,
    408: DEADLINE_EXCEEDED,
    412: FAILED_PRECONDITION,
    422: PURCHASE_REJECTED,
    429: UNAVAILABLE,
    503: UNAVAILABLE,
    504: DEADLINE_EXCEEDED,
}


def code_for_status(status_code: int) -> str:
    if status_code in _STATUS_TO_CODE:
        return _STATUS_TO_CODE[status_code]
    if status_code >= 500:
        return INTERNAL
    return UNKNOWN


def to_api_error(exc: BaseException) -> CreditsApiError:
    """
    Convert any exception raised by a remote call to a CreditsApiError.

    Raw transport errors are never shown to the user; the original text is
    kept as the exception message for logs.
    """
    if isinstance(exc, CreditsApiError):
        return exc

    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
        return CreditsApiError(str(exc) or "Request timed out", DEADLINE_EXCEEDED)

    if isinstance(exc, httpx.HTTPStatusError):
        code = code_for_status(exc.response.status_code)
        return CreditsApiError(str(exc), code)

    if isinstance(exc, (httpx.TransportError, ConnectionError, OSError)):
        return CreditsApiError(str(exc) or "Connection failed", UNAVAILABLE)

    logger.error(f"Unexpected credits API error: {exc!r}")
    return CreditsApiError(str(exc) or exc.__class__.__name__, UNKNOWN)
