"""
Error taxonomy for notification delivery, plus the helper that maps domain errors to HTTP.

Jobs catch these by class: ConfigurationError aborts a whole batch, StoreError aborts one
item, transport errors are classified into retry / deactivate / give up.
"""
from __future__ import annotations

from fastapi import HTTPException

# HTTP status codes for known error categories
STATUS_BAD_REQUEST = 400
STATUS_SERVICE_UNAVAILABLE = 503
STATUS_INTERNAL_ERROR = 500


class NotificationError(Exception):
    """Base class for delivery engine errors."""


class ConfigurationError(NotificationError):
    """Push credentials or other required settings are missing or unreadable."""


class StoreError(NotificationError):
    """A persistence operation failed; the current item is abandoned."""


class PushDeliveryError(NotificationError):
    """A push gateway attempt that did not deliver. Carries the gateway's status and reason."""

    retriable = False

    def __init__(self, message: str, *, status_code: int | None = None, reason: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.reason = reason


class TransportError(PushDeliveryError):
    """Network failure, timeout, 429 or 5xx. Retried through the retry queue."""

    retriable = True


class PermanentEndpointError(PushDeliveryError):
    """410 or reason Unregistered: the device token is gone for good."""


class PayloadOrAuthError(PushDeliveryError):
    """400/403 and other 4xx: the request itself is wrong. Not retried."""


# List of (exception class, status_code). First match wins.
DOMAIN_ERROR_RULES: list[tuple[type[Exception], int]] = [
    (ValueError, STATUS_BAD_REQUEST),
    (ConfigurationError, STATUS_SERVICE_UNAVAILABLE),
    (StoreError, STATUS_SERVICE_UNAVAILABLE),
]


def domain_error_to_http(exc: Exception) -> HTTPException:
    """
    Map a service-layer exception into an HTTPException.
    Uses DOMAIN_ERROR_RULES for known error types; otherwise returns 500 with the exception message.
    """
    msg = str(exc)
    for exc_type, status_code in DOMAIN_ERROR_RULES:
        if isinstance(exc, exc_type):
            return HTTPException(status_code=status_code, detail=msg)
    return HTTPException(status_code=STATUS_INTERNAL_ERROR, detail=msg)
