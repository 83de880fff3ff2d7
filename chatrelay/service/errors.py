from __future__ import annotations

from datetime import datetime
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``
    that clients switch on:

    - bad_request (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limit (429)
    - server_error (500)
    - provider_error (502)
    - service_unavailable / offline (503)
    """

    status_code: int = 400
    error_code: str = "bad_request"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class BadRequestError(ServiceError):
    """Malformed input, e.g. nothing left to send after processing (400)."""
    status_code = 400
    error_code = "bad_request"


class AuthenticationError(ServiceError):
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Feature gated by subscription tier (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class RateLimitedError(ServiceError):
    """Quota exhausted (429).

    ``reset_in`` is the human-readable time until the exhausted window
    refills; ``window`` names which window ran out.
    """

    status_code = 429
    error_code = "rate_limit"

    def __init__(
        self,
        message: str,
        *,
        reset_at: Optional[datetime] = None,
        reset_in: Optional[str] = None,
        window: Optional[str] = None,
        detail: Optional[dict] = None,
    ) -> None:
        merged = dict(detail or {})
        if reset_at is not None:
            merged.setdefault("reset_at", reset_at.isoformat())
        if reset_in is not None:
            merged.setdefault("reset_in", reset_in)
        if window is not None:
            merged.setdefault("window", window)
        super().__init__(message, detail=merged)
        self.reset_at = reset_at
        self.reset_in = reset_in
        self.window = window


class ServerError(ServiceError):
    status_code = 500
    error_code = "server_error"


class ProviderError(ServiceError):
    """Model provider call failed (502).

    ``retryable`` marks the structural/validation class that earns a single
    fallback-model retry. ``body`` keeps the raw provider response for logs;
    it is never sent to clients.
    """

    status_code = 502
    error_code = "provider_error"

    def __init__(
        self,
        message: str,
        *,
        provider_status: Optional[int] = None,
        body: Optional[str] = None,
        retryable: bool = False,
        model: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.provider_status = provider_status
        self.body = body
        self.retryable = retryable
        self.model = model


class ServiceUnavailableError(ServiceError):
    """A backing store needed to admit the request is unreachable (503)."""
    status_code = 503
    error_code = "service_unavailable"


class OfflineError(ServiceError):
    """Catch-all for unexpected failures surfaced to clients (503)."""
    status_code = 503
    error_code = "offline"


__all__ = [
    "ServiceError",
    "BadRequestError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "RateLimitedError",
    "ServerError",
    "ProviderError",
    "ServiceUnavailableError",
    "OfflineError",
]
