from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    ``error_code`` that clients can branch on:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

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


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401).

    ``reason`` separates the cases callers may need to tell apart (an expired
    access token prompts a refresh, an invalid one does not) while the
    client-facing message for credential failures stays identical.
    """
    status_code = 401
    error_code = "unauthorized"
    reason: str = "invalid_credentials"

    def __init__(self, message: str, *, reason: Optional[str] = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        if reason is not None:
            self.reason = reason
        self.detail.setdefault("reason", self.reason)


class TokenInvalidError(AuthenticationError):
    """Token is malformed, forged, of the wrong type, or no longer tracked."""
    reason = "token_invalid"


class TokenExpiredError(AuthenticationError):
    """Token expiry has elapsed."""
    reason = "token_expired"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions or inactive principal (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "TokenInvalidError",
    "TokenExpiredError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
]
