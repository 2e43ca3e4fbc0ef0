from __future__ import annotations

from typing import List, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - locked (423)
    - rate_limited (429)
    - server_error (500)
    - delivery_failed (503)
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

    @property
    def messages(self) -> List[str]:
        """Model-level messages shown on a re-rendered form."""
        extra = self.detail.get("errors") or []
        return [self.message, *[m for m in extra if m != self.message]]


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationRejected(ServiceError):
    """Credentials, user state or a 2FA code were rejected (401)."""
    status_code = 401
    error_code = "unauthorized"


class AccountLocked(AuthenticationRejected):
    """Too many failed attempts (423)."""
    status_code = 423
    error_code = "locked"


class TwoFactorDeliveryFailure(ServiceError):
    """The one-time code could not be delivered (503)."""
    status_code = 503
    error_code = "delivery_failed"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
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


class LoginRequired(ServiceError):
    """Anonymous access to a gated route; answered with a redirect to the login page."""
    status_code = 302
    error_code = "unauthorized"

    def __init__(self, login_url: str) -> None:
        super().__init__("login required", detail={"location": login_url})
        self.login_url = login_url


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationRejected",
    "AccountLocked",
    "TwoFactorDeliveryFailure",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "LoginRequired",
]
