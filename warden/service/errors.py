from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
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
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentials(AuthenticationError):
    """Unknown user, removed user or wrong password; never says which."""

    def __init__(self) -> None:
        super().__init__("invalid credentials")


# Not-found and expired tokens share one message so callers cannot probe cache state.
INVALID_TOKEN_MESSAGE = "invalid or expired token"


class TokenNotFound(AuthenticationError):
    """Token is absent, revoked or already reaped (401)."""

    def __init__(self) -> None:
        super().__init__(INVALID_TOKEN_MESSAGE)


class TokenExpired(AuthenticationError):
    """Token idled past its TTL (401)."""

    def __init__(self) -> None:
        super().__init__(INVALID_TOKEN_MESSAGE)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class PermissionDenied(ForbiddenError):
    """Valid token without the requested permission (403)."""

    def __init__(self, permission: str, service: Optional[str] = None) -> None:
        message = f"missing permission '{permission}'"
        if service:
            message += f" for service '{service}'"
        detail = {"permission": permission}
        if service:
            detail["service"] = service
        super().__init__(message, detail=detail)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentials",
    "TokenNotFound",
    "TokenExpired",
    "INVALID_TOKEN_MESSAGE",
    "ForbiddenError",
    "PermissionDenied",
    "NotFoundError",
    "ConflictError",
    "ServerError",
]
