from __future__ import annotations

from typing import Optional, Sequence


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to transport responses.

    Each subclass carries a status_code and a stable error_code:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
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
    """Malformed or missing input (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Bad credential, or bad/expired/mismatched session or refresh token (401)."""
    status_code = 401
    error_code = "unauthorized"


class AuthorizationError(ServiceError):
    """Authenticated, but not allowed to perform the operation (403)."""
    status_code = 403
    error_code = "forbidden"


class NoRolesAssignedError(AuthorizationError):
    """The caller's role snapshot is empty."""

    reason = "NO_ROLES_ASSIGNED"

    def __init__(self, *, resource: Optional[str] = None) -> None:
        super().__init__(
            "User has no roles assigned. Please contact administrator.",
            detail={"reason": self.reason, "resource": resource},
        )


class InsufficientPermissionError(AuthorizationError):
    """The caller holds roles, none of which satisfy the requirement."""

    reason = "INSUFFICIENT_PERMISSION"

    def __init__(
        self,
        *,
        required_roles: Sequence[str],
        user_roles: Sequence[str],
        resource: Optional[str] = None,
    ) -> None:
        required = sorted(required_roles)
        held = sorted(user_roles)
        super().__init__(
            f"Access denied. Required roles: {', '.join(required)}. "
            f"User roles: {', '.join(held)}. Resource: {resource or 'unknown'}",
            detail={
                "reason": self.reason,
                "required_roles": required,
                "user_roles": held,
                "resource": resource,
            },
        )


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Duplicate unique field or conflicting state (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit window still open (429)."""
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
    "AuthorizationError",
    "NoRolesAssignedError",
    "InsufficientPermissionError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
]
