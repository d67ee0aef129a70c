from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines an HTTP ``status_code``, a stable
    ``error_code`` used in the response envelope, and a ``reason`` naming the
    precise failure. Codes:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"
    reason: str = "validation_error"

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
        self.detail = {"reason": self.reason, **(detail or {})}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class BadRequestError(ValidationError):
    """Alias for ValidationError - request is malformed or invalid."""
    pass


class MissingFieldError(ValidationError):
    reason = "missing_field"

    def __init__(self, field: str) -> None:
        super().__init__(f"Field '{field}' is required", detail={"field": field})
        self.field = field


class InvalidRoleError(ValidationError):
    reason = "invalid_role"

    def __init__(self, message: str = "Invalid user role") -> None:
        super().__init__(message)


class InvalidEmailError(ValidationError):
    reason = "invalid_email"

    def __init__(self, message: str = "Invalid email format") -> None:
        super().__init__(message)


class WeakPasswordError(ValidationError):
    reason = "weak_password"

    def __init__(self, min_length: int, *, label: str = "Password") -> None:
        super().__init__(
            f"{label} must be at least {min_length} characters",
            detail={"min_length": min_length},
        )
        self.min_length = min_length


class CurrentPasswordMismatchError(ValidationError):
    reason = "current_password_mismatch"

    def __init__(self, message: str = "Current password is incorrect") -> None:
        super().__init__(message)


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"
    reason = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Login rejected; never says whether the name or the password was wrong."""
    reason = "invalid_credentials"

    def __init__(self, message: str = "Invalid credentials") -> None:
        super().__init__(message)


class NotAuthenticatedError(AuthenticationError):
    reason = "not_authenticated"

    def __init__(self, message: str = "Please login to access this page") -> None:
        super().__init__(message)


class SessionInvalidError(AuthenticationError):
    """The presented session token does not map to a usable session."""
    reason = "session_invalid"

    def __init__(self, message: str = "Invalid session") -> None:
        super().__init__(message)


class SessionExpiredError(SessionInvalidError):
    """Session has been idle longer than the configured timeout (401)."""
    reason = "session_expired"

    def __init__(self, message: str = "Session expired") -> None:
        super().__init__(message)


class AccountDeactivatedError(SessionInvalidError):
    """The principal behind a session was deactivated (401)."""
    reason = "account_deactivated"

    def __init__(self, message: str = "User account deactivated") -> None:
        super().__init__(message)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"
    reason = "forbidden"


class WrongRoleError(ForbiddenError):
    reason = "wrong_role"

    def __init__(self, message: str = "Access denied for your role") -> None:
        super().__init__(message)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"
    reason = "not_found"


class PrincipalNotFoundError(NotFoundError):
    reason = "principal_not_found"

    def __init__(self, message: str = "User not found") -> None:
        super().__init__(message)


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"
    reason = "conflict"


class DuplicateIdentityError(ConflictError):
    reason = "duplicate_identity"

    def __init__(self, message: str = "Username or email already exists") -> None:
        super().__init__(message)


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"
    reason = "server_error"


class AuditWriteFailure(ServerError):
    """An audit event could not be appended. Logged by the sink, never raised to callers."""
    reason = "audit_write_failure"


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "MissingFieldError",
    "InvalidRoleError",
    "InvalidEmailError",
    "WeakPasswordError",
    "CurrentPasswordMismatchError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "NotAuthenticatedError",
    "SessionInvalidError",
    "SessionExpiredError",
    "AccountDeactivatedError",
    "ForbiddenError",
    "WrongRoleError",
    "NotFoundError",
    "PrincipalNotFoundError",
    "ConflictError",
    "DuplicateIdentityError",
    "ServerError",
    "AuditWriteFailure",
]
