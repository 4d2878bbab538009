"""
Error taxonomy for the auth core.

Every error carries an HTTP status code and a stable machine-checkable
``kind`` string; the API layer renders both into the response envelope.
Storage and token library errors are translated into these classes at the
service boundary and never leak to clients.
"""
from typing import Optional, Dict


class AuthServiceError(Exception):
    """Base class for errors raised by the auth services."""
    status_code: int = 400
    kind: str = "error"
    default_message: str = "Request failed"

    def __init__(self, message: Optional[str] = None, headers: Optional[Dict[str, str]] = None):
        self.message = message or self.default_message
        self.headers = headers
        super().__init__(self.message)


class ValidationError(AuthServiceError):
    """Malformed or missing input."""
    status_code = 400
    kind = "validation_error"
    default_message = "Validation failed"


class UnauthenticatedError(AuthServiceError):
    """Missing, invalid, expired or revoked credentials."""
    status_code = 401
    kind = "unauthenticated"
    default_message = "Authentication required. Please log in."

    def __init__(self, message: Optional[str] = None, headers: Optional[Dict[str, str]] = None):
        super().__init__(message, headers or {"WWW-Authenticate": "Bearer"})


class InvalidTokenError(UnauthenticatedError):
    kind = "invalid_token"
    default_message = "Invalid token"


class ExpiredTokenError(UnauthenticatedError):
    kind = "token_expired"
    default_message = "Token expired"


class WrongTokenTypeError(UnauthenticatedError):
    kind = "wrong_token_type"
    default_message = "Invalid token type"


class RevokedTokenError(UnauthenticatedError):
    kind = "token_revoked"
    default_message = "Token has been revoked"


class ForbiddenError(AuthServiceError):
    """Authenticated, but not allowed."""
    status_code = 403
    kind = "forbidden"
    default_message = "Access denied. Insufficient permissions."


class NotFoundError(AuthServiceError):
    status_code = 404
    kind = "not_found"
    default_message = "Resource not found"

    @classmethod
    def for_resource(cls, resource: str = "Resource") -> "NotFoundError":
        return cls(f"{resource} not found")


class ConflictError(AuthServiceError):
    """A unique field already holds this value."""
    status_code = 409
    kind = "conflict"
    default_message = "Resource conflict"


class RateLimitedError(AuthServiceError):
    """Too many attempts from one client; headers carry Retry-After."""
    status_code = 429
    kind = "rate_limited"
    default_message = "Too many attempts. Please try again later."
