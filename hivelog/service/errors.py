"""Service-layer errors; the API turns each into the shared error envelope.

Auth failures carry fixed, generic messages so responses never reveal
why a credential or token was refused.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class ServiceError(Exception):
    status_code: int = 500
    error_code: str = "server_error"
    default_message: str = "Something went wrong!"

    def __init__(
        self, message: Optional[str] = None, *, detail: Optional[Dict[str, Any]] = None
    ) -> None:
        self.message = message or self.default_message
        self.detail = detail or {}
        super().__init__(self.message)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.status_code}, {self.message!r})"


class ValidationError(ServiceError):
    status_code = 400
    error_code = "validation_error"
    default_message = "Invalid request."


class AuthenticationRequiredError(ServiceError):
    """Missing, malformed or revoked credentials, or no principal at all."""

    status_code = 401
    error_code = "unauthorized"
    default_message = "Authentication required."


class InvalidTokenError(AuthenticationRequiredError):
    """Signature, format, type or expiry check failed; the reason is only logged."""

    default_message = "Invalid or expired token."


class ForbiddenError(ServiceError):
    """Authenticated, but none of the principal's roles is allowed."""

    status_code = 403
    error_code = "forbidden"
    default_message = "Forbidden: insufficient permissions to access this resource."


class NotFoundError(ServiceError):
    """Missing, or owned by someone else; the two are indistinguishable."""

    status_code = 404
    error_code = "not_found"
    default_message = "Not found."


class ConflictError(ServiceError):
    status_code = 409
    error_code = "conflict"
    default_message = "Conflict."


class ConcurrencyError(ServiceError):
    """A scoped write matched more than the one row it targets and was rolled back."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationRequiredError",
    "InvalidTokenError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ConcurrencyError",
]
