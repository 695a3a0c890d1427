from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - validation_error (400)
    - conflict (400, duplicate username)
    - unauthorized (401)
    - not_found (404)
    - rate_limited (429)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"
    # Internal failures are rendered with this message instead of ``message``
    public_message: Optional[str] = None

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
        public_message: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        if public_message is not None:
            self.public_message = public_message
        self.detail = detail or {}

    @property
    def client_message(self) -> str:
        return self.public_message or self.message

    @property
    def client_detail(self) -> Optional[dict]:
        if self.status_code >= 500:
            return None
        return self.detail or None


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class ConflictError(ServiceError):
    """Resource already exists, e.g. duplicate username (400)."""
    status_code = 400
    error_code = "conflict"


class AuthRejected(ServiceError):
    """Credentials or token rejected (401).

    ``detail["remaining"]`` carries the attempts left before a lockout when
    the rejection consumed one.
    """
    status_code = 401
    error_code = "unauthorized"

    def __init__(self, message: str = "invalid credentials", *, remaining: Optional[int] = None, **kwargs) -> None:
        detail = kwargs.pop("detail", None) or {}
        if remaining is not None:
            detail = {**detail, "remaining": remaining}
        super().__init__(message, detail=detail, **kwargs)
        self.remaining = remaining


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class RateLimited(ServiceError):
    """Attempt budget exhausted (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"
    public_message = "internal server error"


class ConfidentialityFailure(ServerError):
    """Stored secret material could not be decrypted or protected."""


class DependencyFailure(ServerError):
    """The coordination store, user store or SMS provider failed."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "ConflictError",
    "AuthRejected",
    "NotFoundError",
    "RateLimited",
    "ServerError",
    "ConfidentialityFailure",
    "DependencyFailure",
]
