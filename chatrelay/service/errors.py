from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Each class carries the HTTP status used on the REST surface and a stable
    error code that is also sent in realtime ``error`` events:
    - unauthorized (401)
    - validation_error (400)
    - not_found (404)
    - conflict (409)
    - upstream_error (500)
    - persistence_error (500)
    - server_error (500)
    """

    status_code: int = 500
    error_code: str = "server_error"

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
    """Request or event payload is malformed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthError(ServiceError):
    """Credential missing, malformed, or failed verification (401)."""
    status_code = 401
    error_code = "unauthorized"


class NotFoundError(ServiceError):
    """Resource absent or not owned by the caller (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g. duplicate signup or an overlapping turn (409)."""
    status_code = 409
    error_code = "conflict"


class UpstreamError(ServiceError):
    """Generation engine unreachable, errored, or timed out."""
    status_code = 500
    error_code = "upstream_error"


class PersistenceError(ServiceError):
    """Storage read or write failed."""
    status_code = 500
    error_code = "persistence_error"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthError",
    "NotFoundError",
    "ConflictError",
    "UpstreamError",
    "PersistenceError",
    "ServerError",
]
