from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass defines an HTTP ``status_code`` and a stable ``error_code``:
    - validation_error (400)
    - unauthorized (401)
    - not_found (404)
    - conflict / duplicate_name / update_in_progress (409)
    - rate_limited (429)
    - server_error (500)
    - store_failure (502)
    """

    status_code: int = 400
    error_code: str = "validation_error"
    # extra response headers the HTTP layer should attach
    headers: Optional[dict] = None

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
    """Request validation failed (400). Raised before any store is touched."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class NotOwnedError(ServiceError):
    """Referenced id is not controlled by the caller (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict (409)."""
    status_code = 409
    error_code = "conflict"


class DuplicateNameError(ConflictError):
    """Added file name collides with an owned file name (409)."""
    error_code = "duplicate_name"


class UpdateInProgressError(ConflictError):
    """Another update for the same owner is running (409)."""
    error_code = "update_in_progress"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        message: str,
        *,
        retry_after: int = 0,
        remaining: int = 0,
        limit: Optional[int] = None,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(
            message,
            detail={**(detail or {}), "retry_after": retry_after},
        )
        self.retry_after = retry_after
        self.remaining = remaining
        self.limit = limit


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class StoreFailure(ServerError):
    """A relational, archive or vector call failed (502).

    ``committed`` records whether the relational diff had already been
    committed when the failure happened; when true the stores are out of
    step until the reconciliation pass runs.
    """

    status_code = 502
    error_code = "store_failure"

    def __init__(
        self,
        message: str,
        *,
        store: str,
        committed: bool = False,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(
            message,
            detail={**(detail or {}), "store": store, "committed": committed},
        )
        self.store = store
        self.committed = committed


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "NotOwnedError",
    "ConflictError",
    "DuplicateNameError",
    "UpdateInProgressError",
    "RateLimitedError",
    "ServerError",
    "StoreFailure",
]
