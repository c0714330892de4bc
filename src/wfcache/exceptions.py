"""
Custom exception hierarchy for the cache transfer engine.

All exceptions inherit from CacheError, which provides optional context
for structured error handling and logging.
"""

from __future__ import annotations

from typing import Any


class CacheError(Exception):
    """Base exception for all cache errors.

    Attributes:
        message: Human-readable error message.
        context: Optional structured context for logging/debugging.
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            ctx_str = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} ({ctx_str})"
        return self.message

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, context={self.context!r})"


class ConfigurationError(CacheError):
    """Raised when configuration is invalid or missing.

    Examples:
        - Cache service URL not set
        - Object store configured without a bucket
    """

    pass


class ValidationError(CacheError):
    """Raised when caller input is malformed or missing. Never retried.

    Context should include:
        - field: The input that failed validation
        - value: The invalid value
    """

    pass


class ReserveConflictError(CacheError):
    """Raised when another writer already holds the key+version reservation.

    This is an expected race, not a transient fault, so it is never retried.
    """

    pass


# Alias for callers that catch the reserve failure by its older name
ReserveCacheError = ReserveConflictError


class TransportError(CacheError):
    """Raised on network or connection failures. Retried until attempts run out.

    Context should include:
        - url: The URL being requested
        - error: The underlying transport error
    """

    pass


class ServiceError(CacheError):
    """Raised when a backend answers with an unexpected status code.

    Retried only when the status code is in the retryable set.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        context = dict(context or {})
        if status_code is not None:
            context.setdefault("status_code", status_code)
        super().__init__(message, context)
        self.status_code = status_code


class InconsistencyError(CacheError):
    """Raised when a successful response is missing a required field.

    Always fatal; indicates a contract violation by the service.
    """

    pass


class TransferError(CacheError):
    """Raised when moving archive bytes fails for a non-retryable reason.

    Examples:
        - Blob SDK upload/download failure (the SDK retries internally)
        - Local archive file cannot be read or written
        - Segment download timeout exceeded
    """

    pass
