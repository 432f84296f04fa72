"""
Custom exceptions for the trend service domain.

These exceptions represent domain-level errors and are independent
of infrastructure concerns (HTTP, Redis, etc.).
"""

from typing import Any, Optional


class TrendServiceException(Exception):
    """Base exception for all trend service errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class UpstreamError(TrendServiceException):
    """Base class for failures talking to the commerce API."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        path: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        self.status_code = status_code
        self.path = path
        merged = {"status_code": status_code, "path": path}
        merged.update(details or {})
        super().__init__(message=message, details=merged)


class UpstreamRateLimited(UpstreamError):
    """HTTP 429 from upstream. Transient, retried inside the client."""

    def __init__(self, path: str, body: str = ""):
        super().__init__(
            message=f"Upstream 429 {path}: {body}",
            status_code=429,
            path=path,
            details={"body": body},
        )


class UpstreamServerError(UpstreamError):
    """HTTP 5xx or a transport failure. Transient, retried inside the client."""

    def __init__(self, path: str, status_code: Optional[int] = None, body: str = ""):
        label = status_code if status_code is not None else "transport error"
        super().__init__(
            message=f"Upstream {label} {path}: {body}",
            status_code=status_code,
            path=path,
            details={"body": body},
        )


class UpstreamClientError(UpstreamError):
    """Any other non-2xx status. Fatal for the single call."""

    def __init__(self, path: str, status_code: int, body: str = ""):
        super().__init__(
            message=f"Upstream {status_code} {path}: {body}",
            status_code=status_code,
            path=path,
            details={"body": body},
        )


class UpstreamUnavailable(UpstreamError):
    """Raised when transient failures outlast the retry budget."""

    def __init__(self, path: str, attempts: int, last_error: Optional[Exception] = None):
        message = f"Upstream unavailable after {attempts} attempts: {path}"
        if last_error is not None:
            message += f" ({last_error})"
        super().__init__(
            message=message,
            status_code=getattr(last_error, "status_code", None),
            path=path,
            details={"attempts": attempts},
        )


class EntityNotFoundException(TrendServiceException):
    """Raised when an entity id is not in the upstream entity listing."""

    def __init__(self, entity_id: str):
        super().__init__(
            message=f"Entity not found: {entity_id}", details={"entity_id": entity_id}
        )


class LeaseContention(TrendServiceException):
    """Another worker holds the rebuild lease. A normal outcome, not a failure."""

    def __init__(self, key: str):
        super().__init__(message=f"Lease held: {key}", details={"key": key})


class CacheWriteFailure(TrendServiceException):
    """Raised when persisting to the key-value store fails."""

    def __init__(self, key: str, reason: Optional[str] = None):
        message = f"Cache write failed for {key}"
        if reason:
            message += f": {reason}"
        super().__init__(message=message, details={"key": key, "reason": reason})


class CacheReadCorruption(TrendServiceException):
    """Raised when a stored value cannot be decoded."""

    def __init__(self, key: str, reason: Optional[str] = None):
        message = f"Corrupt cache value for {key}"
        if reason:
            message += f": {reason}"
        super().__init__(message=message, details={"key": key, "reason": reason})


class ValidationException(TrendServiceException):
    """Raised when input validation fails."""

    def __init__(self, field: str, value: Any, reason: str):
        message = f"Validation failed for {field}: {reason}"
        super().__init__(
            message=message,
            details={"field": field, "value": str(value), "reason": reason},
        )
