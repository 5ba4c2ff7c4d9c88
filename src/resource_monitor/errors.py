"""
Error types for the resource monitor.

This module defines the MonitorError base class and subclasses for domain-specific
errors. Store, sampler, subscriber and API code raise these instead of returning
ad-hoc status values; the API layer maps them to HTTP status codes and the
background loops log them.
"""

from __future__ import annotations

from typing import Any

# Mapping from internal error codes to HTTP status codes.
# Codes not listed here map to DEFAULT_HTTP_STATUS.
HTTP_STATUS_MAP: dict[str, int] = {
    "invalid_argument": 400,
    "not_found": 404,
}

DEFAULT_HTTP_STATUS = 500


class MonitorError(Exception):
    """
    Base exception class for resource monitor errors.

    Attributes:
        error_code: Internal error code string (e.g., "invalid_argument",
            "not_found", "unavailable", "store_error").
        message: Human-readable error message.
        details: Optional structured details (e.g., ids, topic, operation).

    Example:
        >>> raise MonitorError(
        ...     error_code="invalid_argument",
        ...     message="Invalid measurement id",
        ...     details={"id": "abc"},
        ... )
    """

    def __init__(
        self,
        error_code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize a MonitorError.

        Args:
            error_code: Internal error code string identifying the error category.
            message: Human-readable error message.
            details: Optional dictionary with structured error details.
        """
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.details = details or {}

    def __repr__(self) -> str:
        """Return a detailed string representation."""
        return (
            f"{self.__class__.__name__}("
            f"error_code={self.error_code!r}, "
            f"message={self.message!r}, "
            f"details={self.details!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the error to a dictionary for serialization.

        Returns:
            Dictionary with error_code, message, and details.
        """
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class ConnectivityError(MonitorError):
    """
    Error raised when the document store or the message bus is unreachable.

    Also used when a store operation exceeds its timeout budget.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a ConnectivityError."""
        super().__init__(error_code="unavailable", message=message, details=details)


class StoreError(MonitorError):
    """Error raised when a store read or write fails for a non-connectivity reason."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a StoreError."""
        super().__init__(error_code="store_error", message=message, details=details)


class DecodeError(MonitorError):
    """
    Error raised when an id or a message payload cannot be decoded.

    Maps to HTTP 400 when raised inside a request handler.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a DecodeError."""
        super().__init__(
            error_code="invalid_argument", message=message, details=details
        )


class ValidationError(MonitorError):
    """Error raised when a request body is malformed."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a ValidationError."""
        super().__init__(
            error_code="invalid_argument", message=message, details=details
        )


class NotFoundError(MonitorError):
    """Error raised when a measurement id is absent on read, update or delete."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a NotFoundError."""
        super().__init__(error_code="not_found", message=message, details=details)


class SamplingError(MonitorError):
    """Error raised when the host CPU or RAM utilization cannot be read."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a SamplingError."""
        super().__init__(
            error_code="sampling_failed", message=message, details=details
        )


class FailedPreconditionError(MonitorError):
    """
    Error raised when a precondition for the operation is not met.

    Used for lifecycle misuse, such as starting a sampler that is already running.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a FailedPreconditionError."""
        super().__init__(
            error_code="failed_precondition", message=message, details=details
        )


def http_status_for(error: MonitorError) -> int:
    """
    Map a MonitorError to an HTTP status code.

    Args:
        error: The error to map.

    Returns:
        HTTP status code (400, 404 or 500).
    """
    return HTTP_STATUS_MAP.get(error.error_code, DEFAULT_HTTP_STATUS)
