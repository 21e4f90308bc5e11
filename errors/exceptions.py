"""
Exception classes for the OwnTracks backend.

This module provides the AppException base class, the domain exceptions
raised by the decoder, the ingestion service and the location store, and
convenience factory functions for the remaining error codes.
"""

from typing import Any, Optional

from errors.codes import ErrorCode, get_default_status_code


class AppException(Exception):
    """
    Base exception class for all application-specific errors.

    This exception provides structured error information including:
    - error_code: A standardized error code from the ErrorCode enum
    - message: A human-readable error message
    - status_code: The HTTP status code to return
    - details: Optional additional context (e.g., field-level errors)

    Example:
        raise AppException(
            error_code=ErrorCode.VALIDATION_ERROR,
            message="Invalid location data: lat and lon are required",
            details={"fields": ["lat", "lon"]}
        )
    """

    def __init__(
        self,
        error_code: ErrorCode,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[dict[str, Any]] = None
    ):
        """
        Initialize an AppException.

        Args:
            error_code: The error code from the ErrorCode enum
            message: A human-readable error message
            status_code: The HTTP status code (defaults to the error code's default)
            details: Optional dictionary with additional error context
        """
        self.error_code = error_code
        self.message = message
        self.status_code = status_code or get_default_status_code(error_code)
        self.details = details
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the exception to a dictionary for JSON serialization.

        Returns:
            Dictionary containing error, error_code, and details
        """
        result = {
            "error": self.message,
            "error_code": self.error_code.value,
        }
        if self.details is not None:
            result["details"] = self.details
        return result

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(error_code={self.error_code.value!r}, "
            f"message={self.message!r}, status_code={self.status_code}, "
            f"details={self.details!r})"
        )


class ValidationError(AppException):
    """A report is malformed or misses required fields. User-correctable."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(ErrorCode.VALIDATION_ERROR, message, details=details)


class DecodeError(AppException):
    """Ciphertext is malformed, was encrypted with another key, or failed authentication."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(ErrorCode.DECODE_ERROR, message, details=details)


class StoreError(AppException):
    """I/O against the backing database file failed. Never retried internally."""

    def __init__(
        self,
        message: str = "Location store unavailable",
        details: Optional[dict[str, Any]] = None
    ):
        super().__init__(ErrorCode.STORE_UNAVAILABLE, message, details=details)


# Convenience factory functions for the remaining error codes

def resource_not_found(
    message: str,
    details: Optional[dict[str, Any]] = None
) -> AppException:
    """Create a resource not found exception."""
    return AppException(
        error_code=ErrorCode.RESOURCE_NOT_FOUND,
        message=message,
        details=details
    )


def unauthorized(
    message: str = "Authentication required",
    details: Optional[dict[str, Any]] = None
) -> AppException:
    """Create an unauthorized exception."""
    return AppException(
        error_code=ErrorCode.UNAUTHORIZED,
        message=message,
        details=details
    )


def rate_limited(
    message: str = "Too many requests",
    details: Optional[dict[str, Any]] = None
) -> AppException:
    """Create a rate limited exception."""
    return AppException(
        error_code=ErrorCode.RATE_LIMITED,
        message=message,
        details=details
    )


def internal_error(
    message: str = "Internal server error",
    details: Optional[dict[str, Any]] = None
) -> AppException:
    """Create an internal error exception."""
    return AppException(
        error_code=ErrorCode.INTERNAL_ERROR,
        message=message,
        details=details
    )
