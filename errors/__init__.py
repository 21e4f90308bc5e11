"""
Error handling module for the OwnTracks backend.

This module provides structured error handling with:
- ErrorCode enum for standardized error codes
- AppException and the ValidationError / DecodeError / StoreError taxonomy
- Error response models for consistent API responses
- Exception handlers for FastAPI integration
"""

from errors.codes import ErrorCode
from errors.exceptions import AppException, DecodeError, StoreError, ValidationError
from errors.handlers import (
    ErrorResponse,
    build_error_response,
    handle_app_exception,
    handle_unexpected_exception,
    register_exception_handlers,
)

__all__ = [
    "ErrorCode",
    "AppException",
    "ValidationError",
    "DecodeError",
    "StoreError",
    "ErrorResponse",
    "build_error_response",
    "handle_app_exception",
    "handle_unexpected_exception",
    "register_exception_handlers",
]
