"""
Exception handlers for the OwnTracks backend.

This module provides FastAPI exception handlers that convert exceptions
to structured JSON error responses with a consistent format:
``{"error": ..., "error_code": ..., "details"?: ..., "request_id": ...}``.

Unexpected exceptions are logged with their full stack trace and answered
with a generic message that does not expose internal details.
"""

import logging
import traceback
import uuid
from typing import Any, Optional

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from errors.codes import ErrorCode
from errors.exceptions import AppException

logger = logging.getLogger(__name__)


class ErrorResponse(BaseModel):
    """
    Body of every non-2xx response: ingest rejections, 401/404/429 and store
    failures alike. OwnTracks clients only look at the status code; the
    fields are for operators and scripts reading /locations.
    """
    error: str
    error_code: str
    details: Optional[dict[str, Any]] = None
    request_id: str


def get_request_id(request: Request) -> str:
    """
    Get the request ID from the request state or generate a new one.

    The request_id middleware sets this value; a fresh UUID is used when
    the handler runs outside of it.

    Args:
        request: The FastAPI request object

    Returns:
        The request ID string
    """
    if hasattr(request.state, "request_id"):
        return request.state.request_id

    return str(uuid.uuid4())


def build_error_response(
    request: Request,
    exc: AppException,
    headers: Optional[dict[str, str]] = None,
) -> JSONResponse:
    """
    Render an AppException as a JSONResponse.

    Shared by the exception handlers and by middleware that has to answer
    before the routing layer runs (authentication, rate limiting).
    """
    error_response = ErrorResponse(
        error=exc.message,
        error_code=exc.error_code.value,
        details=exc.details,
        request_id=get_request_id(request),
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=error_response.model_dump(exclude_none=True),
        headers=headers,
    )


async def handle_app_exception(request: Request, exc: AppException) -> JSONResponse:
    """
    Handle known application exceptions and convert to structured response.

    Args:
        request: The FastAPI request object
        exc: The AppException that was raised

    Returns:
        JSONResponse with structured error format
    """
    request_id = get_request_id(request)

    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "Application error occurred",
        extra={"extra_data": {
            "error_code": exc.error_code.value,
            "error_message": exc.message,
            "status_code": exc.status_code,
            "details": exc.details,
            "request_id": request_id,
            "path": request.url.path,
            "method": request.method,
        }}
    )

    return build_error_response(request, exc)


async def handle_request_validation_error(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """
    Answer a bad ``limit`` query value or non-integer location id with 400.

    Each failing parameter is listed as ``{"loc": [...], "msg": ...}`` under
    ``details.validation_errors``.
    """
    errors = [
        {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg", "")}
        for err in exc.errors()
    ]
    app_exc = AppException(
        error_code=ErrorCode.VALIDATION_ERROR,
        message="Invalid request parameters",
        details={"validation_errors": errors},
    )
    return await handle_app_exception(request, app_exc)


async def handle_unexpected_exception(request: Request, exc: Exception) -> JSONResponse:
    """
    Last-resort handler: log the stack trace, answer 500 "Internal server error".

    Exception text can contain database paths, so none of it reaches the
    client.
    """
    request_id = get_request_id(request)

    logger.error(
        "Unexpected error occurred",
        extra={"extra_data": {
            "error_code": ErrorCode.INTERNAL_ERROR.value,
            "request_id": request_id,
            "path": request.url.path,
            "method": request.method,
            "exception_type": type(exc).__name__,
            "exception_message": str(exc),
            "stack_trace": traceback.format_exc(),
        }},
        exc_info=True,
    )

    error_response = ErrorResponse(
        error="Internal server error",
        error_code=ErrorCode.INTERNAL_ERROR.value,
        details=None,  # Never expose internal details
        request_id=request_id,
    )

    return JSONResponse(
        status_code=500,
        content=error_response.model_dump(exclude_none=True),
    )


def register_exception_handlers(app) -> None:
    """
    Register all exception handlers with the FastAPI application.

    Args:
        app: The FastAPI application instance
    """
    app.add_exception_handler(AppException, handle_app_exception)
    app.add_exception_handler(RequestValidationError, handle_request_validation_error)
    app.add_exception_handler(Exception, handle_unexpected_exception)

    logger.info("Exception handlers registered successfully")
