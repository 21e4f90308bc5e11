"""
Request ID middleware for request correlation.

Each request gets an ID, taken from the ``X-Request-ID`` header or freshly
generated, that is echoed on the response and attached to every log entry
written while the request is being handled.
"""

import logging
import time
import uuid
from contextvars import ContextVar
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

# Read by the log formatters
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

REQUEST_ID_HEADER = "X-Request-ID"


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Middleware that assigns a request ID and writes one access log line per request.

    The ID is stored on ``request.state`` for the error handlers and in
    ``request_id_var`` for logging, and returned in the ``X-Request-ID``
    response header.
    """

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Response]
    ) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_var.set(request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = request_id

            logger.info(
                f"{request.method} {request.url.path} {response.status_code}",
                extra={"extra_data": {
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                }}
            )
            return response
        finally:
            # Avoid leaking the ID into the next request on this task
            request_id_var.reset(token)
