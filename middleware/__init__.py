"""
Middleware components for the OwnTracks backend.

This module contains FastAPI middleware for cross-cutting concerns
such as request correlation, authentication and rate limiting.
"""

from middleware.request_id import RequestIDMiddleware, request_id_var
from middleware.auth import (
    BasicAuthMiddleware,
    is_exempt_path,
    parse_basic_credentials,
    setup_basic_auth,
    verify_password,
)
from middleware.rate_limiter import (
    create_rate_limiter,
    get_client_ip,
    rate_limit_exceeded_handler,
    setup_rate_limiting,
)

__all__ = [
    "RequestIDMiddleware",
    "request_id_var",
    "BasicAuthMiddleware",
    "is_exempt_path",
    "parse_basic_credentials",
    "setup_basic_auth",
    "verify_password",
    "create_rate_limiter",
    "get_client_ip",
    "rate_limit_exceeded_handler",
    "setup_rate_limiting",
]
