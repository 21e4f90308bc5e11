"""
Rate limiting middleware for API security.

Requests are limited per client IP using slowapi. The limit applies to every
route as a default limit, enforced by ``SlowAPIMiddleware``.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from errors.exceptions import rate_limited
from errors.handlers import build_error_response

logger = logging.getLogger(__name__)

RETRY_AFTER_SECONDS = 60


def get_client_ip(request: Request) -> str:
    """
    Extract the client IP address from the request.

    Checks common forwarding headers before falling back to the direct
    client address.

    Args:
        request: The incoming FastAPI request

    Returns:
        The client's IP address as a string
    """
    # X-Forwarded-For can contain multiple IPs, the first is the original client
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    return get_remote_address(request)


def get_rate_limit_string(requests_per_minute: int) -> str:
    """
    Generate a rate limit string for slowapi.

    Args:
        requests_per_minute: Number of requests allowed per minute

    Returns:
        Rate limit string in slowapi format (e.g., "600/minute")
    """
    return f"{requests_per_minute}/minute"


def create_rate_limiter(requests_per_minute: int = 600, enabled: bool = True) -> Limiter:
    """
    Create a limiter applying ``requests_per_minute`` to every route.

    Each application gets its own limiter so counters are not shared
    between app instances.
    """
    return Limiter(
        key_func=get_client_ip,
        default_limits=[get_rate_limit_string(requests_per_minute)],
        enabled=enabled,
    )


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """
    Answer a rate limited request with the structured error format.

    Kept synchronous: ``SlowAPIMiddleware`` calls the registered handler
    without awaiting it.
    """
    logger.warning(
        f"Rate limit exceeded for IP {get_client_ip(request)}",
        extra={"extra_data": {
            "path": request.url.path,
            "method": request.method,
            "limit": str(exc.detail),
        }}
    )
    return build_error_response(
        request,
        rate_limited(details={"limit": str(exc.detail), "retry_after_seconds": RETRY_AFTER_SECONDS}),
        headers={"Retry-After": str(RETRY_AFTER_SECONDS)},
    )


def setup_rate_limiting(app: FastAPI, requests_per_minute: int = 600, enabled: bool = True) -> Limiter:
    """
    Configure rate limiting for a FastAPI application.

    Args:
        app: The FastAPI application instance
        requests_per_minute: Maximum requests per minute per client IP
        enabled: Whether rate limiting is enabled

    Returns:
        The limiter installed on ``app.state.limiter``
    """
    limiter = create_rate_limiter(requests_per_minute, enabled=enabled)
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    logger.info(
        f"Rate limiting configured: {requests_per_minute}/min",
        extra={"extra_data": {"enabled": enabled}}
    )
    return limiter
