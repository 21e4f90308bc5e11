"""
HTTP basic authentication middleware.

Credentials are checked against a configured username and a bcrypt hash of
the password. Paths under ``/health`` are always reachable so probes work
without credentials.
"""

import base64
import binascii
import hmac
import logging
from typing import Callable, Iterable, Optional, Tuple

import bcrypt
from fastapi import FastAPI, Request, Response
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from errors.exceptions import unauthorized
from errors.handlers import build_error_response

logger = logging.getLogger(__name__)

DEFAULT_EXEMPT_PREFIXES = ("/health",)
WWW_AUTHENTICATE = 'Basic realm="owntracks"'


def parse_basic_credentials(header_value: Optional[str]) -> Optional[Tuple[str, str]]:
    """
    Parse an ``Authorization: Basic ...`` header value.

    Returns:
        (username, password), or None if the header is missing or malformed.
    """
    if not header_value:
        return None
    scheme, _, encoded = header_value.partition(" ")
    if scheme.lower() != "basic" or not encoded.strip():
        return None
    try:
        decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    username, sep, password = decoded.partition(":")
    if not sep:
        return None
    return username, password


def is_exempt_path(path: str, prefixes: Iterable[str] = DEFAULT_EXEMPT_PREFIXES) -> bool:
    """Check whether a request path bypasses authentication."""
    for prefix in prefixes:
        if path == prefix or path.startswith(prefix.rstrip("/") + "/"):
            return True
    return False


def verify_password(password: str, password_hash: str) -> bool:
    """Check a plaintext password against a bcrypt hash. Malformed hashes never match."""
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


class BasicAuthMiddleware(BaseHTTPMiddleware):
    """
    Middleware that rejects unauthenticated requests with 401.

    The bcrypt comparison runs in the threadpool so it does not block the
    event loop.
    """

    def __init__(
        self,
        app: ASGIApp,
        username: str,
        password_hash: str,
        exempt_prefixes: Iterable[str] = DEFAULT_EXEMPT_PREFIXES,
    ):
        super().__init__(app)
        self.username = username
        self.password_hash = password_hash
        self.exempt_prefixes = tuple(exempt_prefixes)

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Response]
    ) -> Response:
        if request.method == "OPTIONS" or is_exempt_path(request.url.path, self.exempt_prefixes):
            return await call_next(request)

        credentials = parse_basic_credentials(request.headers.get("Authorization"))
        if credentials is not None:
            username, password = credentials
            username_ok = hmac.compare_digest(username.encode("utf-8"), self.username.encode("utf-8"))
            password_ok = await run_in_threadpool(verify_password, password, self.password_hash)
            if username_ok and password_ok:
                request.state.auth_user = username
                return await call_next(request)

        logger.warning(
            "Authentication failed",
            extra={"extra_data": {
                "path": request.url.path,
                "method": request.method,
                "credentials_present": credentials is not None,
            }}
        )
        return build_error_response(
            request,
            unauthorized(),
            headers={"WWW-Authenticate": WWW_AUTHENTICATE},
        )


def setup_basic_auth(app: FastAPI, username: str, password_hash: str, enabled: bool = True) -> None:
    """
    Install basic authentication on a FastAPI application.

    Args:
        app: The FastAPI application instance
        username: Expected username
        password_hash: bcrypt hash of the expected password
        enabled: Whether authentication is enabled
    """
    if not enabled:
        logger.info("Basic authentication is disabled")
        return

    app.add_middleware(BasicAuthMiddleware, username=username, password_hash=password_hash)
    logger.info("Basic authentication enabled", extra={"extra_data": {"username": username}})
