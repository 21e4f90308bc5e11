"""
OwnTracks location backend.

Run with ``python main.py`` or ``uvicorn main:create_app --factory``.
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from app_context import AppContext, build_context
from config.settings import ConfigurationError, Settings, get_settings, validate_startup
from errors.exceptions import resource_not_found
from errors.handlers import register_exception_handlers
from middleware.auth import setup_basic_auth
from middleware.rate_limiter import setup_rate_limiting
from middleware.request_id import RequestIDMiddleware
from storage.location_store import MAX_QUERY_LIMIT
from telemetry.service import initialize_telemetry

logger = logging.getLogger(__name__)

router = APIRouter()


def get_context(request: Request) -> AppContext:
    return request.app.state.context


@router.post("/owntracks")
@router.post("/pub")
async def publish_report(request: Request, ctx: AppContext = Depends(get_context)):
    """Receive one OwnTracks report (plaintext or encrypted)."""
    raw_body = await request.body()
    result = await ctx.ingestion.ingest(raw_body, request.headers)
    return result.to_response()


@router.get("/locations")
async def list_locations(
    limit: Optional[int] = Query(
        default=None,
        le=MAX_QUERY_LIMIT,
        description=f"Maximum records (default 100, at most {MAX_QUERY_LIMIT})",
    ),
    device: Optional[str] = Query(default=None, description="Exact device identifier"),
    ctx: AppContext = Depends(get_context),
):
    records = await ctx.ingestion.list_locations(limit=limit, device=device)
    return {
        "success": True,
        "count": len(records),
        "data": [record.to_response() for record in records],
    }


@router.get("/locations/{record_id}")
async def get_location(record_id: int, ctx: AppContext = Depends(get_context)):
    record = await ctx.ingestion.get_location(record_id)
    if record is None:
        raise resource_not_found("Location not found", details={"id": record_id})
    return {"success": True, "data": record.to_response()}


@router.post("/cleanup")
async def cleanup(ctx: AppContext = Depends(get_context)):
    """Evict expired records now."""
    deleted = await run_in_threadpool(ctx.sweeper.run_now)
    return {"success": True, "deletedRecords": deleted}


@router.get("/health")
async def health(ctx: AppContext = Depends(get_context)):
    result = await ctx.health.check_health()
    status_code = 200 if result["status"] == "ok" else 503
    return JSONResponse(status_code=status_code, content=result)


@router.get("/health/live")
async def health_live(ctx: AppContext = Depends(get_context)):
    return await ctx.health.check_liveness()


@router.get("/health/ready")
async def health_ready(ctx: AppContext = Depends(get_context)):
    status = await ctx.health.check_readiness()
    return JSONResponse(status_code=200 if status.ready else 503, content=status.to_dict())


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the retention schedule; release the store on shutdown."""
    ctx: AppContext = app.state.context
    ctx.sweeper.start()
    logger.info("OwnTracks backend started")
    try:
        yield
    finally:
        ctx.close()
        logger.info("OwnTracks backend stopped")


def create_app(settings: Optional[Settings] = None, context: Optional[AppContext] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Settings to use; loaded from the environment when omitted
        context: Prebuilt application context; built from settings when omitted

    Raises:
        ConfigurationError: If settings are invalid
        StoreError: If the database schema cannot be initialized
    """
    if settings is None:
        settings = context.settings if context is not None else get_settings()

    if context is None:
        telemetry = initialize_telemetry(settings)
        logger.info("Loaded configuration", extra={"extra_data": settings.redacted()})
        validate_startup(settings)
        context = build_context(settings, telemetry=telemetry)

    app = FastAPI(title="OwnTracks Backend", version="1.0.0", lifespan=lifespan)
    app.state.context = context

    register_exception_handlers(app)

    # Added innermost first: auth runs after rate limiting, request IDs wrap everything
    setup_basic_auth(
        app,
        username=settings.auth_username,
        password_hash=settings.auth_password,
        enabled=settings.auth_enabled,
    )
    setup_rate_limiting(app, requests_per_minute=settings.rate_limit_requests_per_minute)
    if settings.server_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["*"],
            expose_headers=["X-Request-ID"],
        )
    app.add_middleware(RequestIDMiddleware)

    app.include_router(router)
    return app


def main() -> None:
    try:
        settings = get_settings()
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    uvicorn.run(
        "main:create_app",
        factory=True,
        host=settings.server_host,
        port=settings.server_port,
        log_config=None,
    )


if __name__ == "__main__":
    main()
