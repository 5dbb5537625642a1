"""Billing Webhook Reconciler: FastAPI application entry point."""

import signal
import uuid
from contextlib import asynccontextmanager

# CRITICAL ORDER: configure_structlog MUST be called before all other app imports
# to avoid the structlog cache pitfall (structlog caches the processor chain on first use).
from reconciler.core.logging import configure_structlog
from reconciler.core.config import get_settings as _get_settings_early

_early_settings = _get_settings_early()
configure_structlog(
    log_level="DEBUG" if _early_settings.debug else "INFO",
    json_logs=not _early_settings.debug,
)

import structlog

from fastapi import FastAPI, Request, HTTPException
from fastapi.responses import JSONResponse

from reconciler.api.routes import api_router
from reconciler.api.routes.webhooks import split_secrets
from reconciler.core.config import get_settings
from reconciler.db import init_db, close_db, init_redis, close_redis, get_redis
from reconciler.middleware.correlation import (
    setup_correlation_middleware,
    get_correlation_id,
)
from reconciler.webhooks.service import create_dispatcher

logger = structlog.get_logger(__name__)


def validate_webhook_secrets() -> None:
    """Fail fast if no webhook secret is configured at startup."""
    settings = get_settings()
    if settings.debug:
        return  # Skip in dev/test mode
    configured = {
        "stripe_webhook_secret": split_secrets(settings.stripe_webhook_secret),
        "stripe_connect_webhook_secret": split_secrets(settings.stripe_connect_webhook_secret),
    }
    if not any(configured.values()):
        raise RuntimeError(f"No Stripe webhook secret configured at startup: {sorted(configured)}")
    missing = [k for k, v in configured.items() if not v]
    if missing:
        logger.warning("stripe_webhook_endpoint_disabled", missing=missing)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown events."""
    # SIGTERM flips this so the health check returns 503 while draining
    app.state.shutting_down = False

    def handle_sigterm(signum, frame):
        app.state.shutting_down = True
        logger.info("sigterm_received", action="health_check_503_draining_connections")

    signal.signal(signal.SIGTERM, handle_sigterm)

    # Startup
    settings = get_settings()
    logger.info("startup_begin", app_name=settings.app_name, debug=settings.debug)

    validate_webhook_secrets()
    logger.info("stripe_webhook_secrets_validated")

    await init_redis()
    logger.info("redis_initialized")

    if settings.event_ledger_backend == "postgres":
        await init_db()
        logger.info("db_initialized")

    app.state.dispatcher = create_dispatcher(get_redis(), settings)
    logger.info("dispatcher_initialized", ledger_backend=settings.event_ledger_backend)

    yield

    # Shutdown
    logger.info("shutdown_begin")
    await close_redis()
    await close_db()
    logger.info("shutdown_complete")


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Global exception handler for HTTPException with debug_id tracking.

    Logs errors server-side with full context, returns sanitized response to client.
    """
    debug_id = str(uuid.uuid4())
    corr_id = get_correlation_id()

    logger.error(
        "http_exception",
        status_code=exc.status_code,
        debug_id=debug_id,
        correlation_id=corr_id,
        path=request.url.path,
        method=request.method,
        detail=exc.detail,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "debug_id": debug_id},
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler for unhandled errors with debug_id tracking.

    A 500 tells the provider to redeliver; the event was not marked processed.
    """
    debug_id = str(uuid.uuid4())
    corr_id = get_correlation_id()

    logger.error(
        "unhandled_exception",
        debug_id=debug_id,
        correlation_id=corr_id,
        path=request.url.path,
        method=request.method,
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=True,
    )

    # Return generic 500 (no internal details leaked)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "debug_id": debug_id},
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Reconciles Stripe billing webhooks into subscription, marketplace and payout records",
        version="0.1.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    # Correlation ID middleware (runs first on incoming requests)
    setup_correlation_middleware(app)

    # Exception handlers
    app.exception_handler(HTTPException)(http_exception_handler)
    app.exception_handler(Exception)(generic_exception_handler)

    # Include API routes
    app.include_router(api_router, prefix="/api")

    return app


# Create the app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "reconciler.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
