"""FastAPI application entry-point for the invoice relay API."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from relay_api import __version__
from relay_api.config import APISettings, PlatformEnv
from relay_api.dependencies import dispose_state, get_relay_settings, get_settings, init_state
from relay_api.middleware.logging import CORRELATION_HEADER, RequestLoggingMiddleware
from relay_api.routers import audit, health, invoices, webhooks
from relay_api.routers import metrics as metrics_router
from relay_core.errors import TenantNotFoundError, WebhookSignatureError
from relay_core.state.database import create_all
from relay_core.telemetry.logging import configure_logging

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Configure logging.
    - Initialise the engine, queue, metrics sink, cipher and object store.
    - Create tables when running on SQLite or in dev (production uses
      Alembic migrations via ``relay migrate``).

    On shutdown:
    - Dispose the database engine connection pool.
    """
    settings: APISettings = get_settings()
    relay_settings = get_relay_settings()
    configure_logging(settings.log_level, structured=settings.structured_logging)

    engine = init_state(relay_settings)
    is_local = relay_settings.database_url.startswith("sqlite")
    logger.info(
        "Database engine initialised (%s, %s)",
        relay_settings.database_url[:40] + "...",
        "local" if is_local else "postgres",
    )

    if settings.auto_create_tables and (is_local or settings.environment is PlatformEnv.DEV):
        await create_all(engine)

    yield

    await dispose_state()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app() -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Invoice Relay API",
        description="CRM webhook intake and tenant invoice status for the Factur-X relay.",
        version=__version__,
        lifespan=lifespan,
    )

    # -- Middleware (outermost first) ----------------------------------------
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=[
            "Authorization",
            "Content-Type",
            CORRELATION_HEADER,
            "X-Tenant-Id",
            "Accept",
        ],
    )
    app.add_middleware(RequestLoggingMiddleware)

    # -- Routers -------------------------------------------------------------
    app.include_router(health.router, prefix="/api/v1")
    app.include_router(webhooks.router, prefix="/api/v1")
    app.include_router(invoices.router, prefix="/api/v1")
    app.include_router(audit.router, prefix="/api/v1")

    # Outside /api/v1 versioning.
    app.include_router(metrics_router.router)
    app.include_router(health.readiness_router)

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(TenantNotFoundError)
    async def tenant_error_handler(request: Request, exc: TenantNotFoundError) -> JSONResponse:
        logger.warning("Tenant rejected on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=401, content={"ok": False, "detail": "tenant_not_found"})

    @app.exception_handler(WebhookSignatureError)
    async def signature_error_handler(request: Request, exc: WebhookSignatureError) -> JSONResponse:
        return JSONResponse(status_code=401, content={"ok": False, "detail": str(exc)})

    @app.exception_handler(LookupError)
    async def lookup_error_handler(request: Request, exc: LookupError) -> JSONResponse:
        logger.info("Not found on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=404, content={"detail": "Not found"})

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        logger.warning("ValueError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error: %s", exc, exc_info=True)
        return JSONResponse(status_code=500, content={"detail": "Internal database error"})

    return app


# Module-level application instance used by ``uvicorn relay_api.main:app``.
app = create_app()
