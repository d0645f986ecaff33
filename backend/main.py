"""FastAPI application entry point for the sync server."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import sys
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError

from backend.api.autopilot import router as autopilot_router
from backend.api.health import SERVER_VERSION
from backend.api.health import router as health_router
from backend.api.sync import router as sync_router
from backend.config import Settings
from backend.database import create_engine
from backend.exceptions import InternalServerError
from backend.models.base import Base
from backend.services.autopilot_service import evaluate_rules
from engine.services.health_service import HttpHealthProbe

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from engine.services.health_service import HealthProbe

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool) -> None:
    """Configure application logging."""
    level = logging.DEBUG if debug else logging.INFO
    fmt = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
    logging.basicConfig(
        level=level,
        format=fmt,
        stream=sys.stdout,
        force=True,
    )
    # Quiet noisy libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if debug else logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


async def run_autopilot(
    session_factory: async_sessionmaker[AsyncSession],
    probe: HealthProbe,
    interval_seconds: float,
) -> None:
    """Evaluate autopilot rules forever, one pass per interval."""
    while True:
        try:
            switched = await evaluate_rules(session_factory, probe)
            if switched:
                logger.info("Autopilot pass switched %d rules", switched)
        except Exception:
            logger.exception("Autopilot evaluation failed")
        await asyncio.sleep(interval_seconds)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Application lifespan: startup and shutdown."""
    settings: Settings = app.state.settings
    _configure_logging(settings.debug)
    logger.info("Starting sync server (debug=%s)", settings.debug)

    try:
        engine, session_factory = create_engine(settings)
        app.state.engine = engine
        app.state.session_factory = session_factory
    except Exception as exc:
        logger.critical(
            "Failed to initialize database: %s. Check database path and permissions.", exc
        )
        raise

    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    except Exception as exc:
        logger.critical("Failed to create database schema: %s.", exc)
        raise

    http_client = httpx.AsyncClient(timeout=settings.probe_timeout_seconds)
    probe = HttpHealthProbe(http_client, settings.probe_timeout_seconds)
    autopilot_task = asyncio.create_task(
        run_autopilot(session_factory, probe, settings.autopilot_interval_seconds)
    )
    app.state.autopilot_task = autopilot_task

    yield

    autopilot_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await autopilot_task

    try:
        await http_client.aclose()
    except Exception as exc:
        logger.error("Error during HTTP client shutdown: %s", exc, exc_info=True)

    try:
        await engine.dispose()
    except Exception as exc:
        logger.error("Error during engine disposal: %s", exc, exc_info=True)

    logger.info("Sync server stopped")


def _error_response(
    request: Request, exc: Exception, status_code: int, detail: object
) -> JSONResponse:
    log = logger.warning if status_code < 500 else logger.error
    log(
        "%s in %s %s: %s",
        type(exc).__name__,
        request.method,
        request.url.path,
        exc,
        exc_info=exc if status_code >= 500 else None,
    )
    return JSONResponse(status_code=status_code, content={"detail": detail})


def _install_error_handlers(app: FastAPI) -> None:
    """Map server-side failures onto status codes.

    Sync auth failures are HTTPExceptions and bypass these. Anything that
    reaches the 500 handler is logged with its traceback but answered with a
    fixed message, since stored snapshots are opaque to clients.
    """

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors = []
        for err in exc.errors():
            loc = err.get("loc", ())
            errors.append(
                {
                    "field": str(loc[-1]) if loc else "unknown",
                    "message": err.get("msg", "Invalid value"),
                }
            )
        return _error_response(request, exc, 422, errors)

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        return _error_response(request, exc, 422, str(exc) or "Invalid value")

    @app.exception_handler(InternalServerError)
    async def internal_error_handler(request: Request, exc: InternalServerError) -> JSONResponse:
        return _error_response(request, exc, 500, "Data integrity error")

    @app.exception_handler(OperationalError)
    async def operational_error_handler(request: Request, exc: OperationalError) -> JSONResponse:
        return _error_response(request, exc, 503, "Database temporarily unavailable")


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    if settings is None:
        settings = Settings()

    docs_enabled = settings.debug or settings.expose_docs

    app = FastAPI(
        title="AddonSync",
        description="Encrypted snapshot store and failover authority",
        version=SERVER_VERSION,
        lifespan=lifespan,
        docs_url="/docs" if docs_enabled else None,
        redoc_url="/redoc" if docs_enabled else None,
        openapi_url="/openapi.json" if docs_enabled else None,
    )
    app.state.settings = settings

    cors_origins = settings.cors_origins or (["*"] if settings.debug else [])
    if cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cors_origins,
            allow_methods=["GET", "POST", "DELETE"],
            allow_headers=["*"],
        )

    app.include_router(health_router)
    app.include_router(sync_router)
    app.include_router(autopilot_router)

    _install_error_handlers(app)

    return app


app = create_app()


def cli_entry() -> None:
    """CLI entry point for running the server."""
    import uvicorn

    settings: Settings = app.state.settings
    parser = argparse.ArgumentParser(description="AddonSync sync server")
    parser.add_argument("--host", default=settings.host)
    parser.add_argument("--port", type=int, default=settings.port)
    args = parser.parse_args()
    uvicorn.run(
        "backend.main:app",
        host=args.host,
        port=args.port,
        reload=settings.debug,
    )
