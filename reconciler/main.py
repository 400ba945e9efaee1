"""Reconciler - FastAPI application."""

import time
import traceback
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy import text

from reconciler.config import settings
from reconciler.deps import DbSession
from reconciler.logger import configure_logging, get_logger
from reconciler.routers import matching
from reconciler.services.scoring import load_matching_config

# Initialize logging early
configure_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan - validate matching config before accepting traffic."""
    config = load_matching_config(force_reload=True)
    logger.info(
        "Application started",
        version="0.1.0",
        environment=settings.environment,
        auto_match_threshold=config.auto_match_threshold,
        suggest_threshold=config.suggest_threshold,
    )
    yield
    logger.info("Application shutting down")


app = FastAPI(
    title="Reconciler API",
    description="Bank transaction and inbox document matching",
    version="0.1.0",
    lifespan=lifespan,
)


@app.middleware("http")
async def logging_middleware(request: Request, call_next: Any) -> Response:
    """Middleware to inject Request-ID and log request details."""
    request_id = request.headers.get("X-Request-ID", str(uuid4()))

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        method=request.method,
        path=request.url.path,
    )

    start_time = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception as exc:
        logger.exception(
            "HTTP Request Failed",
            duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
            error=str(exc),
        )
        raise

    logger.info(
        "HTTP Request",
        status_code=response.status_code,
        duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
    )
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler to ensure JSON response."""
    if settings.debug:
        detail = str(exc)
        trace = traceback.format_exc()
    else:
        detail = "An internal server error occurred. Please try again later."
        trace = None

    return JSONResponse(
        status_code=500,
        content={
            "detail": detail,
            "trace": trace,
            "request_id": structlog.contextvars.get_contextvars().get("request_id"),
        },
    )


app.include_router(matching.router)


@app.get("/health")
async def health_check(db: DbSession) -> JSONResponse:
    """Return 200 when the database answers, 503 otherwise."""
    try:
        await db.execute(text("SELECT 1"))
        database_ok = True
    except Exception as exc:
        logger.error(
            "Health check: database unreachable",
            error=str(exc),
            error_type=type(exc).__name__,
        )
        database_ok = False

    return JSONResponse(
        status_code=200 if database_ok else 503,
        content={
            "status": "healthy" if database_ok else "unhealthy",
            "timestamp": datetime.now(UTC).isoformat(),
            "checks": {"database": database_ok},
        },
    )
