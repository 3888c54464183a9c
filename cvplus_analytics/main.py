"""
main.py — CVPlus analytics ingestion & aggregation service entry point.

Start with: uvicorn cvplus_analytics.main:app --reload --port 8000
(run from the repository root)
"""
import logging
import os
import subprocess
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.exceptions import HTTPException as StarletteHTTPException

from cvplus_analytics.cache import LocalTTLCache, RedisTTLCache, TTLCache, create_redis_pool
from cvplus_analytics.config import settings
from cvplus_analytics.database import AsyncSessionLocal, async_engine
from cvplus_analytics.engine.aggregation import AggregationEngine
from cvplus_analytics.engine.ingestion import IngestionService
from cvplus_analytics.engine.realtime import RealtimeCounter, SqlCounterStore

# ---------------------------------------------------------------------------
# Logging — configured before anything else
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Service wiring — shared by the lifespan and by tests
# ---------------------------------------------------------------------------
def wire_services(
    app: FastAPI,
    session_factory: async_sessionmaker[AsyncSession],
    cache: TTLCache,
) -> None:
    """Construct the pipeline services once and hang them on app.state."""
    app.state.cache = cache
    app.state.realtime = RealtimeCounter(
        SqlCounterStore(session_factory),
        spike_threshold=settings.realtime_spike_threshold,
        window_seconds=settings.realtime_window_seconds,
        max_retries=settings.realtime_max_retries,
    )
    app.state.aggregation = AggregationEngine(
        session_factory,
        cache,
        top_n=settings.aggregation_top_n,
        page_size=settings.aggregation_page_size,
        cache_ttl=settings.cache_ttl_seconds,
    )
    app.state.ingestion = IngestionService(
        session_factory,
        cache,
        realtime=app.state.realtime,
        aggregation=app.state.aggregation,
        retention_days=settings.event_retention_days,
    )


# ---------------------------------------------------------------------------
# Lifespan — startup & shutdown hooks
# ---------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup:
      1. Run Alembic migrations
      2. Cache backend (Redis pool when cache_backend=redis)
      3. Services: realtime counter, aggregation engine, ingestion
    Shutdown:
      1. Wait for in-flight realtime bumps
      2. Close Redis pool, dispose engine
    """
    # --- 1. Database: run Alembic migrations ---
    package_dir = os.path.dirname(os.path.abspath(__file__))
    result = subprocess.run(
        [sys.executable, "-m", "alembic", "upgrade", "head"],
        capture_output=True,
        text=True,
        cwd=package_dir,
    )
    if result.returncode != 0:
        logger.error("Alembic migration failed:\n%s", result.stderr)
        raise RuntimeError(f"Alembic migration failed: {result.stderr}")
    msg = result.stdout.strip() or "No pending migrations"
    logger.info("Alembic: %s", msg)

    # --- 2. Cache ---
    app.state.redis = None
    if settings.cache_backend == "redis":
        app.state.redis = await create_redis_pool(settings.redis_url)
        cache: TTLCache = RedisTTLCache(app.state.redis, default_ttl=settings.cache_ttl_seconds)
    else:
        cache = LocalTTLCache(default_ttl=settings.cache_ttl_seconds)
    logger.info("Cache backend: %s", settings.cache_backend)

    # --- 3. Services ---
    wire_services(app, AsyncSessionLocal, cache)

    logger.info("CVPlus analytics v%s starting up", settings.app_version)
    yield

    # --- Shutdown ---
    await app.state.realtime.drain()
    if app.state.redis is not None:
        await app.state.redis.aclose()
        logger.info("Redis connection pool closed")
    await async_engine.dispose()
    logger.info("CVPlus analytics shutting down")


# ---------------------------------------------------------------------------
# FastAPI application instance
# ---------------------------------------------------------------------------
app = FastAPI(
    title="CVPlus Analytics API",
    version=settings.app_version,
    description=(
        "Event ingestion, period aggregation and realtime counters for the CVPlus "
        "analytics SDK."
    ),
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
)

# ---------------------------------------------------------------------------
# CORS middleware — restricted to origins from settings
# ---------------------------------------------------------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Error response helper
# ---------------------------------------------------------------------------
def _make_error_response(
    code: str,
    message: str,
    details: list[dict[str, Any]] | None = None,
    status_code: int = 500,
) -> JSONResponse:
    """Build a standard {error: {code, message, details}} response."""
    body = {
        "error": {
            "code": code,
            "message": message,
            "details": details or [],
        }
    }
    return JSONResponse(status_code=status_code, content=body)


# ---------------------------------------------------------------------------
# Global exception handlers — registered BEFORE routers
# ---------------------------------------------------------------------------
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Returns every field violation in one 422 response."""
    details = []
    for error in exc.errors():
        # dot-notation field path without the top-level 'body'/'query' segment
        field = ".".join(str(loc) for loc in error["loc"] if loc not in ("body", "query", "path"))
        details.append({"field": field or None, "issue": error["msg"]})
    return _make_error_response(
        code="VALIDATION_ERROR",
        message="Request validation failed",
        details=details,
        status_code=422,
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    code_map = {
        400: "BAD_REQUEST",
        401: "UNAUTHORIZED",
        403: "FORBIDDEN",
        404: "NOT_FOUND",
        405: "METHOD_NOT_ALLOWED",
        409: "CONFLICT",
        413: "PAYLOAD_TOO_LARGE",
        422: "VALIDATION_ERROR",
        429: "RATE_LIMITED",
    }
    code = code_map.get(exc.status_code, f"HTTP_{exc.status_code}")
    return _make_error_response(
        code=code,
        message=str(exc.detail),
        status_code=exc.status_code,
    )


@app.exception_handler(ValueError)
async def value_error_handler(
    request: Request, exc: ValueError
) -> JSONResponse:
    """
    Explicit ValueError raises from route or store logic (bad cursor, inverted date range).
    Surfaces as 422 VALIDATION_ERROR so the caller knows it is a data issue.
    """
    return _make_error_response(
        code="VALIDATION_ERROR",
        message=str(exc),
        status_code=422,
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(
    request: Request, exc: Exception
) -> JSONResponse:
    """
    Catch-all for unexpected errors.
    DEBUG=true  → includes exception type & message in details (dev only).
    DEBUG=false → generic message; full traceback logged server-side only.
    """
    logger.error(
        "Unhandled exception on %s %s",
        request.method,
        request.url.path,
        exc_info=True,
    )
    if settings.debug:
        details = [{"issue": f"{type(exc).__name__}: {exc}"}]
        message = "An unexpected error occurred (debug details included)"
    else:
        details = []
        message = "An unexpected error occurred"
    return _make_error_response(
        code="INTERNAL_ERROR",
        message=message,
        details=details,
        status_code=500,
    )


# ---------------------------------------------------------------------------
# Health endpoint (no auth required)
# ---------------------------------------------------------------------------
@app.get("/api/health", tags=["System"])
async def health_check() -> dict:
    return {
        "status": "ok",
        "version": settings.app_version,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# ---------------------------------------------------------------------------
# Analytics routers
# ---------------------------------------------------------------------------
from cvplus_analytics.engine.routes import ingest_router, router as analytics_router  # noqa: E402

app.include_router(ingest_router)
app.include_router(analytics_router)
