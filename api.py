"""
KNX Resolver — FastAPI Application Layer

Endpoints:
  1. GET  /v1/resolve/{knxId}  — Resolve one KNX identifier
  2. POST /v1/resolve          — Batch resolve (1-200 identifiers)
  3. GET  /v1/health           — Health check

Every resolve response is wrapped as {data, meta} or {error, meta}.
"""
from __future__ import annotations
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

import httpx
from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from asyncpg_repository import AsyncPGCatalogRepository, DatabasePool
from config import Settings, configure_logging, get_settings
from discovery import DetachedTasks, DiscoveryService
from interpretation import ClaudeInterpreter
from models import BatchResolveRequest, HealthResponse
from repository import CatalogRepository, InMemoryCatalogRepository
from resolver import KnxResolver, ResolverConfig

logger = logging.getLogger(__name__)

RESOLVED_CACHE_SECONDS = 3600

# ============================================================
# Application State (shared singletons)
# ============================================================

class AppState:
    """Holds all shared service instances."""
    settings: Settings
    repo: CatalogRepository
    resolver: KnxResolver
    tasks: DetachedTasks
    http: Optional[httpx.AsyncClient] = None
    db: Optional[DatabasePool] = None
    start_time: float
    request_count: int = 0

    def __init__(self):
        self.start_time = time.monotonic()
        self.request_count = 0


_state = AppState()


# ============================================================
# Lifespan: Startup / Shutdown
# ============================================================

async def build_repository(settings: Settings) -> tuple[CatalogRepository, Optional[DatabasePool]]:
    if settings.catalog_backend == "postgres":
        db = DatabasePool(settings.asyncpg_dsn, settings.db_pool_min, settings.db_pool_max)
        await db.initialize()
        return AsyncPGCatalogRepository(db), db
    logger.warning("Using in-memory catalog; resolutions will not persist")
    return InMemoryCatalogRepository(), None


def build_resolver(settings: Settings, repo: CatalogRepository,
                   tasks: DetachedTasks, http: httpx.AsyncClient) -> KnxResolver:
    """Wire the pipeline from explicit configuration; nothing below reads the environment."""
    return KnxResolver(
        repo=repo,
        config=ResolverConfig.from_settings(settings),
        interpreter=ClaudeInterpreter.from_settings(settings, client=http),
        discovery=DiscoveryService.from_settings(settings, tasks, client=http),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize services on startup, cleanup on shutdown."""
    logger.info("Starting KNX resolver...")

    settings = get_settings()
    _state.settings = settings
    _state.tasks = DetachedTasks()
    _state.http = httpx.AsyncClient(timeout=settings.http_timeout_seconds)
    _state.repo, _state.db = await build_repository(settings)
    _state.resolver = build_resolver(settings, _state.repo, _state.tasks, _state.http)

    logger.info(
        "Resolver ready (backend=%s, interpretation=%s, discovery=%s)",
        settings.catalog_backend, settings.interpretation_enabled,
        settings.discovery_enabled)
    yield

    logger.info("Shutting down KNX resolver...")
    await _state.tasks.drain()
    await _state.http.aclose()
    if _state.db is not None:
        await _state.db.close()


def get_resolver() -> KnxResolver:
    return _state.resolver


def get_repository() -> CatalogRepository:
    return _state.repo


# ============================================================
# Response Envelope
# ============================================================

class ApiError(Exception):
    """An error surfaced to the client as-is."""

    def __init__(self, code: str, message: str, status_code: int = 400,
                 details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}


def _meta() -> dict[str, Any]:
    return {
        "requestId": f"req_{uuid4().hex[:8]}",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": get_settings().api_version,
    }


def success_response(data: Any, cache_max_age: Optional[int] = None) -> JSONResponse:
    headers = {
        "Cache-Control": f"public, max-age={cache_max_age}" if cache_max_age else "no-store",
    }
    return JSONResponse({"data": data, "meta": _meta()}, status_code=200, headers=headers)


def error_response(code: str, message: str, status_code: int,
                   details: Optional[dict[str, Any]] = None) -> JSONResponse:
    return JSONResponse(
        {"error": {"code": code, "message": message, "details": details or {}},
         "meta": _meta()},
        status_code=status_code,
    )


# ============================================================
# FastAPI App
# ============================================================

app = FastAPI(
    title="KNX Resolver API",
    description="Resolves KNX manufacturer, product and application-program "
                "identifiers into catalog records.",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origin_list,
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)


@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError):
    return error_response(exc.code, exc.message, exc.status_code, exc.details)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    issues = [
        {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg", "")}
        for err in exc.errors()
    ]
    return error_response("BAD_REQUEST", "Invalid request.", 400, {"issues": issues})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    code = "NOT_FOUND" if exc.status_code == 404 else "HTTP_ERROR"
    return error_response(code, str(exc.detail), exc.status_code)


# ============================================================
# Middleware: Request Counting & Timing
# ============================================================

@app.middleware("http")
async def timing_middleware(request: Request, call_next):
    start = time.monotonic()
    _state.request_count += 1
    response = await call_next(request)
    elapsed = int((time.monotonic() - start) * 1000)
    response.headers["X-Response-Time-Ms"] = str(elapsed)
    return response


# ============================================================
# 1. GET /v1/resolve/{knxId}: Single Resolve
# ============================================================

@app.get("/v1/resolve/{knx_id}", tags=["Resolve"])
async def resolve_one(
    knx_id: str,
    auto_discover: bool = Query(True, alias="autoDiscover"),
    resolver: KnxResolver = Depends(get_resolver),
):
    """
    Resolve any KNX identifier: M-0008, M-0008_H-0012, M-0008_A-0034-00-AB01.

    Unknown products may come back with status "discovering" and a
    retryAfter hint while background discovery runs.
    """
    try:
        result = await resolver.resolve(knx_id, auto_discover=auto_discover)
    except Exception:
        logger.exception("Resolve failed for %s", knx_id)
        return error_response("INTERNAL_ERROR", "Internal server error", 500)

    logger.info("[resolve] id=%s resolved=%s status=%s", knx_id, result.resolved,
                result.status.value if result.status else None)
    return success_response(
        result.model_dump(mode="json", by_alias=True),
        cache_max_age=RESOLVED_CACHE_SECONDS if result.resolved else None,
    )


# ============================================================
# 2. POST /v1/resolve: Batch Resolve
# ============================================================

@app.post("/v1/resolve", tags=["Resolve"])
async def resolve_batch(
    payload: BatchResolveRequest,
    resolver: KnxResolver = Depends(get_resolver),
):
    """Resolve up to 200 KNX identifiers in one request."""
    count = len(payload.knx_ids)
    if count == 0 or count > resolver.config.max_batch_size:
        raise ApiError(
            "BAD_REQUEST",
            f"knxIds must contain 1-{resolver.config.max_batch_size} items.",
            400, {"received": count})

    try:
        result = await resolver.resolve_batch(payload.knx_ids, payload.auto_discover)
    except Exception:
        logger.exception("Batch resolve failed (%d ids)", count)
        return error_response("INTERNAL_ERROR", "Internal server error", 500)

    logger.info("[resolve-batch] total=%d resolved=%d discovering=%d",
                result.stats.total, result.stats.resolved_count,
                result.stats.discovering_count)
    return success_response(result.model_dump(mode="json", by_alias=True))


# ============================================================
# 3. GET /v1/health: Health Check
# ============================================================

@app.get("/v1/health", response_model=HealthResponse, tags=["System"])
async def health_check(repo: CatalogRepository = Depends(get_repository)):
    """System health check."""
    catalog = await repo.health_check()
    return HealthResponse(
        status="ok" if catalog.get("status") == "healthy" else "degraded",
        version=get_settings().api_version,
        uptime=int(time.monotonic() - _state.start_time),
        request_count=_state.request_count,
        components={"catalog": catalog},
    )


# ============================================================
# Entry Point
# ============================================================

if __name__ == "__main__":
    import uvicorn
    settings = get_settings()
    configure_logging(settings)
    uvicorn.run(app, host=settings.host, port=settings.port,
                log_level=settings.log_level.lower())
