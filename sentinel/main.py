# sentinel/main.py
"""
FastAPI application entry point.
Includes security middleware, error mapping, service wiring and all routers.
"""

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from sentinel.routers import events, settings as settings_router, sync, dashboard, health
from sentinel.database import create_tables
from sentinel.dependencies import build_services
from sentinel.config import settings
from sentinel.errors import (
    ConflictError, NotFoundError, QuotaError, RemoteError, RemoteNotConfiguredError,
    SentinelError, StorageError,
)
from sentinel.utils.logger import get_logger
import time

logger = get_logger(__name__)

app = FastAPI(
    title="Sentinel Event Sync API",
    description="Offline-first security event store, cloud sync queue and multi-device dashboard.",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

# ── CORS (allow the dashboard UI to call the API) ───────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── API Key Middleware ───────────────────────────────────────────────────────
class APIKeyMiddleware(BaseHTTPMiddleware):
    """
    Optional lightweight API key auth.
    Set API_KEY in .env. Leave empty to disable auth.
    """
    open_paths = {"/api/v1/health", "/docs", "/redoc", "/openapi.json"}

    async def dispatch(self, request: Request, call_next):
        if request.url.path in self.open_paths or not settings.API_KEY:
            return await call_next(request)

        api_key = request.headers.get("X-API-Key") or request.query_params.get("api_key")
        if api_key != settings.API_KEY:
            return JSONResponse(
                status_code=status.HTTP_401_UNAUTHORIZED,
                content={"detail": "Invalid or missing API key"},
            )
        return await call_next(request)


if settings.API_KEY:
    app.add_middleware(APIKeyMiddleware)


# ── Request Timing Middleware ────────────────────────────────────────────────
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    duration = round((time.time() - start) * 1000, 2)
    logger.debug(f"{request.method} {request.url.path} → {response.status_code} ({duration}ms)")
    return response


# ── Error mapping ────────────────────────────────────────────────────────────
def status_for(exc: SentinelError) -> int:
    if isinstance(exc, RemoteNotConfiguredError):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, NotFoundError) and exc.status_code is None:
        return status.HTTP_404_NOT_FOUND      # unknown local id
    if isinstance(exc, RemoteError):
        return status.HTTP_502_BAD_GATEWAY
    if isinstance(exc, ConflictError):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, QuotaError):
        return status.HTTP_507_INSUFFICIENT_STORAGE
    if isinstance(exc, StorageError):
        return status.HTTP_500_INTERNAL_SERVER_ERROR
    return status.HTTP_400_BAD_REQUEST


@app.exception_handler(SentinelError)
async def sentinel_exception_handler(request: Request, exc: SentinelError):
    code = status_for(exc)
    if code >= 500:
        logger.error(f"{type(exc).__name__} on {request.url.path}: {exc}")
    content = {"detail": str(exc)}
    if isinstance(exc, RemoteError):
        content["error_kind"] = exc.kind.value
    return JSONResponse(status_code=code, content=content)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception on {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


# ── Routers ──────────────────────────────────────────────────────────────────
app.include_router(events.router,          prefix="/api/v1", tags=["📡 Events"])
app.include_router(settings_router.router, prefix="/api/v1", tags=["⚙️ Settings"])
app.include_router(sync.router,            prefix="/api/v1", tags=["☁️ Cloud Sync"])
app.include_router(dashboard.router,       prefix="/api/v1", tags=["📊 Dashboard"])
app.include_router(health.router,          prefix="/api/v1", tags=["💚 Health"])


# ── Startup ───────────────────────────────────────────────────────────────────
@app.on_event("startup")
async def startup():
    logger.info("🚀 Sentinel backend starting up...")
    if getattr(app.state, "services", None) is None:
        create_tables()
        logger.info("✅ Database tables ready")
        app.state.services = build_services()

    await app.state.services.sync_queue.initialize()
    logger.info(f"📷 Device id: {settings.DEVICE_ID}")
    logger.info(f"🌐 Listening on http://{settings.BACKEND_IP}:{settings.BACKEND_PORT}")
    logger.info("📖 API docs at /docs")


@app.on_event("shutdown")
async def shutdown():
    logger.info("🛑 Sentinel backend shutting down...")
    services = getattr(app.state, "services", None)
    if services is not None:
        await services.sync_queue.shutdown()
