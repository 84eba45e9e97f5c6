"""
FastAPI application entry point.

Run with:
    uvicorn autopilot.main:app --port 8000
"""

import uuid
import logging
import time

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from autopilot.config import settings
from autopilot.errors import CapabilityError, FeatureDenied, NotFound
from autopilot.logging.config import setup_logging, request_id_var, workspace_id_var
from autopilot.api.routes_cron import router as cron_router
from autopilot.api.routes_messages import router as messages_router

# --- Initialize logging FIRST ---
setup_logging(level=settings.log_level)
logger = logging.getLogger(__name__)

# --- Create the FastAPI app ---
app = FastAPI(
    title=settings.app_name,
    docs_url="/docs" if settings.app_env == "development" else None,
    redoc_url=None,
)


# --- Middleware: Request context + logging ---
@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    """Set up request ID and request timing."""
    req_id = str(uuid.uuid4())[:8]
    request_id_var.set(req_id)
    workspace_id_var.set(request.headers.get("x-workspace-id", "-") or "-")

    start = time.monotonic()
    response = await call_next(request)

    response.headers["X-Request-ID"] = req_id

    latency_ms = int((time.monotonic() - start) * 1000)
    logger.info(
        "http.request",
        extra={
            "action": "http.request",
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "latency_ms": latency_ms,
        },
    )

    return response


# --- Error mapping ---
@app.exception_handler(NotFound)
async def not_found_handler(request: Request, exc: NotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(FeatureDenied)
async def feature_denied_handler(request: Request, exc: FeatureDenied):
    return JSONResponse(status_code=403, content={"detail": str(exc), "feature": exc.feature})


@app.exception_handler(CapabilityError)
async def capability_error_handler(request: Request, exc: CapabilityError):
    logger.error(
        "http.capability_error",
        extra={
            "action": "http.capability_error",
            "path": request.url.path,
            "error_type": type(exc).__name__,
            "upstream_status": exc.status_code,
        },
    )
    return JSONResponse(status_code=502, content={"detail": str(exc)})


# --- Register route modules ---
app.include_router(cron_router)
app.include_router(messages_router)


# --- Health check endpoints ---
@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/ready")
async def ready():
    checks = {
        "config_loaded": True,
        "database_url_set": bool(settings.database_url),
        "anthropic_key_set": bool(settings.anthropic_api_key),
        "credential_key_set": bool(settings.credential_encryption_key),
        "cron_secret_set": bool(settings.cron_secret),
    }
    all_ok = all(checks.values())
    return {"status": "ready" if all_ok else "not_ready", "checks": checks}
