from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from sessiongate.api.error_handling import register_exception_handlers
from sessiongate.api.routes import router
from sessiongate.logging import get_logger, set_correlation_id
from sessiongate.service.runtime import get_runtime, set_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

_HEALTH_CHECK_TIMEOUT_SECONDS = 2.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup; drain background work and close stores on shutdown."""
    runtime = get_runtime()
    logger.info("app_started", version=__version__)
    yield
    try:
        await runtime.close()
    except Exception as exc:
        logger.warning("runtime_close_failed", error_type=type(exc).__name__, error=str(exc))
    set_runtime(None)
    logger.info("app_stopped")


app = FastAPI(title="sessiongate", version=__version__, lifespan=lifespan)
register_exception_handlers(app)


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    """Bind a per-request correlation id for structured logs.

    Accepts a client-supplied ``X-Request-ID`` and echoes it back.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/auth/"):
        response.headers.setdefault(
            "Cache-Control", "no-store, no-cache, must-revalidate, private"
        )
    return response


app.include_router(router)


@app.get("/health")
async def health():
    """Report whether the session store answers a ping."""
    runtime = get_runtime()
    checks: Dict[str, Any] = {}
    try:
        ok = await asyncio.wait_for(
            runtime.store.ping(), timeout=_HEALTH_CHECK_TIMEOUT_SECONDS
        )
        checks["session_store"] = {"status": "healthy" if ok else "unhealthy"}
    except Exception as exc:
        checks["session_store"] = {"status": "unhealthy", "error": type(exc).__name__}
        logger.warning("health_check_store_failed", error=str(exc))
    healthy = all(check["status"] == "healthy" for check in checks.values())
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "healthy" if healthy else "unhealthy",
            "version": __version__,
            "checks": checks,
        },
    )
