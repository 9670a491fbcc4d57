from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from latchkey.api.error_handling import register_exception_handlers
from latchkey.api.routes import router
from latchkey.config import get_settings
from latchkey.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = get_settings()

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    from latchkey.service.runtime import get_runtime

    runtime = get_runtime()
    for warning in runtime.settings.security_warnings():
        logger.warning("startup_security_warning", warning=warning)

    yield

    await runtime.close()
    logger.info("runtime_cleanup_complete")


app = FastAPI(title="Latchkey", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Local dev hosts only; a wildcard is not allowed alongside credentials.
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "Authorization",
        "X-Admin-Step-Up",
        "X-Request-ID",
    ],
    expose_headers=[
        "X-Request-ID",
        "X-RateLimit-Limit",
        "X-RateLimit-Remaining",
        "X-RateLimit-Reset",
    ],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line of a request with one correlation ID.

    The ID comes from the client's X-Request-ID header when present and is
    generated otherwise; either way it is echoed back in the response.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # Session, step-up and share tokens travel in these responses
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https" and _settings.enable_hsts:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    response.headers.setdefault("Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'")
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report store connectivity and configuration readiness."""
    from latchkey.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    try:
        await asyncio.wait_for(
            asyncio.to_thread(runtime.cache.verify_connection), HEALTH_CHECK_TIMEOUT_SECONDS
        )
        store_ok = True
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="store", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        store_ok = False
    except Exception as exc:
        logger.error("health_check_store_failed", error=str(exc))
        store_ok = False
    checks["store"] = {
        "status": "healthy" if store_ok else "unhealthy",
        "type": type(runtime.cache).__name__,
    }

    warnings = runtime.settings.security_warnings()
    checks["config"] = {"status": "healthy" if not warnings else "degraded", "warnings": len(warnings)}

    return {
        "status": "healthy" if store_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
