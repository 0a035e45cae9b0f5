from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from hivelog.api.error_handling import register_exception_handlers
from hivelog.api.routes import router
from hivelog.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release pools on shutdown."""
    from hivelog.service.runtime import get_runtime

    get_runtime()
    yield
    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


async def add_correlation_id(request: Request, call_next):
    """Propagate X-Request-ID into log context and echo it back."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/api/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    response.headers.setdefault("API-Version", __version__)
    return response


async def health() -> JSONResponse:
    """Report store and revocation cache reachability."""
    from hivelog.service.runtime import get_runtime
    from hivelog.storage.redis_cache import describe_cache

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    try:
        db_ok = await asyncio.wait_for(
            asyncio.to_thread(runtime.store.ping), HEALTH_CHECK_TIMEOUT_SECONDS
        )
    except Exception as exc:
        logger.error("health_check_database_failed", error=str(exc))
        db_ok = False
    checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}

    try:
        cache_ok = await asyncio.wait_for(runtime.cache.ping(), HEALTH_CHECK_TIMEOUT_SECONDS)
    except Exception as exc:
        logger.error("health_check_cache_failed", error=str(exc))
        cache_ok = False
    checks["cache"] = {
        "status": "healthy" if cache_ok else "unhealthy",
        "type": describe_cache(runtime.cache),
    }

    healthy = db_ok and cache_ok
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "healthy" if healthy else "unhealthy",
            "checks": checks,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )


def create_app() -> FastAPI:
    application = FastAPI(title="Hivelog", version=__version__, lifespan=lifespan)
    # Registered last runs first: correlation id wraps everything
    application.middleware("http")(add_security_headers)
    application.middleware("http")(add_correlation_id)
    register_exception_handlers(application)
    application.include_router(router)
    application.add_api_route("/healthz", health, methods=["GET"], tags=["health"])
    return application


app = create_app()
