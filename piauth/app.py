from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from piauth.api.error_handling import register_exception_handlers
from piauth.api.routes import router
from piauth.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the revocation sweeper on startup and release connections on shutdown."""
    from piauth.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        await runtime.sweeper.start()
    except Exception as exc:
        logger.error("startup_sweeper_failed", error=str(exc), error_type=type(exc).__name__)

    yield

    try:
        runtime = get_runtime()
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Pi Auth Service", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line of a request with its X-Request-ID, generating one if absent."""
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    response.headers.setdefault(
        "Strict-Transport-Security", "max-age=31536000; includeSubDomains"
    )
    # Token responses must never be cached by proxies
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)

app.include_router(router)


@app.get("/healthz")
async def health() -> JSONResponse:
    """Report store connectivity and circuit breaker states."""
    from piauth.service.runtime import StoreNotReady, get_runtime

    try:
        runtime = get_runtime()
    except StoreNotReady as exc:
        logger.error("health_store_not_ready", error=str(exc))
        body = {
            "status": "unhealthy",
            "version": __version__,
            "checks": {"store": {"status": "unhealthy", "error_type": "StoreNotReady"}},
        }
        return JSONResponse(status_code=503, content=body)

    checks: Dict[str, Any] = {}
    healthy = True

    if runtime.redis is not None:
        try:
            await asyncio.wait_for(runtime.redis.client.ping(), HEALTH_CHECK_TIMEOUT_SECONDS)
            checks["redis"] = {"status": "healthy"}
        except Exception as exc:
            healthy = False
            checks["redis"] = {"status": "unhealthy", "error_type": type(exc).__name__}
    else:
        checks["store"] = {"status": "healthy", "mode": "memory"}

    checks["breakers"] = {
        breaker.name: breaker.state.value
        for breaker in (
            runtime.session_breaker,
            runtime.revocation_breaker,
            runtime.rate_limit_breaker,
            runtime.pi_api_breaker,
        )
    }

    body = {
        "status": "healthy" if healthy else "unhealthy",
        "version": __version__,
        "checks": checks,
    }
    return JSONResponse(status_code=200 if healthy else 503, content=body)
