from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from chatrelay.api.error_handling import register_exception_handlers
from chatrelay.api.routes import router
from chatrelay.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 2.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    from chatrelay.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info(
        "startup_complete",
        store=type(runtime.store).__name__,
        cache=type(runtime.cache).__name__ if runtime.cache is not None else None,
    )
    yield
    try:
        await runtime.aclose()
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="chatrelay", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Propagate ``X-Request-ID`` into the logging context and the response."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> JSONResponse:
    from chatrelay.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}
    healthy = True
    if runtime.cache is None:
        checks["cache"] = {"status": "disabled"}
    else:
        try:
            await asyncio.wait_for(
                asyncio.to_thread(runtime.cache.verify_connection), HEALTH_CHECK_TIMEOUT_SECONDS
            )
            checks["cache"] = {"status": "ok", "backend": type(runtime.cache).__name__}
        except Exception as exc:
            healthy = False
            logger.warning("health_check_failed", check="cache", error=str(exc))
            checks["cache"] = {"status": "error"}
    checks["store"] = {"status": "ok", "backend": type(runtime.store).__name__}
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={"status": "healthy" if healthy else "unhealthy", "version": __version__, "checks": checks},
    )
