from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI

from fleetauth.api.error_handling import register_exception_handlers
from fleetauth.api.routes import devices_router, internal_router, management_router
from fleetauth.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release its connections on shutdown."""
    from fleetauth.service.runtime import get_runtime

    get_runtime()
    logger.info("app_started", version=__version__)

    yield

    try:
        await get_runtime().close()
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Fleet Device Auth", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Bind the request's X-Request-ID (or a fresh one) for logging and echo it back."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(devices_router)
app.include_router(management_router)
app.include_router(internal_router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    from fleetauth.service.runtime import get_runtime

    runtime = get_runtime()
    return {
        "status": "ok",
        "version": __version__,
        "store": "memory" if runtime.settings.use_memory_store else "postgres",
        "redis_enabled": runtime.cache is not None,
    }
