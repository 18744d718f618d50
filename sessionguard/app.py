from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from sessionguard.api.error_handling import register_exception_handlers
from sessionguard.api.routes import router
from sessionguard.logging import get_logger, set_correlation_id
from sessionguard.service.errors import ConfigurationError

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime before serving and tear it down on shutdown.

    Bad key material raises ConfigurationError here, so the server never
    starts accepting requests.
    """
    from sessionguard.service.runtime import get_runtime

    try:
        runtime = get_runtime()
    except ConfigurationError as exc:
        logger.critical("startup_configuration_invalid", error=str(exc))
        raise
    runtime.start_sweeper()
    logger.info("session_sweeper_started", interval_seconds=runtime.settings.sweep_interval_seconds)

    yield

    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def create_app() -> FastAPI:
    app = FastAPI(title="SessionGuard", version=__version__, lifespan=lifespan)

    @app.middleware("http")
    async def add_correlation_id(request, call_next):
        """Propagate X-Request-ID into log context and back to the client."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def add_security_headers(request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        if request.url.path.startswith("/v1/"):
            response.headers.setdefault("Cache-Control", "no-store")
        return response

    @app.get("/healthz", tags=["health"])
    async def healthz():
        return {"status": "ok", "version": __version__}

    register_exception_handlers(app)
    app.include_router(router)
    return app


app = create_app()
