"""QuotaGuard ASGI application.

Serve it with uvicorn, which the package installs:

    uvicorn quotaguard.app.main:app --host 0.0.0.0 --port 8000
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from quotaguard.app.api.admin import router as admin_router
from quotaguard.app.api.metrics import MetricsMiddleware, router as metrics_router
from quotaguard.app.core.config import settings
from quotaguard.app.core.logging import get_logger, setup_logging
from quotaguard.app.exceptions import PolicyNotFoundError, RateLimitExceededError
from quotaguard.app.middleware.rate_limit import (
    RateLimitMiddleware,
    rate_limit_exceeded_response,
)
from quotaguard.app.services.rate_limit import get_rate_limit_service


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    setup_logging()
    logger = get_logger(__name__)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan context manager.

        Builds the policy registry and rate limit service once on startup
        (invalid policies abort startup) and releases store connections on
        shutdown.
        """
        service = get_rate_limit_service()
        await service.start_cleanup_task()

        logger.info(
            "Application startup complete",
            extra={"rate_limiter": service.describe(), "debug_mode": settings.debug},
        )

        yield

        await service.close()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="QuotaGuard",
        description="Distributed sliding-window rate limiting for the reporting API",
        version="1.0.0",
        lifespan=lifespan,
    )

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(RateLimitMiddleware)
    app.add_middleware(MetricsMiddleware)

    app.include_router(admin_router)
    app.include_router(metrics_router)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Health check with window store status."""
        service = get_rate_limit_service()
        info = service.describe()
        store_ok = await service.ping()

        status = "ok"
        if not store_ok or info.get("breaker", {}).get("state", "closed") != "closed":
            status = "degraded"

        return {
            "status": status,
            "components": {
                "rate_limiter": {
                    "status": "ok" if store_ok else "error",
                    **info,
                },
            },
        }

    @app.exception_handler(RateLimitExceededError)
    async def rate_limit_exceeded_handler(
        request: Request, exc: RateLimitExceededError
    ) -> JSONResponse:
        """Handle RateLimitExceededError and return HTTP 429 response."""
        return rate_limit_exceeded_response(exc.result)

    @app.exception_handler(PolicyNotFoundError)
    async def policy_not_found_handler(
        request: Request, exc: PolicyNotFoundError
    ) -> JSONResponse:
        """Handle PolicyNotFoundError and return HTTP 404 response."""
        return JSONResponse(
            status_code=404,
            content={"error": "policy_not_found", "message": exc.message},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions.

        Never returns a traceback to the client; debug mode adds the
        exception type and message.
        """
        logger.exception(
            f"Unhandled exception on {request.url.path}",
            extra={"exception_type": type(exc).__name__},
        )
        content: dict[str, Any] = {
            "error": "internal_error",
            "message": "Internal server error",
        }
        if settings.debug:
            content["message"] = str(exc)
            content["exception_type"] = type(exc).__name__
        return JSONResponse(status_code=500, content=content)

    return app


# Create the application instance
app = create_app()
