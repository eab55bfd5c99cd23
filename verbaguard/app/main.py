import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from verbaguard.app.api.metrics import router as metrics_router
from verbaguard.app.core.config import settings
from verbaguard.app.core.logging import get_logger, setup_logging
from verbaguard.app.core.store import RedisStore, get_store, reset_store
from verbaguard.app.exceptions import RateLimitExceededError
from verbaguard.app.middleware.rate_limit import (
    RateLimitMiddleware,
    rate_limit_response,
    reset_rate_limiter,
)
from verbaguard.app.middleware.request_id import RequestIdMiddleware


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    # Setup logging
    setup_logging()
    logger = get_logger(__name__)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan context manager.

        The store connects lazily on first use; shutdown closes it.
        """
        store = get_store()
        logger.info(
            "Application startup complete",
            extra={
                "store": type(store).__name__,
                "rate_limit_enabled": settings.rate_limit_enabled,
                "strategy": settings.rate_limit_strategy,
            }
        )

        yield

        # Close store connections (Redis); a restarted app builds fresh ones
        await get_store().close()
        reset_rate_limiter()
        reset_store()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="VerbaGuard",
        description="Request throttling for the language-learning API",
        version="0.1.0",
        lifespan=lifespan
    )

    # Add middleware (order matters: last added = first executed)
    # Rate limit middleware (innermost)
    app.add_middleware(RateLimitMiddleware)

    # Request ID middleware wraps the rate limiter so its logs are correlated
    app.add_middleware(RequestIdMiddleware)

    # CORS middleware (outermost - handles preflight requests first)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
        allow_headers=["*"],
        expose_headers=[
            "X-Request-ID",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
            "Retry-After",
        ],
        max_age=600,  # Cache preflight requests for 10 minutes
    )

    # Include routers
    app.include_router(metrics_router, prefix="")

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Health check with a round trip through the rate limit store."""
        health_status = {
            "status": "ok",
            "components": {}
        }

        store = get_store()
        store_type = "redis" if isinstance(store, RedisStore) else "memory"
        try:
            test_key = f"_health_check:{uuid.uuid4().hex}"
            await store.set_with_expiry(test_key, 5, "ping")
            value = await store.get(test_key)
            await store.delete(test_key)

            if value == "ping":
                health_status["components"]["store"] = {"status": "ok", "type": store_type}
            else:
                health_status["status"] = "degraded"
                health_status["components"]["store"] = {
                    "status": "error",
                    "type": store_type,
                    "error": "Unexpected value",
                }
        except Exception as e:
            health_status["status"] = "degraded"
            health_status["components"]["store"] = {
                "status": "error",
                "type": store_type,
                "error": str(e)[:100]  # Truncate for security
            }

        return health_status

    @app.exception_handler(RateLimitExceededError)
    async def rate_limit_exceeded_handler(
        request: Request, exc: RateLimitExceededError
    ) -> JSONResponse:
        """Handle RateLimitExceededError and return HTTP 429 response."""
        return rate_limit_response(exc)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions.

        The traceback is logged server-side and never returned to the client.
        """
        request_id = getattr(request.state, "request_id", "unknown")

        logger.exception(
            f"Unhandled exception [request_id={request_id}]",
            extra={
                "request_id": request_id,
                "exception_type": type(exc).__name__,
            }
        )

        content = {
            "error": "internal_error",
            "message": "Internal server error",
            "request_id": request_id,
        }
        if settings.debug:
            content["message"] = str(exc)
            content["exception_type"] = type(exc).__name__
        return JSONResponse(status_code=500, content=content)

    return app


# Create the application instance
app = create_app()
