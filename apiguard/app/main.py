from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from apiguard import __version__
from apiguard.app.api.admin.router import router as admin_router
from apiguard.app.core.cache import CacheManager
from apiguard.app.core.clock import Clock, system_clock
from apiguard.app.core.config import Settings, settings as default_settings
from apiguard.app.core.logging import get_logger, setup_logging
from apiguard.app.exceptions import ApiGuardError
from apiguard.app.middleware.rate_limit import RateLimitMiddleware
from apiguard.app.middleware.rate_limit.defaults import default_rate_limit_configs
from apiguard.app.middleware.rate_limit.limiter import RateLimiter
from apiguard.app.middleware.request_id import RequestIdMiddleware
from apiguard.app.services.cached_queries import CachedQueries
from apiguard.app.services.directory import Directory


def create_app(
    settings: Optional[Settings] = None,
    clock: Clock = system_clock,
    rate_limiter: Optional[RateLimiter] = None,
    cache: Optional[CacheManager] = None,
    directory: Optional[Directory] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Shared instances live on ``app.state`` (``settings``, ``rate_limiter``,
    ``cache``, ``cached_queries``). Pass any of them to override the
    defaults, e.g. from tests.

    Returns:
        Configured FastAPI application instance
    """
    settings = settings or default_settings

    # Setup logging
    setup_logging()
    logger = get_logger(__name__)

    if rate_limiter is None:
        rate_limiter = RateLimiter(
            default_rate_limit_configs(),
            clock=clock,
            cleanup_interval=settings.rate_limit_cleanup_interval_seconds,
        )
    if cache is None:
        cache = CacheManager(
            default_ttl=settings.cache_default_ttl,
            cleanup_interval=settings.cache_cleanup_interval_seconds,
            clock=clock,
        )
    if directory is None:
        directory = Directory.with_sample_data(clock=clock)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan context manager.

        Starts the rate limiter and cache sweeps on startup and stops them
        on shutdown.
        """
        await app.state.rate_limiter.start()
        await app.state.cache.start()

        logger.info(
            "Application startup complete",
            extra={
                "rate_limit_configs": len(app.state.rate_limiter.list_configs()),
                "rate_limit_enabled": settings.rate_limit_enabled,
                "debug_mode": settings.debug,
            }
        )

        yield

        await app.state.cache.stop()
        await app.state.rate_limiter.stop()

        logger.info("Application shutdown complete")

    app = FastAPI(
        title="apiguard",
        description="Rate limiting and caching core with an admin API",
        version=__version__,
        lifespan=lifespan
    )

    app.state.settings = settings
    app.state.rate_limiter = rate_limiter
    app.state.cache = cache
    app.state.cached_queries = CachedQueries(cache, directory, clock=clock)

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(RateLimitMiddleware)

    # Request ID middleware (outermost so 429 responses carry it too)
    app.add_middleware(RequestIdMiddleware)

    # Include routers
    app.include_router(admin_router)

    @app.get("/health")
    async def health(request: Request) -> dict[str, Any]:
        """Health check with limiter and cache status."""
        limiter: RateLimiter = request.app.state.rate_limiter
        cache_manager: CacheManager = request.app.state.cache
        return {
            "status": "ok",
            "components": {
                "rate_limiter": {
                    "status": "ok",
                    "configs": len(limiter.list_configs()),
                    "active_entries": limiter.active_entries(),
                    "sweeper_running": limiter.sweeper.is_running,
                },
                "cache": {
                    "status": "ok",
                    "size": cache_manager.size(),
                    "sweeper_running": cache_manager.sweeper.is_running,
                },
            },
        }

    @app.exception_handler(ApiGuardError)
    async def apiguard_error_handler(request: Request, exc: ApiGuardError) -> JSONResponse:
        """Translate ApiGuardError subclasses to their HTTP status."""
        return JSONResponse(status_code=exc.status_code, content=exc.to_response())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions.

        Logs full details server-side. Debug mode returns the exception
        message; otherwise a generic message is returned.
        """
        request_id = getattr(request.state, 'request_id', 'unknown')

        logger.exception(
            f"Unhandled exception [request_id={request_id}]",
            extra={
                "request_id": request_id,
                "exception_type": type(exc).__name__,
            }
        )

        if settings.debug:
            return JSONResponse(
                status_code=500,
                content={
                    "error": "internal_error",
                    "message": str(exc),
                    "exception_type": type(exc).__name__,
                    "request_id": request_id,
                }
            )

        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_error",
                "message": "Internal server error",
                "request_id": request_id,
            }
        )

    return app


# Create the application instance
app = create_app()
