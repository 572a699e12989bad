"""Rate limiting for the API.

Named policies are enforced by ``RateLimiter`` with fixed window, sliding
window, token bucket or leaky bucket algorithms. ``RateLimitMiddleware``
maps request paths onto policies and turns denials into 429 responses.
"""

from typing import Dict, Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from apiguard.app.core.config import Settings, settings
from apiguard.app.core.logging import get_log_context, get_logger
from apiguard.app.exceptions import ConfigNotFoundError, RateLimitExceededError

# Re-export models
from apiguard.app.middleware.rate_limit.models import (
    LeakyBucket,
    RateLimitConfig,
    RateLimitEntry,
    RateLimitResult,
    RateLimitStrategy,
    RateLimitTier,
    SlidingWindowEntry,
    TokenBucket,
)

# Re-export engine
from apiguard.app.middleware.rate_limit.defaults import (
    ROUTE_RATE_LIMIT_MAP,
    default_rate_limit_configs,
)
from apiguard.app.middleware.rate_limit.identifiers import (
    create_rate_limit_headers,
    get_client_ip,
    resolve_identifier,
)
from apiguard.app.middleware.rate_limit.limiter import RateLimiter

logger = get_logger(__name__)

__all__ = [
    # Models
    "RateLimitConfig",
    "RateLimitResult",
    "RateLimitStrategy",
    "RateLimitTier",
    "RateLimitEntry",
    "SlidingWindowEntry",
    "TokenBucket",
    "LeakyBucket",
    # Engine
    "RateLimiter",
    "default_rate_limit_configs",
    "ROUTE_RATE_LIMIT_MAP",
    "get_client_ip",
    "resolve_identifier",
    "create_rate_limit_headers",
    # Middleware
    "RateLimitMiddleware",
    "match_route",
]


def match_route(path: str, routes: Dict[str, str], default_prefix: str = "/api") -> Optional[str]:
    """Pick the config key for a request path.

    Exact match wins, then the longest route that is a path-segment prefix
    of ``path``. The ``default_prefix`` route is the fallback for anything
    under it. Paths outside ``default_prefix`` that match nothing get None.
    """
    if path in routes:
        return routes[path]

    best: Optional[str] = None
    for route in routes:
        if route == default_prefix:
            continue
        if path.startswith(route.rstrip("/") + "/") and (best is None or len(route) > len(best)):
            best = route
    if best is not None:
        return routes[best]

    if default_prefix in routes and (
        path == default_prefix or path.startswith(default_prefix.rstrip("/") + "/")
    ):
        return routes[default_prefix]
    return None


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Middleware to enforce rate limits on requests.

    The limiter and settings are read from ``request.app.state`` so tests
    and the admin API share the instances the app factory created.
    Identifiers come from the matched policy's tier;
    ``request.state.user_id`` is used for USER-tier policies when an
    upstream auth layer sets it.
    """

    def __init__(
        self,
        app,
        routes: Optional[Dict[str, str]] = None,
        fail_closed: Optional[bool] = None,
        trust_forwarded: Optional[bool] = None,
    ):
        super().__init__(app)
        self.routes = dict(routes) if routes is not None else dict(ROUTE_RATE_LIMIT_MAP)
        self._fail_closed = fail_closed
        self._trust_forwarded = trust_forwarded

    def _config_key(self, request: Request, app_settings: Settings) -> Optional[str]:
        key = match_route(request.url.path, self.routes)
        if key is None and request.url.path.startswith("/api"):
            return app_settings.rate_limit_default_config
        return key

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        """Process request with rate limiting."""
        app_settings: Settings = getattr(request.app.state, "settings", settings)
        limiter: Optional[RateLimiter] = getattr(request.app.state, "rate_limiter", None)
        config_key = self._config_key(request, app_settings)
        if limiter is None or config_key is None or not app_settings.rate_limit_enabled:
            return await call_next(request)

        fail_closed = (
            self._fail_closed if self._fail_closed is not None
            else app_settings.rate_limit_fail_closed
        )
        trust_forwarded = (
            self._trust_forwarded if self._trust_forwarded is not None
            else app_settings.trust_forwarded_headers
        )

        config = limiter.get_config(config_key)
        if config is None:
            return await self._handle_unknown_config(config_key, fail_closed, request, call_next)

        identifier = resolve_identifier(
            request,
            config.tier,
            user_id=getattr(request.state, "user_id", None),
            trust_forwarded=trust_forwarded,
        )
        try:
            result = await limiter.check(config_key, identifier)
        except ConfigNotFoundError:
            # Deleted between lookup and check
            return await self._handle_unknown_config(config_key, fail_closed, request, call_next)

        headers = create_rate_limit_headers(result)
        if not result.allowed:
            error = RateLimitExceededError(config_key, result)
            return JSONResponse(
                status_code=error.status_code,
                content=error.to_response(),
                headers=headers,
            )

        response = await call_next(request)
        for name, value in headers.items():
            response.headers[name] = value
        return response

    async def _handle_unknown_config(
        self,
        config_key: str,
        fail_closed: bool,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        """Apply the fail-open/fail-closed policy for an unregistered key."""
        context = get_log_context(config_key=config_key, path=request.url.path)
        if fail_closed:
            logger.warning(
                f"Rate limit config '{config_key}' not found, request denied (fail-closed)",
                extra=context,
            )
            error = ConfigNotFoundError(config_key)
            return JSONResponse(
                status_code=503,
                content={"error": "rate_limit_unavailable", "message": error.message},
            )

        logger.warning(
            f"Rate limit config '{config_key}' not found, request allowed (fail-open)",
            extra=context,
        )
        return await call_next(request)
