"""Built-in rate limit policies and the route table that selects them."""

from typing import Dict, List

from apiguard.app.middleware.rate_limit.models import (
    RateLimitConfig,
    RateLimitStrategy,
    RateLimitTier,
)

HOUR = 3600
DAY = 86400


def default_rate_limit_configs() -> List[RateLimitConfig]:
    """Return fresh copies of the built-in policies.

    A new list is built on every call so that a limiter mutating its
    registry never leaks changes into another limiter.
    """
    return [
        # General API traffic
        RateLimitConfig(
            key="api.general",
            strategy=RateLimitStrategy.SLIDING_WINDOW,
            tier=RateLimitTier.IP,
            limit=1000,
            window=HOUR,
            description="General API rate limit per IP per hour",
        ),
        # Forms
        RateLimitConfig(
            key="forms.submission",
            strategy=RateLimitStrategy.FIXED_WINDOW,
            tier=RateLimitTier.IP,
            limit=10,
            window=HOUR,
            description="Form submission limit per IP per hour",
        ),
        # Search (bursty, refilled per second)
        RateLimitConfig(
            key="search.query",
            strategy=RateLimitStrategy.TOKEN_BUCKET,
            tier=RateLimitTier.IP,
            limit=100,
            window=HOUR,
            burst=20,
            refill_rate=10,
            description="Search query rate limit with burst support",
        ),
        # Authentication
        RateLimitConfig(
            key="auth.login",
            strategy=RateLimitStrategy.FIXED_WINDOW,
            tier=RateLimitTier.IP,
            limit=5,
            window=900,
            description="Login attempt rate limit per IP",
        ),
        RateLimitConfig(
            key="auth.register",
            strategy=RateLimitStrategy.FIXED_WINDOW,
            tier=RateLimitTier.IP,
            limit=3,
            window=HOUR,
            description="Registration rate limit per IP",
        ),
        RateLimitConfig(
            key="auth.password_reset",
            strategy=RateLimitStrategy.FIXED_WINDOW,
            tier=RateLimitTier.IP,
            limit=3,
            window=HOUR,
            description="Password reset request rate limit",
        ),
        # Admin operations
        RateLimitConfig(
            key="admin.content_create",
            strategy=RateLimitStrategy.SLIDING_WINDOW,
            tier=RateLimitTier.USER,
            limit=50,
            window=HOUR,
            description="Content creation rate limit per user",
        ),
        RateLimitConfig(
            key="admin.bulk_operations",
            strategy=RateLimitStrategy.FIXED_WINDOW,
            tier=RateLimitTier.USER,
            limit=10,
            window=HOUR,
            description="Bulk operations rate limit per user",
        ),
        # Public endpoints
        RateLimitConfig(
            key="public.newsletter",
            strategy=RateLimitStrategy.FIXED_WINDOW,
            tier=RateLimitTier.IP,
            limit=5,
            window=HOUR,
            description="Newsletter subscription rate limit",
        ),
        RateLimitConfig(
            key="public.contact",
            strategy=RateLimitStrategy.FIXED_WINDOW,
            tier=RateLimitTier.IP,
            limit=3,
            window=HOUR,
            description="Contact form submission rate limit",
        ),
        # Uploads, weighted by size
        RateLimitConfig(
            key="upload.files",
            strategy=RateLimitStrategy.TOKEN_BUCKET,
            tier=RateLimitTier.USER,
            limit=100,
            window=HOUR,
            burst=20,
            refill_rate=5,
            description="File upload rate limit per user",
        ),
        RateLimitConfig(
            key="security.suspicious",
            strategy=RateLimitStrategy.FIXED_WINDOW,
            tier=RateLimitTier.IP,
            limit=1,
            window=DAY,
            description="Suspicious activity rate limit",
        ),
    ]


# Path -> config key. Matched exactly first, then by longest prefix.
# "/api" is the catch-all and is only used when nothing else matches.
ROUTE_RATE_LIMIT_MAP: Dict[str, str] = {
    "/api/forms/submit": "forms.submission",
    "/api/newsletter": "public.newsletter",
    "/api/forms/contact": "public.contact",
    "/api/auth/register": "auth.register",
    "/api/auth/login": "auth.login",
    "/api/auth/password-reset": "auth.password_reset",
    "/api/search": "search.query",
    "/api/search/suggestions": "search.query",
    "/api/content": "admin.content_create",
    "/api/upload": "upload.files",
    "/api/admin/bulk": "admin.bulk_operations",
    "/api": "api.general",
}
