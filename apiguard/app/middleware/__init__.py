"""Middleware package for apiguard."""

from apiguard.app.middleware.auth import require_admin
from apiguard.app.middleware.rate_limit import RateLimitMiddleware
from apiguard.app.middleware.request_id import RequestIdMiddleware, get_request_id

__all__ = [
    "require_admin",
    "RateLimitMiddleware",
    "RequestIdMiddleware",
    "get_request_id",
]
