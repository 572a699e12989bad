"""Services package for apiguard.

This package provides:
- An in-memory directory of users, content and permissions
- Cache-backed queries over that directory
"""

from apiguard.app.services.cached_queries import CachedQueries, CachedQueryResult
from apiguard.app.services.directory import Directory

__all__ = [
    "CachedQueries",
    "CachedQueryResult",
    "Directory",
]
