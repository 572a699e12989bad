"""Rate limiting and caching core for API services."""

__version__ = "0.1.0"
