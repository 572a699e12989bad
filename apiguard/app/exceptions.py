"""Custom exceptions for the apiguard application."""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from apiguard.app.middleware.rate_limit.models import RateLimitResult


class ApiGuardError(Exception):
    """Base class for apiguard exceptions with HTTP status code.

    All custom exceptions should inherit from this class and define
    their specific status_code so the HTTP layer can translate them
    without knowing the concrete type.
    """
    status_code: int = 500
    error_code: str = "internal_error"

    def __init__(self, message: str = "apiguard error"):
        self.message = message
        super().__init__(message)

    def to_response(self) -> dict:
        """Convert to API error payload."""
        return {"error": self.error_code, "message": self.message}


class ConfigNotFoundError(ApiGuardError):
    """Raised when a rate limit config key is not registered.

    Maps to HTTP 404 Not Found. Whether unknown-config traffic is then
    allowed or blocked is decided by the caller.
    """
    status_code = 404
    error_code = "config_not_found"

    def __init__(self, config_key: str):
        self.config_key = config_key
        super().__init__(f"Rate limit configuration not found: {config_key}")


class InvalidConfigError(ApiGuardError):
    """Raised when a rate limit config fails validation.

    Maps to HTTP 400 Bad Request. Raised before any registry mutation.
    """
    status_code = 400
    error_code = "invalid_config"

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class LoaderError(ApiGuardError):
    """Raised to every caller awaiting a failed cache loader.

    The loader's own exception is kept on ``original`` and chained
    as ``__cause__``.
    """
    status_code = 500
    error_code = "cache_loader_failed"

    def __init__(self, key: str, original: BaseException):
        self.key = key
        self.original = original
        super().__init__(f"Cache loader failed for key '{key}': {original}")


class RateLimitExceededError(ApiGuardError):
    """Raised by callers that prefer an exception over inspecting the result.

    Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429
    error_code = "rate_limit_exceeded"

    def __init__(self, config_key: str, result: "RateLimitResult"):
        self.config_key = config_key
        self.result = result
        super().__init__("Too many requests. Please try again later.")

    def to_response(self) -> dict:
        """Convert to API error payload."""
        return {
            "error": self.error_code,
            "message": self.message,
            "config_key": self.config_key,
            "retry_after": self.result.retry_after,
            "strategy": self.result.strategy.value,
            "tier": self.result.tier.value,
        }


class UserNotFoundError(ApiGuardError):
    """Raised when a directory lookup names a user that does not exist.

    Maps to HTTP 404 Not Found.
    """
    status_code = 404
    error_code = "user_not_found"

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"User not found: {user_id}")
