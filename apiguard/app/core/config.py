from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # Debug mode - enables detailed error responses
    debug: bool = False

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    # Rate limiting settings
    rate_limit_enabled: bool = True
    rate_limit_fail_closed: bool = (
        False  # If True, deny requests whose config key is unknown
    )
    rate_limit_default_config: str = "api.general"
    rate_limit_cleanup_interval_seconds: float = 60.0

    # Honour X-Forwarded-For / X-Real-IP / CF-Connecting-IP when resolving client IPs
    trust_forwarded_headers: bool = True

    # Cache settings
    cache_default_ttl: float = 300.0  # 5 minutes
    cache_cleanup_interval_seconds: float = 60.0

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Validate log format is one of the supported formatters."""
        v = v.strip().lower()
        if v not in ("text", "structured", "json"):
            raise ValueError("log_format must be one of: text, structured, json")
        return v

    @field_validator(
        "rate_limit_cleanup_interval_seconds",
        "cache_cleanup_interval_seconds",
    )
    @classmethod
    def validate_interval_positive(cls, v: float) -> float:
        """Validate sweep intervals are positive."""
        if v <= 0:
            raise ValueError("cleanup intervals must be positive")
        return v

    @field_validator("cache_default_ttl")
    @classmethod
    def validate_default_ttl(cls, v: float) -> float:
        """Validate the default cache TTL is positive."""
        if v <= 0:
            raise ValueError("cache_default_ttl must be positive")
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
