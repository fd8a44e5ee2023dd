"""
Core configuration module for the Schwab request pipeline.

This module provides centralized configuration management using Pydantic Settings.
All configuration is loaded from environment variables with the SCHWAB_PIPELINE_ prefix.

Reference:
- GUIDELINES: Sinha pp. 193-195 - Pydantic BaseSettings pattern
"""

from functools import lru_cache

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings


DEFAULT_BASE_URL = "https://api.schwabapi.com"
DEFAULT_TOKEN_URL = "https://api.schwabapi.com/v1/oauth/token"


class Settings(BaseSettings):
    """
    Pipeline settings loaded from environment variables.

    All fields use the SCHWAB_PIPELINE_ prefix for environment variables.
    Example: SCHWAB_PIPELINE_RATE_LIMIT_MAX_REQUESTS=60
    """

    # =========================================================================
    # API Endpoint
    # =========================================================================
    base_url: str = Field(
        default=DEFAULT_BASE_URL,
        description="Base URL of the brokerage API",
    )
    timeout_seconds: float = Field(
        default=30.0,
        ge=1.0,
        le=300.0,
        description="Timeout in seconds for a single transport call",
    )

    # =========================================================================
    # OAuth Client Credentials
    # Pattern: SecretStr for sensitive values; use .get_secret_value() to access
    # =========================================================================
    client_id: str = Field(
        default="",
        description="OAuth client ID used for token refresh",
    )
    client_secret: SecretStr = Field(
        default=SecretStr(""),
        description="OAuth client secret used for token refresh",
    )
    token_url: str = Field(
        default=DEFAULT_TOKEN_URL,
        description="OAuth token endpoint",
    )

    # =========================================================================
    # Token Lifecycle
    # =========================================================================
    refresh_expiring: bool = Field(
        default=True,
        description="Refresh access tokens that are about to expire",
    )
    refresh_threshold_ms: int = Field(
        default=300_000,
        ge=0,
        description="Refresh an access token this many ms before it expires",
    )
    refresh_token_ttl_ms: int = Field(
        default=604_800_000,
        ge=1,
        description="Validity window of a refresh token (7 days)",
    )

    # =========================================================================
    # Rate Limiting
    # =========================================================================
    rate_limit_enabled: bool = Field(default=True)
    rate_limit_max_requests: int = Field(
        default=120,
        ge=1,
        description="Maximum requests admitted per window",
    )
    rate_limit_window_ms: int = Field(
        default=60_000,
        ge=1,
        description="Length of the fixed rate-limit window in milliseconds",
    )

    # =========================================================================
    # Retry
    # =========================================================================
    retry_enabled: bool = Field(default=True)
    retry_max_attempts: int = Field(
        default=3,
        ge=0,
        le=20,
        description="Retries after the first attempt",
    )
    retry_base_delay_ms: int = Field(
        default=1000,
        ge=0,
        description="Base delay for exponential backoff",
    )
    retry_max_delay_ms: int = Field(
        default=30_000,
        ge=0,
        description="Upper bound for any single backoff delay",
    )
    retry_respect_retry_after: bool = Field(default=True)

    # =========================================================================
    # Logging
    # =========================================================================
    log_level: str = Field(
        default="INFO",
        description="Log level for pipeline loggers",
    )

    model_config = {
        "env_prefix": "SCHWAB_PIPELINE_",
        "case_sensitive": False,
        "extra": "ignore",
    }

    @field_validator("base_url", "token_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate URL scheme."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("URL must start with http:// or https://")
        return v.rstrip("/")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level value."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()


@lru_cache
def get_settings() -> Settings:
    """
    Get the settings singleton.

    Uses functools.lru_cache to ensure only one Settings instance is created.

    Returns:
        Settings: The settings instance.
    """
    return Settings()
