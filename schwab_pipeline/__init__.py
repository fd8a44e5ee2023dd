"""
Outbound request pipeline for the Schwab brokerage API.

Wraps httpx with bearer-token authentication and transparent refresh,
client-side fixed-window rate limiting, and retry with backoff.
"""

from schwab_pipeline.auth import (
    OAuthTokenRefresher,
    StaticTokenManager,
    TokenData,
    TokenLifecycleManager,
    TokenProvider,
    TokenSet,
    build_token_manager,
    force_refresh_tokens,
)
from schwab_pipeline.clients import PipelineClient, create_pipeline_client
from schwab_pipeline.core import (
    ApiError,
    AuthError,
    AuthErrorCode,
    PipelineException,
    Settings,
    get_settings,
)
from schwab_pipeline.middleware import (
    CallContext,
    PipelineOptions,
    build_middleware_pipeline,
    compose,
    get_metadata,
)


__version__ = "1.0.0"

__all__ = [
    "ApiError",
    "AuthError",
    "AuthErrorCode",
    "CallContext",
    "OAuthTokenRefresher",
    "PipelineClient",
    "PipelineException",
    "PipelineOptions",
    "Settings",
    "StaticTokenManager",
    "TokenData",
    "TokenLifecycleManager",
    "TokenProvider",
    "TokenSet",
    "build_middleware_pipeline",
    "build_token_manager",
    "compose",
    "create_pipeline_client",
    "force_refresh_tokens",
    "get_metadata",
    "get_settings",
]
