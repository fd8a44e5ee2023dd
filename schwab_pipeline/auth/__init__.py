"""Token management for the request pipeline."""

from schwab_pipeline.auth.refresher import DEFAULT_TOKEN_URL, OAuthTokenRefresher
from schwab_pipeline.auth.token_manager import (
    DEFAULT_REFRESH_THRESHOLD_MS,
    REFRESH_TOKEN_EXPIRATION_MS,
    REFRESH_TOKEN_WARNING_THRESHOLD_MS,
    RefreshState,
    StaticTokenManager,
    TokenLifecycleManager,
    build_token_manager,
    force_refresh_tokens,
)
from schwab_pipeline.auth.types import (
    RefreshCallback,
    RefreshFunction,
    RefreshOptions,
    TokenData,
    TokenProvider,
    TokenSet,
    now_ms,
)


__all__ = [
    "DEFAULT_REFRESH_THRESHOLD_MS",
    "DEFAULT_TOKEN_URL",
    "OAuthTokenRefresher",
    "REFRESH_TOKEN_EXPIRATION_MS",
    "REFRESH_TOKEN_WARNING_THRESHOLD_MS",
    "RefreshCallback",
    "RefreshFunction",
    "RefreshOptions",
    "RefreshState",
    "StaticTokenManager",
    "TokenData",
    "TokenLifecycleManager",
    "TokenProvider",
    "TokenSet",
    "build_token_manager",
    "force_refresh_tokens",
    "now_ms",
]
