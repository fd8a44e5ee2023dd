"""Middleware chain for outbound brokerage API requests."""

from schwab_pipeline.middleware.auth import (
    AuthAdvancedOptions,
    AuthOptions,
    token_auth_middleware,
)
from schwab_pipeline.middleware.compose import (
    Dispatch,
    Handler,
    Middleware,
    compose,
    transport_handler,
)
from schwab_pipeline.middleware.logging import (
    DebugInfo,
    LoggingOptions,
    logging_middleware,
    redact_sensitive_headers,
)
from schwab_pipeline.middleware.metadata import (
    METADATA_EXTENSION_KEY,
    AuthInfo,
    CallContext,
    MiddlewareMetadata,
    RateLimitInfo,
    RetryInfo,
    attach_metadata,
    clone_with_metadata,
    get_metadata,
)
from schwab_pipeline.middleware.pipeline import (
    BetweenHooks,
    MiddlewareFactories,
    PipelineOptions,
    build_middleware_pipeline,
)
from schwab_pipeline.middleware.rate_limit import (
    FixedWindowRateLimiter,
    RateLimitAdvancedOptions,
    RateLimitOptions,
    rate_limit_middleware,
)
from schwab_pipeline.middleware.retry import (
    RetryAdvancedOptions,
    RetryOptions,
    compute_backoff_delay,
    retry_middleware,
)


__all__ = [
    "METADATA_EXTENSION_KEY",
    "AuthAdvancedOptions",
    "AuthInfo",
    "AuthOptions",
    "BetweenHooks",
    "CallContext",
    "DebugInfo",
    "Dispatch",
    "FixedWindowRateLimiter",
    "Handler",
    "LoggingOptions",
    "Middleware",
    "MiddlewareFactories",
    "MiddlewareMetadata",
    "PipelineOptions",
    "RateLimitAdvancedOptions",
    "RateLimitInfo",
    "RateLimitOptions",
    "RetryAdvancedOptions",
    "RetryInfo",
    "RetryOptions",
    "attach_metadata",
    "build_middleware_pipeline",
    "clone_with_metadata",
    "compose",
    "compute_backoff_delay",
    "get_metadata",
    "logging_middleware",
    "rate_limit_middleware",
    "redact_sensitive_headers",
    "retry_middleware",
    "token_auth_middleware",
]
