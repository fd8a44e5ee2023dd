"""
Middleware Pipeline Builder

Turns PipelineOptions into an ordered middleware list for compose().

Ordering (deterministic):
    before -> Auth -> between.auth_and_rate_limit -> RateLimit
    -> between.rate_limit_and_retry -> Retry -> custom

A stage is left out when it is listed in ``disable``, when its options are
False, or (Auth) when no token provider is supplied. Middleware factories
are injected through MiddlewareFactories, so tests and callers can swap any
stage without touching the builder.

Pattern: Pure configuration-to-list transform (no I/O, no state)
"""

from dataclasses import dataclass, field
from typing import Callable, Iterable, Literal, Optional, Union

from schwab_pipeline.auth.types import TokenProvider
from schwab_pipeline.core.config import Settings
from schwab_pipeline.middleware.auth import (
    AuthAdvancedOptions,
    AuthOptions,
    token_auth_middleware,
)
from schwab_pipeline.middleware.compose import Middleware
from schwab_pipeline.middleware.rate_limit import (
    FixedWindowRateLimiter,
    RateLimitOptions,
    rate_limit_middleware,
)
from schwab_pipeline.middleware.retry import (
    RetryAdvancedOptions,
    RetryOptions,
    retry_middleware,
)
from schwab_pipeline.observability.logging import get_logger


logger = get_logger(__name__)

Stage = Literal["auth", "rate_limit", "retry"]
STAGES: frozenset[str] = frozenset({"auth", "rate_limit", "retry"})


@dataclass
class BetweenHooks:
    """Middleware inserted between built-in stages."""

    auth_and_rate_limit: list[Middleware] = field(default_factory=list)
    rate_limit_and_retry: list[Middleware] = field(default_factory=list)


@dataclass
class MiddlewareFactories:
    """
    Factories used to build the built-in stages.

    Attributes:
        auth: (token_provider, options) -> Middleware
        rate_limit: (options, limiter) -> Middleware
        retry: (options) -> Middleware
    """

    auth: Callable[[TokenProvider, AuthOptions], Middleware] = token_auth_middleware
    rate_limit: Callable[
        [RateLimitOptions, Optional[FixedWindowRateLimiter]], Middleware
    ] = rate_limit_middleware
    retry: Callable[[RetryOptions], Middleware] = retry_middleware


@dataclass
class PipelineOptions:
    """
    Pipeline configuration.

    Attributes:
        auth: Auth stage options.
        rate_limit: Rate limit options, or False to leave the stage out.
        retry: Retry options, or False to leave the stage out.
        rate_limiter: Shared limiter instance (optional); by default each
            pipeline owns its own.
        disable: Stages to leave out ("auth", "rate_limit", "retry").
        before: Middleware placed before every built-in stage.
        between: Middleware placed between built-in stages.
        custom: Middleware placed after every built-in stage.
    """

    auth: AuthOptions = field(default_factory=AuthOptions)
    rate_limit: Union[RateLimitOptions, Literal[False]] = field(default_factory=RateLimitOptions)
    retry: Union[RetryOptions, Literal[False]] = field(default_factory=RetryOptions)
    rate_limiter: Optional[FixedWindowRateLimiter] = None
    disable: Iterable[Stage] = ()
    before: list[Middleware] = field(default_factory=list)
    between: BetweenHooks = field(default_factory=BetweenHooks)
    custom: list[Middleware] = field(default_factory=list)

    @classmethod
    def from_settings(cls, settings: Settings) -> "PipelineOptions":
        """Map environment settings onto pipeline options."""
        return cls(
            auth=AuthOptions(
                advanced=AuthAdvancedOptions(
                    refresh_expiring=settings.refresh_expiring,
                    refresh_threshold_ms=settings.refresh_threshold_ms,
                )
            ),
            rate_limit=(
                RateLimitOptions(
                    max_requests=settings.rate_limit_max_requests,
                    window_ms=settings.rate_limit_window_ms,
                )
                if settings.rate_limit_enabled
                else False
            ),
            retry=(
                RetryOptions(
                    max_attempts=settings.retry_max_attempts,
                    base_delay_ms=settings.retry_base_delay_ms,
                    advanced=RetryAdvancedOptions(
                        respect_retry_after=settings.retry_respect_retry_after,
                        max_delay_ms=settings.retry_max_delay_ms,
                    ),
                )
                if settings.retry_enabled
                else False
            ),
        )


def build_middleware_pipeline(
    options: Optional[PipelineOptions] = None,
    token_provider: Optional[TokenProvider] = None,
    *,
    factories: Optional[MiddlewareFactories] = None,
) -> list[Middleware]:
    """
    Build the ordered middleware list.

    Args:
        options: Pipeline configuration (defaults: all stages enabled).
        token_provider: Credential source for the Auth stage.
        factories: Stage factories (defaults: the built-in middleware).

    Returns:
        Middleware list for compose().

    Raises:
        ValueError: If ``disable`` names an unknown stage.
    """
    options = options or PipelineOptions()
    factories = factories or MiddlewareFactories()

    disabled = set(options.disable)
    unknown = disabled - STAGES
    if unknown:
        raise ValueError(
            f"Unknown pipeline stage(s) in disable: {sorted(unknown)}. "
            f"Expected a subset of {sorted(STAGES)}"
        )

    middlewares: list[Middleware] = list(options.before)

    if "auth" not in disabled:
        if token_provider is not None:
            middlewares.append(factories.auth(token_provider, options.auth))
        else:
            logger.debug("no token provider supplied, auth stage skipped")

    middlewares.extend(options.between.auth_and_rate_limit)

    if "rate_limit" not in disabled and options.rate_limit is not False:
        middlewares.append(factories.rate_limit(options.rate_limit, options.rate_limiter))

    middlewares.extend(options.between.rate_limit_and_retry)

    if "retry" not in disabled and options.retry is not False:
        middlewares.append(factories.retry(options.retry))

    middlewares.extend(options.custom)
    return middlewares
