"""
Token Auth Middleware

Resolves the current access token from a TokenProvider and sets the
``Authorization: Bearer <token>`` header on a derived request.

Behavior:
- No token available: log a warning and forward without the header, so
  public endpoints keep working
- Token acquisition failure: translated into the pipeline error taxonomy
  with the request method and URL attached
- Response store: ``auth.token_refreshed`` tells whether a refresh
  completed while this call waited for its token; the signal comes from
  the provider's on_refresh listeners
"""

from typing import Optional

import httpx
from pydantic import BaseModel, Field

from schwab_pipeline.auth.token_manager import DEFAULT_REFRESH_THRESHOLD_MS
from schwab_pipeline.auth.types import TokenData, TokenProvider
from schwab_pipeline.core.exceptions import to_pipeline_error
from schwab_pipeline.middleware.compose import Handler, Middleware
from schwab_pipeline.middleware.metadata import (
    AuthInfo,
    CallContext,
    clone_with_metadata,
    get_metadata,
)
from schwab_pipeline.observability.logging import get_logger


logger = get_logger(__name__)


class AuthAdvancedOptions(BaseModel):
    """Advanced auth options."""

    refresh_expiring: bool = Field(
        default=True,
        description="Refresh tokens that are about to expire, not only expired ones",
    )
    refresh_threshold_ms: int = Field(
        default=DEFAULT_REFRESH_THRESHOLD_MS,
        ge=0,
        description="How long before expiry a token counts as expiring",
    )


class AuthOptions(BaseModel):
    """Options for the auth middleware."""

    advanced: AuthAdvancedOptions = Field(default_factory=AuthAdvancedOptions)


def token_auth_middleware(
    token_provider: TokenProvider,
    options: Optional[AuthOptions] = None,
) -> Middleware:
    """
    Create middleware that authenticates requests with ``token_provider``.

    Args:
        token_provider: Source of access tokens.
        options: Auth options (defaults: refresh tokens expiring within 5 minutes).

    Returns:
        Middleware setting the bearer Authorization header.
    """
    options = options or AuthOptions()
    threshold_ms = (
        options.advanced.refresh_threshold_ms if options.advanced.refresh_expiring else 0
    )
    refresh_count = 0

    def count_refresh(tokens: TokenData) -> None:
        nonlocal refresh_count
        refresh_count += 1

    token_provider.on_refresh(count_refresh)

    async def auth_middleware(
        request: httpx.Request, context: CallContext, call_next: Handler
    ) -> httpx.Response:
        refreshes_before = refresh_count

        try:
            token = await token_provider.get_access_token(refresh_threshold_ms=threshold_ms)
        except Exception as e:
            error = to_pipeline_error(e, f"Auth failed for {request.method} {request.url}")
            error.request_method = request.method
            error.request_url = str(request.url)
            logger.error(
                "access token acquisition failed",
                method=request.method,
                url=str(request.url),
                error_code=error.error_code,
                error=error.message,
            )
            if error is e:
                raise
            raise error from e

        auth_info = AuthInfo(token_refreshed=refresh_count != refreshes_before)

        if token:
            request, context = clone_with_metadata(
                request, context, headers={"Authorization": f"Bearer {token}"}
            )
        else:
            logger.warning(
                "no access token available, sending request without authorization",
                method=request.method,
                url=str(request.url),
            )
            request, context = clone_with_metadata(request, context)

        context.metadata.auth = auth_info
        response = await call_next(request, context)
        get_metadata(response).auth = AuthInfo(token_refreshed=auth_info.token_refreshed)
        return response

    return auth_middleware
