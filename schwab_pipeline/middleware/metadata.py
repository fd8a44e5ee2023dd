"""
Middleware Metadata

Per-call side channel used by middleware to pass state to later stages and
to the caller without touching the request or response payload.

Requests travel through the chain together with an explicit CallContext
that owns the request-side store. Responses keep their store in
``httpx.Response.extensions``, which httpx never serializes or sends, so
the caller can read pipeline annotations (queued, retried, refreshed) off a
completed response.

Pattern: Explicit context object instead of hidden attributes on transport values
"""

import copy
from dataclasses import dataclass, field
from typing import Any, Optional, Union

import httpx

from schwab_pipeline.observability.logging import get_logger


logger = get_logger(__name__)

METADATA_EXTENSION_KEY = "schwab_pipeline.metadata"


# =============================================================================
# Metadata Records
# =============================================================================


@dataclass
class RateLimitInfo:
    """
    Rate limiter annotations.

    Attributes:
        remaining: Requests left in the current window after this one.
        reset_at: When the current window ends (epoch ms).
        limit: Maximum requests per window.
        was_queued: Whether the request waited for a later window.
    """

    remaining: Optional[int] = None
    reset_at: Optional[int] = None
    limit: Optional[int] = None
    was_queued: bool = False


@dataclass
class RetryInfo:
    """
    Retry annotations.

    Attributes:
        is_retry: Whether this dispatch is a retry of an earlier attempt.
        attempt_number: 1-based attempt counter.
        max_attempts: Total attempts allowed, including the first.
        skip_rate_limit: Ask the rate limiter not to charge this attempt.
    """

    is_retry: bool = False
    attempt_number: int = 1
    max_attempts: Optional[int] = None
    skip_rate_limit: bool = False


@dataclass
class AuthInfo:
    """Authentication annotations."""

    token_refreshed: bool = False


@dataclass
class MiddlewareMetadata:
    """
    Metadata carried alongside one request or response.

    Extension middleware can keep its own keys in ``extra``.
    """

    rate_limit: Optional[RateLimitInfo] = None
    retry: Optional[RetryInfo] = None
    auth: Optional[AuthInfo] = None
    extra: dict[str, Any] = field(default_factory=dict)

    def copy(self) -> "MiddlewareMetadata":
        """Return a value copy sharing no mutable state with this one."""
        return copy.deepcopy(self)


# =============================================================================
# Call Context
# =============================================================================


@dataclass
class CallContext:
    """
    Explicit per-call context passed with the request through every middleware.

    Attributes:
        metadata: Request-side metadata store.
    """

    metadata: MiddlewareMetadata = field(default_factory=MiddlewareMetadata)

    def copy(self) -> "CallContext":
        """Derive a context whose metadata is a value copy of this one."""
        return CallContext(metadata=self.metadata.copy())


MetadataHost = Union[CallContext, httpx.Request, httpx.Response]


def get_metadata(obj: MetadataHost) -> MiddlewareMetadata:
    """
    Get the metadata store attached to ``obj``, creating it on first access.

    The store is created at most once per object; repeated calls return the
    same instance. If ``obj`` cannot be annotated, a warning is logged and a
    detached store is returned, since metadata is advisory and must never
    break the request itself.

    Args:
        obj: A CallContext, httpx.Request or httpx.Response.

    Returns:
        The object's MiddlewareMetadata.
    """
    if isinstance(obj, CallContext):
        return obj.metadata

    try:
        extensions = obj.extensions
        existing = extensions.get(METADATA_EXTENSION_KEY)
        if isinstance(existing, MiddlewareMetadata):
            return existing
        metadata = MiddlewareMetadata()
        extensions[METADATA_EXTENSION_KEY] = metadata
        return metadata
    except (AttributeError, TypeError) as e:
        logger.warning(
            "metadata attach failed, middleware coordination may be incomplete",
            host=type(obj).__name__,
            error=str(e),
        )
        return MiddlewareMetadata()


def attach_metadata(obj: Union[httpx.Request, httpx.Response], metadata: MiddlewareMetadata) -> None:
    """
    Attach ``metadata`` to ``obj``, replacing any existing store.

    Failures are logged and ignored.
    """
    try:
        obj.extensions[METADATA_EXTENSION_KEY] = metadata
    except (AttributeError, TypeError) as e:
        logger.warning(
            "metadata attach failed, middleware coordination may be incomplete",
            host=type(obj).__name__,
            error=str(e),
        )


def clone_with_metadata(
    request: httpx.Request,
    context: CallContext,
    headers: Optional[dict[str, str]] = None,
) -> tuple[httpx.Request, CallContext]:
    """
    Derive a new request and context from an existing pair.

    The new request keeps the original method, URL, headers and body
    (``headers`` entries are applied on top of a copy). The new context's
    metadata is a value copy, so a later attempt in a retry sequence never
    shares mutable state with an earlier one.

    Args:
        request: Original request; never modified.
        context: Original context; never modified.
        headers: Header values to set on the derived request (optional).

    Returns:
        (derived request, derived context)
    """
    merged_headers = httpx.Headers(request.headers)
    if headers:
        for key, value in headers.items():
            merged_headers[key] = value

    extensions = dict(request.extensions)
    attached = extensions.get(METADATA_EXTENSION_KEY)
    if isinstance(attached, MiddlewareMetadata):
        extensions[METADATA_EXTENSION_KEY] = attached.copy()

    try:
        body = request.content
        derived = httpx.Request(
            request.method,
            request.url,
            headers=merged_headers,
            content=body,
            extensions=extensions,
        )
    except httpx.RequestNotRead:
        # Unread streaming body: share the stream rather than consume it
        derived = httpx.Request(
            request.method,
            request.url,
            headers=merged_headers,
            stream=request.stream,
            extensions=extensions,
        )

    return derived, context.copy()
