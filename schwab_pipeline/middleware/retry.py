"""
Retry Middleware

Retries transient failures with capped exponential backoff and jitter.

Classification per attempt:
- HTTP 429 or >= 500: retryable; the body is drained before the next
  attempt. When the budget is exhausted the last response is returned
  as is, not raised
- Raised error: converted to the pipeline taxonomy and retried only if
  it reports is_retryable() (network failures and timeouts always do)
- Anything else: returned immediately

Backoff for retry k (k >= 1):
    min(max(server_delay, base * 2^(k-1) * (1 +/- 0.1)), max_delay)

Reference: retry-with-backoff pattern of the provider clients; delay
hints come from ApiError.get_retry_delay_ms().
"""

import asyncio
import random
from typing import Any, Awaitable, Callable, Optional

import httpx
from pydantic import BaseModel, Field

from schwab_pipeline.core.exceptions import (
    ApiError,
    PipelineException,
    create_api_error,
    extract_error_metadata,
    to_pipeline_error,
)
from schwab_pipeline.middleware.compose import Handler, Middleware
from schwab_pipeline.middleware.metadata import (
    CallContext,
    RetryInfo,
    clone_with_metadata,
    get_metadata,
)
from schwab_pipeline.observability.logging import get_logger
from schwab_pipeline.observability.metrics import record_retry_attempt


logger = get_logger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY_MS = 1000
DEFAULT_MAX_DELAY_MS = 30_000
JITTER_FACTOR = 0.1

_STATUS_DESCRIPTIONS = {
    429: "Rate limit exceeded",
    500: "Server error",
    502: "Bad gateway",
    503: "Service unavailable",
    504: "Gateway timeout",
}


# =============================================================================
# Options
# =============================================================================


class RetryAdvancedOptions(BaseModel):
    """Advanced retry options."""

    respect_retry_after: bool = Field(
        default=True,
        description="Honor Retry-After and X-RateLimit-Reset hints",
    )
    max_delay_ms: int = Field(default=DEFAULT_MAX_DELAY_MS, ge=0)
    skip_rate_limit_on_retry: bool = Field(
        default=True,
        description="Mark retries so the rate limiter does not charge them again",
    )


class RetryOptions(BaseModel):
    """
    Options for the retry middleware.

    Attributes:
        max_attempts: Retries after the first attempt (3 means 4 tries).
        base_delay_ms: Backoff base for the first retry.
    """

    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=0)
    base_delay_ms: int = Field(default=DEFAULT_BASE_DELAY_MS, ge=0)
    advanced: RetryAdvancedOptions = Field(default_factory=RetryAdvancedOptions)


# =============================================================================
# Backoff
# =============================================================================


def compute_backoff_delay(
    attempt: int,
    base_delay_ms: float,
    max_delay_ms: float,
    server_delay_ms: Optional[float] = None,
    rng: Callable[[], float] = random.random,
) -> float:
    """
    Compute the delay before retry number ``attempt``.

    Args:
        attempt: 1 for the first retry, 2 for the second, and so on.
        base_delay_ms: Backoff base.
        max_delay_ms: Upper bound for the result.
        server_delay_ms: Server-suggested delay, if any.
        rng: Uniform [0, 1) source used for jitter.

    Returns:
        Delay in milliseconds.
    """
    calculated = base_delay_ms * (2 ** (attempt - 1))
    jitter = calculated * JITTER_FACTOR * (rng() * 2 - 1)
    calculated = max(0.0, calculated + jitter)
    delay = max(server_delay_ms or 0.0, calculated)
    return min(delay, max_delay_ms)


# =============================================================================
# Middleware
# =============================================================================


def retry_middleware(
    options: Optional[RetryOptions] = None,
    *,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    rng: Callable[[], float] = random.random,
) -> Middleware:
    """
    Create retry middleware.

    Args:
        options: Retry budget and backoff settings.
        sleep: Coroutine function taking seconds (injectable for tests).
        rng: Jitter source (injectable for tests).

    Returns:
        Middleware retrying transient failures.
    """
    options = options or RetryOptions()
    total_attempts = options.max_attempts + 1
    base_delay_ms = options.base_delay_ms
    max_delay_ms = options.advanced.max_delay_ms
    respect_retry_after = options.advanced.respect_retry_after
    skip_rate_limit_on_retry = options.advanced.skip_rate_limit_on_retry

    async def retry(
        request: httpx.Request, context: CallContext, call_next: Handler
    ) -> httpx.Response:
        incoming = context.metadata.retry
        already_retry = incoming is not None and incoming.is_retry
        attempt = 1

        while True:
            is_retry = already_retry or attempt > 1
            attempt_request, attempt_context = clone_with_metadata(request, context)
            attempt_context.metadata.retry = RetryInfo(
                is_retry=is_retry,
                attempt_number=attempt,
                max_attempts=total_attempts,
                skip_rate_limit=skip_rate_limit_on_retry and is_retry,
            )

            try:
                response = await call_next(attempt_request, attempt_context)
            except Exception as e:
                error = to_pipeline_error(
                    e,
                    f"{request.method} {request.url} (attempt {attempt}/{total_attempts})",
                )
                if not error.is_retryable() or attempt >= total_attempts:
                    logger.warning(
                        "request failed, not retrying",
                        method=request.method,
                        url=str(request.url),
                        attempt_number=attempt,
                        max_attempts=total_attempts,
                        retryable=error.is_retryable(),
                        error_code=error.error_code,
                    )
                    if error is e:
                        raise
                    raise error from e
                last_error: PipelineException = error
            else:
                status = response.status_code
                if status != 429 and status < 500:
                    _annotate(response, is_retry, attempt, total_attempts)
                    return response

                if attempt >= total_attempts:
                    logger.warning(
                        "retries exhausted, returning last response",
                        method=request.method,
                        url=str(request.url),
                        status_code=status,
                        attempt_number=attempt,
                    )
                    _annotate(response, is_retry, attempt, total_attempts)
                    return response

                last_error = await _error_from_response(
                    response, attempt_request, attempt, total_attempts
                )

            server_delay_ms = None
            if respect_retry_after and isinstance(last_error, ApiError):
                server_delay_ms = last_error.get_retry_delay_ms()

            delay_ms = compute_backoff_delay(
                attempt, base_delay_ms, max_delay_ms, server_delay_ms, rng
            )
            reason = _retry_reason(last_error)
            record_retry_attempt(reason)
            logger.warning(
                "retrying request",
                method=request.method,
                url=str(request.url),
                reason=reason,
                attempt_number=attempt,
                max_attempts=total_attempts,
                delay_ms=round(delay_ms, 1),
            )

            await sleep(delay_ms / 1000)
            attempt += 1

    return retry


def _retry_reason(error: PipelineException) -> str:
    """Short label: the HTTP status, or the error code for transport failures."""
    status_code = getattr(error, "status_code", None)
    if status_code:
        return str(status_code)
    code = error.error_code
    return str(getattr(code, "value", code)).lower()


def _annotate(
    response: httpx.Response, is_retry: bool, attempt: int, total_attempts: int
) -> None:
    get_metadata(response).retry = RetryInfo(
        is_retry=is_retry,
        attempt_number=attempt,
        max_attempts=total_attempts,
        skip_rate_limit=False,
    )


async def _error_from_response(
    response: httpx.Response,
    request: httpx.Request,
    attempt: int,
    total_attempts: int,
) -> ApiError:
    """Build a typed error for a retryable response and release its body."""
    metadata = extract_error_metadata(response, request)
    body: Any = None
    try:
        await response.aread()
        try:
            body = response.json()
        except ValueError:
            body = response.text
    except httpx.HTTPError as e:
        logger.debug("could not read error response body", error=str(e))
    finally:
        await response.aclose()

    description = _STATUS_DESCRIPTIONS.get(
        response.status_code, f"HTTP error {response.status_code}"
    )
    return create_api_error(
        response.status_code,
        body,
        f"{description} (attempt {attempt}/{total_attempts})",
        metadata,
    )
