"""
Rate Limit Middleware

Client-side fixed-window admission control in front of the brokerage API.

Algorithm (fixed window):
1. On arrival, start a new window if the current one has elapsed
2. If fewer than ``max_requests`` were admitted in this window, admit now
3. Otherwise wait in a FIFO queue; a timer fires at the window boundary
4. Each drained waiter re-checks the window before it is admitted

Fairness: a new arrival never overtakes requests already waiting.

Ownership: window start, count and queue are private to one
FixedWindowRateLimiter. Pass the same instance to several pipelines to
share a quota across clients.

Reference: token bucket limiter of the inbound API middleware, reworked
as an outbound fixed-window limiter with queueing instead of rejection.
"""

import asyncio
import time
from collections import deque
from dataclasses import replace
from typing import Callable, Optional

import httpx
from pydantic import BaseModel, Field

from schwab_pipeline.auth.types import now_ms
from schwab_pipeline.middleware.compose import Handler, Middleware
from schwab_pipeline.middleware.metadata import (
    CallContext,
    RateLimitInfo,
    get_metadata,
)
from schwab_pipeline.observability.logging import get_logger
from schwab_pipeline.observability.metrics import record_rate_limit_queued


logger = get_logger(__name__)

DEFAULT_MAX_REQUESTS = 120
DEFAULT_WINDOW_MS = 60_000


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


# =============================================================================
# Options
# =============================================================================


class RateLimitAdvancedOptions(BaseModel):
    """Advanced rate limit options."""

    apply_to_retries: bool = Field(
        default=True,
        description="Charge retried requests against the quota",
    )


class RateLimitOptions(BaseModel):
    """Options for the rate limit middleware."""

    max_requests: int = Field(default=DEFAULT_MAX_REQUESTS, ge=1)
    window_ms: int = Field(default=DEFAULT_WINDOW_MS, gt=0)
    advanced: RateLimitAdvancedOptions = Field(default_factory=RateLimitAdvancedOptions)


# =============================================================================
# Fixed Window Limiter
# =============================================================================


class FixedWindowRateLimiter:
    """
    Fixed-window limiter with a FIFO wait queue.

    Must be used from a single event loop.

    Example:
        >>> limiter = FixedWindowRateLimiter(max_requests=120, window_ms=60_000)
        >>> info = await limiter.acquire()
        >>> info.remaining
        119
    """

    def __init__(
        self,
        max_requests: int = DEFAULT_MAX_REQUESTS,
        window_ms: float = DEFAULT_WINDOW_MS,
        *,
        clock: Callable[[], float] = _monotonic_ms,
    ) -> None:
        """
        Initialize the limiter.

        Args:
            max_requests: Requests admitted per window.
            window_ms: Window length in milliseconds.
            clock: Monotonic millisecond clock (injectable for tests).

        Raises:
            ValueError: If max_requests < 1 or window_ms <= 0.
        """
        if max_requests < 1:
            raise ValueError(f"max_requests must be at least 1, got {max_requests}")
        if window_ms <= 0:
            raise ValueError(f"window_ms must be positive, got {window_ms}")

        self.max_requests = max_requests
        self.window_ms = window_ms
        self._clock = clock
        self._window_start = clock()
        self._count = 0
        self._queue: deque[asyncio.Future[RateLimitInfo]] = deque()
        self._drain_handle: Optional[asyncio.TimerHandle] = None

    async def acquire(self) -> RateLimitInfo:
        """
        Wait for admission in the current or a later window.

        Returns:
            RateLimitInfo for the admitted request. A request that had to
            wait reports ``was_queued=True`` and ``remaining=0``.
        """
        if not self._queue:
            info = self._try_admit()
            if info is not None:
                return info

        waiter: asyncio.Future[RateLimitInfo] = asyncio.get_running_loop().create_future()
        self._queue.append(waiter)
        record_rate_limit_queued()
        logger.debug(
            "rate limit reached, request queued",
            queue_depth=len(self._queue),
            limit=self.max_requests,
            window_ms=self.window_ms,
        )
        self._schedule_drain()

        info = await waiter
        return replace(info, was_queued=True, remaining=0)

    def _try_admit(self) -> Optional[RateLimitInfo]:
        now = self._clock()
        if now - self._window_start >= self.window_ms:
            self._count = 0
            self._window_start = now

        if self._count >= self.max_requests:
            return None

        self._count += 1
        return RateLimitInfo(
            remaining=self.max_requests - self._count,
            reset_at=int(now_ms() + (self._window_start + self.window_ms - now)),
            limit=self.max_requests,
            was_queued=False,
        )

    def _schedule_drain(self) -> None:
        if self._drain_handle is not None or not self._queue:
            return
        delay_ms = max(0.0, self._window_start + self.window_ms - self._clock())
        self._drain_handle = asyncio.get_running_loop().call_later(
            delay_ms / 1000, self._drain
        )

    def _drain(self) -> None:
        self._drain_handle = None
        while self._queue:
            waiter = self._queue[0]
            if waiter.done():
                # Cancelled while waiting
                self._queue.popleft()
                continue

            info = self._try_admit()
            if info is None:
                break

            self._queue.popleft()
            waiter.set_result(info)

        self._schedule_drain()


# =============================================================================
# Middleware
# =============================================================================


def rate_limit_middleware(
    options: Optional[RateLimitOptions] = None,
    limiter: Optional[FixedWindowRateLimiter] = None,
) -> Middleware:
    """
    Create fixed-window rate limit middleware.

    Retried requests bypass the limiter when their retry metadata asks for
    it (``skip_rate_limit``) or when ``apply_to_retries`` is False, so an
    attempt is not charged twice for the same logical call.

    Args:
        options: Limits (defaults: 120 requests per 60 s).
        limiter: Shared limiter; a private one is built from ``options`` if None.

    Returns:
        Middleware enforcing the limit.
    """
    options = options or RateLimitOptions()
    if limiter is None:
        limiter = FixedWindowRateLimiter(options.max_requests, options.window_ms)
    apply_to_retries = options.advanced.apply_to_retries

    async def rate_limit(
        request: httpx.Request, context: CallContext, call_next: Handler
    ) -> httpx.Response:
        retry = context.metadata.retry
        if retry is not None and retry.is_retry and (retry.skip_rate_limit or not apply_to_retries):
            logger.debug(
                "rate limit bypassed for retry",
                attempt_number=retry.attempt_number,
            )
            return await call_next(request, context)

        info = await limiter.acquire()

        context = context.copy()
        context.metadata.rate_limit = info
        response = await call_next(request, context)
        get_metadata(response).rate_limit = replace(info)
        return response

    return rate_limit
