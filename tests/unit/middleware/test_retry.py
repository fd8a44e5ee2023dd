"""
Tests for the retry middleware and backoff computation.

Sleeping is replaced by RecordingSleep, so no test waits on real timers.
"""

import httpx
import pytest

from schwab_pipeline.core.exceptions import (
    AuthError,
    AuthErrorCode,
    ErrorCode,
    NetworkError,
    PipelineException,
)
from schwab_pipeline.middleware.compose import compose, transport_handler
from schwab_pipeline.middleware.metadata import get_metadata
from schwab_pipeline.middleware.retry import (
    RetryAdvancedOptions,
    RetryOptions,
    compute_backoff_delay,
    retry_middleware,
)
from schwab_pipeline.observability.metrics import METRIC_RETRY_ATTEMPTS, REGISTRY


def scripted(responses: list):
    """Handler replaying the scripted items in order; the last one repeats."""
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        item = responses[min(len(calls), len(responses)) - 1]
        if isinstance(item, Exception):
            raise item
        return httpx.Response(item.status_code, headers=item.headers, content=item.content)

    handler.calls = calls
    return handler


def no_jitter() -> float:
    return 0.5


async def run(client, options, sleep, *middlewares, request=None):
    dispatch = compose(
        retry_middleware(options, sleep=sleep, rng=no_jitter),
        *middlewares,
        transport=transport_handler(client),
    )
    return await dispatch(request or client.build_request("GET", "/accounts"))


# =============================================================================
# Response Classification
# =============================================================================


class TestRetryOnStatus:
    """429 and 5xx responses."""

    @pytest.mark.asyncio
    async def test_503_then_success(self, mock_client, recording_sleep) -> None:
        """A 503 followed by a 200 yields the 200 on attempt 2."""
        handler = scripted([httpx.Response(503), httpx.Response(200, json={"ok": True})])

        async with mock_client(handler) as client:
            response = await run(client, RetryOptions(max_attempts=3), recording_sleep)

        assert response.status_code == 200
        assert len(handler.calls) == 2
        retry = get_metadata(response).retry
        assert retry.attempt_number == 2
        assert retry.is_retry is True
        assert recording_sleep.delays == [1.0]

    @pytest.mark.asyncio
    async def test_exhausted_returns_last_response(self, mock_client, recording_sleep) -> None:
        """max_attempts=2 means three tries; the final 500 is returned, not raised."""
        handler = scripted([httpx.Response(500, content=b"still broken")])

        async with mock_client(handler) as client:
            response = await run(client, RetryOptions(max_attempts=2), recording_sleep)
            body = await response.aread()

        assert response.status_code == 500
        assert body == b"still broken"
        assert len(handler.calls) == 3
        assert get_metadata(response).retry.attempt_number == 3
        assert recording_sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self, mock_client, recording_sleep) -> None:
        """4xx other than 429 is returned immediately."""
        handler = scripted([httpx.Response(404)])

        async with mock_client(handler) as client:
            response = await run(client, RetryOptions(), recording_sleep)

        assert response.status_code == 404
        assert len(handler.calls) == 1
        assert recording_sleep.delays == []
        assert get_metadata(response).retry.is_retry is False

    @pytest.mark.asyncio
    async def test_zero_retries_single_attempt(self, mock_client, recording_sleep) -> None:
        """max_attempts=0 sends exactly once."""
        handler = scripted([httpx.Response(503)])

        async with mock_client(handler) as client:
            response = await run(client, RetryOptions(max_attempts=0), recording_sleep)

        assert response.status_code == 503
        assert len(handler.calls) == 1
        assert get_metadata(response).retry.is_retry is False

    @pytest.mark.asyncio
    async def test_backoff_doubles(self, mock_client, recording_sleep) -> None:
        """Without jitter the delays are base, 2*base, 4*base."""
        handler = scripted([httpx.Response(502)])

        async with mock_client(handler) as client:
            await run(client, RetryOptions(max_attempts=3, base_delay_ms=100), recording_sleep)

        assert recording_sleep.delays == pytest.approx([0.1, 0.2, 0.4])


class TestServerDelayHints:
    """Retry-After handling."""

    @pytest.mark.asyncio
    async def test_retry_after_used_when_larger(self, mock_client, recording_sleep) -> None:
        """A larger Retry-After wins over the computed backoff."""
        handler = scripted([httpx.Response(429, headers={"Retry-After": "5"}), httpx.Response(200)])

        async with mock_client(handler) as client:
            await run(client, RetryOptions(), recording_sleep)

        assert recording_sleep.delays == [5.0]

    @pytest.mark.asyncio
    async def test_retry_after_capped(self, mock_client, recording_sleep) -> None:
        """Server delays are still capped at max_delay_ms."""
        handler = scripted([httpx.Response(429, headers={"Retry-After": "120"}), httpx.Response(200)])
        options = RetryOptions(advanced=RetryAdvancedOptions(max_delay_ms=3000))

        async with mock_client(handler) as client:
            await run(client, options, recording_sleep)

        assert recording_sleep.delays == [3.0]

    @pytest.mark.asyncio
    async def test_retry_after_ignored_when_disabled(self, mock_client, recording_sleep) -> None:
        """respect_retry_after=False falls back to plain backoff."""
        handler = scripted([httpx.Response(429, headers={"Retry-After": "5"}), httpx.Response(200)])
        options = RetryOptions(advanced=RetryAdvancedOptions(respect_retry_after=False))

        async with mock_client(handler) as client:
            await run(client, options, recording_sleep)

        assert recording_sleep.delays == [1.0]


# =============================================================================
# Raised Errors
# =============================================================================


class TestRetryOnErrors:
    """Exceptions raised further down the chain."""

    @pytest.mark.asyncio
    async def test_network_error_retried(self, mock_client, recording_sleep) -> None:
        """Connection failures are retried within budget."""
        handler = scripted([httpx.ConnectError("refused"), httpx.Response(200)])

        async with mock_client(handler) as client:
            response = await run(client, RetryOptions(), recording_sleep)

        assert response.status_code == 200
        assert len(handler.calls) == 2

    @pytest.mark.asyncio
    async def test_network_error_exhausted_raises_with_cause(self, mock_client, recording_sleep) -> None:
        """After the last attempt the typed error is raised with its cause."""
        handler = scripted([httpx.ConnectError("refused")])

        async with mock_client(handler) as client:
            with pytest.raises(NetworkError) as exc_info:
                await run(client, RetryOptions(max_attempts=1), recording_sleep)

        assert len(handler.calls) == 2
        assert isinstance(exc_info.value.__cause__, httpx.ConnectError)
        assert "attempt 2/2" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_non_retryable_auth_error_raised_immediately(self, mock_client, recording_sleep) -> None:
        """Credential errors skip the retry budget."""

        async def failing_auth(request, context, call_next):
            raise AuthError(AuthErrorCode.TOKEN_EXPIRED)

        async with mock_client(lambda request: httpx.Response(200)) as client:
            with pytest.raises(AuthError) as exc_info:
                await run(client, RetryOptions(), recording_sleep, failing_auth)

        assert exc_info.value.code is AuthErrorCode.TOKEN_EXPIRED
        assert recording_sleep.delays == []

    @pytest.mark.asyncio
    async def test_unknown_error_not_retried(self, mock_client, recording_sleep) -> None:
        """Programming errors are wrapped, chained and raised at once."""
        original = ValueError("bad state")

        async def broken(request, context, call_next):
            raise original

        async with mock_client(lambda request: httpx.Response(200)) as client:
            with pytest.raises(PipelineException) as exc_info:
                await run(client, RetryOptions(), recording_sleep, broken)

        assert exc_info.value.error_code == ErrorCode.UNKNOWN
        assert exc_info.value.__cause__ is original
        assert recording_sleep.delays == []


# =============================================================================
# Per-attempt Metadata
# =============================================================================


class TestAttemptMetadata:
    """Each attempt is a fresh clone with its own retry metadata."""

    @pytest.mark.asyncio
    async def test_attempt_contexts(self, mock_client, recording_sleep) -> None:
        """Attempt numbers, retry flags and skip flags per attempt."""
        seen = []

        async def spy(request, context, call_next):
            seen.append((request, context.metadata.retry))
            return await call_next(request, context)

        handler = scripted([httpx.Response(500), httpx.Response(500), httpx.Response(200)])
        async with mock_client(handler) as client:
            original = client.build_request("POST", "/orders", json={"qty": 1})
            await run(client, RetryOptions(max_attempts=3), recording_sleep, spy, request=original)

        retries = [retry for _, retry in seen]
        assert [r.attempt_number for r in retries] == [1, 2, 3]
        assert [r.is_retry for r in retries] == [False, True, True]
        assert [r.skip_rate_limit for r in retries] == [False, True, True]
        assert all(r.max_attempts == 4 for r in retries)

        requests = [request for request, _ in seen]
        assert len({id(r) for r in requests}) == 3
        assert all(r is not original for r in requests)
        assert all(r.content == original.content for r in requests)
        assert [c.content for c in handler.calls] == [original.content] * 3

    @pytest.mark.asyncio
    async def test_skip_rate_limit_disabled(self, mock_client, recording_sleep) -> None:
        """skip_rate_limit_on_retry=False leaves retries chargeable."""
        seen = []

        async def spy(request, context, call_next):
            seen.append(context.metadata.retry)
            return await call_next(request, context)

        options = RetryOptions(advanced=RetryAdvancedOptions(skip_rate_limit_on_retry=False))
        async with mock_client(scripted([httpx.Response(503), httpx.Response(200)])) as client:
            await run(client, options, recording_sleep, spy)

        assert [r.skip_rate_limit for r in seen] == [False, False]

    @pytest.mark.asyncio
    async def test_retry_metric_recorded(self, mock_client, recording_sleep) -> None:
        """Each retry increments the retry counter with its reason."""
        labels = {"reason": "503"}
        before = REGISTRY.get_sample_value(METRIC_RETRY_ATTEMPTS, labels) or 0.0

        async with mock_client(scripted([httpx.Response(503), httpx.Response(200)])) as client:
            await run(client, RetryOptions(), recording_sleep)

        assert REGISTRY.get_sample_value(METRIC_RETRY_ATTEMPTS, labels) == before + 1


# =============================================================================
# Backoff Computation
# =============================================================================


class TestComputeBackoffDelay:
    """Pure backoff function."""

    @pytest.mark.parametrize("attempt", [1, 2, 3, 4, 5])
    @pytest.mark.parametrize("r", [0.0, 0.25, 0.5, 0.75, 0.999999])
    def test_jitter_within_ten_percent(self, attempt: int, r: float) -> None:
        """Delay for attempt k stays within +/-10% of base * 2^(k-1)."""
        nominal = 1000 * 2 ** (attempt - 1)

        delay = compute_backoff_delay(attempt, 1000, 1_000_000, rng=lambda: r)

        assert 0.9 * nominal - 1e-6 <= delay <= 1.1 * nominal + 1e-6

    def test_capped_at_max_delay(self) -> None:
        """Large attempts are capped."""
        assert compute_backoff_delay(10, 1000, 30_000, rng=lambda: 0.999) == 30_000

    def test_server_delay_wins_when_larger(self) -> None:
        """A larger server delay replaces the computed one."""
        assert compute_backoff_delay(1, 1000, 30_000, server_delay_ms=7000, rng=lambda: 0.5) == 7000

    def test_server_delay_ignored_when_smaller(self) -> None:
        """A smaller server delay does not shorten the backoff."""
        assert compute_backoff_delay(2, 1000, 30_000, server_delay_ms=100, rng=lambda: 0.5) == 2000

    def test_server_delay_still_capped(self) -> None:
        """Server delays never exceed max_delay_ms."""
        assert compute_backoff_delay(1, 1000, 30_000, server_delay_ms=90_000, rng=lambda: 0.5) == 30_000

    def test_default_rng_in_range(self) -> None:
        """The default random source stays within bounds."""
        for _ in range(100):
            assert 1800 <= compute_backoff_delay(2, 1000, 30_000) <= 2200
