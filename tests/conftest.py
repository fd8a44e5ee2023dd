"""
Pytest configuration and shared fixtures.

The network is replaced by httpx.MockTransport; token providers and
sleepers are plain fakes (duck typing, no mocking framework needed).
"""

from typing import Any, Callable, Optional

import httpx
import pytest

from schwab_pipeline.auth.types import RefreshOptions, TokenData
from schwab_pipeline.core.config import Settings


BASE_URL = "https://api.schwabapi.com"


# =============================================================================
# Test Markers
# =============================================================================


def pytest_configure(config):
    """Register custom markers for test categorization."""
    config.addinivalue_line("markers", "unit: Unit tests for individual components")
    config.addinivalue_line("markers", "slow: Tests that wait on real timers")


# =============================================================================
# Fakes
# =============================================================================


class FakeTokenProvider:
    """
    In-memory TokenProvider.

    Attributes:
        token: Token handed out by get_access_token().
        calls: refresh_threshold_ms values received, in order.
        refresh_on_next_call: Rotate the token on the next call and notify
            on_refresh listeners.
    """

    def __init__(self, token: Optional[str] = "test-token", error: Optional[Exception] = None):
        self.token = token
        self.error = error
        self.calls: list[Optional[int]] = []
        self.refresh_count = 0
        self.refresh_on_next_call = False
        self.callbacks: list[Callable[[TokenData], None]] = []

    async def get_access_token(self, *, refresh_threshold_ms: Optional[int] = None) -> Optional[str]:
        self.calls.append(refresh_threshold_ms)
        if self.error is not None:
            raise self.error
        if self.refresh_on_next_call:
            self.refresh_on_next_call = False
            self.refresh_count += 1
            self.token = f"refreshed-{self.refresh_count}"
            for callback in self.callbacks:
                callback(TokenData(access_token=self.token))
        return self.token

    def supports_refresh(self) -> bool:
        return True

    async def refresh_if_needed(self, options: Optional[RefreshOptions] = None) -> TokenData:
        return TokenData(access_token=self.token or "")

    def on_refresh(self, callback: Callable[[TokenData], None]) -> None:
        self.callbacks.append(callback)


class RecordingSleep:
    """Async sleep replacement that records requested delays (seconds)."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class FakeClock:
    """Manually advanced millisecond clock."""

    def __init__(self, start: float = 1_700_000_000_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return int(self.now)

    def advance(self, ms: float) -> None:
        self.now += ms


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def fake_token_provider() -> FakeTokenProvider:
    return FakeTokenProvider()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the environment and any .env file."""
    return Settings(_env_file=None)


@pytest.fixture
def mock_client() -> Callable[[Callable[[httpx.Request], Any]], httpx.AsyncClient]:
    """
    Factory for AsyncClients backed by MockTransport.

    Example:
        >>> client = mock_client(lambda request: httpx.Response(200))
    """

    def factory(handler: Callable[[httpx.Request], Any]) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(handler))

    return factory
