"""
Tests for OAuthTokenRefresher against a mocked token endpoint.
"""

import base64
from urllib.parse import parse_qs

import httpx
import pytest

from schwab_pipeline.auth.refresher import OAuthTokenRefresher
from schwab_pipeline.core.exceptions import AuthError, AuthErrorCode


TOKEN_URL = "https://api.schwabapi.com/v1/oauth/token"
NOW_MS = 1_700_000_000_000


def make_refresher(handler) -> OAuthTokenRefresher:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OAuthTokenRefresher(
        "client-id",
        "client-secret",
        TOKEN_URL,
        http_client=client,
        clock=lambda: NOW_MS,
    )


class TestRefreshRequest:
    """Shape of the token request."""

    @pytest.mark.asyncio
    async def test_posts_refresh_grant_with_basic_auth(self) -> None:
        """The refresh grant is form-encoded and authenticated with client credentials."""
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={"access_token": "new-access", "refresh_token": "new-refresh", "expires_in": 1800},
            )

        await make_refresher(handler).refresh("old-refresh")

        request = seen[0]
        assert request.method == "POST"
        assert str(request.url) == TOKEN_URL
        form = parse_qs(request.content.decode())
        assert form == {"grant_type": ["refresh_token"], "refresh_token": ["old-refresh"]}
        expected = base64.b64encode(b"client-id:client-secret").decode()
        assert request.headers["Authorization"] == f"Basic {expected}"


class TestRefreshResponse:
    """Parsing of successful responses."""

    @pytest.mark.asyncio
    async def test_builds_token_set(self) -> None:
        """expires_in seconds become an epoch-ms expiry."""
        refresher = make_refresher(
            lambda request: httpx.Response(
                200,
                json={"access_token": "a", "refresh_token": "r2", "expires_in": 1800},
            )
        )

        tokens = await refresher.refresh("r1")

        assert tokens.access_token == "a"
        assert tokens.refresh_token == "r2"
        assert tokens.expires_at == NOW_MS + 1_800_000
        assert tokens.refresh_token_issued_at == NOW_MS

    @pytest.mark.asyncio
    async def test_keeps_refresh_token_when_omitted(self) -> None:
        """The old refresh token is kept when the server does not rotate it."""
        refresher = make_refresher(
            lambda request: httpx.Response(200, json={"access_token": "a", "expires_in": 1800})
        )

        tokens = await refresher.refresh("r1")

        assert tokens.refresh_token == "r1"
        assert tokens.refresh_token_issued_at is None

    @pytest.mark.asyncio
    async def test_missing_access_token_is_invalid(self) -> None:
        """A response without an access token is rejected."""
        refresher = make_refresher(lambda request: httpx.Response(200, json={"expires_in": 1800}))

        with pytest.raises(AuthError) as exc_info:
            await refresher.refresh("r1")

        assert exc_info.value.code is AuthErrorCode.INVALID_TOKEN


class TestRefreshErrors:
    """Status and transport error mapping."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status,code",
        [
            (400, AuthErrorCode.TOKEN_EXPIRED),
            (401, AuthErrorCode.UNAUTHORIZED),
            (500, AuthErrorCode.UNKNOWN),
        ],
    )
    async def test_status_mapping(self, status: int, code: AuthErrorCode) -> None:
        """Token endpoint statuses map to auth error codes."""
        refresher = make_refresher(
            lambda request: httpx.Response(status, json={"error": "invalid_grant"})
        )

        with pytest.raises(AuthError) as exc_info:
            await refresher.refresh("r1")

        assert exc_info.value.code is code
        assert exc_info.value.status_code == status
        assert exc_info.value.body == {"error": "invalid_grant"}

    @pytest.mark.asyncio
    async def test_transport_failure_is_network(self) -> None:
        """Connection failures are retryable NETWORK errors."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(AuthError) as exc_info:
            await make_refresher(handler).refresh("r1")

        assert exc_info.value.code is AuthErrorCode.NETWORK
        assert exc_info.value.is_retryable() is True
        assert isinstance(exc_info.value.__cause__, httpx.ConnectError)
