"""
OAuth token refresher for the brokerage authorization server.

Exchanges a refresh token for a new TokenSet. Plugs into
TokenLifecycleManager as its ``refresh_fn``.

Pattern: Async HTTP client with explicit error mapping (no raise_for_status)
"""

from typing import Any, Callable, Optional, Union

import httpx
from pydantic import SecretStr

from schwab_pipeline.auth.types import TokenSet, now_ms
from schwab_pipeline.core.exceptions import AuthError, AuthErrorCode
from schwab_pipeline.observability.logging import get_logger


logger = get_logger(__name__)

DEFAULT_TOKEN_URL = "https://api.schwabapi.com/v1/oauth/token"


class OAuthTokenRefresher:
    """
    Refresh tokens with the ``refresh_token`` grant and HTTP basic client auth.

    Status mapping:
        400 -> TOKEN_EXPIRED (refresh token rejected, re-authorization needed)
        401 -> UNAUTHORIZED (client credentials rejected)
        other non-2xx -> UNKNOWN
        transport failure -> NETWORK

    When the server does not return a new refresh token, the one that was
    sent is kept.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: Union[SecretStr, str],
        token_url: str = DEFAULT_TOKEN_URL,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout_seconds: float = 30.0,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        """
        Initialize the refresher.

        Args:
            client_id: OAuth client id (app key).
            client_secret: OAuth client secret.
            token_url: Token endpoint URL.
            http_client: Client to use; a private one is created per call if None.
            timeout_seconds: Timeout for the private client.
            clock: Epoch-millisecond clock used to compute expires_at.
        """
        self._client_id = client_id
        self._client_secret = (
            client_secret
            if isinstance(client_secret, SecretStr)
            else SecretStr(client_secret)
        )
        self._token_url = token_url
        self._http_client = http_client
        self._timeout_seconds = timeout_seconds
        self._clock = clock

    async def refresh(self, refresh_token: str) -> TokenSet:
        """
        Exchange ``refresh_token`` for a new TokenSet.

        Raises:
            AuthError: On any failure, with the code from the status mapping.
        """
        data = {"grant_type": "refresh_token", "refresh_token": refresh_token}
        auth = httpx.BasicAuth(self._client_id, self._client_secret.get_secret_value())

        try:
            if self._http_client is not None:
                response = await self._http_client.post(self._token_url, data=data, auth=auth)
            else:
                async with httpx.AsyncClient(timeout=self._timeout_seconds) as client:
                    response = await client.post(self._token_url, data=data, auth=auth)
        except httpx.TransportError as e:
            raise AuthError(
                AuthErrorCode.NETWORK,
                f"Token refresh request failed: {e}",
            ) from e

        if response.status_code != 200:
            raise self._error_for(response)

        try:
            payload = response.json()
        except ValueError as e:
            raise AuthError(
                AuthErrorCode.UNKNOWN,
                "Token endpoint returned invalid JSON",
                status_code=response.status_code,
                body=response.text,
            ) from e

        return self._parse_token_payload(payload, refresh_token)

    def _parse_token_payload(self, payload: dict[str, Any], sent_refresh_token: str) -> TokenSet:
        access_token = payload.get("access_token")
        if not access_token:
            raise AuthError(
                AuthErrorCode.INVALID_TOKEN,
                "Token endpoint response has no access_token",
                body=payload,
            )

        expires_in = payload.get("expires_in")
        try:
            expires_in_ms = int(float(expires_in) * 1000) if expires_in is not None else 0
        except (TypeError, ValueError):
            expires_in_ms = 0
        if expires_in_ms <= 0:
            logger.warning("token response has no usable expires_in, treating token as expired")

        new_refresh_token = payload.get("refresh_token") or sent_refresh_token
        now = self._clock()
        return TokenSet(
            access_token=access_token,
            refresh_token=new_refresh_token,
            expires_at=now + expires_in_ms,
            refresh_token_issued_at=now if new_refresh_token != sent_refresh_token else None,
        )

    @staticmethod
    def _error_for(response: httpx.Response) -> AuthError:
        try:
            body: Any = response.json()
        except ValueError:
            body = response.text

        status = response.status_code
        if status == 400:
            code = AuthErrorCode.TOKEN_EXPIRED
            message = "Refresh token rejected by the authorization server"
        elif status == 401:
            code = AuthErrorCode.UNAUTHORIZED
            message = "Client credentials rejected by the authorization server"
        else:
            code = AuthErrorCode.UNKNOWN
            message = f"Token refresh failed with status {status}"

        logger.warning("token endpoint error", status_code=status, error_code=code.value)
        return AuthError(code, message, status_code=status, body=body)
