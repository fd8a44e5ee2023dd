"""
Token models and the token provider protocol.

Pattern: Domain models as value objects (frozen Pydantic models)
Pattern: Protocol for the provider seam (duck typing, no base class needed)
"""

import time
from typing import Awaitable, Callable, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class TokenData(BaseModel):
    """
    Token material as seen by consumers.

    Static tokens carry only an access token; refreshable tokens also carry
    a refresh token and an expiry.

    Attributes:
        access_token: Bearer token for API calls.
        refresh_token: Token used to obtain a new access token (optional).
        expires_at: Access token expiry in epoch milliseconds (optional).
    """

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[int] = None

    def is_expired(self, now: Optional[int] = None) -> bool:
        """Whether the access token has already expired."""
        if self.expires_at is None:
            return False
        return self.expires_at <= (now if now is not None else now_ms())

    def expires_within(self, threshold_ms: int, now: Optional[int] = None) -> bool:
        """Whether the access token expires within ``threshold_ms``."""
        if self.expires_at is None:
            return False
        return self.expires_at <= (now if now is not None else now_ms()) + threshold_ms


class TokenSet(TokenData):
    """
    A complete, refreshable token set produced by the authorization server.

    Replaced wholesale on every refresh, never mutated in place.
    """

    refresh_token: str
    expires_at: int
    refresh_token_issued_at: Optional[int] = Field(
        default=None,
        description="When the refresh token was issued (epoch ms)",
    )


class RefreshOptions(BaseModel):
    """
    Options for a refresh operation.

    Attributes:
        force: Refresh even if the current token is still fresh.
        refresh_token: Explicit refresh token to use instead of the stored one.
    """

    force: bool = False
    refresh_token: Optional[str] = None


RefreshCallback = Callable[[TokenData], None]
RefreshFunction = Callable[[str], Awaitable[TokenSet]]


@runtime_checkable
class TokenProvider(Protocol):
    """
    Credential source consumed by the auth middleware.

    Any object with these four methods can be used; see
    StaticTokenManager and TokenLifecycleManager.
    """

    async def get_access_token(
        self, *, refresh_threshold_ms: Optional[int] = None
    ) -> Optional[str]:
        ...

    def supports_refresh(self) -> bool:
        ...

    async def refresh_if_needed(
        self, options: Optional[RefreshOptions] = None
    ) -> TokenData:
        ...

    def on_refresh(self, callback: RefreshCallback) -> None:
        ...
