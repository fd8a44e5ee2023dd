"""
Token Lifecycle Manager

This module owns the current token set and mediates every refresh.

Refresh State Machine:
    IDLE: No refresh in flight
    REFRESHING: One refresh call in flight; concurrent callers join it
    FAILED: Last refresh failed; the next request may start a new one

Single-flight: however many callers need a refresh at once, exactly one
network refresh is made and every caller receives its result. Refresh
tokens are typically single-use, so a second concurrent refresh would
invalidate the first.

Anti-Pattern Compliance:
- AP-5: Failures surface as AuthError with a distinguishable code
- AP-6: State transitions happen without intervening awaits
"""

import asyncio
from enum import Enum
from typing import Any, Callable, Optional

import httpx

from schwab_pipeline.auth.refresher import OAuthTokenRefresher
from schwab_pipeline.auth.types import (
    RefreshCallback,
    RefreshFunction,
    RefreshOptions,
    TokenData,
    TokenProvider,
    TokenSet,
    now_ms,
)
from schwab_pipeline.core.config import Settings
from schwab_pipeline.core.exceptions import AuthError, AuthErrorCode
from schwab_pipeline.observability.logging import get_logger
from schwab_pipeline.observability.metrics import record_token_refresh


logger = get_logger(__name__)


# =============================================================================
# Constants
# =============================================================================

DEFAULT_REFRESH_THRESHOLD_MS = 300_000
"""Refresh access tokens five minutes before they expire."""

REFRESH_TOKEN_EXPIRATION_MS = 604_800_000
"""Refresh tokens are valid for seven days after issue."""

REFRESH_TOKEN_WARNING_THRESHOLD_MS = 518_400_000
"""Warn once a refresh token is six days old."""


class RefreshState(Enum):
    """State of the refresh state machine."""

    IDLE = "idle"
    REFRESHING = "refreshing"
    FAILED = "failed"


# =============================================================================
# Static Token Manager
# =============================================================================


class StaticTokenManager:
    """
    Token provider for a fixed access token with no refresh capability.

    Useful for scripts, or when tokens are managed outside the pipeline.
    """

    def __init__(self, access_token: str) -> None:
        self._tokens = TokenData(access_token=access_token)

    async def get_token_data(self) -> TokenData:
        return self._tokens

    async def get_access_token(
        self, *, refresh_threshold_ms: Optional[int] = None
    ) -> Optional[str]:
        return self._tokens.access_token

    def supports_refresh(self) -> bool:
        return False

    async def refresh_if_needed(self, options: Optional[RefreshOptions] = None) -> TokenData:
        raise AuthError(
            AuthErrorCode.REFRESH_NEEDED,
            "Static token manager cannot refresh tokens",
        )

    def on_refresh(self, callback: RefreshCallback) -> None:
        """Accepted for interface compatibility; static tokens never refresh."""


# =============================================================================
# Token Lifecycle Manager
# =============================================================================


class TokenLifecycleManager:
    """
    Sole owner of the current TokenSet; refreshes it on demand.

    The manager does not talk to the network itself. It calls an injected
    ``refresh_fn(refresh_token) -> TokenSet`` (see OAuthTokenRefresher),
    which keeps it independent of how tokens are obtained or persisted.
    Persistence hooks in through on_refresh().

    Example:
        >>> refresher = OAuthTokenRefresher(client_id, client_secret)
        >>> manager = TokenLifecycleManager(tokens, refresher.refresh)
        >>> manager.on_refresh(save_tokens)
        >>> token = await manager.get_access_token()

    Attributes:
        state: Current RefreshState.
        refresh_count: Number of successful refreshes so far.
    """

    def __init__(
        self,
        tokens: Optional[TokenData] = None,
        refresh_fn: Optional[RefreshFunction] = None,
        *,
        refresh_threshold_ms: int = DEFAULT_REFRESH_THRESHOLD_MS,
        refresh_token_ttl_ms: int = REFRESH_TOKEN_EXPIRATION_MS,
        refresh_token_warning_ms: int = REFRESH_TOKEN_WARNING_THRESHOLD_MS,
        refresh_token_issued_at: Optional[int] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        """
        Initialize the manager.

        Args:
            tokens: Initial token material (optional).
            refresh_fn: Async function exchanging a refresh token for a TokenSet.
            refresh_threshold_ms: Refresh this long before access token expiry.
            refresh_token_ttl_ms: Validity window of a refresh token.
            refresh_token_warning_ms: Age after which a warning is logged.
            refresh_token_issued_at: Issue time of the refresh token (epoch ms).
                Defaults to the TokenSet's own value; unknown means unchecked.
            clock: Epoch-millisecond clock (injectable for tests).
        """
        self._tokens = tokens
        self._refresh_fn = refresh_fn
        self._refresh_threshold_ms = refresh_threshold_ms
        self._refresh_token_ttl_ms = refresh_token_ttl_ms
        self._refresh_token_warning_ms = refresh_token_warning_ms
        self._clock = clock
        self._refresh_token_issued_at = refresh_token_issued_at
        if self._refresh_token_issued_at is None and isinstance(tokens, TokenSet):
            self._refresh_token_issued_at = tokens.refresh_token_issued_at

        self._state = RefreshState.IDLE
        self._pending: Optional[asyncio.Future[TokenData]] = None
        self._last_error: Optional[AuthError] = None
        self._refresh_count = 0
        self._callbacks: list[RefreshCallback] = []

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        tokens: Optional[TokenData] = None,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> "TokenLifecycleManager":
        """
        Build a manager refreshing through the configured OAuth token endpoint.

        Args:
            settings: Supplies client credentials, token URL and thresholds.
            tokens: Initial token material (optional).
            http_client: Client for the token endpoint (optional).
        """
        refresher = OAuthTokenRefresher(
            settings.client_id,
            settings.client_secret,
            settings.token_url,
            http_client=http_client,
            timeout_seconds=settings.timeout_seconds,
        )
        return cls(
            tokens,
            refresher.refresh,
            refresh_threshold_ms=settings.refresh_threshold_ms,
            refresh_token_ttl_ms=settings.refresh_token_ttl_ms,
            refresh_token_warning_ms=min(
                REFRESH_TOKEN_WARNING_THRESHOLD_MS, settings.refresh_token_ttl_ms
            ),
        )

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def state(self) -> RefreshState:
        return self._state

    @property
    def refresh_count(self) -> int:
        return self._refresh_count

    @property
    def last_error(self) -> Optional[AuthError]:
        """The error from the most recent failed refresh, if any."""
        return self._last_error

    @property
    def refresh_threshold_ms(self) -> int:
        return self._refresh_threshold_ms

    @property
    def token_data(self) -> Optional[TokenData]:
        """Snapshot of the current token material."""
        return self._tokens

    # =========================================================================
    # Provider Interface
    # =========================================================================

    async def get_token_data(self) -> Optional[TokenData]:
        return self._tokens

    def set_tokens(self, tokens: TokenData, refresh_token_issued_at: Optional[int] = None) -> None:
        """
        Replace the current tokens, e.g. after a new authorization flow.

        A new refresh token restarts its validity window.
        """
        self._tokens = tokens
        if refresh_token_issued_at is not None:
            self._refresh_token_issued_at = refresh_token_issued_at
        elif isinstance(tokens, TokenSet) and tokens.refresh_token_issued_at is not None:
            self._refresh_token_issued_at = tokens.refresh_token_issued_at
        else:
            self._refresh_token_issued_at = self._clock()
        self._state = RefreshState.IDLE
        self._last_error = None

    def supports_refresh(self) -> bool:
        """Whether a refresh token and a refresh function are configured."""
        return (
            self._refresh_fn is not None
            and self._tokens is not None
            and bool(self._tokens.refresh_token)
        )

    def on_refresh(self, callback: RefreshCallback) -> None:
        """Register a listener called once per successful refresh."""
        self._callbacks.append(callback)

    async def get_access_token(
        self, *, refresh_threshold_ms: Optional[int] = None
    ) -> Optional[str]:
        """
        Get the current access token, refreshing it first when needed.

        A refresh happens when the token is expired or expires within the
        threshold. If that refresh fails while the current token is still
        valid, the current token is returned and the failure is logged.

        Args:
            refresh_threshold_ms: Override for this call (0 = only when expired).

        Returns:
            The access token, or None when no usable token exists.

        Raises:
            AuthError: Refresh failed and the current token has expired.
        """
        tokens = self._tokens
        if tokens is None:
            return None

        threshold = (
            self._refresh_threshold_ms
            if refresh_threshold_ms is None
            else refresh_threshold_ms
        )
        now = self._clock()

        if not tokens.expires_within(threshold, now):
            return tokens.access_token

        if not self.supports_refresh():
            if tokens.is_expired(now):
                logger.warning("access token expired and cannot be refreshed")
                return None
            return tokens.access_token

        try:
            refreshed = await self._refresh(force=False, refresh_token=None, threshold_ms=threshold)
        except AuthError as e:
            if not tokens.is_expired(self._clock()):
                logger.warning(
                    "token refresh failed, using current token until it expires",
                    error_code=e.error_code,
                    error=e.message,
                )
                return tokens.access_token
            raise

        return refreshed.access_token

    async def refresh_if_needed(self, options: Optional[RefreshOptions] = None) -> TokenData:
        """
        Perform a refresh, or join the one already in flight.

        Without ``force``, a token that is not within the refresh threshold
        is returned as is.

        Raises:
            AuthError: TOKEN_EXPIRED when the refresh token has outlived its
                validity window; REFRESH_NEEDED when no refresh token or
                refresh function is available; NETWORK/UNAUTHORIZED/UNKNOWN
                when the refresh call fails.
        """
        options = options or RefreshOptions()
        return await self._refresh(
            force=options.force,
            refresh_token=options.refresh_token,
            threshold_ms=self._refresh_threshold_ms,
        )

    # =========================================================================
    # State Machine
    # =========================================================================

    async def _refresh(
        self,
        *,
        force: bool,
        refresh_token: Optional[str],
        threshold_ms: int,
    ) -> TokenData:
        # Everything up to the ensure_future call runs without yielding, so
        # the IDLE -> REFRESHING transition cannot interleave with another caller
        if self._state is RefreshState.REFRESHING and self._pending is not None:
            return await asyncio.shield(self._pending)

        current = self._tokens
        if not force and current is not None and not current.expires_within(threshold_ms, self._clock()):
            return current

        if self._refresh_fn is None:
            raise AuthError(
                AuthErrorCode.REFRESH_NEEDED,
                "No refresh function configured for token refresh",
            )

        token = refresh_token or (current.refresh_token if current is not None else None)
        if not token:
            raise AuthError(
                AuthErrorCode.REFRESH_NEEDED,
                "No refresh token available for token refresh",
            )

        if refresh_token is None:
            self._check_refresh_token_window()

        self._state = RefreshState.REFRESHING
        pending = asyncio.ensure_future(self._run_refresh(token))
        pending.add_done_callback(_consume_exception)
        self._pending = pending
        return await asyncio.shield(pending)

    async def _run_refresh(self, refresh_token: str) -> TokenData:
        try:
            new_tokens = await self._refresh_fn(refresh_token)
        except AuthError as e:
            self._fail(e)
            raise
        except httpx.TransportError as e:
            error = AuthError(
                AuthErrorCode.NETWORK,
                f"Token refresh failed: {e}",
                original_error=e,
            )
            self._fail(error)
            raise error from e
        except Exception as e:
            error = AuthError(
                AuthErrorCode.UNKNOWN,
                f"Token refresh failed: {e}",
                original_error=e,
            )
            self._fail(error)
            raise error from e

        if new_tokens.refresh_token_issued_at is not None:
            self._refresh_token_issued_at = new_tokens.refresh_token_issued_at
        elif new_tokens.refresh_token != refresh_token:
            self._refresh_token_issued_at = self._clock()

        self._tokens = new_tokens
        self._refresh_count += 1
        self._state = RefreshState.IDLE
        self._pending = None
        self._last_error = None
        record_token_refresh("success")
        logger.info("token refreshed", expires_at=new_tokens.expires_at)

        self._notify_refresh_listeners(new_tokens)
        return new_tokens

    def _fail(self, error: AuthError) -> None:
        self._state = RefreshState.FAILED
        self._pending = None
        self._last_error = error
        record_token_refresh("failure")
        logger.warning(
            "token refresh failed",
            error_code=error.error_code,
            error=error.message,
        )

    def _check_refresh_token_window(self) -> None:
        issued_at = self._refresh_token_issued_at
        if issued_at is None:
            return

        age = self._clock() - issued_at
        if age >= self._refresh_token_ttl_ms:
            raise AuthError(
                AuthErrorCode.TOKEN_EXPIRED,
                "Refresh token has expired; a new authorization flow is required",
            )
        if age >= self._refresh_token_warning_ms:
            logger.warning(
                "refresh token is nearing expiration",
                age_ms=age,
                expires_in_ms=self._refresh_token_ttl_ms - age,
            )

    def _notify_refresh_listeners(self, tokens: TokenData) -> None:
        failed = 0
        for callback in self._callbacks:
            try:
                callback(tokens)
            except Exception as e:
                failed += 1
                logger.error(
                    "token refresh callback failed",
                    callback=getattr(callback, "__qualname__", repr(callback)),
                    error=str(e),
                )
        if failed:
            logger.error(
                "token refresh callbacks failed",
                failed=failed,
                total=len(self._callbacks),
            )


def _consume_exception(future: "asyncio.Future[Any]") -> None:
    # Joiners may all have been cancelled; mark the error as retrieved
    if not future.cancelled():
        future.exception()


# =============================================================================
# Helpers
# =============================================================================


def build_token_manager(value: Any) -> Optional[TokenProvider]:
    """
    Build a token provider from a string token or an existing provider.

    Args:
        value: Access token string, TokenProvider instance, or None.

    Returns:
        A TokenProvider, or None when ``value`` is None or empty.

    Raises:
        AuthError: INVALID_TOKEN for unsupported input types.
    """
    if value is None or value == "":
        return None
    if isinstance(value, str):
        return StaticTokenManager(value)
    if isinstance(value, TokenProvider):
        return value
    raise AuthError(
        AuthErrorCode.INVALID_TOKEN,
        "Unsupported token type. Must be a string or a TokenProvider instance.",
        body={"provided_type": type(value).__name__},
    )


async def force_refresh_tokens(
    manager: TokenProvider, options: Optional[RefreshOptions] = None
) -> TokenData:
    """
    Refresh regardless of expiry.

    Raises:
        AuthError: REFRESH_NEEDED if the manager cannot refresh.
    """
    if not manager.supports_refresh():
        raise AuthError(
            AuthErrorCode.REFRESH_NEEDED,
            "This token manager does not support refresh operations",
        )
    base = options or RefreshOptions()
    return await manager.refresh_if_needed(base.model_copy(update={"force": True}))
