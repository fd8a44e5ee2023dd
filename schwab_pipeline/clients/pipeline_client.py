"""
Pipeline Client

Async client that sends every request through the composed middleware
chain (auth, rate limit, retry) before it reaches httpx.

Pattern: Client adapter owning its HTTP client (closed on exit)
"""

from typing import Any, Optional

import httpx

from schwab_pipeline.auth.types import TokenProvider
from schwab_pipeline.clients.http import create_http_client
from schwab_pipeline.core.config import Settings, get_settings
from schwab_pipeline.core.exceptions import (
    create_api_error,
    extract_error_metadata,
    handle_api_error,
)
from schwab_pipeline.middleware.compose import Dispatch, Middleware, compose, transport_handler
from schwab_pipeline.middleware.metadata import CallContext
from schwab_pipeline.middleware.pipeline import (
    MiddlewareFactories,
    PipelineOptions,
    build_middleware_pipeline,
)
from schwab_pipeline.observability.logging import configure_logging
from schwab_pipeline.observability.metrics import record_response


class PipelineClient:
    """
    HTTP client for the brokerage API with the request pipeline applied.

    Example:
        >>> manager = TokenLifecycleManager(tokens, refresher.refresh)
        >>> async with create_pipeline_client(token_provider=manager) as client:
        ...     response = await client.get("/trader/v1/accounts")
        ...     get_metadata(response).retry.attempt_number
        1
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        middlewares: Optional[list[Middleware]] = None,
        *,
        owns_client: bool = True,
    ) -> None:
        """
        Initialize PipelineClient.

        Args:
            http_client: Client performing the network call.
            middlewares: Ordered middleware (see build_middleware_pipeline()).
            owns_client: Close ``http_client`` when this client is closed.
        """
        self._client = http_client
        self._owns_client = owns_client
        self._dispatch: Dispatch = compose(
            *(middlewares or []), transport=transport_handler(http_client)
        )

    @property
    def http_client(self) -> httpx.AsyncClient:
        return self._client

    async def close(self) -> None:
        """Close the HTTP client if owned by this instance."""
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "PipelineClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    # =========================================================================
    # Requests
    # =========================================================================

    async def send(
        self, request: httpx.Request, context: Optional[CallContext] = None
    ) -> httpx.Response:
        """
        Dispatch a prepared request through the pipeline.

        Raises:
            PipelineException: Errors not resolved by the pipeline, with the
                original exception chained as ``__cause__``.
        """
        try:
            response = await self._dispatch(request, context)
        except Exception as e:
            handle_api_error(e, f"{request.method} {request.url}")
        record_response(response.status_code)
        return response

    async def request(
        self,
        method: str,
        url: str,
        *,
        raise_for_status: bool = False,
        context: Optional[CallContext] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """
        Build and send a request.

        Args:
            method: HTTP method.
            url: URL or path relative to the client's base URL.
            raise_for_status: Raise the matching ApiError for 4xx/5xx responses.
            context: Call context to start from (optional).
            **kwargs: Passed to httpx.AsyncClient.build_request (params,
                headers, json, content, data...).

        Returns:
            The final response.

        Raises:
            ApiError: If raise_for_status is set and the status is >= 400.
        """
        request = self._client.build_request(method, url, **kwargs)
        response = await self.send(request, context)

        if raise_for_status and response.status_code >= 400:
            await response.aread()
            try:
                body: Any = response.json()
            except ValueError:
                body = response.text
            raise create_api_error(
                response.status_code,
                body,
                f"{method} {request.url} failed with status {response.status_code}",
                extract_error_metadata(response, request),
            )

        return response

    async def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def put(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("PUT", url, **kwargs)

    async def delete(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("DELETE", url, **kwargs)


def create_pipeline_client(
    settings: Optional[Settings] = None,
    token_provider: Optional[TokenProvider] = None,
    options: Optional[PipelineOptions] = None,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    factories: Optional[MiddlewareFactories] = None,
) -> PipelineClient:
    """
    Create a PipelineClient from settings.

    Args:
        settings: Application settings (default: get_settings()).
        token_provider: Credential source; the auth stage is skipped if None.
        options: Pipeline options (default: derived from settings).
        transport: Transport override, e.g. httpx.MockTransport in tests.
        factories: Stage factory overrides.

    Returns:
        Configured PipelineClient.
    """
    settings = settings or get_settings()
    configure_logging(level=settings.log_level)

    http_client = create_http_client(
        base_url=settings.base_url,
        timeout_seconds=settings.timeout_seconds,
        transport=transport,
    )
    middlewares = build_middleware_pipeline(
        options or PipelineOptions.from_settings(settings),
        token_provider,
        factories=factories,
    )
    return PipelineClient(http_client, middlewares)
