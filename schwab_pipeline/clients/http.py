"""
HTTP Client Factory

Builds the httpx.AsyncClient that performs the network call at the end of
the middleware chain. Pooling, TLS and timeouts stay with httpx. Retrying
is the retry middleware's job, so the transport is created without
connection-level retries.
"""

from typing import Mapping, Optional

import httpx


DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_POOL_LIMITS = httpx.Limits(max_connections=100, max_keepalive_connections=20)
DEFAULT_USER_AGENT = "schwab-pipeline/1.0"

_BASE_HEADERS = {
    "User-Agent": DEFAULT_USER_AGENT,
    "Accept": "application/json",
}


def create_http_client(
    base_url: Optional[str] = None,
    timeout_seconds: Optional[float] = None,
    max_connections: Optional[int] = None,
    max_keepalive: Optional[int] = None,
    headers: Optional[Mapping[str, str]] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """
    Create the async client used by the pipeline transport.

    Args:
        base_url: Prefix for relative request URLs, e.g. "https://api.schwabapi.com".
        timeout_seconds: Connect/read/write/pool timeout (default: 30 s).
        max_connections: Pool size (default: 100).
        max_keepalive: Idle connections kept open (default: 20).
        headers: Sent with every request; override the JSON defaults.
        transport: Replaces the pooled transport, e.g. httpx.MockTransport.
            Pool limits do not apply to a supplied transport.

    Example:
        >>> async with create_http_client("https://api.schwabapi.com") as client:
        ...     response = await client.get("/marketdata/v1/quotes", params={"symbols": "AAPL"})
    """
    if transport is None:
        limits = httpx.Limits(
            max_connections=max_connections or DEFAULT_POOL_LIMITS.max_connections,
            max_keepalive_connections=max_keepalive or DEFAULT_POOL_LIMITS.max_keepalive_connections,
        )
        transport = httpx.AsyncHTTPTransport(limits=limits, retries=0)

    return httpx.AsyncClient(
        base_url=base_url or "",
        timeout=httpx.Timeout(timeout_seconds or DEFAULT_TIMEOUT_SECONDS),
        headers={**_BASE_HEADERS, **(headers or {})},
        transport=transport,
    )
