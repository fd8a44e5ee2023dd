"""
Middleware Chain Composer

Builds a single dispatch callable from an ordered list of middleware.

Contract:
    Middleware = async (request, context, call_next) -> httpx.Response
    Handler    = async (request, context) -> httpx.Response

The first middleware in the list runs first; the terminal handler performs
the actual network call. The composed dispatch holds no state between
calls and may be used concurrently.
"""

from functools import reduce
from typing import Awaitable, Callable, Optional

import httpx

from schwab_pipeline.middleware.metadata import CallContext, attach_metadata


Handler = Callable[[httpx.Request, CallContext], Awaitable[httpx.Response]]
Middleware = Callable[[httpx.Request, CallContext, Handler], Awaitable[httpx.Response]]
Dispatch = Callable[..., Awaitable[httpx.Response]]


def transport_handler(client: httpx.AsyncClient) -> Handler:
    """
    Create the terminal handler that sends requests with ``client``.

    The response is seeded with a value copy of the context's metadata so
    that annotations made on the way in are visible on the way out.

    Args:
        client: The httpx client that owns connection pooling and TLS.

    Returns:
        Handler performing the network call.
    """

    async def send(request: httpx.Request, context: CallContext) -> httpx.Response:
        response = await client.send(request)
        attach_metadata(response, context.metadata.copy())
        return response

    return send


def _wrap(next_handler: Handler, middleware: Middleware) -> Handler:
    async def handler(request: httpx.Request, context: CallContext) -> httpx.Response:
        return await middleware(request, context, next_handler)

    return handler


def compose(*middlewares: Middleware, transport: Handler) -> Dispatch:
    """
    Compose middleware into one dispatch function.

    The list is folded from the last element to the first, each fold
    wrapping the handler built so far. With no middleware, dispatch goes
    straight to the transport.

    Args:
        *middlewares: Middleware in execution order.
        transport: Terminal handler (see transport_handler()).

    Returns:
        ``dispatch(request, context=None)``; a fresh CallContext is created
        when none is passed.

    Example:
        >>> dispatch = compose(auth, limiter, retry, transport=transport_handler(client))
        >>> response = await dispatch(client.build_request("GET", "/trader/v1/accounts"))
    """
    handler: Handler = reduce(_wrap, reversed(middlewares), transport)

    async def dispatch(
        request: httpx.Request, context: Optional[CallContext] = None
    ) -> httpx.Response:
        return await handler(request, context if context is not None else CallContext())

    return dispatch

