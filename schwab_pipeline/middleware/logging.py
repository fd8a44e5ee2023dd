"""
Request Logging Middleware

Logs outbound requests, responses and failures for troubleshooting,
especially of authentication problems.

Features:
- Logs request method, URL and redacted headers
- Logs response status code and duration
- Redacts sensitive headers (Authorization, API keys, tokens, cookies)
- Optional callback receiving a DebugInfo record per event
- Each event is logged once per call, even if the middleware appears twice

Reference: request logging middleware of the inbound API, applied to the
outbound client chain.
"""

import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Literal, Mapping, Optional

import httpx

from schwab_pipeline.middleware.compose import Handler, Middleware
from schwab_pipeline.middleware.metadata import CallContext, get_metadata
from schwab_pipeline.observability.logging import get_logger


logger = get_logger(__name__)

DEBUG_METADATA_KEY = "debug"


# =============================================================================
# Sensitive Header Redaction
# Pattern: Security - never log credentials
# =============================================================================

SENSITIVE_HEADER_PATTERNS = [
    "authorization",
    "api-key",
    "apikey",
    "api_key",
    "x-auth-token",
    "cookie",
    "secret",
    "password",
    "token",
]


def redact_sensitive_headers(headers: Mapping[str, str]) -> dict[str, str]:
    """
    Redact sensitive headers from a headers mapping.

    Bearer credentials keep their scheme and first eight characters so that
    token rotation stays visible in logs.

    Args:
        headers: HTTP headers

    Returns:
        Dictionary with sensitive values replaced
    """
    redacted = {}
    for key, value in headers.items():
        key_lower = key.lower()
        if key_lower == "authorization":
            scheme, _, credential = value.partition(" ")
            redacted[key] = f"{scheme} {credential[:8]}..." if credential else "[REDACTED]"
        elif any(pattern in key_lower for pattern in SENSITIVE_HEADER_PATTERNS):
            redacted[key] = "[REDACTED]"
        else:
            redacted[key] = value
    return redacted


# =============================================================================
# Debug Records
# =============================================================================


@dataclass
class DebugInfo:
    """
    One logged event, passed to the optional callback.

    Attributes:
        timestamp: ISO 8601 time of the event.
        tag: Identifies the middleware instance.
        type: "request", "response" or "error".
        endpoint: "METHOD URL", prefixed with status or ERROR for later events.
        headers: Redacted headers.
        body: Parsed body when body logging is enabled.
        error: Error details for "error" events.
        metadata: Extra details (query string, duration).
    """

    timestamp: str
    tag: str
    type: Literal["request", "response", "error"]
    endpoint: str
    headers: dict[str, str]
    body: Any = None
    error: Optional[dict[str, Any]] = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class LoggingOptions:
    """Options for the logging middleware."""

    log_request: bool = True
    log_response: bool = True
    log_bodies: bool = False
    tag: str = "debug"
    callback: Optional[Callable[[DebugInfo], None]] = None


def _parse_body(content: bytes, content_type: str) -> Any:
    if not content:
        return None
    try:
        if "application/json" in content_type:
            return json.loads(content)
        text = content.decode("utf-8")
        if "application/x-www-form-urlencoded" in content_type:
            return dict(httpx.QueryParams(text))
        return text
    except ValueError as e:
        return f"[Body cannot be parsed: {e}]"


def _request_body(request: httpx.Request) -> Any:
    try:
        content = request.content
    except httpx.RequestNotRead:
        return "[streaming body]"
    return _parse_body(content, request.headers.get("content-type", ""))


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# =============================================================================
# Middleware
# =============================================================================


def logging_middleware(options: Optional[LoggingOptions] = None) -> Middleware:
    """
    Create request/response logging middleware.

    Args:
        options: What to log and where to send DebugInfo records.

    Returns:
        Middleware logging each call.
    """
    options = options or LoggingOptions()

    def emit(info: DebugInfo) -> None:
        if options.callback is None:
            return
        try:
            options.callback(info)
        except Exception as e:
            # A failing callback never replaces the call's own outcome
            logger.error("debug callback failed", tag=options.tag, event_type=info.type, error=str(e))

    async def log_requests(
        request: httpx.Request, context: CallContext, call_next: Handler
    ) -> httpx.Response:
        start_time = time.perf_counter()
        method = request.method
        url = str(request.url)

        state = context.metadata.extra.setdefault(
            DEBUG_METADATA_KEY, {"request_logged": False, "response_logged": False}
        )

        if options.log_request and not state["request_logged"]:
            state["request_logged"] = True
            headers = redact_sensitive_headers(request.headers)
            body = None
            if options.log_bodies and method not in ("GET", "HEAD"):
                body = _request_body(request)
            logger.debug("outbound request", tag=options.tag, method=method, url=url, headers=headers)
            emit(
                DebugInfo(
                    timestamp=_now_iso(),
                    tag=options.tag,
                    type="request",
                    endpoint=f"{method} {url}",
                    headers=headers,
                    body=body,
                    metadata={"query_params": request.url.query.decode("ascii", "replace")},
                )
            )

        try:
            response = await call_next(request, context)
        except Exception as e:
            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.error(
                "outbound request failed",
                tag=options.tag,
                method=method,
                url=url,
                error=f"{type(e).__name__}: {e}",
                duration_ms=round(duration_ms, 2),
            )
            emit(
                DebugInfo(
                    timestamp=_now_iso(),
                    tag=options.tag,
                    type="error",
                    endpoint=f"ERROR ({method} {url})",
                    headers=redact_sensitive_headers(request.headers),
                    error={
                        "message": str(e),
                        "type": type(e).__name__,
                        "status": getattr(e, "status_code", None),
                        "details": getattr(e, "body", None),
                    },
                    metadata={"duration_ms": duration_ms},
                )
            )
            raise

        duration_ms = (time.perf_counter() - start_time) * 1000
        response_state = get_metadata(response).extra.setdefault(DEBUG_METADATA_KEY, dict(state))

        if options.log_response and not response_state.get("response_logged"):
            response_state["response_logged"] = True
            body = None
            if options.log_bodies:
                await response.aread()
                body = _parse_body(response.content, response.headers.get("content-type", ""))

            log = logger.warning if response.status_code >= 400 else logger.info
            log(
                "outbound response",
                tag=options.tag,
                method=method,
                url=url,
                status_code=response.status_code,
                duration_ms=round(duration_ms, 2),
            )
            emit(
                DebugInfo(
                    timestamp=_now_iso(),
                    tag=options.tag,
                    type="response",
                    endpoint=f"{response.status_code} {response.reason_phrase} ({method} {url})",
                    headers=redact_sensitive_headers(response.headers),
                    body=body,
                    metadata={"duration_ms": duration_ms},
                )
            )

        return response

    return log_requests
