"""
Custom exceptions for the Schwab request pipeline.

This module provides the unified error taxonomy used by every pipeline
layer. All exceptions inherit from PipelineException and carry an error
code, so callers can branch on the code instead of parsing messages.

Taxonomy:
- AuthError: credential problems (missing token, expired refresh token)
- ApiError and subclasses: HTTP failures returned by the brokerage API
  (RateLimitError 429, ServerError 5xx, ClientError other 4xx)
- CommunicationError: network failures and timeouts during dispatch

Each exception answers is_retryable(); the retry middleware consults it
rather than inspecting types.

Reference:
- GUIDELINES: Specific exceptions, always capture with 'as e'
- ANTI_PATTERN_ANALYSIS: Exception handling patterns
"""

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any, NoReturn, Optional

import httpx


# =============================================================================
# Error Codes
# =============================================================================


class ErrorCode(str, Enum):
    """
    Error codes for API and transport failures.

    These codes provide a consistent way to identify error types
    across the pipeline and in logging.
    """

    PIPELINE_ERROR = "PIPELINE_ERROR"
    NETWORK = "NETWORK"
    TIMEOUT = "TIMEOUT"
    RATE_LIMIT = "RATE_LIMIT"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    INVALID_REQUEST = "INVALID_REQUEST"
    NOT_FOUND = "NOT_FOUND"
    SERVER_ERROR = "SERVER_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    GATEWAY_ERROR = "GATEWAY_ERROR"
    UNKNOWN = "UNKNOWN"


class AuthErrorCode(str, Enum):
    """Error codes for credential failures raised by the token layer."""

    INVALID_TOKEN = "INVALID_TOKEN"
    UNAUTHORIZED = "UNAUTHORIZED"
    # Refresh token outlived its validity window; a new authorization flow is required
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    REFRESH_NEEDED = "REFRESH_NEEDED"
    NETWORK = "NETWORK"
    UNKNOWN = "UNKNOWN"


_STATUS_TO_CODE: dict[int, ErrorCode] = {
    400: ErrorCode.INVALID_REQUEST,
    401: ErrorCode.UNAUTHORIZED,
    403: ErrorCode.FORBIDDEN,
    404: ErrorCode.NOT_FOUND,
    408: ErrorCode.TIMEOUT,
    429: ErrorCode.RATE_LIMIT,
    500: ErrorCode.SERVER_ERROR,
    502: ErrorCode.GATEWAY_ERROR,
    503: ErrorCode.SERVICE_UNAVAILABLE,
    504: ErrorCode.GATEWAY_ERROR,
}

REQUEST_ID_HEADERS = (
    "x-request-id",
    "x-correlation-id",
    "request-id",
    "x-schwab-client-correlid",
    "correlation-id",
)


def map_status_to_error_code(status_code: int) -> ErrorCode:
    """Map an HTTP status code to an ErrorCode."""
    if status_code in _STATUS_TO_CODE:
        return _STATUS_TO_CODE[status_code]
    if status_code >= 500:
        return ErrorCode.SERVER_ERROR
    return ErrorCode.UNKNOWN


# =============================================================================
# Error Response Metadata
# =============================================================================


@dataclass
class ErrorResponseMetadata:
    """
    Retry hints and debugging context extracted from a response.

    Attributes:
        retry_after_seconds: Retry-After header given in seconds.
        retry_after_date: Retry-After header given as an HTTP date.
        rate_limit_limit: Value of X-RateLimit-Limit.
        rate_limit_remaining: Value of X-RateLimit-Remaining.
        rate_limit_reset: Value of X-RateLimit-Reset (epoch seconds).
        request_id: Server-side request identifier, if any.
        endpoint_path: Path of the originating request.
        request_method: Method of the originating request.
        headers: Lower-cased response headers.
    """

    retry_after_seconds: Optional[float] = None
    retry_after_date: Optional[datetime] = None
    rate_limit_limit: Optional[int] = None
    rate_limit_remaining: Optional[int] = None
    rate_limit_reset: Optional[int] = None
    request_id: Optional[str] = None
    endpoint_path: Optional[str] = None
    request_method: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    headers: dict[str, str] = field(default_factory=dict)


def _parse_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value.strip())
    except ValueError:
        return None


def extract_error_metadata(
    response: httpx.Response,
    request: Optional[httpx.Request] = None,
) -> ErrorResponseMetadata:
    """
    Extract retry hints and request context from response headers.

    Retry-After may be given in seconds or as an HTTP date; both forms are
    recognized. Unparseable values are ignored.

    Args:
        response: The HTTP response to inspect.
        request: Originating request, for endpoint context (optional).

    Returns:
        ErrorResponseMetadata with whatever hints the server supplied.
    """
    headers = {key.lower(): value for key, value in response.headers.items()}
    metadata = ErrorResponseMetadata(headers=headers)

    for header in REQUEST_ID_HEADERS:
        if header in headers:
            metadata.request_id = headers[header]
            break

    if request is not None:
        metadata.endpoint_path = request.url.path
        metadata.request_method = request.method

    retry_after = headers.get("retry-after")
    if retry_after:
        try:
            metadata.retry_after_seconds = float(retry_after.strip())
        except ValueError:
            try:
                metadata.retry_after_date = parsedate_to_datetime(retry_after)
            except (TypeError, ValueError):
                pass

    metadata.rate_limit_limit = _parse_int(headers.get("x-ratelimit-limit"))
    metadata.rate_limit_remaining = _parse_int(headers.get("x-ratelimit-remaining"))
    metadata.rate_limit_reset = _parse_int(headers.get("x-ratelimit-reset"))

    return metadata


# =============================================================================
# Base Exception
# =============================================================================


class PipelineException(Exception):
    """
    Base exception for all pipeline errors.

    All custom exceptions in the pipeline inherit from this class,
    providing consistent error handling and structured error information.

    Attributes:
        message: Human-readable error message.
        error_code: Machine-readable error code.
    """

    def __init__(
        self,
        message: str,
        error_code: str = ErrorCode.PIPELINE_ERROR,
        **kwargs: Any,
    ) -> None:
        """
        Initialize the exception.

        Args:
            message: Human-readable error message.
            error_code: Machine-readable error code.
            **kwargs: Additional attributes to set on the exception.
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code

        for key, value in kwargs.items():
            setattr(self, key, value)

    def is_retryable(self) -> bool:
        """Whether the failed call may be attempted again. False by default."""
        return False


# =============================================================================
# Credential Errors
# =============================================================================


class AuthError(PipelineException):
    """
    Exception for credential failures.

    Raised by the token layer when no token can be obtained, when the
    refresh token has expired, or when the authorization server rejects
    the client. Only network failures are worth retrying; everything else
    needs a caller decision (usually a new authorization flow).

    Attributes:
        code: AuthErrorCode describing the failure.
        status_code: HTTP status from the token endpoint (if applicable).
        body: Response body or error details (if available).
    """

    def __init__(
        self,
        code: AuthErrorCode,
        message: Optional[str] = None,
        status_code: Optional[int] = None,
        body: Any = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message or f"Auth error: {code.value}", code.value, **kwargs)
        self.code = code
        self.status_code = status_code
        self.body = body

    def is_retryable(self) -> bool:
        return self.code == AuthErrorCode.NETWORK


# =============================================================================
# API Errors
# =============================================================================


class ApiError(PipelineException):
    """
    Exception for failures reported by the brokerage API.

    Attributes:
        status_code: HTTP status code from the response.
        body: Parsed response body or error details.
        metadata: Retry hints and request context from the response headers.
    """

    RETRYABLE_STATUS_CODES = frozenset({0, 408, 429, 500, 502, 503, 504})

    def __init__(
        self,
        status_code: int,
        body: Any = None,
        message: Optional[str] = None,
        metadata: Optional[ErrorResponseMetadata] = None,
        error_code: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            message or f"API error: {status_code}",
            error_code or map_status_to_error_code(status_code),
            **kwargs,
        )
        self.status_code = status_code
        self.body = body
        self.metadata = metadata

    def has_retry_info(self) -> bool:
        """Whether the server supplied any retry hint."""
        if self.metadata is None:
            return False
        return (
            self.metadata.retry_after_seconds is not None
            or self.metadata.retry_after_date is not None
            or self.metadata.rate_limit_reset is not None
        )

    def get_retry_delay_ms(self) -> Optional[float]:
        """
        Get the server-suggested retry delay in milliseconds.

        Precedence: Retry-After seconds, Retry-After date, X-RateLimit-Reset.

        Returns:
            Delay in milliseconds (never negative), or None without a hint.
        """
        if self.metadata is None:
            return None

        if self.metadata.retry_after_seconds is not None:
            return max(0.0, self.metadata.retry_after_seconds * 1000)

        if self.metadata.retry_after_date is not None:
            retry_at = self.metadata.retry_after_date
            if retry_at.tzinfo is None:
                retry_at = retry_at.replace(tzinfo=timezone.utc)
            delay = (retry_at - datetime.now(timezone.utc)).total_seconds() * 1000
            return max(0.0, delay)

        if self.metadata.rate_limit_reset is not None:
            delay = self.metadata.rate_limit_reset * 1000 - time.time() * 1000
            return max(0.0, delay)

        return None

    @property
    def request_id(self) -> Optional[str]:
        return self.metadata.request_id if self.metadata else None

    def is_retryable(self) -> bool:
        return self.status_code in self.RETRYABLE_STATUS_CODES


class RateLimitError(ApiError):
    """HTTP 429 returned by the API. Always retryable within budget."""

    def __init__(self, body: Any = None, message: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(429, body, message or "Rate limit exceeded", **kwargs)

    def is_retryable(self) -> bool:
        return True


class ServerError(ApiError):
    """Any 5xx returned by the API. Always retryable within budget."""

    def is_retryable(self) -> bool:
        return True


class ClientError(ApiError):
    """4xx other than 429. The request itself is wrong; never retried."""

    def is_retryable(self) -> bool:
        return False


class AuthorizationError(ClientError):
    """HTTP 401 returned by the API."""

    def __init__(self, body: Any = None, message: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(401, body, message or "Unauthorized", **kwargs)


# =============================================================================
# Communication Errors
# =============================================================================


class CommunicationError(ApiError):
    """
    Failure to talk to the API at all (no HTTP status available).

    Attributes:
        cause: "network" or "timeout".
    """

    def __init__(
        self,
        cause: str,
        body: Any = None,
        message: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        error_code = ErrorCode.TIMEOUT if cause == "timeout" else ErrorCode.NETWORK
        super().__init__(0, body, message, error_code=error_code, **kwargs)
        self.cause = cause

    def is_retryable(self) -> bool:
        return True


class NetworkError(CommunicationError):
    """Connection refused, reset, DNS failure and similar transport errors."""

    def __init__(self, body: Any = None, message: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__("network", body, message or "Network error", **kwargs)


class RequestTimeoutError(CommunicationError):
    """The request did not complete in time."""

    def __init__(self, body: Any = None, message: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__("timeout", body, message or "Request timed out", **kwargs)


# =============================================================================
# Factories and Translation
# =============================================================================


def create_api_error(
    status_code: int,
    body: Any = None,
    message: Optional[str] = None,
    metadata: Optional[ErrorResponseMetadata] = None,
) -> ApiError:
    """
    Create the ApiError subclass matching an HTTP status code.

    Args:
        status_code: HTTP status (0 for "no response").
        body: Response body or error details.
        message: Human-readable message (optional).
        metadata: Retry hints from the response headers (optional).

    Returns:
        The most specific ApiError for the status.
    """
    if status_code == 0:
        return NetworkError(body, message, metadata=metadata)
    if status_code == 401:
        return AuthorizationError(body, message, metadata=metadata)
    if status_code == 429:
        return RateLimitError(body, message, metadata=metadata)
    if status_code >= 500:
        return ServerError(status_code, body, message, metadata=metadata)
    if 400 <= status_code < 500:
        return ClientError(status_code, body, message, metadata=metadata)
    return ApiError(status_code, body, message, metadata=metadata)


def to_pipeline_error(error: BaseException, context: Optional[str] = None) -> PipelineException:
    """
    Convert any exception into the pipeline taxonomy.

    Pipeline exceptions pass through unchanged. httpx timeouts become
    RequestTimeoutError, other httpx transport failures become NetworkError,
    and HTTP status errors become the matching ApiError. Anything else is
    wrapped in a non-retryable PipelineException. The caller is expected to
    chain the original with ``raise ... from error``.

    Args:
        error: The exception to convert.
        context: Prefix for the message, e.g. "GET https://...".

    Returns:
        A PipelineException describing the failure.
    """
    if isinstance(error, PipelineException):
        return error

    prefix = f"{context}: " if context else ""

    if isinstance(error, httpx.TimeoutException):
        converted: PipelineException = RequestTimeoutError(
            {"message": str(error)}, f"{prefix}Request timed out"
        )
    elif isinstance(error, httpx.TransportError):
        converted = NetworkError(
            {"message": str(error)}, f"{prefix}Network error - {error}"
        )
    elif isinstance(error, httpx.HTTPStatusError):
        response = error.response
        converted = create_api_error(
            response.status_code,
            None,
            f"{prefix}{error}",
            extract_error_metadata(response, error.request),
        )
    else:
        converted = PipelineException(
            f"{prefix}{error}" if str(error) else f"{prefix}{type(error).__name__}",
            ErrorCode.UNKNOWN,
        )

    converted.original_error = error
    return converted


def handle_api_error(error: BaseException, context: Optional[str] = None) -> NoReturn:
    """
    Raise the pipeline equivalent of ``error`` with its cause chained.

    Pipeline exceptions are re-raised as they are.

    Raises:
        PipelineException: Always.
    """
    converted = to_pipeline_error(error, context)
    if converted is error:
        raise converted
    raise converted from error
