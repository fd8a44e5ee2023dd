"""
Core module for the Schwab request pipeline.

This module contains configuration and the error taxonomy.
"""

from schwab_pipeline.core.config import Settings, get_settings
from schwab_pipeline.core.exceptions import (
    ApiError,
    AuthError,
    AuthErrorCode,
    AuthorizationError,
    ClientError,
    CommunicationError,
    ErrorCode,
    ErrorResponseMetadata,
    NetworkError,
    PipelineException,
    RateLimitError,
    RequestTimeoutError,
    ServerError,
    create_api_error,
    extract_error_metadata,
    handle_api_error,
    to_pipeline_error,
)

__all__ = [
    # Config
    "Settings",
    "get_settings",
    # Exceptions
    "ErrorCode",
    "AuthErrorCode",
    "ErrorResponseMetadata",
    "PipelineException",
    "AuthError",
    "ApiError",
    "RateLimitError",
    "ServerError",
    "ClientError",
    "AuthorizationError",
    "CommunicationError",
    "NetworkError",
    "RequestTimeoutError",
    # Helpers
    "create_api_error",
    "extract_error_metadata",
    "to_pipeline_error",
    "handle_api_error",
]
