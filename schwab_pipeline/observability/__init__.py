"""
Observability Package

This package provides observability infrastructure for the pipeline:
- Structured JSON logging with correlation IDs
- Prometheus counters for retries, queueing, refreshes and responses
"""

from schwab_pipeline.observability.logging import (
    clear_correlation_id,
    configure_logging,
    correlation_id_context,
    get_correlation_id,
    get_logger,
    set_correlation_id,
)
from schwab_pipeline.observability.metrics import (
    generate_metrics,
    record_rate_limit_queued,
    record_response,
    record_retry_attempt,
    record_token_refresh,
)

__all__ = [
    # Logging
    "configure_logging",
    "get_logger",
    "set_correlation_id",
    "get_correlation_id",
    "clear_correlation_id",
    "correlation_id_context",
    # Metrics
    "generate_metrics",
    "record_retry_attempt",
    "record_rate_limit_queued",
    "record_token_refresh",
    "record_response",
]
