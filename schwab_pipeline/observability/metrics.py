"""
Pipeline Metrics

Prometheus counters for the cross-cutting behaviour of the request
pipeline: retries, rate-limit queueing, token refreshes, and responses.

Metrics Provided:
- Retry attempts (counter, by reason)
- Requests queued by the rate limiter (counter)
- Token refreshes (counter, by outcome)
- Responses returned through the pipeline (counter, by status class)

Anti-Pattern Compliance:
- AP-1: Metric names as constants
"""

from prometheus_client import CollectorRegistry, Counter, generate_latest

# =============================================================================
# Constants (AP-1 Compliance: No duplicated string literals)
# =============================================================================

METRIC_RETRY_ATTEMPTS = "schwab_pipeline_retry_attempts_total"
METRIC_RATE_LIMIT_QUEUED = "schwab_pipeline_rate_limit_queued_total"
METRIC_TOKEN_REFRESHES = "schwab_pipeline_token_refreshes_total"
METRIC_RESPONSES = "schwab_pipeline_responses_total"

REGISTRY = CollectorRegistry(auto_describe=True)


RETRY_ATTEMPTS = Counter(
    name=METRIC_RETRY_ATTEMPTS,
    documentation="Total number of retried requests",
    labelnames=["reason"],
    registry=REGISTRY,
)

RATE_LIMIT_QUEUED = Counter(
    name=METRIC_RATE_LIMIT_QUEUED,
    documentation="Total number of requests held back by the client-side rate limiter",
    registry=REGISTRY,
)

TOKEN_REFRESHES = Counter(
    name=METRIC_TOKEN_REFRESHES,
    documentation="Total number of token refresh network calls",
    labelnames=["outcome"],
    registry=REGISTRY,
)

RESPONSES = Counter(
    name=METRIC_RESPONSES,
    documentation="Total number of responses returned through the pipeline",
    labelnames=["status_class"],
    registry=REGISTRY,
)


def record_retry_attempt(reason: str) -> None:
    """
    Record that a request is about to be retried.

    Args:
        reason: Short failure label, e.g. "429", "503", "network", "timeout"
    """
    RETRY_ATTEMPTS.labels(reason=reason).inc()


def record_rate_limit_queued() -> None:
    """Record a request that had to wait for the next window."""
    RATE_LIMIT_QUEUED.inc()


def record_token_refresh(outcome: str) -> None:
    """
    Record a token refresh network call.

    Args:
        outcome: "success" or "failure"
    """
    TOKEN_REFRESHES.labels(outcome=outcome).inc()


def record_response(status_code: int) -> None:
    """Record a response by status class (2xx, 4xx, ...)."""
    RESPONSES.labels(status_class=f"{status_code // 100}xx").inc()


def generate_metrics() -> bytes:
    """Render all pipeline metrics in Prometheus text format."""
    return generate_latest(REGISTRY)
