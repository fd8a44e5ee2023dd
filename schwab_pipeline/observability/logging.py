"""
Structured Logging

JSON logging for the request pipeline, built on structlog.

Every event carries its level, an ISO 8601 UTC timestamp, the emitting
module (``logger_name``) and, inside correlation_id_context(), the caller's
correlation ID. The ID lives in structlog's context variables, so
concurrent calls on one event loop never see each other's value.

Pipeline modules call get_logger(__name__) at import time; the returned
proxy picks up whatever configure_logging() installed last.
"""

import logging
import sys
from contextlib import contextmanager
from typing import Iterator, Optional, TextIO

import structlog
from structlog.types import Processor


CORRELATION_ID_KEY = "correlation_id"

_configured = False


# =============================================================================
# Correlation ID
# =============================================================================


def set_correlation_id(correlation_id: str) -> None:
    """Bind ``correlation_id`` to all events logged from the current context."""
    structlog.contextvars.bind_contextvars(**{CORRELATION_ID_KEY: correlation_id})


def get_correlation_id() -> Optional[str]:
    return structlog.contextvars.get_contextvars().get(CORRELATION_ID_KEY)


def clear_correlation_id() -> None:
    structlog.contextvars.unbind_contextvars(CORRELATION_ID_KEY)


@contextmanager
def correlation_id_context(correlation_id: str) -> Iterator[None]:
    """
    Bind a correlation ID for the duration of a block.

    The previous value (if any) is restored on exit.

    Example:
        >>> with correlation_id_context("order-7f3a"):
        ...     await client.post("/trader/v1/accounts/123/orders", json=order)
    """
    with structlog.contextvars.bound_contextvars(**{CORRELATION_ID_KEY: correlation_id}):
        yield


# =============================================================================
# Configuration
# =============================================================================


def configure_logging(
    level: str = "INFO",
    stream: Optional[TextIO] = None,
    force: bool = False,
) -> None:
    """
    Install the pipeline's structlog configuration.

    Only the first call takes effect, so libraries embedding the pipeline
    can keep their own setup by configuring first.

    Args:
        level: Minimum level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        stream: Destination for JSON lines (default: sys.stderr).
        force: Replace an existing configuration (tests).
    """
    global _configured

    if _configured and not force:
        return

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(_level_to_int(level)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream or sys.stderr),
        cache_logger_on_first_use=False,
    )

    _configured = True


def reset_logging() -> None:
    """Forget that configure_logging() ran (tests only)."""
    global _configured
    _configured = False


def get_logger(name: str) -> structlog.BoundLogger:
    """
    Get a structured logger bound to ``name``.

    The logger resolves the structlog configuration on every call, so
    configure_logging() may run before or after modules are imported.

    Example:
        >>> logger = get_logger(__name__)
        >>> logger.info("token refreshed", expires_at=1700000000000)
    """
    return structlog.get_logger(logger_name=name)


def _level_to_int(level: str) -> int:
    value = logging.getLevelName(level.upper())
    return value if isinstance(value, int) else logging.INFO
