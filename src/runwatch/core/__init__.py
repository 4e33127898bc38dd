"""Runwatch Core -- errors, logging and settings shared by every component.

Architecture::

    errors.py      Typed error taxonomy (RunwatchError, TransientError, ...)
    logging.py     structlog configuration + context binding
    settings.py    RUNWATCH_* environment settings (pydantic-settings)

Examples:
    >>> from runwatch.core import ServerError, get_logger
    >>> ServerError("bad gateway", status_code=502).retryable
    True
"""

from .errors import (
    AuthError,
    CircuitOpenError,
    ClientError,
    ConfigError,
    ErrorCategory,
    ErrorContext,
    NetworkError,
    ParseError,
    RateLimitError,
    RetryExhaustedError,
    RunwatchError,
    ServerError,
    TimeoutError,  # noqa: A004
    TransientError,
    UnknownError,
    ValidationError,
    affects_circuit_health,
    classify_error,
    get_retry_after,
    is_retryable,
)
from .logging import (
    LogContext,
    bind_context,
    clear_context,
    configure_logging,
    get_logger,
    unbind_context,
)
from .settings import RunwatchSettings, clear_settings_cache, get_settings

__all__ = [
    # errors
    "AuthError",
    "CircuitOpenError",
    "ClientError",
    "ConfigError",
    "ErrorCategory",
    "ErrorContext",
    "NetworkError",
    "ParseError",
    "RateLimitError",
    "RetryExhaustedError",
    "RunwatchError",
    "ServerError",
    "TimeoutError",
    "TransientError",
    "UnknownError",
    "ValidationError",
    "affects_circuit_health",
    "classify_error",
    "get_retry_after",
    "is_retryable",
    # logging
    "LogContext",
    "bind_context",
    "clear_context",
    "configure_logging",
    "get_logger",
    "unbind_context",
    # settings
    "RunwatchSettings",
    "clear_settings_cache",
    "get_settings",
]
