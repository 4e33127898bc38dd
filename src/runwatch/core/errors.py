"""
Structured error types for runwatch.

Every failure that crosses the remote-execution boundary is expressed as a
:class:`RunwatchError` subclass. The type decides three things the engine
cares about: whether the call may be retried, whether the failure counts
against the endpoint's circuit health, and which category it is reported
under in logs.

Manifesto:
    - **Typed taxonomy:** Network, timeout, server, client, auth, rate limit,
      circuit-open and unknown failures are distinct types
    - **Explicit retry semantics:** Each error knows if it's retryable
    - **Circuit semantics:** Validation-class client errors never trip a breaker
    - **Error chaining:** The transport exception is kept as ``cause``

Architecture:
    ::

        ┌──────────────────────────────────────────────────────────────┐
        │                        RunwatchError                          │
        │      (category, retryable, retry_after, context, cause)       │
        ├──────────────────────────────────────────────────────────────┤
        │  TransientError (retryable)      ClientError (4xx)            │
        │    NetworkError                    ValidationError            │
        │    TimeoutError                      ParseError               │
        │    ServerError (5xx)             AuthError (401/403)          │
        │    RateLimitError (429)                                       │
        │                                                               │
        │  CircuitOpenError   RetryExhaustedError   ConfigError         │
        │  UnknownError                                                 │
        └──────────────────────────────────────────────────────────────┘

Examples:
    >>> error = ServerError("bad gateway", status_code=502)
    >>> error.retryable
    True
    >>> affects_circuit_health(ValidationError("missing field"))
    False

    >>> try:
    ...     raise ConnectionRefusedError("refused")
    ... except OSError as e:
    ...     classify_error(e)
    NetworkError('refused', category=NETWORK)

Tags:
    error-handling, exception-hierarchy, retry-logic, circuit-breaker,
    runwatch, observability
"""

from __future__ import annotations

import asyncio
import builtins
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and log routing."""

    NETWORK = "NETWORK"           # Connection refused, DNS, reset
    TIMEOUT = "TIMEOUT"           # Per-call deadline exceeded
    SERVER = "SERVER"             # 5xx responses
    RATE_LIMIT = "RATE_LIMIT"     # 429 responses
    CLIENT = "CLIENT"             # 4xx responses
    VALIDATION = "VALIDATION"     # Bad input, unparseable payloads
    AUTH = "AUTH"                 # 401 / 403
    CIRCUIT = "CIRCUIT"           # Synthetic fail-fast from the breaker
    CONFIG = "CONFIG"             # Missing or invalid settings
    UNKNOWN = "UNKNOWN"           # Uncategorized errors


@dataclass
class ErrorContext:
    """
    Structured metadata attached to an error.

    Only non-None fields end up in :meth:`to_dict`, so the context can be
    splatted straight into a structlog call.

    Attributes:
        endpoint: Logical endpoint key (``get-status``, ``resume``...)
        execution_id: Remote execution the call was about
        url: URL that was being accessed
        http_status: HTTP status code if applicable
        attempt: 1-based attempt number when the error was raised
        metadata: Additional key-value pairs
    """

    endpoint: str | None = None
    execution_id: str | None = None
    url: str | None = None
    http_status: int | None = None
    attempt: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["endpoint", "execution_id", "url", "http_status", "attempt"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class RunwatchError(Exception):
    """
    Base exception for all runwatch errors.

    Subclasses set ``default_category``, ``default_retryable`` and
    ``counts_toward_circuit`` so that call sites rarely pass them explicitly.

    Examples:
        >>> error = RunwatchError("Fetch failed").with_context(endpoint="get-status")
        >>> error.context.endpoint
        'get-status'
        >>> error.to_dict()["category"]
        'UNKNOWN'
    """

    default_category: ErrorCategory = ErrorCategory.UNKNOWN
    default_retryable: bool = False
    # Whether a failure of this type marks the endpoint as unhealthy
    counts_toward_circuit: bool = True

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        retry_after: float | None = None,
        status_code: int | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.retry_after = retry_after
        self.status_code = status_code
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> RunwatchError:
        """
        Add context to this error (fluent API).

        Usage:
            raise ClientError("Rejected").with_context(
                endpoint="resume",
                execution_id="1234",
            )
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.status_code is not None:
            result["status_code"] = self.status_code
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# TRANSIENT ERRORS (Retryable)
# =============================================================================


class TransientError(RunwatchError):
    """
    Temporary failure that may succeed on retry.

    Retried locally by the RetryCircuitBreaker up to its budget, and counted
    against the endpoint's circuit.
    """

    default_category = ErrorCategory.NETWORK
    default_retryable = True


class NetworkError(TransientError):
    """Connection-level failure (refused, reset, DNS)."""

    default_category = ErrorCategory.NETWORK


class TimeoutError(TransientError):  # noqa: A001
    """A single remote call exceeded its timeout."""

    default_category = ErrorCategory.TIMEOUT

    def __init__(self, message: str = "Remote call timed out", *, timeout: float | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.timeout = timeout
        if timeout is not None:
            self.context.metadata.setdefault("timeout", timeout)


class ServerError(TransientError):
    """The remote side answered with a 5xx status."""

    default_category = ErrorCategory.SERVER


class RateLimitError(TransientError):
    """Rate limit exceeded; ``retry_after`` carries the advertised delay."""

    default_category = ErrorCategory.RATE_LIMIT

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        *,
        retry_after: float | None = None,
        status_code: int | None = 429,
        **kwargs: Any,
    ):
        super().__init__(message, retry_after=retry_after, status_code=status_code, **kwargs)


# =============================================================================
# CLIENT / AUTH ERRORS (Not retryable)
# =============================================================================


class ClientError(RunwatchError):
    """
    The remote side rejected the request (4xx).

    Not retryable, but still counts toward circuit health: a stream of
    unexpected 4xx usually means the endpoint itself is in trouble.
    """

    default_category = ErrorCategory.CLIENT
    default_retryable = False


class ValidationError(ClientError):
    """
    Validation-class rejection (400, 404, 409, 422) or a local payload error.

    The request was wrong, not the endpoint, so the circuit is left alone.
    """

    default_category = ErrorCategory.VALIDATION
    counts_toward_circuit = False


class ParseError(ValidationError):
    """The remote payload could not be turned into a typed result."""

    def __init__(self, message: str, *, payload: Any = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.payload = payload


class AuthError(RunwatchError):
    """Authentication or authorization failure (401/403)."""

    default_category = ErrorCategory.AUTH
    default_retryable = False


# =============================================================================
# ENGINE ERRORS
# =============================================================================


class CircuitOpenError(RunwatchError):
    """
    Synthetic fail-fast signal raised while an endpoint's circuit is open.

    No network attempt was made. Never retried by the breaker itself.
    """

    default_category = ErrorCategory.CIRCUIT
    default_retryable = False
    counts_toward_circuit = False

    def __init__(
        self,
        endpoint_key: str,
        *,
        opened_until: float | None = None,
        message: str | None = None,
        **kwargs: Any,
    ):
        super().__init__(message or f"Circuit '{endpoint_key}' is open, rejecting request", **kwargs)
        self.endpoint_key = endpoint_key
        self.opened_until = opened_until
        self.context.endpoint = endpoint_key


class RetryExhaustedError(RunwatchError):
    """
    All retry attempts failed with transient errors.

    Wraps the last error with the retry metadata: ``attempts`` made and the
    ``total_delay`` slept between them.
    """

    default_retryable = False

    def __init__(
        self,
        endpoint_key: str,
        last_error: RunwatchError,
        *,
        attempts: int,
        total_delay: float,
    ):
        super().__init__(
            f"'{endpoint_key}' failed after {attempts} attempt(s): {last_error.message}",
            category=last_error.category,
            status_code=last_error.status_code,
            cause=last_error,
        )
        self.endpoint_key = endpoint_key
        self.last_error = last_error
        self.attempts = attempts
        self.total_delay = total_delay
        self.with_context(endpoint=endpoint_key, attempt=attempts)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["attempts"] = self.attempts
        result["total_delay"] = round(self.total_delay, 3)
        result["last_error"] = self.last_error.to_dict()
        return result


class ConfigError(RunwatchError):
    """Invalid configuration. Never retryable."""

    default_category = ErrorCategory.CONFIG
    counts_toward_circuit = False


class UnknownError(RunwatchError):
    """Unclassified failure raised by an operation."""

    default_category = ErrorCategory.UNKNOWN


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def is_retryable(error: BaseException) -> bool:
    """Check if an error is retryable."""
    if isinstance(error, RunwatchError):
        return error.retryable
    return is_retryable(classify_error(error))


def get_retry_after(error: BaseException) -> float | None:
    """Get the advertised retry delay from an error, if any."""
    if isinstance(error, RunwatchError):
        return error.retry_after
    return None


def affects_circuit_health(error: BaseException) -> bool:
    """True if this failure should count against the endpoint's circuit."""
    if isinstance(error, RunwatchError):
        return error.counts_toward_circuit
    return classify_error(error).counts_toward_circuit


def classify_error(error: BaseException) -> RunwatchError:
    """Map an arbitrary exception onto the runwatch taxonomy.

    RunwatchError instances are returned unchanged. Builtin timeouts and
    connection errors become transient errors; anything else is wrapped in
    :class:`UnknownError` with the original kept as ``cause``.
    """
    if isinstance(error, RunwatchError):
        return error
    if isinstance(error, (builtins.TimeoutError, asyncio.TimeoutError)):
        return TimeoutError(str(error) or "Remote call timed out", cause=error)
    if isinstance(error, (ConnectionError, OSError)):
        return NetworkError(str(error) or error.__class__.__name__, cause=error)
    return UnknownError(f"Unclassified error: {error!r}", cause=error)


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "RunwatchError",
    # Transient
    "TransientError",
    "NetworkError",
    "TimeoutError",
    "ServerError",
    "RateLimitError",
    # Client / auth
    "ClientError",
    "ValidationError",
    "ParseError",
    "AuthError",
    # Engine
    "CircuitOpenError",
    "RetryExhaustedError",
    "ConfigError",
    "UnknownError",
    # Utilities
    "is_retryable",
    "get_retry_after",
    "affects_circuit_health",
    "classify_error",
]
