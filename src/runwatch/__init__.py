"""
runwatch - resilient supervision of long-running remote executions.

Start a remote execution, follow its status with adaptive polling, resume
it when it waits for input, and cancel it, with retries and per-endpoint
circuit breaking around every remote call.

Packages:
- runwatch.core: errors, structured logging, settings
- runwatch.execution: breaker, polling engine, recovery wrapper, gateway, client

The timeout error is exported as ``runwatch.core.TimeoutError`` only, so
``from runwatch import *`` leaves the builtin ``TimeoutError`` alone.
"""

__version__ = "0.1.0"

from runwatch.core.errors import (
    AuthError,
    CircuitOpenError,
    ClientError,
    ConfigError,
    NetworkError,
    ParseError,
    RateLimitError,
    RetryExhaustedError,
    RunwatchError,
    ServerError,
    TransientError,
    UnknownError,
    ValidationError,
)
from runwatch.execution import (
    Escalate,
    ExecutionMonitor,
    ExecutionRecord,
    ExecutionStatus,
    Fallback,
    HttpExecutionGateway,
    PollingEngine,
    PollingStrategy,
    RestartFromSource,
    Retry,
    RetryCircuitBreaker,
    SkipAndContinue,
    wrap,
)

__all__ = [
    "__version__",
    # errors
    "AuthError",
    "CircuitOpenError",
    "ClientError",
    "ConfigError",
    "NetworkError",
    "ParseError",
    "RateLimitError",
    "RetryExhaustedError",
    "RunwatchError",
    "ServerError",
    "TransientError",
    "UnknownError",
    "ValidationError",
    # client
    "ExecutionMonitor",
    "ExecutionRecord",
    "ExecutionStatus",
    "HttpExecutionGateway",
    "PollingEngine",
    "PollingStrategy",
    "RetryCircuitBreaker",
    # recovery
    "Escalate",
    "Fallback",
    "RestartFromSource",
    "Retry",
    "SkipAndContinue",
    "wrap",
]
