"""Runwatch Execution — supervise remote executions resiliently.

WHY
───
A remote execution outlives any single HTTP call: it has to be started,
watched for minutes or days, resumed when it waits for input and sometimes
cancelled. Every one of those calls can fail. ``runwatch.execution`` puts
retry and circuit breaking around each call and turns status polling into a
stream that a caller can wrap with a recovery policy.

ARCHITECTURE
────────────
::

    ExecutionMonitor (caller surface)
      │
      ├── PollingEngine        ─ one asyncio task per monitored id
      │     └── MonitorStream  ─ distinct snapshots, exactly-once end
      ├── ResilientStream      ─ Retry / Fallback / Skip / Restart / Escalate
      └── RetryCircuitBreaker  ─ backoff + per-endpoint CircuitStore
            │
            ▼
      ExecutionGateway (protocol) ─ HttpExecutionGateway (httpx)

MODULE MAP
──────────
  1. models.py            ─ ExecutionStatus, ExecutionRecord, PollingSession
  2. retry.py             ─ ExponentialBackoff, RetryPolicy
  3. circuit_breaker.py   ─ CircuitStore, CircuitState, CircuitMode
  4. resilience.py        ─ RetryCircuitBreaker
  5. gateway.py           ─ ExecutionGateway, HttpExecutionGateway
  6. polling.py           ─ PollingEngine, MonitorStream, advance()
  7. recovery.py          ─ wrap(), ResilientStream, recovery policies
  8. client.py            ─ ExecutionMonitor

Example::

    from runwatch.execution import ExecutionMonitor, Retry

    async with ExecutionMonitor.from_settings() as client:
        execution_id = await client.start_execution("order-intake", {"sku": "A1"})
        async for record in client.monitor(execution_id, recovery=Retry(max_retries=5)):
            print(record.status)
"""

from .circuit_breaker import (
    CircuitBreakerConfig,
    CircuitMode,
    CircuitState,
    CircuitStats,
    CircuitStore,
    Permit,
)
from .client import ExecutionMonitor
from .gateway import (
    ExecutionGateway,
    HttpExecutionGateway,
    error_for_status,
    parse_retry_after,
)
from .models import (
    ExecutionRecord,
    ExecutionStatus,
    PollingSession,
    PollingStrategy,
    SessionOutcome,
)
from .polling import (
    MonitorStream,
    PollingConfig,
    PollingEngine,
    TickDecision,
    advance,
    record_failure,
    select_interval,
)
from .recovery import (
    Escalate,
    Fallback,
    RecoveryKind,
    RecoveryPolicy,
    ResilientStream,
    RestartFromSource,
    Retry,
    SkipAndContinue,
    StreamHealth,
    skip_errors,
    with_fallback,
    with_retry,
    wrap,
)
from .resilience import RetryCircuitBreaker
from .retry import ExponentialBackoff, RetryPolicy

__all__ = [
    # Circuit state
    "CircuitBreakerConfig",
    "CircuitMode",
    "CircuitState",
    "CircuitStats",
    "CircuitStore",
    "Permit",
    # Client
    "ExecutionMonitor",
    # Gateway
    "ExecutionGateway",
    "HttpExecutionGateway",
    "error_for_status",
    "parse_retry_after",
    # Models
    "ExecutionRecord",
    "ExecutionStatus",
    "PollingSession",
    "PollingStrategy",
    "SessionOutcome",
    # Polling
    "MonitorStream",
    "PollingConfig",
    "PollingEngine",
    "TickDecision",
    "advance",
    "record_failure",
    "select_interval",
    # Recovery
    "Escalate",
    "Fallback",
    "RecoveryKind",
    "RecoveryPolicy",
    "ResilientStream",
    "RestartFromSource",
    "Retry",
    "SkipAndContinue",
    "StreamHealth",
    "skip_errors",
    "with_fallback",
    "with_retry",
    "wrap",
    # Resilience
    "RetryCircuitBreaker",
    "ExponentialBackoff",
    "RetryPolicy",
]
