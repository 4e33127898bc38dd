"""RetryCircuitBreaker — bounded retry plus per-endpoint circuit breaking.

WHY
───
Every remote call the engine makes (status polls, resume, cancel) needs the
same treatment: retry transient failures with exponential backoff, stop
calling an endpoint that keeps failing, and surface a typed error when it
gives up. Concentrating that in one wrapper keeps the polling loop and the
caller-facing client free of retry bookkeeping.

ARCHITECTURE
────────────
::

    execute(endpoint_key, operation)
      │
      ├── CircuitStore.acquire(key) ── OPEN / trial busy ──► CircuitOpenError
      │
      ├── await operation()  (optional per-attempt timeout)
      │     ├── ok     ─► record_success ─► return
      │     └── error  ─► classify_error ─► record_failure(counts=?)
      │                     ├── not retryable      ─► raise error
      │                     ├── budget exhausted   ─► RetryExhaustedError
      │                     └── else sleep(backoff) and loop
      ▼
    CircuitStore (shared, lock-guarded, keyed by endpoint)

Example::

    breaker = RetryCircuitBreaker(RetryPolicy(max_retries=3))
    record = await breaker.execute("get-status", lambda: gateway.get_status("42"))
"""

from __future__ import annotations

import asyncio
import functools
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from runwatch.core import errors
from runwatch.core.errors import (
    CircuitOpenError,
    RetryExhaustedError,
    RunwatchError,
    classify_error,
)
from runwatch.core.logging import get_logger
from runwatch.execution.circuit_breaker import (
    CircuitBreakerConfig,
    CircuitMode,
    CircuitState,
    CircuitStore,
)
from runwatch.execution.retry import RetryPolicy

logger = get_logger(__name__)

T = TypeVar("T")

Sleeper = Callable[[float], Awaitable[Any]]


class RetryCircuitBreaker:
    """Retry + circuit breaker around single remote calls.

    Parameters
    ----------
    policy : RetryPolicy
        Retry budget and backoff schedule.
    circuit : CircuitBreakerConfig | CircuitStore
        Either thresholds for a fresh store or an existing store to share.
    attempt_timeout : float | None
        Per-attempt timeout in seconds; expiry is a transient TimeoutError.
    sleep : callable
        Awaitable sleep used between attempts (injectable for tests).
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        circuit: CircuitBreakerConfig | CircuitStore | None = None,
        *,
        attempt_timeout: float | None = None,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self.policy = policy or RetryPolicy()
        if isinstance(circuit, CircuitStore):
            self.store = circuit
        else:
            self.store = CircuitStore(circuit)
        self.attempt_timeout = attempt_timeout
        self._sleep = sleep

    # ── Execution ────────────────────────────────────────────────────

    async def execute(self, endpoint_key: str, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` with retry and circuit protection.

        Raises:
            CircuitOpenError: circuit open (or trial busy); no attempt made
            RetryExhaustedError: every attempt failed with a transient error
            RunwatchError: first non-retryable failure, unchanged
        """
        attempt = 0
        total_delay = 0.0
        last_error: RunwatchError | None = None

        while True:
            try:
                permit = self.store.acquire(endpoint_key)
            except CircuitOpenError as exc:
                if last_error is not None:
                    logger.warning(
                        "retry.circuit_opened_mid_retry",
                        endpoint=endpoint_key,
                        attempts=attempt,
                    )
                    raise exc from last_error
                logger.debug("retry.rejected", endpoint=endpoint_key)
                raise

            try:
                result = await self._invoke(operation)
            except Exception as exc:
                error = classify_error(exc)
                error.with_context(endpoint=endpoint_key, attempt=attempt + 1)
                self.store.record_failure(
                    endpoint_key, permit, counts=errors.affects_circuit_health(error)
                )
                last_error = error

                if not error.retryable:
                    logger.info(
                        "retry.not_retryable",
                        endpoint=endpoint_key,
                        error_type=type(error).__name__,
                        message=error.message,
                    )
                    if error is exc:
                        raise
                    raise error from exc

                if not self.policy.should_retry(attempt, error):
                    logger.warning(
                        "retry.exhausted",
                        endpoint=endpoint_key,
                        attempts=attempt + 1,
                        total_delay=round(total_delay, 3),
                        error_type=type(error).__name__,
                    )
                    raise RetryExhaustedError(
                        endpoint_key, error, attempts=attempt + 1, total_delay=total_delay
                    ) from error

                delay = self.policy.delay_for(attempt, error)
                logger.info(
                    "retry.attempt_failed",
                    endpoint=endpoint_key,
                    attempt=attempt + 1,
                    delay=round(delay, 3),
                    error_type=type(error).__name__,
                )
                await self._sleep(delay)
                total_delay += delay
                attempt += 1
                continue
            except BaseException:
                # Cancelled mid-call: free the half-open slot, record nothing.
                self.store.release(permit)
                raise

            self.store.record_success(endpoint_key, permit)
            if attempt:
                logger.info("retry.recovered", endpoint=endpoint_key, attempts=attempt + 1)
            return result

    async def _invoke(self, operation: Callable[[], Awaitable[T]]) -> T:
        if self.attempt_timeout is None:
            return await operation()
        try:
            async with asyncio.timeout(self.attempt_timeout):
                return await operation()
        except TimeoutError as exc:
            # builtin TimeoutError, raised by asyncio.timeout
            raise errors.TimeoutError(
                f"Attempt exceeded {self.attempt_timeout}s", timeout=self.attempt_timeout, cause=exc
            ) from exc

    def protect(self, endpoint_key: str) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
        """Decorator routing every call of an async function through :meth:`execute`.

        Example:
            >>> @breaker.protect("resume")
            ... async def resume(execution_id, payload):
            ...     return await gateway.resume_execution(execution_id, payload)
        """

        def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
            @functools.wraps(func)
            async def wrapper(*args: Any, **kwargs: Any) -> T:
                return await self.execute(endpoint_key, lambda: func(*args, **kwargs))

            return wrapper

        return decorator

    # ── Observability ────────────────────────────────────────────────

    def circuit_mode(self, endpoint_key: str) -> CircuitMode:
        return self.store.mode(endpoint_key)

    def circuit_state(self, endpoint_key: str) -> CircuitState:
        return self.store.snapshot(endpoint_key)

    def circuit_states(self) -> dict[str, CircuitState]:
        return self.store.snapshots()

    def reset(self, endpoint_key: str | None = None) -> None:
        self.store.reset(endpoint_key)
