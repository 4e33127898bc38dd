"""ExecutionMonitor — the caller-facing surface of runwatch.

Bundles a gateway, one shared RetryCircuitBreaker and a PollingEngine:

* ``monitor()`` streams status snapshots, optionally under a recovery policy
* ``start_execution / resume_execution / cancel_execution`` go through the
  breaker under the endpoint keys ``start``, ``resume`` and ``cancel``
* ``execute_resilient()`` runs any caller operation under a named key

Example:
    >>> async with ExecutionMonitor.from_settings() as client:
    ...     execution_id = await client.start_execution("order-intake", {"sku": "A1"})
    ...     record = await client.wait_for_completion(execution_id)
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, TypeVar

from runwatch.core.errors import ValidationError
from runwatch.core.logging import get_logger
from runwatch.core.settings import RunwatchSettings, get_settings
from runwatch.execution.circuit_breaker import CircuitMode
from runwatch.execution.gateway import ExecutionGateway, HttpExecutionGateway
from runwatch.execution.models import ExecutionRecord, PollingStrategy
from runwatch.execution.polling import MonitorStream, PollingConfig, PollingEngine
from runwatch.execution.recovery import (
    Escalate,
    RecoveryPolicy,
    ResilientStream,
    Retry,
    SkipAndContinue,
    wrap,
)
from runwatch.execution.resilience import RetryCircuitBreaker

logger = get_logger(__name__)

T = TypeVar("T")

START_ENDPOINT = "start"
RESUME_ENDPOINT = "resume"
CANCEL_ENDPOINT = "cancel"


class ExecutionMonitor:
    """Start, supervise, resume and cancel remote executions."""

    def __init__(
        self,
        gateway: ExecutionGateway,
        breaker: RetryCircuitBreaker | None = None,
        polling: PollingConfig | None = None,
    ) -> None:
        self.gateway = gateway
        self.breaker = breaker or RetryCircuitBreaker()
        self.engine = PollingEngine(gateway, self.breaker, polling)

    @classmethod
    def from_settings(cls, settings: RunwatchSettings | None = None) -> ExecutionMonitor:
        """Build a client with an HTTP gateway from settings (env when omitted)."""
        settings = settings or get_settings()
        gateway = HttpExecutionGateway(
            settings.base_url,
            api_key=settings.api_key,
            api_key_header=settings.api_key_header,
            timeout=settings.request_timeout,
        )
        breaker = RetryCircuitBreaker(
            settings.retry_policy(),
            settings.circuit_config(),
            attempt_timeout=settings.attempt_timeout,
        )
        return cls(gateway, breaker, settings.polling_config())

    async def __aenter__(self) -> ExecutionMonitor:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Cancel every monitoring session and close the gateway if it can be closed."""
        await self.engine.shutdown()
        aclose = getattr(self.gateway, "aclose", None)
        if aclose is not None:
            await aclose()

    # ── Monitoring ───────────────────────────────────────────────────

    def monitor(
        self,
        execution_id: str,
        strategy: PollingStrategy | None = None,
        recovery: RecoveryPolicy | None = None,
    ) -> MonitorStream | ResilientStream[ExecutionRecord]:
        """Stream distinct status snapshots of ``execution_id`` until it ends.

        Without ``recovery`` (or with Escalate) the first unrecoverable error
        ends the stream. Retry and SkipAndContinue keep the polling session
        alive across errors; RestartFromSource starts a fresh session.
        """
        if recovery is None or isinstance(recovery, Escalate):
            return self.engine.monitor(execution_id, strategy)

        if isinstance(recovery, SkipAndContinue):
            continue_on_error, fatal = True, recovery.fatal_errors
        elif isinstance(recovery, Retry):
            continue_on_error, fatal = True, ()
        else:
            continue_on_error, fatal = False, ()

        def subscribe() -> MonitorStream:
            return self.engine.monitor(
                execution_id,
                strategy,
                continue_on_error=continue_on_error,
                fatal_errors=fatal,
            )

        return wrap(subscribe, recovery, stream_id=execution_id)

    async def wait_for_completion(
        self,
        execution_id: str,
        strategy: PollingStrategy | None = None,
        recovery: RecoveryPolicy | None = None,
    ) -> ExecutionRecord:
        """Monitor until the execution reaches a terminal status and return that record.

        Raises:
            ValidationError: the stream ended (cancelled or expired) without
                a terminal status
        """
        last: ExecutionRecord | None = None
        stream = self.monitor(execution_id, strategy, recovery)
        try:
            async for record in stream:
                last = record
                if record.is_terminal:
                    return record
        finally:
            await stream.aclose()
        raise ValidationError(
            f"Monitoring of '{execution_id}' ended before a terminal status"
            + (f" (last: {last.status.value})" if last is not None else "")
        ).with_context(execution_id=execution_id)

    async def watch(self, execution_ids: list[str], strategy: PollingStrategy | None = None) -> AsyncIterator[ExecutionRecord]:
        """Snapshots of several executions, each from its own session, in arrival order."""
        queue: asyncio.Queue[ExecutionRecord | BaseException | None] = asyncio.Queue()

        async def pump(execution_id: str) -> None:
            try:
                async with self.engine.monitor(execution_id, strategy) as stream:
                    async for record in stream:
                        queue.put_nowait(record)
            except Exception as exc:
                queue.put_nowait(exc)
            finally:
                queue.put_nowait(None)

        tasks = [asyncio.create_task(pump(execution_id)) for execution_id in execution_ids]
        remaining = len(tasks)
        try:
            while remaining:
                item = await queue.get()
                if item is None:
                    remaining -= 1
                elif isinstance(item, BaseException):
                    raise item
                else:
                    yield item
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    def cancel_monitoring(self, execution_id: str) -> bool:
        return self.engine.cancel(execution_id)

    # ── Remote commands ──────────────────────────────────────────────

    async def execute_resilient(self, endpoint_key: str, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` through the shared breaker under ``endpoint_key``."""
        return await self.breaker.execute(endpoint_key, operation)

    async def start_execution(self, trigger_id: str, payload: dict[str, Any] | None = None) -> str:
        return await self.breaker.execute(
            START_ENDPOINT, lambda: self.gateway.start_execution(trigger_id, payload)
        )

    async def resume_execution(self, execution_id: str, input_payload: dict[str, Any]) -> bool:
        return await self.breaker.execute(
            RESUME_ENDPOINT, lambda: self.gateway.resume_execution(execution_id, input_payload)
        )

    async def cancel_execution(self, execution_id: str) -> bool:
        """Cancel remotely and stop any local monitoring of the execution."""
        result = await self.breaker.execute(
            CANCEL_ENDPOINT, lambda: self.gateway.cancel_execution(execution_id)
        )
        self.engine.cancel(execution_id)
        return result

    # ── Observability ────────────────────────────────────────────────

    def circuit_mode(self, endpoint_key: str) -> CircuitMode:
        return self.breaker.circuit_mode(endpoint_key)

    def current_interval(self, execution_id: str) -> float | None:
        return self.engine.current_interval(execution_id)

    @property
    def active_sessions(self) -> list[str]:
        return self.engine.active_sessions
