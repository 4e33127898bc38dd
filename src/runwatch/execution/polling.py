"""Adaptive polling of remote executions — one task per monitored id.

WHY
───
A remote execution can run for seconds or for days, and may pause waiting
for a human. Polling it at a fixed rate either wastes requests or reports
changes late. Each monitored execution therefore gets its own session that
picks the next interval from what it has observed, suppresses repeated
snapshots, and stops exactly once when a terminal status shows up.

ARCHITECTURE
────────────
::

    PollingEngine.monitor(id) ──► MonitorStream (async iterator, lazy)
                                     │ first __anext__ starts
                                     ▼
                            asyncio.Task  _run()
                              loop:
                                wait(interval) or cancel
                                breaker.execute("get-status", gateway.get_status)
                                advance(session, record) ─► TickDecision
                                    emission? ─► queue ─► consumer
                                    finished? ─► end
                              finally: release session

    advance() / record_failure() are pure: (session, observation) ->
    (new session, emission?, next interval, finished).

Interval policy (ADAPTIVE)::

    new                          new_interval        (short)
    running, recent change       running_interval    (short)
    running, unchanged N ticks   running_interval * multiplier**k, capped
    waiting                      waiting_interval    (long)

Example::

    engine = PollingEngine(gateway, breaker)
    async with engine.monitor("42") as stream:
        async for record in stream:
            print(record.status)
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any

from runwatch.core.errors import AuthError, RunwatchError, ValidationError, classify_error
from runwatch.core.logging import get_logger
from runwatch.execution.gateway import ExecutionGateway
from runwatch.execution.models import (
    ExecutionRecord,
    ExecutionStatus,
    PollingSession,
    PollingStrategy,
    SessionOutcome,
    utcnow,
)
from runwatch.execution.resilience import RetryCircuitBreaker

logger = get_logger(__name__)

STATUS_ENDPOINT = "get-status"


@dataclass(frozen=True)
class PollingConfig:
    """Interval policy for polling sessions.

    Attributes:
        strategy: Default strategy for new sessions
        base_interval: FIXED interval and the BACKOFF starting point
        min_interval: Lower clamp for adaptive strategies
        max_interval: Upper clamp for adaptive strategies
        backoff_multiplier: Growth factor while nothing changes / on errors
        new_interval: ADAPTIVE interval for ``new``
        running_interval: ADAPTIVE interval for ``running`` right after a change
        waiting_interval: ADAPTIVE interval for ``waiting``
        stale_after_ticks: Identical ticks before a running interval starts growing
        max_consecutive_errors: With ``continue_on_error``, errors in a row
            after which the session gives up (None = never)
        max_session_duration: Seconds after which a session ends as expired
    """

    strategy: PollingStrategy = PollingStrategy.ADAPTIVE
    base_interval: float = 5.0
    min_interval: float = 1.0
    max_interval: float = 300.0
    backoff_multiplier: float = 1.5
    new_interval: float = 3.0
    running_interval: float = 2.0
    waiting_interval: float = 10.0
    stale_after_ticks: int = 3
    max_consecutive_errors: int | None = None
    max_session_duration: float | None = None

    def __post_init__(self) -> None:
        if self.min_interval > self.max_interval:
            raise ValueError("min_interval must not exceed max_interval")
        if self.backoff_multiplier < 1.0:
            raise ValueError(f"backoff_multiplier must be >= 1, got {self.backoff_multiplier}")

    @classmethod
    def minimal(cls) -> PollingConfig:
        return cls(strategy=PollingStrategy.FIXED, base_interval=30.0)

    @classmethod
    def high_frequency(cls) -> PollingConfig:
        return cls(
            strategy=PollingStrategy.ADAPTIVE,
            base_interval=1.0,
            min_interval=0.5,
            max_interval=30.0,
            new_interval=0.5,
            running_interval=1.0,
            waiting_interval=5.0,
        )

    @classmethod
    def balanced(cls) -> PollingConfig:
        return cls(
            strategy=PollingStrategy.HYBRID,
            base_interval=5.0,
            min_interval=2.0,
            max_interval=120.0,
            backoff_multiplier=1.3,
        )

    def clamp(self, interval: float) -> float:
        return max(self.min_interval, min(self.max_interval, interval))


@dataclass(frozen=True)
class TickDecision:
    """Outcome of applying one observation to a session."""

    session: PollingSession
    emission: ExecutionRecord | None
    next_interval: float
    finished: bool


# ── Pure decision logic ──────────────────────────────────────────────────


def _adaptive_interval(session: PollingSession, config: PollingConfig) -> float:
    status = session.last_observed_status
    if status is None or status.is_terminal:
        return config.clamp(config.base_interval)
    if status == ExecutionStatus.NEW:
        return config.clamp(config.new_interval)
    if status == ExecutionStatus.WAITING:
        return config.clamp(config.waiting_interval)

    idle_ticks = session.consecutive_identical_status_count
    if idle_ticks < config.stale_after_ticks:
        return config.clamp(config.running_interval)
    growth = config.backoff_multiplier ** (idle_ticks - config.stale_after_ticks + 1)
    return config.clamp(config.running_interval * growth)


def _backoff_interval(session: PollingSession, config: PollingConfig) -> float:
    growth = config.backoff_multiplier ** session.consecutive_identical_status_count
    return config.clamp(config.base_interval * growth)


def select_interval(session: PollingSession, config: PollingConfig) -> float:
    """Next polling interval for ``session`` under its strategy."""
    if session.strategy == PollingStrategy.FIXED:
        return config.base_interval
    if session.strategy == PollingStrategy.ADAPTIVE:
        return _adaptive_interval(session, config)
    if session.strategy == PollingStrategy.BACKOFF:
        return _backoff_interval(session, config)
    return max(_adaptive_interval(session, config), _backoff_interval(session, config))


def advance(
    session: PollingSession,
    record: ExecutionRecord,
    config: PollingConfig,
    now: datetime | None = None,
) -> TickDecision:
    """Apply one successful status observation to ``session``.

    A record is emitted only when its ``(status, wait_marker)`` differs from
    the last emitted one, and never after a terminal record was emitted.
    """
    now = now or utcnow()

    if session.finished:
        return TickDecision(session, None, session.current_interval, True)

    last = session.last_emitted
    changed = last is None or record.emission_key != last.emission_key
    identical = 0 if changed else session.consecutive_identical_status_count + 1

    updated = replace(
        session,
        last_observed_status=record.status,
        last_emitted=record if changed else last,
        last_activity_at=now,
        consecutive_identical_status_count=identical,
        polls=session.polls + 1,
        successful_polls=session.successful_polls + 1,
        consecutive_errors=0,
    )
    interval = select_interval(updated, config)
    updated = replace(updated, current_interval=interval)

    return TickDecision(
        session=updated,
        emission=record if changed else None,
        next_interval=interval,
        finished=record.is_terminal,
    )


def record_failure(
    session: PollingSession,
    error: RunwatchError,
    config: PollingConfig,
    now: datetime | None = None,
) -> TickDecision:
    """Apply one failed tick to ``session``; the interval backs off per error."""
    now = now or utcnow()
    consecutive = session.consecutive_errors + 1

    if session.strategy == PollingStrategy.FIXED:
        interval = config.base_interval
    else:
        interval = config.clamp(config.base_interval * config.backoff_multiplier ** consecutive)

    updated = replace(
        session,
        last_activity_at=now,
        polls=session.polls + 1,
        error_count=session.error_count + 1,
        consecutive_errors=consecutive,
        current_interval=interval,
    )
    return TickDecision(updated, None, interval, False)


# ── Session runtime ──────────────────────────────────────────────────────


class _End:
    pass


_END = _End()


@dataclass(frozen=True)
class _Failure:
    error: RunwatchError
    final: bool


class MonitorStream:
    """Async iterator over the snapshots of one polling session.

    The polling task starts on first iteration. Iteration ends after the
    terminal snapshot or on cancellation; an unrecoverable error is raised
    from ``__anext__`` after the session has been released.

    With ``continue_on_error`` a failed tick is still raised to the consumer,
    but the session stays alive and the next ``__anext__`` continues with
    the following ticks. Errors matching ``fatal_errors`` always end it.

    Leaving an ``async for`` loop early (``break``, cancellation of the
    consuming task) cancels the session. ``max_session_duration`` is
    enforced within the current wait, not after it.
    """

    def __init__(
        self,
        engine: PollingEngine,
        execution_id: str,
        config: PollingConfig,
        *,
        continue_on_error: bool = False,
        fatal_errors: tuple[type[BaseException], ...] = (AuthError,),
    ) -> None:
        self.execution_id = execution_id
        self.config = config
        self.continue_on_error = continue_on_error
        self.fatal_errors = fatal_errors
        self.session = PollingSession(
            execution_id=execution_id,
            strategy=config.strategy,
            current_interval=0.0,
        )
        self.outcome: SessionOutcome | None = None
        self._engine = engine
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._cancelled = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._exhausted = False

    # ── Iteration ────────────────────────────────────────────────────

    def __aiter__(self) -> AsyncIterator[ExecutionRecord]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[ExecutionRecord]:
        # A consumer leaving ``async for`` early closes this generator
        try:
            while True:
                try:
                    record = await self.__anext__()
                except StopAsyncIteration:
                    return
                yield record
        except (GeneratorExit, asyncio.CancelledError):
            self.cancel()
            raise

    async def __anext__(self) -> ExecutionRecord:
        if self._exhausted or self._cancelled.is_set():
            self._exhausted = True
            raise StopAsyncIteration
        self._ensure_started()

        item = await self._queue.get()
        if item is _END or self._cancelled.is_set():
            self._exhausted = True
            raise StopAsyncIteration
        if isinstance(item, _Failure):
            if item.final:
                self._exhausted = True
            raise item.error
        return item

    async def __aenter__(self) -> MonitorStream:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    @property
    def resumable(self) -> bool:
        """True while the session is alive and will keep producing after an error."""
        return self.continue_on_error and self.outcome is None and not self._exhausted

    @property
    def done(self) -> bool:
        return self.outcome is not None

    # ── Control ──────────────────────────────────────────────────────

    def cancel(self) -> bool:
        """Stop the session; no further ticks are scheduled. Idempotent."""
        if self.outcome is not None:
            return False
        self._cancelled.set()
        if self._task is None:
            self._close(SessionOutcome.CANCELLED)
        elif not self._task.done():
            self._task.cancel()
        return True

    async def aclose(self) -> None:
        """Cancel and wait for the polling task to finish."""
        self.cancel()
        if self._task is not None and not self._task.done():
            try:
                await self._task
            except asyncio.CancelledError:
                current = asyncio.current_task()
                if current is not None and current.cancelling():
                    raise

    def _ensure_started(self) -> None:
        if self._task is None and self.outcome is None:
            self._task = asyncio.get_running_loop().create_task(
                self._run(), name=f"runwatch-poll-{self.execution_id}"
            )

    async def _wait(self, interval: float) -> bool:
        """Sleep ``interval`` seconds; True if cancelled meanwhile."""
        try:
            async with asyncio.timeout(interval):
                await self._cancelled.wait()
        except TimeoutError:
            return False
        return True

    async def _poll_once(self) -> ExecutionRecord:
        gateway = self._engine.gateway
        return await self._engine.breaker.execute(
            STATUS_ENDPOINT, lambda: gateway.get_status(self.execution_id)
        )

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        deadline = (
            loop.time() + self.config.max_session_duration
            if self.config.max_session_duration is not None
            else None
        )
        interval = 0.0
        outcome = SessionOutcome.FAILED

        logger.info(
            "polling.session_started",
            execution_id=self.execution_id,
            strategy=self.session.strategy.value,
        )
        try:
            while True:
                if self._cancelled.is_set():
                    outcome = SessionOutcome.CANCELLED
                    return
                if interval > 0:
                    pause = interval
                    if deadline is not None:
                        pause = min(interval, max(0.0, deadline - loop.time()))
                    if await self._wait(pause):
                        outcome = SessionOutcome.CANCELLED
                        return
                    if pause < interval:
                        outcome = SessionOutcome.EXPIRED
                        return
                if deadline is not None and loop.time() >= deadline:
                    outcome = SessionOutcome.EXPIRED
                    return

                try:
                    record = await self._poll_once()
                except Exception as exc:
                    error = classify_error(exc)
                    decision = record_failure(self.session, error, self.config)
                    self.session = decision.session
                    fatal = (
                        not self.continue_on_error
                        or isinstance(error, self.fatal_errors)
                        or (
                            self.config.max_consecutive_errors is not None
                            and self.session.consecutive_errors >= self.config.max_consecutive_errors
                        )
                    )
                    logger.warning(
                        "polling.tick_failed",
                        execution_id=self.execution_id,
                        error_type=type(error).__name__,
                        message=error.message,
                        fatal=fatal,
                        next_interval=decision.next_interval,
                    )
                    self._queue.put_nowait(_Failure(error, final=fatal))
                    if fatal:
                        return
                    interval = decision.next_interval
                    continue

                decision = advance(self.session, record, self.config)
                self.session = decision.session
                if decision.emission is not None:
                    logger.debug(
                        "polling.emit",
                        execution_id=self.execution_id,
                        status=record.status.value,
                        next_interval=decision.next_interval,
                    )
                    self._queue.put_nowait(decision.emission)
                if decision.finished:
                    outcome = SessionOutcome.COMPLETED
                    return
                interval = decision.next_interval
        except asyncio.CancelledError:
            outcome = SessionOutcome.CANCELLED
            raise
        finally:
            self._close(outcome)

    def _close(self, outcome: SessionOutcome) -> None:
        if self.outcome is not None:
            return
        self.outcome = outcome
        if outcome in (SessionOutcome.CANCELLED, SessionOutcome.EXPIRED):
            self.session = replace(self.session, cancelled=True)
        self._queue.put_nowait(_END)
        self._engine._release(self)
        logger.info(
            "polling.session_ended",
            execution_id=self.execution_id,
            outcome=outcome.value,
            polls=self.session.polls,
            errors=self.session.error_count,
        )


class PollingEngine:
    """Owns the polling sessions of one client.

    Sessions share the engine's RetryCircuitBreaker (and therefore its
    circuit state) but are otherwise independent: each runs in its own task
    and cancelling one never affects another.
    """

    def __init__(
        self,
        gateway: ExecutionGateway,
        breaker: RetryCircuitBreaker | None = None,
        config: PollingConfig | None = None,
    ) -> None:
        self.gateway = gateway
        self.breaker = breaker or RetryCircuitBreaker()
        self.config = config or PollingConfig()
        self._sessions: dict[str, MonitorStream] = {}

    def monitor(
        self,
        execution_id: str,
        strategy: PollingStrategy | None = None,
        *,
        config: PollingConfig | None = None,
        continue_on_error: bool = False,
        fatal_errors: tuple[type[BaseException], ...] = (AuthError,),
    ) -> MonitorStream:
        """Start monitoring ``execution_id``.

        A live session for the same id is cancelled and replaced.
        """
        if not execution_id:
            raise ValidationError("Execution ID cannot be empty")

        effective = config or self.config
        if strategy is not None:
            effective = replace(effective, strategy=PollingStrategy(strategy))

        existing = self._sessions.get(execution_id)
        if existing is not None:
            logger.info("polling.session_replaced", execution_id=execution_id)
            existing.cancel()

        stream = MonitorStream(
            self,
            execution_id,
            effective,
            continue_on_error=continue_on_error,
            fatal_errors=fatal_errors,
        )
        self._sessions[execution_id] = stream
        return stream

    def cancel(self, execution_id: str) -> bool:
        """Cancel the session for ``execution_id``; False if none is live."""
        stream = self._sessions.get(execution_id)
        if stream is None:
            return False
        return stream.cancel()

    async def shutdown(self) -> None:
        """Cancel every live session and wait for their tasks."""
        streams = list(self._sessions.values())
        await asyncio.gather(*(stream.aclose() for stream in streams))

    def _release(self, stream: MonitorStream) -> None:
        if self._sessions.get(stream.execution_id) is stream:
            del self._sessions[stream.execution_id]

    # ── Observability ────────────────────────────────────────────────

    @property
    def active_sessions(self) -> list[str]:
        return list(self._sessions)

    def session(self, execution_id: str) -> PollingSession | None:
        stream = self._sessions.get(execution_id)
        return stream.session if stream is not None else None

    def current_interval(self, execution_id: str) -> float | None:
        session = self.session(execution_id)
        return session.current_interval if session is not None else None
