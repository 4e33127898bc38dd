"""Per-endpoint circuit breaker state.

Prevents hammering a failing endpoint by failing fast once it has produced
``failure_threshold`` consecutive failures.

States:
    CLOSED: Normal operation, calls pass through
    OPEN: Failing fast until the cooldown elapses
    HALF_OPEN: One trial call at a time tests whether the endpoint recovered

The store holds one :class:`CircuitState` per logical endpoint key
(``get-status``, ``resume``...). States are created lazily on first use and
are never dropped, so every polling session that hits the same endpoint sees
the same breaker. All reads and transitions happen under a single lock.

Example:
    >>> store = CircuitStore(CircuitBreakerConfig(failure_threshold=3, cooldown_period=30.0))
    >>> permit = store.acquire("get-status")
    >>> store.record_failure("get-status", permit)
    >>> store.mode("get-status")
    <CircuitMode.CLOSED: 'closed'>
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from runwatch.core.errors import CircuitOpenError
from runwatch.core.logging import get_logger

logger = get_logger(__name__)


class CircuitMode(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"        # Normal operation
    OPEN = "open"            # Rejecting requests
    HALF_OPEN = "half_open"  # Testing recovery


@dataclass
class CircuitStats:
    """Counters for circuit breaker monitoring."""

    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    rejected: int = 0
    state_changes: int = 0
    last_latency: float | None = None

    @property
    def failure_rate(self) -> float:
        """Failure rate of attempted calls as a percentage."""
        total = self.succeeded + self.failed
        if total == 0:
            return 0.0
        return (self.failed / total) * 100


@dataclass
class CircuitState:
    """Breaker state for one endpoint key."""

    endpoint_key: str
    mode: CircuitMode = CircuitMode.CLOSED
    consecutive_failures: int = 0
    last_failure_at: float | None = None
    opened_until: float | None = None
    trial_in_flight: bool = False
    stats: CircuitStats = field(default_factory=CircuitStats)

    def to_dict(self) -> dict[str, Any]:
        return {
            "endpoint_key": self.endpoint_key,
            "mode": self.mode.value,
            "consecutive_failures": self.consecutive_failures,
            "last_failure_at": self.last_failure_at,
            "opened_until": self.opened_until,
            "trial_in_flight": self.trial_in_flight,
            "attempted": self.stats.attempted,
            "rejected": self.stats.rejected,
            "failure_rate": self.stats.failure_rate,
        }


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Breaker thresholds.

    Attributes:
        failure_threshold: Consecutive failures that trip the circuit
        cooldown_period: Seconds the circuit stays open before a trial
    """

    failure_threshold: int = 5
    cooldown_period: float = 60.0

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError(f"failure_threshold must be >= 1, got {self.failure_threshold}")
        if self.cooldown_period < 0:
            raise ValueError(f"cooldown_period must be >= 0, got {self.cooldown_period}")


@dataclass(frozen=True)
class Permit:
    """Admission ticket returned by :meth:`CircuitStore.acquire`."""

    endpoint_key: str
    trial: bool = False
    started_at: float = 0.0


class CircuitStore:
    """Injectable map of endpoint key to :class:`CircuitState`.

    One instance is owned by each RetryCircuitBreaker; all sessions that
    share the breaker share the store. ``clock`` must be monotonic and is
    replaceable for tests.
    """

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._states: dict[str, CircuitState] = {}
        self._lock = threading.RLock()

    def now(self) -> float:
        return self._clock()

    def _get(self, key: str) -> CircuitState:
        state = self._states.get(key)
        if state is None:
            state = self._states[key] = CircuitState(endpoint_key=key)
        return state

    def _transition(self, state: CircuitState, mode: CircuitMode) -> None:
        old = state.mode
        state.mode = mode
        state.stats.state_changes += 1

        if mode == CircuitMode.OPEN:
            state.opened_until = self._clock() + self.config.cooldown_period
            state.trial_in_flight = False
            logger.warning(
                "circuit.opened",
                endpoint=state.endpoint_key,
                previous=old.value,
                failures=state.consecutive_failures,
                cooldown=self.config.cooldown_period,
            )
        elif mode == CircuitMode.HALF_OPEN:
            state.trial_in_flight = False
            logger.info("circuit.half_open", endpoint=state.endpoint_key)
        else:
            state.consecutive_failures = 0
            state.opened_until = None
            state.trial_in_flight = False
            logger.info("circuit.closed", endpoint=state.endpoint_key, previous=old.value)

    def _check_cooldown(self, state: CircuitState) -> None:
        if (
            state.mode == CircuitMode.OPEN
            and state.opened_until is not None
            and self._clock() >= state.opened_until
        ):
            self._transition(state, CircuitMode.HALF_OPEN)

    # ── Admission ────────────────────────────────────────────────────

    def acquire(self, key: str) -> Permit:
        """Admit one call to ``key`` or raise :class:`CircuitOpenError`.

        In HALF_OPEN only one trial is admitted at a time; the permit it
        returns must be handed back through :meth:`record_success`,
        :meth:`record_failure` or :meth:`release`.
        """
        with self._lock:
            state = self._get(key)
            self._check_cooldown(state)

            if state.mode == CircuitMode.CLOSED:
                state.stats.attempted += 1
                return Permit(key, trial=False, started_at=self._clock())

            if state.mode == CircuitMode.HALF_OPEN and not state.trial_in_flight:
                state.trial_in_flight = True
                state.stats.attempted += 1
                return Permit(key, trial=True, started_at=self._clock())

            state.stats.rejected += 1
            raise CircuitOpenError(key, opened_until=state.opened_until)

    def record_success(self, key: str, permit: Permit | None = None) -> None:
        """Record a successful call."""
        with self._lock:
            state = self._get(key)
            state.stats.succeeded += 1
            if permit is not None:
                state.stats.last_latency = self._clock() - permit.started_at

            if state.mode == CircuitMode.CLOSED:
                state.consecutive_failures = 0
            elif permit is not None and permit.trial:
                self._transition(state, CircuitMode.CLOSED)

    def record_failure(
        self,
        key: str,
        permit: Permit | None = None,
        *,
        counts: bool = True,
    ) -> None:
        """Record a failed call.

        ``counts=False`` is used for validation-class failures: they are
        tallied in the stats but leave circuit health untouched. A trial that
        ends that way simply frees the half-open slot.
        """
        with self._lock:
            state = self._get(key)
            state.stats.failed += 1
            if permit is not None:
                state.stats.last_latency = self._clock() - permit.started_at

            if not counts:
                if permit is not None and permit.trial:
                    state.trial_in_flight = False
                return

            state.consecutive_failures += 1
            state.last_failure_at = self._clock()

            if state.mode == CircuitMode.CLOSED:
                if state.consecutive_failures >= self.config.failure_threshold:
                    self._transition(state, CircuitMode.OPEN)
            elif state.mode == CircuitMode.HALF_OPEN and permit is not None and permit.trial:
                self._transition(state, CircuitMode.OPEN)

    def release(self, permit: Permit) -> None:
        """Give back a trial slot without recording an outcome (cancelled call)."""
        if not permit.trial:
            return
        with self._lock:
            state = self._get(permit.endpoint_key)
            if state.mode == CircuitMode.HALF_OPEN:
                state.trial_in_flight = False

    # ── Inspection / maintenance ─────────────────────────────────────

    def mode(self, key: str) -> CircuitMode:
        """Current mode for ``key`` (applies a due OPEN -> HALF_OPEN move)."""
        with self._lock:
            state = self._get(key)
            self._check_cooldown(state)
            return state.mode

    def snapshot(self, key: str) -> CircuitState:
        """Detached copy of the state for ``key``."""
        with self._lock:
            state = self._get(key)
            self._check_cooldown(state)
            return replace(state, stats=replace(state.stats))

    def snapshots(self) -> dict[str, CircuitState]:
        with self._lock:
            return {key: self.snapshot(key) for key in list(self._states)}

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._states)

    def reset(self, key: str | None = None) -> None:
        """Return one (or every) circuit to CLOSED."""
        with self._lock:
            keys = [key] if key is not None else list(self._states)
            for name in keys:
                state = self._get(name)
                if state.mode != CircuitMode.CLOSED:
                    self._transition(state, CircuitMode.CLOSED)
                state.consecutive_failures = 0
                state.last_failure_at = None

    def force_open(self, key: str) -> None:
        """Force a circuit open (maintenance, tests)."""
        with self._lock:
            self._transition(self._get(key), CircuitMode.OPEN)
