"""Recovery policies for asynchronous sequences.

WHY
───
A status stream that dies on the first network hiccup is useless to a
caller monitoring an execution for hours. Rather than baking one recovery
strategy into the polling engine, any async iterable can be wrapped with a
policy that decides what an error from the source means: wait and carry on,
substitute a value, drop it, start over, or give up.

ARCHITECTURE
────────────
::

    wrap(source, policy, error_policies=...)  ──►  ResilientStream
                                                     │
        source: factory() -> AsyncIterable  or  AsyncIterable
                                                     │
        error from source ─► policy for type(error) (most specific first)
            Retry              sleep(backoff) ─► resume same iterator if
                               resumable, else call factory again
            Fallback           yield value once, complete
            SkipAndContinue    log, keep consuming (fatal types propagate, as
                               does an error the source ended on)
            RestartFromSource  sleep(backoff) ─► factory() from scratch
            Escalate           raise unchanged

    Budgets count consecutive failures and reset on every delivered item.
    Exhausting a budget re-raises the last error unchanged.

Example::

    stream = wrap(lambda: engine.monitor("42"), Retry(max_retries=5))
    async for record in stream:
        ...
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import AsyncIterable, AsyncIterator, Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Generic, TypeVar

from runwatch.core.errors import AuthError
from runwatch.core.logging import get_logger
from runwatch.execution.models import utcnow
from runwatch.execution.retry import ExponentialBackoff

logger = get_logger(__name__)

T = TypeVar("T")

Source = Callable[[], AsyncIterable[T]] | AsyncIterable[T]


class RecoveryKind(str, Enum):
    """Discriminator of the recovery policy variants."""

    RETRY = "retry"
    FALLBACK = "fallback"
    SKIP_AND_CONTINUE = "skip_and_continue"
    RESTART_FROM_SOURCE = "restart_from_source"
    ESCALATE = "escalate"


class RecoveryPolicy:
    """Base of the closed set of recovery policies."""

    kind: ClassVar[RecoveryKind]


@dataclass(frozen=True)
class Retry(RecoveryPolicy):
    """Wait and resume, up to ``max_retries`` consecutive failures."""

    kind: ClassVar[RecoveryKind] = RecoveryKind.RETRY
    max_retries: int = 3
    backoff: ExponentialBackoff = field(default_factory=ExponentialBackoff)


@dataclass(frozen=True)
class Fallback(RecoveryPolicy):
    """Emit ``value`` once in place of the error, then complete."""

    kind: ClassVar[RecoveryKind] = RecoveryKind.FALLBACK
    value: Any = None


@dataclass(frozen=True)
class SkipAndContinue(RecoveryPolicy):
    """Drop errors and keep consuming; ``fatal_errors`` still propagate."""

    kind: ClassVar[RecoveryKind] = RecoveryKind.SKIP_AND_CONTINUE
    fatal_errors: tuple[type[BaseException], ...] = (AuthError,)
    max_consecutive_errors: int | None = None


@dataclass(frozen=True)
class RestartFromSource(RecoveryPolicy):
    """Discard the source and call its factory again after backoff."""

    kind: ClassVar[RecoveryKind] = RecoveryKind.RESTART_FROM_SOURCE
    max_retries: int = 3
    backoff: ExponentialBackoff = field(default_factory=ExponentialBackoff)


@dataclass(frozen=True)
class Escalate(RecoveryPolicy):
    """Propagate the first error unchanged."""

    kind: ClassVar[RecoveryKind] = RecoveryKind.ESCALATE


@dataclass
class StreamHealth:
    """Running health figures of one wrapped stream."""

    stream_id: str
    total: int = 0
    successes: int = 0
    errors: int = 0
    recovered: int = 0
    last_success_at: datetime | None = None
    last_error_at: datetime | None = None
    recent_errors: deque[str] = field(default_factory=lambda: deque(maxlen=10))

    @property
    def success_rate(self) -> float:
        if self.total == 0:
            return 1.0
        return self.successes / self.total

    @property
    def is_healthy(self) -> bool:
        return self.success_rate > 0.5

    def record_success(self) -> None:
        self.total += 1
        self.successes += 1
        self.last_success_at = utcnow()

    def record_error(self, error: BaseException) -> None:
        self.total += 1
        self.errors += 1
        self.last_error_at = utcnow()
        self.recent_errors.append(f"{type(error).__name__}: {error}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "stream_id": self.stream_id,
            "total": self.total,
            "successes": self.successes,
            "errors": self.errors,
            "recovered": self.recovered,
            "success_rate": self.success_rate,
            "is_healthy": self.is_healthy,
            "recent_errors": list(self.recent_errors),
        }


def _open(source: AsyncIterable[T]) -> AsyncIterator[T]:
    # Streams such as MonitorStream are driven through their own __anext__
    if hasattr(source, "__anext__"):
        return source  # type: ignore[return-value]
    return aiter(source)


async def _close_source(iterator: Any) -> None:
    aclose = getattr(iterator, "aclose", None)
    if aclose is not None:
        await aclose()


class ResilientStream(Generic[T]):
    """Async iterator applying recovery policies to a source sequence."""

    _counter: ClassVar[int] = 0

    def __init__(
        self,
        source: Source[T],
        policy: RecoveryPolicy | None = None,
        *,
        error_policies: Mapping[type[BaseException], RecoveryPolicy] | None = None,
        stream_id: str | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if hasattr(source, "__aiter__"):
            self._factory: Callable[[], AsyncIterable[T]] = lambda: source  # type: ignore[return-value]
        else:
            self._factory = source  # type: ignore[assignment]
        self.policy = policy or Escalate()
        self.error_policies = dict(error_policies or {})
        if stream_id is None:
            ResilientStream._counter += 1
            stream_id = f"stream-{ResilientStream._counter}"
        self.stream_id = stream_id
        self.health = StreamHealth(stream_id)
        self._sleep = sleep
        self._gen: AsyncIterator[T] | None = None
        self._current: Any = None
        self._cancelled = False

    def policy_for(self, error: BaseException) -> RecoveryPolicy:
        """Most specific override matching ``error``, else the default policy."""
        for cls in type(error).__mro__:
            if cls in self.error_policies:
                return self.error_policies[cls]
        return self.policy

    def __aiter__(self) -> AsyncIterator[T]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[T]:
        try:
            while True:
                try:
                    item = await self.__anext__()
                except StopAsyncIteration:
                    return
                yield item
        except (GeneratorExit, asyncio.CancelledError):
            await self.aclose()
            raise

    async def __anext__(self) -> T:
        if self._gen is None:
            self._gen = self._run()
        return await self._gen.__anext__()

    async def __aenter__(self) -> ResilientStream[T]:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    def cancel(self) -> None:
        """Stop after the current item and cancel the underlying source if it can be."""
        self._cancelled = True
        cancel = getattr(self._current, "cancel", None)
        if cancel is not None:
            cancel()

    async def aclose(self) -> None:
        self._cancelled = True
        if self._gen is not None:
            await self._gen.aclose()  # type: ignore[attr-defined]
        elif self._current is not None:
            await _close_source(self._current)

    async def _run(self) -> AsyncIterator[T]:
        iterator = _open(self._factory())
        self._current = iterator
        failures = 0
        # Set while recovering; cleared by the next delivered item
        pending: BaseException | None = None
        failed_iterator: Any = None

        try:
            while not self._cancelled:
                try:
                    item = await anext(iterator)
                except StopAsyncIteration:
                    if pending is not None and iterator is failed_iterator:
                        # The source ended on the error being recovered from
                        raise pending
                    return
                except Exception as exc:
                    self.health.record_error(exc)
                    policy = self.policy_for(exc)

                    if policy.kind == RecoveryKind.ESCALATE:
                        raise

                    if isinstance(policy, Fallback):
                        logger.info(
                            "recovery.fallback",
                            stream_id=self.stream_id,
                            error_type=type(exc).__name__,
                        )
                        yield policy.value
                        return

                    if isinstance(policy, SkipAndContinue):
                        failures += 1
                        # A source that reports itself dead cannot be skipped past
                        if (
                            isinstance(exc, policy.fatal_errors)
                            or getattr(iterator, "resumable", None) is False
                            or (
                                policy.max_consecutive_errors is not None
                                and failures > policy.max_consecutive_errors
                            )
                        ):
                            logger.warning(
                                "recovery.skip_aborted",
                                stream_id=self.stream_id,
                                error_type=type(exc).__name__,
                                consecutive_errors=failures,
                            )
                            raise
                        logger.info(
                            "recovery.skipped",
                            stream_id=self.stream_id,
                            error_type=type(exc).__name__,
                            consecutive_errors=failures,
                        )
                        pending = exc
                        failed_iterator = iterator
                        continue

                    if failures >= policy.max_retries:
                        logger.warning(
                            "recovery.exhausted",
                            stream_id=self.stream_id,
                            kind=policy.kind.value,
                            attempts=failures,
                            error_type=type(exc).__name__,
                        )
                        raise

                    delay = policy.backoff.next_delay(failures)
                    failures += 1
                    pending = exc
                    logger.info(
                        "recovery.retrying",
                        stream_id=self.stream_id,
                        kind=policy.kind.value,
                        attempt=failures,
                        delay=round(delay, 3),
                        error_type=type(exc).__name__,
                    )
                    await self._sleep(delay)

                    if isinstance(policy, Retry) and getattr(iterator, "resumable", False):
                        continue

                    failed_iterator = iterator
                    await _close_source(iterator)
                    iterator = _open(self._factory())
                    self._current = iterator
                    continue

                if pending is not None:
                    self.health.recovered += 1
                    pending = None
                failures = 0
                self.health.record_success()
                yield item
        finally:
            await _close_source(iterator)


def wrap(
    source: Source[T],
    policy: RecoveryPolicy | None = None,
    *,
    error_policies: Mapping[type[BaseException], RecoveryPolicy] | None = None,
    stream_id: str | None = None,
) -> ResilientStream[T]:
    """Wrap ``source`` with ``policy`` (Escalate when omitted)."""
    return ResilientStream(source, policy, error_policies=error_policies, stream_id=stream_id)


def with_retry(
    source: Source[T],
    max_retries: int = 3,
    *,
    base_delay: float = 0.5,
    max_delay: float = 30.0,
    jitter_ratio: float = 0.1,
) -> ResilientStream[T]:
    backoff = ExponentialBackoff(base_delay=base_delay, max_delay=max_delay, jitter_ratio=jitter_ratio)
    return wrap(source, Retry(max_retries=max_retries, backoff=backoff))


def with_fallback(source: Source[T], value: T) -> ResilientStream[T]:
    return wrap(source, Fallback(value))


def skip_errors(
    source: Source[T],
    *,
    fatal_errors: tuple[type[BaseException], ...] = (AuthError,),
    max_consecutive_errors: int | None = None,
) -> ResilientStream[T]:
    return wrap(
        source,
        SkipAndContinue(fatal_errors=fatal_errors, max_consecutive_errors=max_consecutive_errors),
    )
