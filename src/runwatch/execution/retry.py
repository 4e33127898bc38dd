"""Exponential backoff with jitter and the retry budget of a remote call.

The same :class:`ExponentialBackoff` drives both the RetryCircuitBreaker
(between attempts of one call) and the stream recovery wrapper (between
re-subscriptions of a source).

Delay for attempt ``n`` (0-indexed)::

    raw   = min(max_delay, base_delay * multiplier ** n)
    delay = clamp(raw + uniform(-jitter_ratio, +jitter_ratio) * raw, 0, max_delay)

Example:
    >>> from runwatch.execution.retry import ExponentialBackoff
    >>>
    >>> backoff = ExponentialBackoff(base_delay=0.5, max_delay=30.0, jitter_ratio=0.0)
    >>> [backoff.next_delay(n) for n in range(4)]
    [0.5, 1.0, 2.0, 4.0]
"""

from __future__ import annotations

import random
from collections.abc import Iterator
from dataclasses import dataclass, field

from runwatch.core.errors import RateLimitError, RunwatchError


@dataclass(frozen=True)
class ExponentialBackoff:
    """Exponential backoff with symmetric jitter.

    Attributes:
        base_delay: Delay in seconds for the first retry
        max_delay: Cap applied before and after jitter
        multiplier: Exponential growth factor (default: 2)
        jitter_ratio: Jitter as a fraction of the computed delay (0.0-1.0)
    """

    base_delay: float = 0.5
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter_ratio: float = 0.1
    rng: random.Random = field(default_factory=random.Random, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("base_delay and max_delay must be non-negative")
        if not 0.0 <= self.jitter_ratio <= 1.0:
            raise ValueError(f"jitter_ratio must be within [0, 1], got {self.jitter_ratio}")

    def raw_delay(self, attempt: int) -> float:
        """Delay before jitter is applied."""
        return min(self.max_delay, self.base_delay * (self.multiplier ** max(attempt, 0)))

    def next_delay(self, attempt: int) -> float:
        """Calculate the jittered delay for a zero-based attempt number."""
        delay = self.raw_delay(attempt)
        if self.jitter_ratio:
            jitter_amount = delay * self.jitter_ratio
            delay += self.rng.uniform(-jitter_amount, jitter_amount)
        return max(0.0, min(self.max_delay, delay))

    def delays(self, count: int) -> Iterator[float]:
        """Yield the delays for the first ``count`` retries."""
        for attempt in range(count):
            yield self.next_delay(attempt)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget for a single remote call.

    Attributes:
        max_retries: Retries after the first attempt (0 = single attempt)
        backoff: Delay schedule between attempts
        max_retry_after: Largest advertised ``Retry-After`` that is still
            waited out; anything longer is surfaced to the caller
    """

    max_retries: int = 3
    backoff: ExponentialBackoff = field(default_factory=ExponentialBackoff)
    max_retry_after: float = 60.0

    @classmethod
    def minimal(cls) -> RetryPolicy:
        return cls(max_retries=1, backoff=ExponentialBackoff(base_delay=0.1))

    @classmethod
    def aggressive(cls) -> RetryPolicy:
        return cls(
            max_retries=5,
            backoff=ExponentialBackoff(base_delay=0.2, max_delay=120.0, multiplier=1.5),
            max_retry_after=120.0,
        )

    @classmethod
    def conservative(cls) -> RetryPolicy:
        return cls(
            max_retries=2,
            backoff=ExponentialBackoff(base_delay=1.0, max_delay=10.0, multiplier=1.2, jitter_ratio=0.05),
            max_retry_after=10.0,
        )

    def should_retry(self, attempt: int, error: RunwatchError) -> bool:
        """Whether a zero-based ``attempt`` that failed with ``error`` gets another try."""
        if attempt >= self.max_retries or not error.retryable:
            return False
        if error.retry_after is not None and error.retry_after > self.max_retry_after:
            return False
        return True

    def delay_for(self, attempt: int, error: RunwatchError) -> float:
        """Delay before the next attempt, honouring an advertised retry-after."""
        delay = self.backoff.next_delay(attempt)
        if isinstance(error, RateLimitError) and error.retry_after is not None:
            delay = max(delay, error.retry_after)
        return delay
