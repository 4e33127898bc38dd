"""Tests for ExponentialBackoff and RetryPolicy."""

import random

import pytest

from runwatch.core.errors import AuthError, NetworkError, RateLimitError, ServerError
from runwatch.execution.retry import ExponentialBackoff, RetryPolicy


class TestExponentialBackoff:
    """Tests for the backoff schedule."""

    def test_default_configuration(self):
        backoff = ExponentialBackoff()
        assert backoff.base_delay == 0.5
        assert backoff.max_delay == 30.0
        assert backoff.multiplier == 2.0
        assert backoff.jitter_ratio == 0.1

    def test_delay_calculation_no_jitter(self):
        backoff = ExponentialBackoff(base_delay=1.0, max_delay=60.0, jitter_ratio=0.0)
        assert [backoff.next_delay(n) for n in range(5)] == [1.0, 2.0, 4.0, 8.0, 16.0]

    def test_delay_capped_at_max(self):
        backoff = ExponentialBackoff(base_delay=1.0, max_delay=5.0, jitter_ratio=0.0)
        assert backoff.next_delay(10) == 5.0
        assert backoff.raw_delay(100) == 5.0

    def test_jitter_stays_within_ratio(self):
        backoff = ExponentialBackoff(base_delay=1.0, max_delay=60.0, jitter_ratio=0.25, rng=random.Random(7))
        for attempt in range(6):
            raw = backoff.raw_delay(attempt)
            delay = backoff.next_delay(attempt)
            assert raw * 0.75 <= delay <= raw * 1.25

    @pytest.mark.parametrize("seed", range(20))
    def test_delay_never_leaves_bounds(self, seed):
        """Jitter can never push a delay below 0 or above max_delay."""
        backoff = ExponentialBackoff(base_delay=0.5, max_delay=4.0, jitter_ratio=1.0, rng=random.Random(seed))
        for attempt in range(12):
            assert 0.0 <= backoff.next_delay(attempt) <= 4.0

    def test_mean_delay_grows_until_capped(self):
        backoff = ExponentialBackoff(base_delay=0.1, max_delay=3.0, jitter_ratio=0.5, rng=random.Random(1))
        means = []
        for attempt in range(8):
            samples = [backoff.next_delay(attempt) for _ in range(400)]
            means.append(sum(samples) / len(samples))
        for earlier, later in zip(means, means[1:]):
            assert later >= earlier * 0.9

    def test_delays_iterator(self):
        backoff = ExponentialBackoff(base_delay=0.5, jitter_ratio=0.0)
        assert list(backoff.delays(3)) == [0.5, 1.0, 2.0]

    def test_invalid_configuration(self):
        with pytest.raises(ValueError):
            ExponentialBackoff(base_delay=-1)
        with pytest.raises(ValueError):
            ExponentialBackoff(jitter_ratio=1.5)


class TestRetryPolicy:
    """Tests for the retry budget."""

    def test_should_retry_within_limit(self):
        policy = RetryPolicy(max_retries=3)
        assert all(policy.should_retry(n, ServerError("boom")) for n in range(3))

    def test_should_retry_at_limit(self):
        policy = RetryPolicy(max_retries=3)
        assert policy.should_retry(3, ServerError("boom")) is False

    def test_non_retryable_error(self):
        assert RetryPolicy().should_retry(0, AuthError("denied")) is False

    def test_retry_after_beyond_cap_is_not_waited(self):
        policy = RetryPolicy(max_retry_after=10.0)
        assert policy.should_retry(0, RateLimitError(retry_after=11.0)) is False
        assert policy.should_retry(0, RateLimitError(retry_after=9.0)) is True

    def test_delay_honours_retry_after(self):
        policy = RetryPolicy(backoff=ExponentialBackoff(base_delay=0.5, jitter_ratio=0.0))
        assert policy.delay_for(0, RateLimitError(retry_after=4.0)) == 4.0
        assert policy.delay_for(0, NetworkError("reset")) == 0.5

    def test_backoff_wins_over_short_retry_after(self):
        policy = RetryPolicy(backoff=ExponentialBackoff(base_delay=2.0, jitter_ratio=0.0))
        assert policy.delay_for(0, RateLimitError(retry_after=0.5)) == 2.0

    def test_presets(self):
        assert RetryPolicy.minimal().max_retries == 1
        assert RetryPolicy.aggressive().max_retries == 5
        conservative = RetryPolicy.conservative()
        assert conservative.max_retries == 2
        assert conservative.backoff.max_delay == 10.0
