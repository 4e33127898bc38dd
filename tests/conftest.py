"""
Shared pytest fixtures and configuration for runwatch tests.

This module provides:
- Auto-marking of unit / integration tests by location
- A fake monotonic clock and a recording sleep for deterministic timing
- A scripted in-memory gateway
- Breakers and polling configs tuned to run without real delays

Usage:
    Fixtures are auto-discovered by pytest. Simply use them as function
    arguments (pytest injects them automatically).
"""

import sys
from pathlib import Path
from typing import Generator

import pytest

# Ensure runwatch package is importable
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from runwatch.core.settings import clear_settings_cache
from runwatch.execution.circuit_breaker import CircuitBreakerConfig, CircuitStore
from runwatch.execution.models import PollingStrategy
from runwatch.execution.polling import PollingConfig
from runwatch.execution.resilience import RetryCircuitBreaker
from runwatch.execution.retry import ExponentialBackoff, RetryPolicy
from tests._support import FakeClock, ScriptedGateway, SleepRecorder


# =============================================================================
# Test Markers Configuration
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Auto-mark tests based on their location."""
    for item in items:
        test_path = Path(item.fspath).relative_to(Path(__file__).parent)

        if "integration" in str(test_path):
            item.add_marker(pytest.mark.integration)

        # Mark all tests without explicit markers as unit tests
        markers = {mark.name for mark in item.iter_markers()}
        if not markers.intersection({"unit", "integration", "slow"}):
            item.add_marker(pytest.mark.unit)


@pytest.fixture(autouse=True)
def clean_settings_cache() -> Generator[None, None, None]:
    """Settings are cached per process; isolate every test."""
    clear_settings_cache()
    yield
    clear_settings_cache()


# =============================================================================
# Timing Fixtures
# =============================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeper(clock: FakeClock) -> SleepRecorder:
    """Recording sleep that advances the fake clock by each delay."""
    return SleepRecorder(clock)


# =============================================================================
# Engine Fixtures
# =============================================================================


@pytest.fixture
def gateway() -> ScriptedGateway:
    return ScriptedGateway()


@pytest.fixture
def no_jitter_policy() -> RetryPolicy:
    """Five retries, deterministic 0.1s * 2**n delays."""
    return RetryPolicy(
        max_retries=5,
        backoff=ExponentialBackoff(base_delay=0.1, max_delay=5.0, jitter_ratio=0.0),
    )


@pytest.fixture
def store(clock: FakeClock) -> CircuitStore:
    return CircuitStore(CircuitBreakerConfig(failure_threshold=3, cooldown_period=30.0), clock=clock)


@pytest.fixture
def breaker(no_jitter_policy: RetryPolicy, store: CircuitStore, sleeper: SleepRecorder) -> RetryCircuitBreaker:
    return RetryCircuitBreaker(no_jitter_policy, store, sleep=sleeper)


@pytest.fixture
def fast_polling() -> PollingConfig:
    """Fixed 1ms interval so sessions run through their script quickly."""
    return PollingConfig(strategy=PollingStrategy.FIXED, base_interval=0.001, min_interval=0.0)
