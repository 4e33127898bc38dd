"""Tests for RunwatchSettings and the config builders."""

import pytest
from pydantic import ValidationError as PydanticValidationError

from runwatch.core.settings import RunwatchSettings, clear_settings_cache, get_settings
from runwatch.execution.circuit_breaker import CircuitBreakerConfig
from runwatch.execution.models import PollingStrategy
from runwatch.execution.polling import PollingConfig
from runwatch.execution.retry import RetryPolicy


class TestDefaults:
    """Out-of-the-box values."""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("RUNWATCH_BASE_URL", raising=False)
        settings = RunwatchSettings(_env_file=None)
        assert settings.base_url == "http://localhost:5678"
        assert settings.api_key is None
        assert settings.api_key_header == "X-N8N-API-KEY"
        assert settings.max_retries == 3
        assert settings.failure_threshold == 5
        assert settings.polling_strategy == "adaptive"


class TestEnvironment:
    """RUNWATCH_* environment variables."""

    def test_reads_prefixed_variables(self, monkeypatch):
        monkeypatch.setenv("RUNWATCH_BASE_URL", "https://automation.example.com/")
        monkeypatch.setenv("RUNWATCH_FAILURE_THRESHOLD", "2")
        monkeypatch.setenv("RUNWATCH_POLLING_STRATEGY", "HYBRID")
        settings = RunwatchSettings(_env_file=None)
        assert settings.base_url == "https://automation.example.com"
        assert settings.failure_threshold == 2
        assert settings.polling_strategy == "hybrid"

    def test_unknown_variables_are_ignored(self, monkeypatch):
        monkeypatch.setenv("RUNWATCH_NOT_A_SETTING", "x")
        RunwatchSettings(_env_file=None)

    def test_invalid_values_fail_fast(self, monkeypatch):
        monkeypatch.setenv("RUNWATCH_JITTER_RATIO", "2.0")
        with pytest.raises(PydanticValidationError):
            RunwatchSettings(_env_file=None)


class TestBuilders:
    """Conversion into engine config objects."""

    def test_retry_policy(self):
        settings = RunwatchSettings(_env_file=None, max_retries=5, base_delay=0.2, jitter_ratio=0.0)
        policy = settings.retry_policy()
        assert isinstance(policy, RetryPolicy)
        assert policy.max_retries == 5
        assert policy.backoff.base_delay == 0.2
        assert policy.backoff.jitter_ratio == 0.0

    def test_circuit_config(self):
        config = RunwatchSettings(_env_file=None, failure_threshold=3, cooldown_period=10).circuit_config()
        assert config == CircuitBreakerConfig(failure_threshold=3, cooldown_period=10.0)

    def test_polling_config(self):
        settings = RunwatchSettings(_env_file=None, polling_strategy="backoff", base_interval=2.0)
        config = settings.polling_config()
        assert isinstance(config, PollingConfig)
        assert config.strategy == PollingStrategy.BACKOFF
        assert config.base_interval == 2.0


class TestGetSettings:
    """Process-wide cache."""

    def test_cached(self):
        assert get_settings() is get_settings()

    def test_force_reload_and_clear(self, monkeypatch):
        first = get_settings()
        monkeypatch.setenv("RUNWATCH_MAX_RETRIES", "7")
        assert get_settings() is first
        assert get_settings(_force_reload=True).max_retries == 7
        clear_settings_cache()
        assert get_settings() is not first
