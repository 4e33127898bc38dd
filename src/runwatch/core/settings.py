"""Environment-driven settings for runwatch.

Every tunable of the engine (remote endpoint, retry budget, circuit
thresholds, polling intervals, logging) can be set through ``RUNWATCH_*``
environment variables or a ``.env`` file. The builder methods turn the flat
settings into the frozen config objects the engine components take.

Manifesto:
    - **Pydantic validation:** Bad values fail at startup, not mid-poll
    - **Environment-driven:** Reads from env vars and .env files
    - **Extra ignore:** Unknown env vars don't cause startup failures

Examples:
    >>> from runwatch.core.settings import get_settings
    >>> settings = get_settings()
    >>> settings.retry_policy().max_retries
    3

    $ RUNWATCH_BASE_URL=https://automation.example.com RUNWATCH_FAILURE_THRESHOLD=3 python app.py

Tags:
    settings, configuration, pydantic, environment, runwatch
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

if TYPE_CHECKING:
    from runwatch.execution.circuit_breaker import CircuitBreakerConfig
    from runwatch.execution.polling import PollingConfig
    from runwatch.execution.retry import RetryPolicy


class RunwatchSettings(BaseSettings):
    """All runwatch settings, prefixed ``RUNWATCH_`` in the environment.

    Fields
    ──────
    base_url           : Root URL of the remote execution service
    api_key            : API key sent with every request (optional)
    request_timeout    : httpx timeout per request, seconds
    attempt_timeout    : Breaker deadline per attempt, seconds (None = off)
    max_retries ...    : Retry budget and backoff of single calls
    failure_threshold  : Consecutive failures that open a circuit
    cooldown_period    : Seconds an open circuit waits before a trial
    polling_* ...      : Interval policy of monitoring sessions
    log_level/format   : structlog configuration
    """

    model_config = SettingsConfigDict(
        env_prefix="RUNWATCH_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Remote service ───────────────────────────────────────────
    base_url: str = "http://localhost:5678"
    api_key: str | None = None
    api_key_header: str = "X-N8N-API-KEY"
    request_timeout: float = Field(default=30.0, gt=0)
    attempt_timeout: float | None = Field(default=None, gt=0)

    # ── Retry ────────────────────────────────────────────────────
    max_retries: int = Field(default=3, ge=0)
    base_delay: float = Field(default=0.5, ge=0)
    max_delay: float = Field(default=30.0, ge=0)
    jitter_ratio: float = Field(default=0.1, ge=0, le=1)
    max_retry_after: float = Field(default=60.0, ge=0)

    # ── Circuit breaker ──────────────────────────────────────────
    failure_threshold: int = Field(default=5, ge=1)
    cooldown_period: float = Field(default=60.0, ge=0)

    # ── Polling ──────────────────────────────────────────────────
    polling_strategy: Literal["fixed", "adaptive", "backoff", "hybrid"] = "adaptive"
    base_interval: float = Field(default=5.0, gt=0)
    min_interval: float = Field(default=1.0, ge=0)
    max_interval: float = Field(default=300.0, gt=0)
    backoff_multiplier: float = Field(default=1.5, ge=1)
    stale_after_ticks: int = Field(default=3, ge=0)
    max_session_duration: float | None = Field(default=None, gt=0)

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    log_format: Literal["auto", "json", "console"] = "auto"

    @field_validator("base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("polling_strategy", "log_format", mode="before")
    @classmethod
    def _lowercase(cls, value: str) -> str:
        return value.lower() if isinstance(value, str) else value

    # ── Builders ─────────────────────────────────────────────────

    def retry_policy(self) -> RetryPolicy:
        from runwatch.execution.retry import ExponentialBackoff, RetryPolicy

        return RetryPolicy(
            max_retries=self.max_retries,
            backoff=ExponentialBackoff(
                base_delay=self.base_delay,
                max_delay=self.max_delay,
                jitter_ratio=self.jitter_ratio,
            ),
            max_retry_after=self.max_retry_after,
        )

    def circuit_config(self) -> CircuitBreakerConfig:
        from runwatch.execution.circuit_breaker import CircuitBreakerConfig

        return CircuitBreakerConfig(
            failure_threshold=self.failure_threshold,
            cooldown_period=self.cooldown_period,
        )

    def polling_config(self) -> PollingConfig:
        from runwatch.execution.models import PollingStrategy
        from runwatch.execution.polling import PollingConfig

        return PollingConfig(
            strategy=PollingStrategy(self.polling_strategy),
            base_interval=self.base_interval,
            min_interval=self.min_interval,
            max_interval=self.max_interval,
            backoff_multiplier=self.backoff_multiplier,
            stale_after_ticks=self.stale_after_ticks,
            max_session_duration=self.max_session_duration,
        )

    def configure_logging(self) -> None:
        """Apply ``log_level`` / ``log_format`` to structlog."""
        from runwatch.core.logging import configure_logging

        json_format = None if self.log_format == "auto" else self.log_format == "json"
        configure_logging(level=self.log_level, json_format=json_format)


_settings_cache: dict[str, RunwatchSettings] = {}


def get_settings(*, _force_reload: bool = False) -> RunwatchSettings:
    """Load, validate, and cache the process-wide :class:`RunwatchSettings`."""
    if not _force_reload and "default" in _settings_cache:
        return _settings_cache["default"]
    settings = RunwatchSettings()
    _settings_cache["default"] = settings
    return settings


def clear_settings_cache() -> None:
    """Clear the settings cache (primarily for testing)."""
    _settings_cache.clear()
