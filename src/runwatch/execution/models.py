"""Execution data model — status snapshots and polling session state.

Two kinds of objects live here:

* :class:`ExecutionRecord` — an immutable snapshot of one remote execution,
  parsed from the remote JSON and handed to callers.
* :class:`PollingSession` — the per-execution monitoring state owned by the
  polling engine. It is frozen; every tick produces a new value.

Terminal statuses are ``success``, ``error``, ``canceled`` and ``crashed``;
once a session has emitted one of them it never emits again.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from runwatch.core.errors import ParseError


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


class ExecutionStatus(str, Enum):
    """Remote execution status."""

    NEW = "new"
    RUNNING = "running"
    WAITING = "waiting"
    SUCCESS = "success"
    ERROR = "error"
    CANCELED = "canceled"
    CRASHED = "crashed"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL

    @property
    def is_active(self) -> bool:
        return self not in _TERMINAL

    @classmethod
    def parse(cls, value: str | ExecutionStatus) -> ExecutionStatus:
        """Case-insensitive parse; ``cancelled`` is accepted as ``canceled``."""
        if isinstance(value, ExecutionStatus):
            return value
        normalized = str(value).strip().lower()
        if normalized == "cancelled":
            normalized = "canceled"
        try:
            return cls(normalized)
        except ValueError:
            raise ParseError(f"Unknown execution status: {value!r}", payload=value) from None


_TERMINAL = frozenset(
    {ExecutionStatus.SUCCESS, ExecutionStatus.ERROR, ExecutionStatus.CANCELED, ExecutionStatus.CRASHED}
)


class ExecutionRecord(BaseModel):
    """Immutable status snapshot of one remote execution.

    ``wait_marker`` is opaque: whatever the remote side reports while the
    execution is paused waiting for external input.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    status: ExecutionStatus
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: datetime | None = None
    last_node_reached: str | None = None
    wait_marker: dict[str, Any] | None = None
    error: str | None = None
    workflow_id: str | None = None

    @field_validator("status", mode="before")
    @classmethod
    def _parse_status(cls, value: Any) -> ExecutionStatus:
        return ExecutionStatus.parse(value)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def is_waiting(self) -> bool:
        return self.status == ExecutionStatus.WAITING

    @property
    def emission_key(self) -> tuple[ExecutionStatus, dict[str, Any] | None]:
        """What makes two consecutive snapshots distinct for a caller."""
        return (self.status, self.wait_marker if self.is_waiting else None)

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> ExecutionRecord:
        """Build a record from the remote execution JSON.

        Raises:
            ParseError: missing id, unknown status or malformed timestamps
        """
        if not isinstance(payload, dict):
            raise ParseError("Execution payload must be a JSON object", payload=payload)
        if payload.get("id") in (None, ""):
            raise ParseError("Execution payload has no id", payload=payload)

        result_data = (payload.get("data") or {}).get("resultData") or {}

        wait_marker = payload.get("waitNodeData")
        if wait_marker is None and payload.get("waitTill"):
            wait_marker = {"waitTill": payload["waitTill"]}

        status = payload.get("status")
        if status is None:
            if wait_marker is not None:
                status = ExecutionStatus.WAITING
            elif payload.get("finished") is True:
                status = ExecutionStatus.SUCCESS
            else:
                raise ParseError("Execution payload has no status", payload=payload)

        error = payload.get("error")
        if error is None and isinstance(result_data.get("error"), dict):
            error = result_data["error"].get("message")

        fields: dict[str, Any] = {
            "id": str(payload["id"]),
            "status": status,
            "finished_at": payload.get("stoppedAt") or payload.get("finishedAt"),
            "last_node_reached": result_data.get("lastNodeExecuted") or payload.get("lastNodeExecuted"),
            "wait_marker": wait_marker,
            "error": str(error) if error is not None else None,
            "workflow_id": str(payload["workflowId"]) if payload.get("workflowId") is not None else None,
        }
        if payload.get("startedAt"):
            fields["started_at"] = payload["startedAt"]

        try:
            return cls(**fields)
        except PydanticValidationError as exc:
            raise ParseError(f"Invalid execution payload: {exc.error_count()} error(s)", payload=payload, cause=exc) from exc


class PollingStrategy(str, Enum):
    """How a session picks its next polling interval."""

    FIXED = "fixed"        # Constant interval
    ADAPTIVE = "adaptive"  # Status table, stretched while nothing changes
    BACKOFF = "backoff"    # Exponential growth while nothing changes
    HYBRID = "hybrid"      # Longer of adaptive and backoff


class SessionOutcome(str, Enum):
    """Why a polling session ended."""

    COMPLETED = "completed"  # Terminal status observed
    CANCELLED = "cancelled"  # Caller cancelled
    EXPIRED = "expired"      # max_session_duration reached
    FAILED = "failed"        # Unrecoverable error


@dataclass(frozen=True)
class PollingSession:
    """Monitoring state for one execution id."""

    execution_id: str
    strategy: PollingStrategy
    current_interval: float
    last_observed_status: ExecutionStatus | None = None
    last_emitted: ExecutionRecord | None = None
    last_activity_at: datetime = field(default_factory=utcnow)
    consecutive_identical_status_count: int = 0
    cancelled: bool = False
    polls: int = 0
    successful_polls: int = 0
    error_count: int = 0
    consecutive_errors: int = 0
    started_at: datetime = field(default_factory=utcnow)

    @property
    def finished(self) -> bool:
        return self.last_emitted is not None and self.last_emitted.is_terminal

    @property
    def success_rate(self) -> float:
        if self.polls == 0:
            return 1.0
        return self.successful_polls / self.polls

    def to_dict(self) -> dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "strategy": self.strategy.value,
            "current_interval": self.current_interval,
            "last_observed_status": self.last_observed_status.value if self.last_observed_status else None,
            "last_activity_at": self.last_activity_at.isoformat(),
            "consecutive_identical_status_count": self.consecutive_identical_status_count,
            "cancelled": self.cancelled,
            "polls": self.polls,
            "error_count": self.error_count,
            "success_rate": self.success_rate,
        }
