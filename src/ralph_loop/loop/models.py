"""Domain models for loop state, progress, and evidence."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

DEFAULT_MAX_ITERATIONS = 25
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_TIMEOUT_SECONDS = 1_800
DEFAULT_PROMISE_TEXT = "COMPLETE"
STATE_SCHEMA_VERSION = 1


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def from_iso(value: str) -> datetime:
    """Parse ISO datetime and ensure timezone-aware UTC fallback."""

    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed


class LoopStatus(str, Enum):
    """Durable loop lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    BLOCKED = "blocked"
    MAX_ITERATIONS = "max_iterations"

    @property
    def is_terminal(self) -> bool:
        return self in (LoopStatus.COMPLETED, LoopStatus.MAX_ITERATIONS)


class ExitDisposition(str, Enum):
    """How one worker invocation ended."""

    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"


class RunOutcome(str, Enum):
    """Why `LoopController.run` returned."""

    COMPLETED = "completed"
    MAX_ITERATIONS = "max_iterations"
    BLOCKED = "blocked"
    CANCELLED = "cancelled"


@dataclass(slots=True, frozen=True)
class LoopOptions:
    """Stop conditions fixed at initialization."""

    max_iterations: int = DEFAULT_MAX_ITERATIONS
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS
    promise_text: str = DEFAULT_PROMISE_TEXT

    def validate(self) -> None:
        """Raise ValueError when options cannot drive a loop."""

        if self.max_iterations <= 0:
            raise ValueError(f"max_iterations must be > 0, got: {self.max_iterations}")
        if self.max_attempts <= 0:
            raise ValueError(f"max_attempts must be > 0, got: {self.max_attempts}")
        if self.timeout_seconds <= 0:
            raise ValueError(f"timeout_seconds must be > 0, got: {self.timeout_seconds}")
        if not self.promise_text.strip():
            raise ValueError("promise_text must be non-empty")
        if "<" in self.promise_text or ">" in self.promise_text:
            raise ValueError("promise_text must not contain '<' or '>'")

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_iterations": self.max_iterations,
            "max_attempts": self.max_attempts,
            "timeout_seconds": self.timeout_seconds,
            "promise_text": self.promise_text,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> LoopOptions:
        return cls(
            max_iterations=int(payload["max_iterations"]),
            max_attempts=int(payload["max_attempts"]),
            timeout_seconds=int(payload["timeout_seconds"]),
            promise_text=str(payload["promise_text"]),
        )


@dataclass(slots=True)
class LoopState:
    """Mutable control record persisted between iterations."""

    iteration: int
    attempts: int
    status: LoopStatus
    options: LoopOptions
    created_at: datetime
    updated_at: datetime
    last_disposition: ExitDisposition | None = None
    last_failure_reason: str | None = None
    completed_at: datetime | None = None

    @property
    def promise_text(self) -> str:
        return self.options.promise_text

    @classmethod
    def initial(cls, options: LoopOptions) -> LoopState:
        now = utc_now()
        return cls(
            iteration=0,
            attempts=0,
            status=LoopStatus.PENDING,
            options=options,
            created_at=now,
            updated_at=now,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": STATE_SCHEMA_VERSION,
            "iteration": self.iteration,
            "attempts": self.attempts,
            "status": self.status.value,
            "promise_text": self.options.promise_text,
            "options": self.options.to_dict(),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "last_disposition": (
                self.last_disposition.value if self.last_disposition is not None else None
            ),
            "last_failure_reason": self.last_failure_reason,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> LoopState:
        options = LoopOptions.from_dict(payload["options"])
        iteration = int(payload["iteration"])
        attempts = int(payload["attempts"])
        if iteration < 0 or attempts < 0:
            raise ValueError("iteration and attempts must be non-negative")
        last_disposition = payload.get("last_disposition")
        completed_at = payload.get("completed_at")
        return cls(
            iteration=iteration,
            attempts=attempts,
            status=LoopStatus(payload["status"]),
            options=options,
            created_at=from_iso(payload["created_at"]),
            updated_at=from_iso(payload["updated_at"]),
            last_disposition=(
                ExitDisposition(last_disposition) if last_disposition is not None else None
            ),
            last_failure_reason=payload.get("last_failure_reason"),
            completed_at=from_iso(completed_at) if completed_at else None,
        )


@dataclass(slots=True, frozen=True)
class ProgressEntry:
    """One line of the append-only progress log."""

    iteration: int
    timestamp: datetime
    summary: str
    disposition: ExitDisposition | None = None
    status: LoopStatus | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "iteration": self.iteration,
            "timestamp": self.timestamp.isoformat(),
            "summary": self.summary,
            "disposition": self.disposition.value if self.disposition is not None else None,
            "status": self.status.value if self.status is not None else None,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ProgressEntry:
        disposition = payload.get("disposition")
        status = payload.get("status")
        return cls(
            iteration=int(payload["iteration"]),
            timestamp=from_iso(payload["timestamp"]),
            summary=str(payload.get("summary", "")),
            disposition=ExitDisposition(disposition) if disposition else None,
            status=LoopStatus(status) if status else None,
        )


@dataclass(slots=True, frozen=True)
class EvidenceRecord:
    """Immutable captured output of one iteration."""

    iteration: int
    raw_output: str
    exit_disposition: ExitDisposition
    started_at: datetime
    finished_at: datetime
    stderr_output: str = ""
    exit_code: int | None = None
    failure_reason: str | None = None

    @property
    def duration_ms(self) -> int:
        return int((self.finished_at - self.started_at).total_seconds() * 1000)

    @property
    def combined_output(self) -> str:
        if not self.stderr_output:
            return self.raw_output
        return f"{self.raw_output}\n{self.stderr_output}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "iteration": self.iteration,
            "exit_disposition": self.exit_disposition.value,
            "exit_code": self.exit_code,
            "failure_reason": self.failure_reason,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "duration_ms": self.duration_ms,
            "raw_output": self.raw_output,
            "stderr_output": self.stderr_output,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> EvidenceRecord:
        exit_code = payload.get("exit_code")
        return cls(
            iteration=int(payload["iteration"]),
            raw_output=str(payload.get("raw_output", "")),
            stderr_output=str(payload.get("stderr_output", "")),
            exit_disposition=ExitDisposition(payload["exit_disposition"]),
            exit_code=int(exit_code) if exit_code is not None else None,
            failure_reason=payload.get("failure_reason"),
            started_at=from_iso(payload["started_at"]),
            finished_at=from_iso(payload["finished_at"]),
        )


@dataclass(slots=True)
class LoopRunSummary:
    """Aggregate counters returned by one `run()` call."""

    outcome: RunOutcome
    iteration: int
    attempts: int
    iterations_run: int = 0
    succeeded: int = 0
    failed: int = 0
    timeouts: int = 0
    recovered: bool = False
    block_report_path: str | None = None


@dataclass(slots=True)
class LoopStatusReport:
    """State snapshot plus recent progress for operators and monitors."""

    state: LoopState
    progress_tail: list[ProgressEntry] = field(default_factory=list)
    evidence_count: int = 0
    block_report_present: bool = False
    running: bool = False
