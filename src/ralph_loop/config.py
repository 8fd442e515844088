"""Runtime configuration for the loop controller and its CLI."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from ralph_loop.loop.models import (
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_PROMISE_TEXT,
    DEFAULT_TIMEOUT_SECONDS,
    LoopOptions,
)

DEFAULT_COMMAND_TEMPLATE = (
    "claude -p --permission-mode acceptEdits --output-format text "
    "--append-system-prompt 'Iteration context: {context_file}' -- {prompt}"
)
_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(slots=True)
class LoopDefaults:
    """Defaults applied when `init` is called without explicit options."""

    max_iterations: int = DEFAULT_MAX_ITERATIONS
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS
    promise_text: str = DEFAULT_PROMISE_TEXT

    def to_options(self) -> LoopOptions:
        return LoopOptions(
            max_iterations=self.max_iterations,
            max_attempts=self.max_attempts,
            timeout_seconds=self.timeout_seconds,
            promise_text=self.promise_text,
        )


@dataclass(slots=True)
class WorkerSettings:
    """How the worker process is spawned and stopped."""

    command_template: str = DEFAULT_COMMAND_TEMPLATE
    graceful_shutdown_seconds: int = 10
    poll_interval_seconds: float = 0.1


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    task_root: Path = Path(".ralph")
    loop: LoopDefaults = field(default_factory=LoopDefaults)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    progress_tail: int = 10
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls, task_root: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local use."""

        return cls(
            task_root=task_root or Path(os.getenv("RALPH_LOOP_TASK_ROOT", ".ralph")),
            loop=LoopDefaults(
                max_iterations=_env_int("RALPH_LOOP_MAX_ITERATIONS", DEFAULT_MAX_ITERATIONS),
                max_attempts=_env_int("RALPH_LOOP_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS),
                timeout_seconds=_env_int("RALPH_LOOP_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS),
                promise_text=os.getenv("RALPH_LOOP_PROMISE_TEXT", DEFAULT_PROMISE_TEXT),
            ),
            worker=WorkerSettings(
                command_template=os.getenv(
                    "RALPH_LOOP_COMMAND_TEMPLATE",
                    DEFAULT_COMMAND_TEMPLATE,
                ),
                graceful_shutdown_seconds=_env_int("RALPH_LOOP_GRACEFUL_SHUTDOWN_SECONDS", 10),
                poll_interval_seconds=_env_float("RALPH_LOOP_POLL_INTERVAL_SECONDS", 0.1),
            ),
            progress_tail=_env_int("RALPH_LOOP_PROGRESS_TAIL", 10),
            log_level=os.getenv("RALPH_LOOP_LOG_LEVEL", "WARNING").strip().upper(),
        )

    def validate(self) -> None:
        """Raise configuration error if any setting is out of range."""

        try:
            self.loop.to_options().validate()
        except ValueError as error:
            raise ValueError(f"Invalid RALPH_LOOP_* loop defaults: {error}") from error
        if not self.worker.command_template.strip():
            raise ValueError("RALPH_LOOP_COMMAND_TEMPLATE must be non-empty.")
        if self.worker.graceful_shutdown_seconds < 0:
            raise ValueError("RALPH_LOOP_GRACEFUL_SHUTDOWN_SECONDS must be >= 0.")
        if self.worker.poll_interval_seconds <= 0:
            raise ValueError("RALPH_LOOP_POLL_INTERVAL_SECONDS must be > 0.")
        if self.progress_tail < 0:
            raise ValueError("RALPH_LOOP_PROGRESS_TAIL must be >= 0.")
        if self.log_level not in _LOG_LEVELS:
            raise ValueError(
                f"RALPH_LOOP_LOG_LEVEL must be one of {', '.join(_LOG_LEVELS)}, "
                f"got: {self.log_level!r}",
            )


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as error:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from error


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as error:
        raise ValueError(f"{name} must be a number, got: {raw!r}") from error
