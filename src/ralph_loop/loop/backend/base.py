"""Worker interface for one isolated loop iteration."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from ralph_loop.loop.models import ExitDisposition


@dataclass(slots=True)
class WorkerRunRequest:
    """Inputs required to execute one iteration."""

    prompt: str
    iteration: int
    timeout_seconds: int
    task_root: Path
    workdir: Path
    prompt_path: Path
    context_path: Path
    stdout_path: Path
    stderr_path: Path
    shutdown_requested: Callable[[], bool] | None = None
    graceful_shutdown_seconds: int | None = None


@dataclass(slots=True, frozen=True)
class WorkerResult:
    """Tagged outcome of one worker invocation: success, failure, or timeout."""

    disposition: ExitDisposition
    raw_output: str = ""
    stderr_output: str = ""
    exit_code: int | None = None
    reason: str | None = None

    @classmethod
    def success(cls, *, raw_output: str, stderr_output: str = "", exit_code: int = 0) -> WorkerResult:
        return cls(
            disposition=ExitDisposition.SUCCESS,
            raw_output=raw_output,
            stderr_output=stderr_output,
            exit_code=exit_code,
        )

    @classmethod
    def failure(
        cls,
        reason: str,
        *,
        raw_output: str = "",
        stderr_output: str = "",
        exit_code: int | None = None,
    ) -> WorkerResult:
        return cls(
            disposition=ExitDisposition.FAILURE,
            raw_output=raw_output,
            stderr_output=stderr_output,
            exit_code=exit_code,
            reason=reason,
        )

    @classmethod
    def timeout(
        cls,
        reason: str,
        *,
        raw_output: str = "",
        stderr_output: str = "",
        exit_code: int | None = None,
    ) -> WorkerResult:
        return cls(
            disposition=ExitDisposition.TIMEOUT,
            raw_output=raw_output,
            stderr_output=stderr_output,
            exit_code=exit_code,
            reason=reason,
        )

    @property
    def ok(self) -> bool:
        return self.disposition == ExitDisposition.SUCCESS


class WorkerBackend(Protocol):
    """Protocol implemented by worker runners."""

    def run(self, request: WorkerRunRequest) -> WorkerResult:
        """Run one iteration and return its tagged result."""
