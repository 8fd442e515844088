"""Subprocess-based worker backend for CLI agents."""

from __future__ import annotations

import logging
import os
import shlex
import signal
import subprocess
import time
from pathlib import Path

from ralph_loop.loop.backend.base import WorkerRunRequest, WorkerResult
from ralph_loop.loop.errors import ConfigError, WorkerCrashError

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
INTERRUPTED_REASON = "interrupted: shutdown requested"
_PROMPT_PLACEHOLDERS = ("{prompt}", "{prompt_file}")


class CliWorkerBackend:
    """Run one iteration as a fresh process rendered from a command template."""

    def __init__(self, command_template: str, *, poll_interval_seconds: float = 0.1) -> None:
        self.command_template = command_template
        self.poll_interval_seconds = poll_interval_seconds
        _build_run_args(
            command_template=command_template,
            prompt="",
            prompt_file=Path("prompt.txt"),
            context_file=Path("context.json"),
            task_root=Path("."),
            iteration=0,
        )

    def run(self, request: WorkerRunRequest) -> WorkerResult:
        request.stdout_path.parent.mkdir(parents=True, exist_ok=True)
        request.stderr_path.parent.mkdir(parents=True, exist_ok=True)

        run_args = _build_run_args(
            command_template=self.command_template,
            prompt=request.prompt,
            prompt_file=request.prompt_path,
            context_file=request.context_path,
            task_root=request.task_root,
            iteration=request.iteration,
        )

        env = os.environ.copy()
        env["RALPH_LOOP_ITERATION"] = str(request.iteration)
        env["RALPH_LOOP_TASK_ROOT"] = str(request.task_root)
        env["RALPH_LOOP_CONTEXT_FILE"] = str(request.context_path)

        try:
            worker = _WorkerProcess(
                run_args,
                env=env,
                request=request,
                poll_interval_seconds=self.poll_interval_seconds,
            )
        except FileNotFoundError as error:
            raise WorkerCrashError(
                f"Worker command not found: {run_args[0]}",
                transient=False,
            ) from error
        except PermissionError as error:
            raise WorkerCrashError(
                f"Worker command is not executable: {run_args[0]}",
                transient=False,
            ) from error
        except OSError as error:
            raise WorkerCrashError(
                f"Worker failed to start: {error}",
                transient=True,
            ) from error
        return worker.supervise()


def _build_run_args(  # noqa: PLR0913
    *,
    command_template: str,
    prompt: str,
    prompt_file: Path,
    context_file: Path,
    task_root: Path,
    iteration: int,
) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise ConfigError("Worker command template is empty.")
    if not any(placeholder in stripped for placeholder in _PROMPT_PLACEHOLDERS):
        raise ConfigError("Worker command template must include {prompt} or {prompt_file}.")

    try:
        rendered = stripped.format(
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
            context_file=shlex.quote(str(context_file)),
            task_root=shlex.quote(str(task_root)),
            iteration=iteration,
        )
    except (KeyError, IndexError) as error:
        raise ConfigError(f"Unsupported command template placeholder: {error}") from error

    try:
        argv = shlex.split(rendered)
    except ValueError as error:
        raise ConfigError(f"Worker command template is not valid shell syntax: {error}") from error
    if not argv:
        raise ConfigError("Worker command template rendered empty command.")
    return argv


class _WorkerProcess:
    """Supervise one worker process group until exit, deadline or shutdown."""

    def __init__(
        self,
        run_args: list[str],
        *,
        env: dict[str, str],
        request: WorkerRunRequest,
        poll_interval_seconds: float,
    ) -> None:
        self.request = request
        self.poll_interval_seconds = poll_interval_seconds
        self.grace_seconds = max(0, request.graceful_shutdown_seconds or 0)
        self._stdout = request.stdout_path.open("w", encoding="utf-8")
        self._stderr = request.stderr_path.open("w", encoding="utf-8")
        try:
            self.popen = subprocess.Popen(  # noqa: S603
                run_args,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=self._stdout,
                stderr=self._stderr,
                text=True,
                start_new_session=True,
            )
        except OSError:
            self._close_streams()
            raise
        logger.debug("Worker started pid=%d argv0=%s", self.popen.pid, run_args[0])

    def supervise(self) -> WorkerResult:
        try:
            return self._wait()
        finally:
            self._close_streams()

    def _wait(self) -> WorkerResult:
        timeout_seconds = self.request.timeout_seconds
        hard_deadline = time.monotonic() + timeout_seconds
        grace_deadline: float | None = None

        while (code := self.popen.poll()) is None:
            moment = time.monotonic()
            if moment >= hard_deadline:
                _kill_group(self.popen, grace_seconds=self.grace_seconds)
                return self._stopped(f"worker exceeded timeout of {timeout_seconds}s")
            if grace_deadline is None and self._stop_requested():
                grace_deadline = moment + self.grace_seconds
                logger.info(
                    "Shutdown requested; sent SIGTERM, worker has %ds to exit",
                    self.grace_seconds,
                )
                _signal_group(self.popen, signal.SIGTERM)
            if grace_deadline is not None and moment >= grace_deadline:
                _force_kill(self.popen)
                return self._stopped(INTERRUPTED_REASON)
            time.sleep(self.poll_interval_seconds)

        if grace_deadline is not None:
            # Exited on its own after SIGTERM: still an interrupted iteration.
            return self._stopped(INTERRUPTED_REASON, exit_code=code)
        stdout_text, stderr_text = self._captured()
        if code == 0:
            return WorkerResult.success(
                raw_output=stdout_text, stderr_output=stderr_text, exit_code=code
            )
        return WorkerResult.failure(
            f"worker exited with code {code}",
            raw_output=stdout_text,
            stderr_output=stderr_text,
            exit_code=code,
        )

    def _stop_requested(self) -> bool:
        probe = self.request.shutdown_requested
        return bool(probe is not None and probe())

    def _stopped(self, reason: str, *, exit_code: int = TIMEOUT_EXIT_CODE) -> WorkerResult:
        stdout_text, stderr_text = self._captured()
        return WorkerResult.timeout(
            reason,
            raw_output=stdout_text,
            stderr_output=stderr_text,
            exit_code=exit_code,
        )

    def _captured(self) -> tuple[str, str]:
        self._stdout.flush()
        self._stderr.flush()
        return _slurp(self.request.stdout_path), _slurp(self.request.stderr_path)

    def _close_streams(self) -> None:
        self._stdout.close()
        self._stderr.close()


def _slurp(path: Path) -> str:
    if not path.exists():
        return ""
    return path.read_text(encoding="utf-8", errors="replace")


def _signal_group(popen: subprocess.Popen[str], sig: signal.Signals) -> bool:
    """Send *sig* to the worker's whole session; False once nothing is left to signal."""

    try:
        os.killpg(popen.pid, sig)
    except ProcessLookupError:
        return False
    except OSError as error:
        logger.warning("Could not signal worker group %d: %s", popen.pid, error)
        return False
    return True


def _force_kill(popen: subprocess.Popen[str]) -> None:
    if _signal_group(popen, signal.SIGKILL):
        popen.wait()


def _kill_group(popen: subprocess.Popen[str], *, grace_seconds: int) -> None:
    """SIGTERM the whole session, escalating to SIGKILL after *grace_seconds*."""

    if not _signal_group(popen, signal.SIGTERM):
        return
    try:
        popen.wait(timeout=grace_seconds)
    except subprocess.TimeoutExpired:
        _force_kill(popen)
