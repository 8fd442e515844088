"""Loop controller: run a stateless worker until a stop condition holds."""

from __future__ import annotations

import logging
import signal
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from ralph_loop.loop.backend.base import WorkerBackend, WorkerResult, WorkerRunRequest
from ralph_loop.loop.block_report import build_block_report
from ralph_loop.loop.completion import has_completion_marker
from ralph_loop.loop.contracts import (
    CONTEXT_CONTRACT_VERSION,
    IterationContext,
    ProgressDigest,
    write_context,
)
from ralph_loop.loop.errors import (
    AlreadyTerminalError,
    BlockedError,
    ConfigError,
    PersistenceError,
    WorkerError,
    WorkerTimeoutError,
)
from ralph_loop.loop.models import (
    EvidenceRecord,
    ExitDisposition,
    LoopOptions,
    LoopRunSummary,
    LoopState,
    LoopStatus,
    LoopStatusReport,
    ProgressEntry,
    RunOutcome,
    utc_now,
)
from ralph_loop.loop.prompt import build_iteration_prompt
from ralph_loop.loop.storage import TaskRoot
from ralph_loop.sanitization import one_line

logger = logging.getLogger(__name__)

DEFAULT_GRACEFUL_SHUTDOWN_SECONDS = 10
DEFAULT_PROGRESS_TAIL = 10


@dataclass(slots=True)
class IterationDecision:
    """What one evidence record does to the loop state."""

    status: LoopStatus
    attempts: int
    summary: str
    completed: bool = False
    blocked: bool = False


class LoopController:
    """Drives one task-root through iterations of a stateless worker.

    Nothing read from disk is kept between iterations: every cycle reloads
    the spec and the state, rebuilds the worker prompt and context manifest,
    and commits evidence, progress and state before the next cycle starts.
    """

    def __init__(
        self,
        *,
        task_root: TaskRoot,
        backend: WorkerBackend,
        graceful_shutdown_seconds: int = DEFAULT_GRACEFUL_SHUTDOWN_SECONDS,
        progress_tail: int = DEFAULT_PROGRESS_TAIL,
        install_signal_handlers: bool = True,
    ) -> None:
        self.task_root = task_root
        self.backend = backend
        self.graceful_shutdown_seconds = graceful_shutdown_seconds
        self.progress_tail = progress_tail
        self.install_signal_handlers = install_signal_handlers
        self._stop_requested = False
        self._stop_signal_name: str | None = None
        self._current_iteration: int | None = None

    @staticmethod
    def initialize(task_root: TaskRoot, spec_text: str, options: LoopOptions) -> LoopState:
        """Create a fresh task-root with status=pending."""

        try:
            options.validate()
        except ValueError as error:
            raise ConfigError(f"Invalid loop options: {error}") from error
        state = LoopState.initial(options)
        task_root.create(spec_text=spec_text, state=state)
        logger.info(
            "Initialized loop at %s max_iterations=%d max_attempts=%d timeout=%ds",
            task_root.root,
            options.max_iterations,
            options.max_attempts,
            options.timeout_seconds,
        )
        return state

    # ------------------------------------------------------------------
    # Public control surface
    # ------------------------------------------------------------------

    def run(self) -> LoopRunSummary:
        """Iterate until completed, max_iterations, blocked, or cancelled."""

        with self.task_root.run_lock():
            self.task_root.clear_cancel_request()
            self._stop_requested = False
            self._stop_signal_name = None
            try:
                return self._run_locked()
            finally:
                self.task_root.clear_cancel_request()

    def status(self, *, tail: int | None = None) -> LoopStatusReport:
        state = self.task_root.read_state()
        return LoopStatusReport(
            state=state,
            progress_tail=self.task_root.read_progress(
                tail=self.progress_tail if tail is None else tail,
            ),
            evidence_count=len(self.task_root.list_evidence()),
            block_report_present=self.task_root.block_report_path.is_file(),
            running=self.task_root.is_running(),
        )

    def cancel(self) -> None:
        """Stop the in-flight iteration; recorded state is left as-is."""

        self._request_stop(signal_name="cancel")
        self.task_root.request_cancel()

    def reset(self) -> LoopState:
        """Clear attempts and the block report so the loop can resume."""

        with self.task_root.run_lock():
            with self.task_root.state_transaction() as state:
                if state.status.is_terminal:
                    raise AlreadyTerminalError(
                        f"Loop already finished with status={state.status.value}; nothing to reset.",
                    )
                previous_status = state.status
                state.attempts = 0
                if state.status == LoopStatus.BLOCKED:
                    state.status = LoopStatus.PENDING
                removed = self.task_root.remove_block_report()
            logger.info(
                "Reset loop at %s iteration=%d (was %s, block report removed=%s)",
                self.task_root.root,
                state.iteration,
                previous_status.value,
                removed,
            )
            return state

    # ------------------------------------------------------------------
    # Run loop
    # ------------------------------------------------------------------

    def _run_locked(self) -> LoopRunSummary:
        self.task_root.read_spec()
        state = self.task_root.read_state()
        self._guard_runnable(state)

        summary = LoopRunSummary(
            outcome=RunOutcome.CANCELLED,
            iteration=state.iteration,
            attempts=state.attempts,
        )
        recovered = self._recover_orphaned_evidence(state)
        if recovered is not None:
            summary.recovered = True
            state = recovered

        with self._signal_handlers():
            while True:
                outcome = self._outcome_for(state)
                if outcome is not None:
                    return self._finish(summary, state, outcome)
                if self._should_stop():
                    return self._finish(summary, state, RunOutcome.CANCELLED)

                if state.iteration >= state.options.max_iterations:
                    state = self._mark_max_iterations()
                    continue

                if state.status == LoopStatus.PENDING:
                    with self.task_root.state_transaction() as state:
                        state.status = LoopStatus.RUNNING

                spec_text = self.task_root.read_spec()
                record = self._execute_iteration(spec_text=spec_text, state=state)
                state = self._apply_evidence(record)

                summary.iterations_run += 1
                if record.exit_disposition == ExitDisposition.SUCCESS:
                    summary.succeeded += 1
                elif record.exit_disposition == ExitDisposition.TIMEOUT:
                    summary.timeouts += 1
                else:
                    summary.failed += 1

                state = self.task_root.read_state()

    def _guard_runnable(self, state: LoopState) -> None:
        if state.status.is_terminal:
            raise AlreadyTerminalError(
                f"Loop already finished with status={state.status.value} "
                f"at iteration {state.iteration}.",
            )
        if state.status == LoopStatus.BLOCKED:
            raise BlockedError(
                f"Loop is blocked at iteration {state.iteration}; see "
                f"{self.task_root.block_report_path} and run reset to resume.",
            )

    @staticmethod
    def _outcome_for(state: LoopState) -> RunOutcome | None:
        if state.status == LoopStatus.COMPLETED:
            return RunOutcome.COMPLETED
        if state.status == LoopStatus.MAX_ITERATIONS:
            return RunOutcome.MAX_ITERATIONS
        if state.status == LoopStatus.BLOCKED:
            return RunOutcome.BLOCKED
        return None

    def _finish(
        self,
        summary: LoopRunSummary,
        state: LoopState,
        outcome: RunOutcome,
    ) -> LoopRunSummary:
        summary.outcome = outcome
        summary.iteration = state.iteration
        summary.attempts = state.attempts
        if outcome == RunOutcome.BLOCKED:
            summary.block_report_path = str(self.task_root.block_report_path)
        log = logger.warning if outcome in (RunOutcome.BLOCKED, RunOutcome.CANCELLED) else logger.info
        log(
            "Loop stopped outcome=%s iteration=%d attempts=%d",
            outcome.value,
            state.iteration,
            state.attempts,
        )
        return summary

    def _mark_max_iterations(self) -> LoopState:
        with self.task_root.state_transaction() as state:
            state.status = LoopStatus.MAX_ITERATIONS
        logger.warning(
            "Iteration ceiling reached: iteration=%d max_iterations=%d",
            state.iteration,
            state.options.max_iterations,
        )
        return state

    # ------------------------------------------------------------------
    # One iteration
    # ------------------------------------------------------------------

    def _execute_iteration(self, *, spec_text: str, state: LoopState) -> EvidenceRecord:
        iteration = state.iteration + 1
        workdir = self.task_root.iteration_workdir(iteration)
        context = self._build_context(state=state, iteration=iteration, workdir=workdir)
        prompt = build_iteration_prompt(spec_text=spec_text, context=context)
        prompt_path = workdir / "prompt.txt"
        context_path = workdir / "context.json"
        try:
            prompt_path.write_text(prompt, "utf-8")
            write_context(context_path, context)
        except OSError as error:
            raise PersistenceError(f"Failed to materialize workdir {workdir}: {error}") from error

        request = WorkerRunRequest(
            prompt=prompt,
            iteration=iteration,
            timeout_seconds=state.options.timeout_seconds,
            task_root=self.task_root.root,
            workdir=workdir,
            prompt_path=prompt_path,
            context_path=context_path,
            stdout_path=workdir / "stdout.log",
            stderr_path=workdir / "stderr.log",
            shutdown_requested=self._should_stop,
            graceful_shutdown_seconds=self.graceful_shutdown_seconds,
        )

        logger.info("Iteration %d started (attempts=%d)", iteration, state.attempts)
        self._current_iteration = iteration
        started_at = utc_now()
        try:
            result = self._invoke_backend(request)
        finally:
            self._current_iteration = None
        finished_at = utc_now()

        reason = result.reason
        if self._stop_requested and result.disposition != ExitDisposition.SUCCESS:
            reason = f"interrupted: {self._stop_signal_name}"

        logger.info(
            "Iteration %d finished disposition=%s exit_code=%s",
            iteration,
            result.disposition.value,
            result.exit_code,
        )
        return EvidenceRecord(
            iteration=iteration,
            raw_output=result.raw_output,
            stderr_output=result.stderr_output,
            exit_disposition=result.disposition,
            exit_code=result.exit_code,
            failure_reason=reason,
            started_at=started_at,
            finished_at=finished_at,
        )

    def _invoke_backend(self, request: WorkerRunRequest) -> WorkerResult:
        try:
            return self.backend.run(request)
        except WorkerTimeoutError as error:
            logger.warning("Iteration %d timed out: %s", request.iteration, error)
            return WorkerResult.timeout(
                str(error),
                raw_output=_read_partial(request.stdout_path),
                stderr_output=_read_partial(request.stderr_path),
            )
        except WorkerError as error:
            logger.warning("Iteration %d worker crashed: %s", request.iteration, error)
            return WorkerResult.failure(
                str(error),
                raw_output=_read_partial(request.stdout_path),
                stderr_output=_read_partial(request.stderr_path),
            )

    def _build_context(
        self,
        *,
        state: LoopState,
        iteration: int,
        workdir: Path,
    ) -> IterationContext:
        recent = self.task_root.read_progress(tail=self.progress_tail)
        return IterationContext(
            contract_version=CONTEXT_CONTRACT_VERSION,
            iteration=iteration,
            max_iterations=state.options.max_iterations,
            attempts=state.attempts,
            max_attempts=state.options.max_attempts,
            promise_marker=state.options.promise_text,
            task_root=str(self.task_root.root),
            spec_path=str(self.task_root.spec_path),
            state_path=str(self.task_root.state_path),
            progress_log_path=str(self.task_root.progress_path),
            evidence_dir=str(self.task_root.evidence_dir),
            workdir=str(workdir),
            prompt_path=str(workdir / "prompt.txt"),
            stdout_path=str(workdir / "stdout.log"),
            stderr_path=str(workdir / "stderr.log"),
            last_failure_reason=state.last_failure_reason,
            recent_progress=[
                ProgressDigest(
                    iteration=entry.iteration,
                    timestamp=entry.timestamp.isoformat(),
                    summary=entry.summary,
                    disposition=entry.disposition.value if entry.disposition else None,
                )
                for entry in recent
            ],
        )

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def _apply_evidence(self, record: EvidenceRecord) -> LoopState:
        """Commit evidence, then progress, then state for one iteration."""

        self.task_root.write_evidence(record)
        return self._commit_record(record)

    def _commit_record(self, record: EvidenceRecord) -> LoopState:
        with self.task_root.state_transaction() as state:
            if record.iteration != state.iteration + 1:
                raise PersistenceError(
                    f"Evidence for iteration {record.iteration} does not follow "
                    f"recorded iteration {state.iteration}",
                )
            decision = decide_iteration(state=state, record=record)
            state.iteration = record.iteration
            state.attempts = decision.attempts
            state.status = decision.status
            state.last_disposition = record.exit_disposition
            state.last_failure_reason = (
                None if record.exit_disposition == ExitDisposition.SUCCESS else record.failure_reason
            )
            now = utc_now()
            if decision.completed:
                state.completed_at = now

            if self.task_root.last_progress_iteration() < record.iteration:
                self.task_root.append_progress(
                    ProgressEntry(
                        iteration=record.iteration,
                        timestamp=now,
                        summary=decision.summary,
                        disposition=record.exit_disposition,
                        status=decision.status,
                    ),
                )
            if decision.blocked:
                self._write_block_report(state=state, created_at=now)

        if decision.completed:
            logger.info("Completion marker found at iteration %d", record.iteration)
        elif decision.blocked:
            logger.warning(
                "Failure budget exhausted at iteration %d (%d consecutive failures)",
                record.iteration,
                decision.attempts,
            )
        return state

    def _write_block_report(self, *, state: LoopState, created_at: datetime) -> None:
        records = self.task_root.recent_evidence(limit=state.attempts, up_to=state.iteration)
        report = build_block_report(state=state, records=records, created_at=created_at)
        self.task_root.write_block_report(report.render())

    def _recover_orphaned_evidence(self, state: LoopState) -> LoopState | None:
        """Finish committing an iteration whose evidence outlived a crash."""

        recorded = self.task_root.list_evidence()
        if not recorded or recorded[-1] <= state.iteration:
            return None
        orphan = state.iteration + 1
        if recorded[-1] != orphan:
            raise ConfigError(
                f"Evidence archive runs ahead of state: newest record is {recorded[-1]}, "
                f"state iteration is {state.iteration}",
            )
        logger.warning("Recovering uncommitted iteration %d from evidence", orphan)
        return self._commit_record(self.task_root.read_evidence(orphan))

    # ------------------------------------------------------------------
    # Stop handling
    # ------------------------------------------------------------------

    def _should_stop(self) -> bool:
        if not self._stop_requested and self.task_root.cancel_requested():
            self._request_stop(signal_name="cancel request")
        return self._stop_requested

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not self.install_signal_handlers or not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self._request_stop(signal_name=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in the main thread.
            logger.debug("Not in the main thread; SIGINT/SIGTERM left to the caller")
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)

    def _request_stop(self, *, signal_name: str) -> None:
        if self._stop_requested:
            return
        self._stop_requested = True
        self._stop_signal_name = signal_name
        if self._current_iteration is not None:
            logger.warning(
                "Stop requested (%s) during iteration %d",
                signal_name,
                self._current_iteration,
            )


def decide_iteration(*, state: LoopState, record: EvidenceRecord) -> IterationDecision:
    """Apply the completion, success, and failure-budget rules to one record."""

    options = state.options
    if has_completion_marker(record.combined_output, options.promise_text):
        return IterationDecision(
            status=LoopStatus.COMPLETED,
            attempts=0,
            summary="completed: promise detected",
            completed=True,
        )

    if record.exit_disposition == ExitDisposition.SUCCESS:
        return IterationDecision(
            status=LoopStatus.RUNNING,
            attempts=0,
            summary=f"success: {_last_line(record.raw_output) or 'no output'}",
        )

    attempts = state.attempts + 1
    reason = record.failure_reason or record.exit_disposition.value
    if attempts >= options.max_attempts:
        return IterationDecision(
            status=LoopStatus.BLOCKED,
            attempts=attempts,
            summary=f"blocked after {attempts} consecutive failures: {one_line(reason)}",
            blocked=True,
        )
    return IterationDecision(
        status=LoopStatus.RUNNING,
        attempts=attempts,
        summary=(
            f"{record.exit_disposition.value} ({attempts}/{options.max_attempts}): "
            f"{one_line(reason)}"
        ),
    )


def _last_line(text: str) -> str:
    for line in reversed(text.splitlines()):
        if line.strip():
            return one_line(line)
    return ""


def _read_partial(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except FileNotFoundError:
        return ""
