"""Controllers for loop CLI commands."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from ralph_loop.config import Settings
from ralph_loop.loop.backend import CliWorkerBackend
from ralph_loop.loop.controller import LoopController
from ralph_loop.loop.errors import ConfigError
from ralph_loop.loop.failure_classifier import classify_failure, remediation_for
from ralph_loop.loop.models import ExitDisposition, LoopOptions, LoopRunSummary, RunOutcome
from ralph_loop.loop.storage import TaskRoot
from ralph_loop.sanitization import sanitize_preview, sanitize_tail

RUN_EXIT_CODES = {
    RunOutcome.COMPLETED: 0,
    RunOutcome.MAX_ITERATIONS: 2,
    RunOutcome.BLOCKED: 3,
    RunOutcome.CANCELLED: 130,
}


@dataclass(slots=True)
class LoopInitCommand:
    """CLI input for task-root creation."""

    task_root: Path | None
    spec_file: Path | None
    spec_text: str | None
    max_iterations: int | None
    max_attempts: int | None
    timeout_seconds: int | None
    promise_text: str | None


@dataclass(slots=True)
class LoopRunCommand:
    """CLI input for running the loop."""

    task_root: Path | None
    command_template: str | None = None
    graceful_shutdown_seconds: int | None = None


@dataclass(slots=True)
class LoopStatusCommand:
    """CLI input for status inspection."""

    task_root: Path | None
    tail: int | None = None


@dataclass(slots=True)
class LoopMutateCommand:
    """CLI input for reset/cancel/destroy operations."""

    task_root: Path | None


@dataclass(slots=True)
class LoopEvidenceCommand:
    """CLI input for one evidence record."""

    task_root: Path | None
    iteration: int | None
    max_chars: int = 2000


@dataclass(slots=True)
class LoopRunResult:
    """Rendered run summary plus the process exit code."""

    lines: list[str]
    exit_code: int


class LoopCliController:
    """Coordinates init, run, and inspection CLI operations."""

    def init(self, command: LoopInitCommand) -> list[str]:
        settings = _settings(command.task_root)
        spec_text = _resolve_spec_text(spec_file=command.spec_file, spec_text=command.spec_text)
        options = _resolve_options(command, settings)
        task_root = TaskRoot(settings.task_root)
        state = LoopController.initialize(task_root, spec_text, options)
        return [
            f"Loop initialized: {task_root.root}",
            (
                f"Options: max_iterations={options.max_iterations} "
                f"max_attempts={options.max_attempts} "
                f"timeout_seconds={options.timeout_seconds} "
                f"promise={options.promise_text!r}"
            ),
            f"Status: {state.status.value}",
        ]

    def run(self, command: LoopRunCommand) -> LoopRunResult:
        settings = _settings(command.task_root)
        template = command.command_template or settings.worker.command_template
        graceful = (
            command.graceful_shutdown_seconds
            if command.graceful_shutdown_seconds is not None
            else settings.worker.graceful_shutdown_seconds
        )
        controller = LoopController(
            task_root=TaskRoot(settings.task_root),
            backend=CliWorkerBackend(
                template,
                poll_interval_seconds=settings.worker.poll_interval_seconds,
            ),
            graceful_shutdown_seconds=graceful,
            progress_tail=settings.progress_tail,
        )
        summary = controller.run()
        return LoopRunResult(
            lines=_render_run_summary(summary),
            exit_code=RUN_EXIT_CODES[summary.outcome],
        )

    def status(self, command: LoopStatusCommand) -> list[str]:
        settings = _settings(command.task_root)
        task_root = TaskRoot(settings.task_root)
        report = _inspection_controller(task_root, settings).status(tail=command.tail)
        state = report.state
        options = state.options
        lines = [
            f"Task root: {task_root.root}",
            f"Status: {state.status.value}",
            f"Iteration: {state.iteration}/{options.max_iterations}",
            f"Attempts: {state.attempts}/{options.max_attempts}",
            f"Last disposition: {state.last_disposition.value if state.last_disposition else '-'}",
            f"Last failure: {state.last_failure_reason or '-'}",
            f"Evidence records: {report.evidence_count}",
            f"Running: {'yes' if report.running else 'no'}",
            f"Updated: {state.updated_at.isoformat()}",
        ]
        if state.completed_at is not None:
            lines.append(f"Completed: {state.completed_at.isoformat()}")
        if report.block_report_present:
            lines.append(f"Block report: {task_root.block_report_path}")
        if report.progress_tail:
            lines.append("Progress:")
            for entry in report.progress_tail:
                lines.append(
                    f"  #{entry.iteration} {entry.timestamp.isoformat()} {entry.summary}",
                )
        return lines

    def reset(self, command: LoopMutateCommand) -> list[str]:
        settings = _settings(command.task_root)
        task_root = TaskRoot(settings.task_root)
        state = _inspection_controller(task_root, settings).reset()
        return [
            f"Loop reset: {task_root.root}",
            f"Status: {state.status.value} iteration={state.iteration} attempts={state.attempts}",
        ]

    def cancel(self, command: LoopMutateCommand) -> list[str]:
        settings = _settings(command.task_root)
        task_root = TaskRoot(settings.task_root)
        task_root.read_state()
        if not task_root.is_running():
            return [f"No running loop at {task_root.root}; nothing to cancel."]
        _inspection_controller(task_root, settings).cancel()
        return [f"Cancel requested: {task_root.root}"]

    def evidence(self, command: LoopEvidenceCommand) -> list[str]:
        settings = _settings(command.task_root)
        task_root = TaskRoot(settings.task_root)
        task_root.read_state()
        recorded = task_root.list_evidence()
        if not recorded:
            return [f"No evidence recorded yet at {task_root.root}"]
        iteration = command.iteration if command.iteration is not None else recorded[-1]
        if iteration not in recorded:
            raise ConfigError(f"No evidence for iteration {iteration} at {task_root.root}")

        record = task_root.read_evidence(iteration)
        lines = [
            f"Iteration: {record.iteration}",
            f"Disposition: {record.exit_disposition.value}",
            f"Exit code: {record.exit_code if record.exit_code is not None else '-'}",
            f"Started: {record.started_at.isoformat()}",
            f"Finished: {record.finished_at.isoformat()}",
            f"Duration: {record.duration_ms}ms",
            f"Record: {task_root.evidence_path(iteration)}",
        ]
        if record.exit_disposition != ExitDisposition.SUCCESS:
            classification = classify_failure(record)
            lines.extend(
                [
                    f"Failure reason: {record.failure_reason or '-'}",
                    f"Failure category: {classification.category.value}",
                    f"Remediation: {remediation_for(classification.category)}",
                ],
            )
        lines.append("Output:")
        lines.append(sanitize_preview(record.raw_output, max_chars=command.max_chars) or "(empty)")
        if record.stderr_output:
            lines.append("Stderr (tail):")
            lines.append(sanitize_tail(record.stderr_output, max_chars=command.max_chars))
        return lines

    def destroy(self, command: LoopMutateCommand) -> list[str]:
        settings = _settings(command.task_root)
        task_root = TaskRoot(settings.task_root)
        if not task_root.exists():
            return [f"Nothing to destroy at {task_root.root}"]
        task_root.destroy()
        return [f"Task root removed: {task_root.root}"]


def _settings(task_root: Path | None) -> Settings:
    try:
        settings = Settings.from_env(task_root=task_root)
        settings.validate()
    except ValueError as error:
        raise ConfigError(str(error)) from error
    return settings


def _inspection_controller(task_root: TaskRoot, settings: Settings) -> LoopController:
    """Controller for operations that never spawn a worker."""

    return LoopController(
        task_root=task_root,
        backend=CliWorkerBackend(settings.worker.command_template),
        graceful_shutdown_seconds=settings.worker.graceful_shutdown_seconds,
        progress_tail=settings.progress_tail,
        install_signal_handlers=False,
    )


def _resolve_options(command: LoopInitCommand, settings: Settings) -> LoopOptions:
    defaults = settings.loop
    return LoopOptions(
        max_iterations=(
            defaults.max_iterations if command.max_iterations is None else command.max_iterations
        ),
        max_attempts=(
            defaults.max_attempts if command.max_attempts is None else command.max_attempts
        ),
        timeout_seconds=(
            defaults.timeout_seconds if command.timeout_seconds is None else command.timeout_seconds
        ),
        promise_text=(
            defaults.promise_text if command.promise_text is None else command.promise_text
        ),
    )


def _resolve_spec_text(*, spec_file: Path | None, spec_text: str | None) -> str:
    if spec_file is not None and spec_text is not None:
        raise ConfigError("Pass either --spec-file or --spec, not both.")
    if spec_file is not None:
        try:
            return spec_file.read_text("utf-8")
        except OSError as error:
            raise ConfigError(f"Cannot read spec file {spec_file}: {error}") from error
    if spec_text is not None:
        return spec_text
    raise ConfigError("A task spec is required: pass --spec-file or --spec.")


def _render_run_summary(summary: LoopRunSummary) -> list[str]:
    lines = [
        "Loop summary: "
        f"outcome={summary.outcome.value} iteration={summary.iteration} "
        f"attempts={summary.attempts}",
        "Iterations this run: "
        f"total={summary.iterations_run} succeeded={summary.succeeded} "
        f"failed={summary.failed} timeouts={summary.timeouts}",
    ]
    if summary.recovered:
        lines.append("Recovered an uncommitted iteration from evidence.")
    if summary.block_report_path:
        lines.append(f"Block report: {summary.block_report_path}")
    return lines
