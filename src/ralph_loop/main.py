"""CLI entrypoint for ralph-loop."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from ralph_loop import __version__
from ralph_loop.config import Settings
from ralph_loop.loop.controllers import (
    LoopCliController,
    LoopEvidenceCommand,
    LoopInitCommand,
    LoopMutateCommand,
    LoopRunCommand,
    LoopStatusCommand,
)
from ralph_loop.loop.errors import LoopError

click.rich_click.USE_MARKDOWN = True
LOOP_CONTROLLER = LoopCliController()
CommandT = TypeVar("CommandT")
ResultT = TypeVar("ResultT")

_task_root_option = click.option(
    "--task-root",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Task-root directory. Defaults to `RALPH_LOOP_TASK_ROOT` or `.ralph`.",
)


@click.group()
@click.version_option(version=__version__, prog_name="ralph-loop")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
    default=None,
    help="Log level. Defaults to `RALPH_LOOP_LOG_LEVEL` or WARNING.",
)
def ralph_loop(log_level: str | None) -> None:
    """Run a stateless CLI agent in a loop until it declares the task done.

    Every iteration starts a **fresh** agent process. Continuity lives in the
    task-root: the spec, `progress.jsonl`, and one evidence record per
    iteration.
    """

    if log_level is None:
        try:
            settings = Settings.from_env()
            settings.validate()
        except ValueError as error:
            raise click.ClickException(str(error)) from error
        log_level = settings.log_level
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@ralph_loop.command("init")
@_task_root_option
@click.option(
    "--spec-file",
    type=click.Path(path_type=Path, dir_okay=False, exists=True),
    default=None,
    help="File with the task specification.",
)
@click.option("--spec", "spec_text", default=None, help="Task specification text.")
@click.option("--max-iterations", type=click.IntRange(min=1), default=None)
@click.option("--max-attempts", type=click.IntRange(min=1), default=None)
@click.option("--timeout-seconds", type=click.IntRange(min=1), default=None)
@click.option(
    "--promise-text",
    default=None,
    help="Completion marker the agent emits as `<promise>TEXT</promise>`.",
)
def loop_init(  # noqa: PLR0913
    task_root: Path | None,
    spec_file: Path | None,
    spec_text: str | None,
    max_iterations: int | None,
    max_attempts: int | None,
    timeout_seconds: int | None,
    promise_text: str | None,
) -> None:
    """Create a task-root from a spec with status `pending`."""

    _emit_lines(
        _guarded(
            LOOP_CONTROLLER.init,
            LoopInitCommand(
                task_root=task_root,
                spec_file=spec_file,
                spec_text=spec_text,
                max_iterations=max_iterations,
                max_attempts=max_attempts,
                timeout_seconds=timeout_seconds,
                promise_text=promise_text,
            ),
        ),
    )


@ralph_loop.command("run")
@_task_root_option
@click.option(
    "--command",
    "command_template",
    default=None,
    help=(
        "Agent command template. Placeholders: `{prompt}`, `{prompt_file}`, "
        "`{context_file}`, `{task_root}`, `{iteration}`."
    ),
)
@click.option(
    "--graceful-shutdown-seconds",
    type=click.IntRange(min=0),
    default=None,
    help="Grace period before a cancelled agent is killed.",
)
def loop_run(
    task_root: Path | None,
    command_template: str | None,
    graceful_shutdown_seconds: int | None,
) -> None:
    """Iterate until completed, max iterations, blocked, or cancelled.

    Exit codes: 0 completed, 2 max iterations, 3 blocked, 130 cancelled.
    """

    result = _guarded(
        LOOP_CONTROLLER.run,
        LoopRunCommand(
            task_root=task_root,
            command_template=command_template,
            graceful_shutdown_seconds=graceful_shutdown_seconds,
        ),
    )
    _emit_lines(result.lines)
    if result.exit_code:
        raise SystemExit(result.exit_code)


@ralph_loop.command("status")
@_task_root_option
@click.option(
    "--tail",
    type=click.IntRange(min=0),
    default=None,
    help="Progress entries to show. Defaults to `RALPH_LOOP_PROGRESS_TAIL`.",
)
def loop_status(task_root: Path | None, tail: int | None) -> None:
    """Show loop state and the most recent progress entries."""

    _emit_lines(
        _guarded(LOOP_CONTROLLER.status, LoopStatusCommand(task_root=task_root, tail=tail)),
    )


@ralph_loop.command("reset")
@_task_root_option
def loop_reset(task_root: Path | None) -> None:
    """Clear the failure budget and block report so `run` can resume."""

    _emit_lines(_guarded(LOOP_CONTROLLER.reset, LoopMutateCommand(task_root=task_root)))


@ralph_loop.command("cancel")
@_task_root_option
def loop_cancel(task_root: Path | None) -> None:
    """Ask a running loop to stop its in-flight iteration."""

    _emit_lines(_guarded(LOOP_CONTROLLER.cancel, LoopMutateCommand(task_root=task_root)))


@ralph_loop.command("evidence")
@_task_root_option
@click.option(
    "--iteration",
    type=click.IntRange(min=1),
    default=None,
    help="Iteration to show. Defaults to the latest one.",
)
@click.option(
    "--max-chars",
    type=click.IntRange(min=80),
    default=2000,
    show_default=True,
    help="Output preview size.",
)
def loop_evidence(task_root: Path | None, iteration: int | None, max_chars: int) -> None:
    """Show the captured output of one iteration."""

    _emit_lines(
        _guarded(
            LOOP_CONTROLLER.evidence,
            LoopEvidenceCommand(task_root=task_root, iteration=iteration, max_chars=max_chars),
        ),
    )


@ralph_loop.command("destroy")
@_task_root_option
@click.confirmation_option(prompt="Delete the task-root with all evidence?")
def loop_destroy(task_root: Path | None) -> None:
    """Delete the task-root, including spec, progress, and evidence."""

    _emit_lines(_guarded(LOOP_CONTROLLER.destroy, LoopMutateCommand(task_root=task_root)))


def _guarded(operation: Callable[[CommandT], ResultT], command: CommandT) -> ResultT:
    try:
        return operation(command)
    except LoopError as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    ralph_loop()
