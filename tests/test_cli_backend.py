from __future__ import annotations

import sys
import time
from pathlib import Path

import allure
import pytest

from ralph_loop.loop.backend import CliWorkerBackend, WorkerRunRequest
from ralph_loop.loop.backend.cli_backend import TIMEOUT_EXIT_CODE, _build_run_args
from ralph_loop.loop.errors import ConfigError, WorkerCrashError
from ralph_loop.loop.models import ExitDisposition

pytestmark = [
    allure.epic("Loop Runtime"),
    allure.feature("Agent Command Rendering"),
]


def _request(
    tmp_path: Path,
    *,
    timeout_seconds: int = 30,
    shutdown_requested=None,
    graceful_shutdown_seconds: int = 0,
) -> WorkerRunRequest:
    workdir = tmp_path / "work" / "0001"
    workdir.mkdir(parents=True)
    prompt_path = workdir / "prompt.txt"
    prompt_path.write_text("do the thing", "utf-8")
    return WorkerRunRequest(
        prompt="do the thing",
        iteration=1,
        timeout_seconds=timeout_seconds,
        task_root=tmp_path,
        workdir=workdir,
        prompt_path=prompt_path,
        context_path=workdir / "context.json",
        stdout_path=workdir / "stdout.log",
        stderr_path=workdir / "stderr.log",
        shutdown_requested=shutdown_requested,
        graceful_shutdown_seconds=graceful_shutdown_seconds,
    )


def _python_template(code: str) -> str:
    return f"{sys.executable} -c {code!r} {{prompt_file}}"


def test_build_run_args_quotes_placeholder_values() -> None:
    run_args = _build_run_args(
        command_template="agent --ctx {context_file} --iter {iteration} -- {prompt}",
        prompt='hello "world" $HOME',
        prompt_file=Path("p.txt"),
        context_file=Path("with space/context.json"),
        task_root=Path("."),
        iteration=7,
    )

    assert run_args == [
        "agent",
        "--ctx",
        "with space/context.json",
        "--iter",
        "7",
        "--",
        'hello "world" $HOME',
    ]


@pytest.mark.parametrize(
    ("template", "message"),
    [
        ("", "empty"),
        ("agent --no-prompt", "must include"),
        ("agent {prompt} {model}", "Unsupported command template placeholder"),
        ("agent '{prompt}", "not valid shell syntax"),
    ],
)
def test_invalid_templates_raise_config_error(template: str, message: str) -> None:
    with pytest.raises(ConfigError, match=message):
        CliWorkerBackend(template)


def test_run_captures_stdout_and_stderr_on_success(tmp_path: Path) -> None:
    backend = CliWorkerBackend(
        _python_template("import sys; print('out'); print('err', file=sys.stderr)"),
        poll_interval_seconds=0.02,
    )

    result = backend.run(_request(tmp_path))

    assert result.ok
    assert result.disposition == ExitDisposition.SUCCESS
    assert result.exit_code == 0
    assert result.raw_output.strip() == "out"
    assert result.stderr_output.strip() == "err"


def test_run_reports_nonzero_exit_as_failure(tmp_path: Path) -> None:
    backend = CliWorkerBackend(
        _python_template("import sys; print('partial'); sys.exit(3)"),
        poll_interval_seconds=0.02,
    )

    result = backend.run(_request(tmp_path))

    assert result.disposition == ExitDisposition.FAILURE
    assert result.exit_code == 3
    assert result.reason == "worker exited with code 3"
    assert "partial" in result.raw_output


def test_run_timeout_keeps_partial_output(tmp_path: Path) -> None:
    backend = CliWorkerBackend(
        _python_template("import time; print('halfway', flush=True); time.sleep(30)"),
        poll_interval_seconds=0.02,
    )

    started = time.monotonic()
    result = backend.run(_request(tmp_path, timeout_seconds=1))

    assert time.monotonic() - started < 10
    assert result.disposition == ExitDisposition.TIMEOUT
    assert result.exit_code == TIMEOUT_EXIT_CODE
    assert "halfway" in result.raw_output
    assert "timeout" in (result.reason or "")


def test_run_stops_worker_when_shutdown_requested(tmp_path: Path) -> None:
    backend = CliWorkerBackend(
        _python_template("import time; print('started', flush=True); time.sleep(30)"),
        poll_interval_seconds=0.02,
    )
    deadline = time.monotonic() + 0.5

    result = backend.run(
        _request(tmp_path, shutdown_requested=lambda: time.monotonic() >= deadline),
    )

    assert result.disposition == ExitDisposition.TIMEOUT
    assert result.reason == "interrupted: shutdown requested"
    assert "started" in result.raw_output


def test_shutdown_sends_sigterm_at_start_of_grace_window(tmp_path: Path) -> None:
    backend = CliWorkerBackend(
        _python_template(
            "import signal, sys, time; "
            "signal.signal(signal.SIGTERM, "
            "lambda *_: (print('got-term', flush=True), sys.exit(0))); "
            "print('started', flush=True); time.sleep(30)",
        ),
        poll_interval_seconds=0.02,
    )
    deadline = time.monotonic() + 0.5

    started = time.monotonic()
    result = backend.run(
        _request(
            tmp_path,
            shutdown_requested=lambda: time.monotonic() >= deadline,
            graceful_shutdown_seconds=8,
        ),
    )

    assert time.monotonic() - started < 5
    assert result.disposition == ExitDisposition.TIMEOUT
    assert result.reason == "interrupted: shutdown requested"
    assert result.exit_code == 0
    assert "got-term" in result.raw_output


def test_shutdown_kills_worker_that_ignores_sigterm_after_grace(tmp_path: Path) -> None:
    backend = CliWorkerBackend(
        _python_template(
            "import signal, time; signal.signal(signal.SIGTERM, signal.SIG_IGN); "
            "print('stubborn', flush=True); time.sleep(30)",
        ),
        poll_interval_seconds=0.02,
    )
    deadline = time.monotonic() + 0.5

    started = time.monotonic()
    result = backend.run(
        _request(
            tmp_path,
            shutdown_requested=lambda: time.monotonic() >= deadline,
            graceful_shutdown_seconds=1,
        ),
    )

    assert 1 <= time.monotonic() - started < 10
    assert result.disposition == ExitDisposition.TIMEOUT
    assert result.exit_code == TIMEOUT_EXIT_CODE
    assert "stubborn" in result.raw_output


def test_missing_executable_raises_non_transient_crash(tmp_path: Path) -> None:
    backend = CliWorkerBackend("definitely-not-a-real-agent-binary {prompt}")

    with pytest.raises(WorkerCrashError, match="not found") as error_info:
        backend.run(_request(tmp_path))

    assert error_info.value.transient is False
