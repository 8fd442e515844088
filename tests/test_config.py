from __future__ import annotations

from pathlib import Path

import allure
import pytest

from ralph_loop.config import DEFAULT_COMMAND_TEMPLATE, LoopDefaults, Settings, WorkerSettings

pytestmark = [
    allure.epic("Loop Runtime"),
    allure.feature("Configuration"),
]


def test_from_env_defaults(monkeypatch) -> None:
    for name in (
        "RALPH_LOOP_TASK_ROOT",
        "RALPH_LOOP_COMMAND_TEMPLATE",
        "RALPH_LOOP_MAX_ITERATIONS",
        "RALPH_LOOP_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()
    settings.validate()

    assert settings.task_root == Path(".ralph")
    assert settings.worker.command_template == DEFAULT_COMMAND_TEMPLATE
    assert settings.loop.max_iterations == 25
    assert settings.loop.max_attempts == 5
    assert settings.loop.timeout_seconds == 1800
    assert settings.loop.promise_text == "COMPLETE"
    assert settings.log_level == "WARNING"


def test_from_env_reads_overrides(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("RALPH_LOOP_TASK_ROOT", str(tmp_path / "loop"))
    monkeypatch.setenv("RALPH_LOOP_MAX_ATTEMPTS", "2")
    monkeypatch.setenv("RALPH_LOOP_PROMISE_TEXT", "DONE")
    monkeypatch.setenv("RALPH_LOOP_GRACEFUL_SHUTDOWN_SECONDS", "3")
    monkeypatch.setenv("RALPH_LOOP_LOG_LEVEL", "debug")

    settings = Settings.from_env()

    assert settings.task_root == tmp_path / "loop"
    assert settings.loop.to_options().max_attempts == 2
    assert settings.loop.promise_text == "DONE"
    assert settings.worker.graceful_shutdown_seconds == 3
    assert settings.log_level == "DEBUG"


def test_explicit_task_root_wins_over_env(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("RALPH_LOOP_TASK_ROOT", str(tmp_path / "env"))

    assert Settings.from_env(task_root=tmp_path / "flag").task_root == tmp_path / "flag"


def test_non_integer_env_value_is_rejected(monkeypatch) -> None:
    monkeypatch.setenv("RALPH_LOOP_MAX_ITERATIONS", "many")

    with pytest.raises(ValueError, match="RALPH_LOOP_MAX_ITERATIONS must be an integer"):
        Settings.from_env()


def test_non_numeric_poll_interval_is_rejected(monkeypatch) -> None:
    monkeypatch.setenv("RALPH_LOOP_POLL_INTERVAL_SECONDS", "fast")

    with pytest.raises(ValueError, match="RALPH_LOOP_POLL_INTERVAL_SECONDS must be a number"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(loop=LoopDefaults(max_iterations=0)), "max_iterations"),
        (Settings(loop=LoopDefaults(promise_text="<x>")), "promise_text"),
        (Settings(worker=WorkerSettings(command_template="  ")), "COMMAND_TEMPLATE"),
        (Settings(worker=WorkerSettings(poll_interval_seconds=0)), "POLL_INTERVAL"),
        (Settings(log_level="LOUD"), "LOG_LEVEL"),
    ],
)
def test_validate_rejects_out_of_range_values(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate()
