"""Shared test fixtures."""

from __future__ import annotations

import json
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from ralph_loop.loop.backend import WorkerResult, WorkerRunRequest
from ralph_loop.loop.controller import LoopController
from ralph_loop.loop.models import LoopOptions
from ralph_loop.loop.storage import TaskRoot

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m ralph_loop.loop.backend.echo_agent "
    "--context-file {context_file} --prompt-file {prompt_file}"
)
SPEC_TEXT = "# Task\n\nMake the tests in this repository pass.\n"


class ScriptedBackend:
    """In-process backend replaying one result per iteration."""

    def __init__(self, results: list[WorkerResult]) -> None:
        self.results = list(results)
        self.requests: list[WorkerRunRequest] = []

    def run(self, request: WorkerRunRequest) -> WorkerResult:
        self.requests.append(request)
        if not self.results:
            raise AssertionError(f"Unexpected iteration {request.iteration}")
        return self.results.pop(0)


@pytest.fixture()
def task_root(tmp_path: Path) -> TaskRoot:
    return TaskRoot(tmp_path / ".ralph")


@pytest.fixture()
def init_loop(task_root: TaskRoot) -> Callable[..., TaskRoot]:
    def _init(**options: Any) -> TaskRoot:
        LoopController.initialize(task_root, SPEC_TEXT, LoopOptions(**options))
        return task_root

    return _init


@pytest.fixture()
def echo_script(tmp_path: Path, monkeypatch) -> Callable[[dict[str, Any]], Path]:
    """Write an echo agent script and point RALPH_LOOP_ECHO_SCRIPT at it."""

    def _write(actions: dict[str, Any]) -> Path:
        path = tmp_path / "echo-script.json"
        path.write_text(json.dumps(actions), "utf-8")
        monkeypatch.setenv("RALPH_LOOP_ECHO_SCRIPT", str(path))
        return path

    return _write


@pytest.fixture()
def scripted_backend() -> Callable[[list[WorkerResult]], ScriptedBackend]:
    return ScriptedBackend


@pytest.fixture()
def echo_command_template() -> str:
    return ECHO_AGENT_COMMAND_TEMPLATE
