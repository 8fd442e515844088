from __future__ import annotations

import json
from datetime import UTC, datetime

import allure
import pytest

from ralph_loop.loop.errors import ConfigError, LoopBusyError, PersistenceError
from ralph_loop.loop.models import (
    EvidenceRecord,
    ExitDisposition,
    LoopOptions,
    LoopState,
    LoopStatus,
    ProgressEntry,
)
from ralph_loop.loop.storage import TaskRoot, evidence_filename

pytestmark = [
    allure.epic("Loop Runtime"),
    allure.feature("Task Root Persistence"),
]

_AT = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _record(iteration: int, output: str = "ok") -> EvidenceRecord:
    return EvidenceRecord(
        iteration=iteration,
        raw_output=output,
        exit_disposition=ExitDisposition.SUCCESS,
        exit_code=0,
        started_at=_AT,
        finished_at=_AT,
    )


def _created(task_root: TaskRoot) -> TaskRoot:
    task_root.create(spec_text="# Task\n", state=LoopState.initial(LoopOptions()))
    return task_root


def test_create_writes_layout_and_refuses_to_overwrite(task_root: TaskRoot) -> None:
    _created(task_root)

    assert task_root.read_spec() == "# Task\n"
    assert task_root.read_state().status == LoopStatus.PENDING
    assert task_root.evidence_dir.is_dir()
    assert task_root.progress_path.is_file()
    with pytest.raises(ConfigError, match="already initialized"):
        task_root.create(spec_text="# Other\n", state=LoopState.initial(LoopOptions()))
    assert task_root.read_spec() == "# Task\n"


def test_create_rejects_empty_spec(task_root: TaskRoot) -> None:
    with pytest.raises(ConfigError, match="non-empty"):
        task_root.create(spec_text="  \n", state=LoopState.initial(LoopOptions()))
    assert not task_root.exists()


def test_state_json_carries_promise_and_schema_version(task_root: TaskRoot) -> None:
    _created(task_root)

    payload = json.loads(task_root.state_path.read_text("utf-8"))

    assert payload["schema_version"] == 1
    assert payload["promise_text"] == "COMPLETE"
    assert payload["iteration"] == 0
    assert payload["options"]["max_attempts"] == 5


def test_malformed_state_raises_config_error(task_root: TaskRoot) -> None:
    _created(task_root)
    task_root.state_path.write_text("{not json", "utf-8")

    with pytest.raises(ConfigError, match="not valid JSON"):
        task_root.read_state()


def test_missing_spec_raises_config_error(task_root: TaskRoot) -> None:
    _created(task_root)
    task_root.spec_path.unlink()

    with pytest.raises(ConfigError, match="task spec not found"):
        task_root.read_spec()


def test_state_transaction_refuses_to_move_iteration_backwards(task_root: TaskRoot) -> None:
    _created(task_root)
    with task_root.state_transaction() as state:
        state.iteration = 3

    with pytest.raises(PersistenceError, match="backwards"):
        with task_root.state_transaction() as state:
            state.iteration = 2

    assert task_root.read_state().iteration == 3


def test_state_transaction_discards_changes_on_error(task_root: TaskRoot) -> None:
    _created(task_root)

    with pytest.raises(RuntimeError):
        with task_root.state_transaction() as state:
            state.attempts = 4
            raise RuntimeError("boom")

    assert task_root.read_state().attempts == 0


def test_progress_log_appends_in_order_and_tails(task_root: TaskRoot) -> None:
    _created(task_root)
    for iteration in range(1, 6):
        task_root.append_progress(
            ProgressEntry(iteration=iteration, timestamp=_AT, summary=f"step {iteration}"),
        )

    entries = task_root.read_progress()
    tail = task_root.read_progress(tail=2)

    assert [entry.iteration for entry in entries] == [1, 2, 3, 4, 5]
    assert [entry.summary for entry in tail] == ["step 4", "step 5"]
    assert task_root.read_progress(tail=0) == []
    assert task_root.last_progress_iteration() == 5


def test_progress_reader_ignores_unterminated_last_line(task_root: TaskRoot) -> None:
    _created(task_root)
    task_root.append_progress(ProgressEntry(iteration=1, timestamp=_AT, summary="done"))
    with task_root.progress_path.open("a", encoding="utf-8") as handle:
        handle.write('{"iteration": 2, "timest')

    assert [entry.iteration for entry in task_root.read_progress()] == [1]


def test_evidence_is_write_once(task_root: TaskRoot) -> None:
    _created(task_root)
    path = task_root.write_evidence(_record(1, "first"))

    with pytest.raises(PersistenceError, match="already exists"):
        task_root.write_evidence(_record(1, "second"))

    assert path.name == evidence_filename(1) == "0001.json"
    assert task_root.read_evidence(1).raw_output == "first"
    assert task_root.list_evidence() == [1]
    assert not [item for item in task_root.evidence_dir.iterdir() if item.suffix == ".tmp"]


def test_read_evidence_rejects_mismatched_key(task_root: TaskRoot) -> None:
    _created(task_root)
    task_root.write_evidence(_record(1))
    task_root.evidence_path(1).rename(task_root.evidence_path(2))

    with pytest.raises(ConfigError, match="keyed 2"):
        task_root.read_evidence(2)


def test_recent_evidence_returns_newest_oldest_first(task_root: TaskRoot) -> None:
    _created(task_root)
    for iteration in range(1, 5):
        task_root.write_evidence(_record(iteration))

    recent = task_root.recent_evidence(limit=2)
    bounded = task_root.recent_evidence(limit=2, up_to=2)

    assert [record.iteration for record in recent] == [3, 4]
    assert [record.iteration for record in bounded] == [1, 2]


def test_run_lock_is_exclusive(task_root: TaskRoot) -> None:
    _created(task_root)

    with task_root.run_lock():
        assert task_root.is_running()
        with pytest.raises(LoopBusyError):
            with task_root.run_lock():
                pass
        with pytest.raises(LoopBusyError):
            task_root.destroy()

    assert not task_root.is_running()


def test_cancel_request_file_round_trip(task_root: TaskRoot) -> None:
    _created(task_root)

    task_root.request_cancel()
    assert task_root.cancel_requested()
    task_root.clear_cancel_request()
    task_root.clear_cancel_request()

    assert not task_root.cancel_requested()


def test_destroy_removes_task_root(task_root: TaskRoot) -> None:
    _created(task_root)
    task_root.write_evidence(_record(1))

    task_root.destroy()

    assert not task_root.root.exists()
