"""Filesystem task-root holding spec, state, progress, and evidence.

All mutable records live under one directory so an operator (or the worker
itself) can inspect them with ordinary tools. Writers follow three rules:

- ``state.json`` is replaced atomically (temp file, ``fsync``, ``os.replace``)
  while an exclusive ``fcntl`` lock on a ``.lock`` sidecar is held.
- ``progress.jsonl`` is only ever appended to with ``O_APPEND``.
- ``evidence/NNNN.json`` is created with ``os.link`` from a temp file, which
  fails instead of overwriting when the record already exists.
"""

from __future__ import annotations

import errno
import fcntl
import json
import logging
import os
import shutil
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from ralph_loop.loop.errors import ConfigError, LoopBusyError, PersistenceError
from ralph_loop.loop.models import EvidenceRecord, LoopState, ProgressEntry, utc_now

logger = logging.getLogger(__name__)

SPEC_FILENAME = "spec.md"
STATE_FILENAME = "state.json"
PROGRESS_FILENAME = "progress.jsonl"
EVIDENCE_DIRNAME = "evidence"
WORK_DIRNAME = "work"
BLOCK_REPORT_FILENAME = "BLOCKED.md"
RUN_LOCK_FILENAME = "run.lock"
CANCEL_FILENAME = "CANCEL"

_LOCK_SUFFIX = ".lock"


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Hold an exclusive lock on the ``.lock`` sidecar of *path*."""

    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _write_temp(directory: Path, name: str, content: str) -> str:
    fd, tmp_path = tempfile.mkstemp(dir=str(directory), prefix=f".{name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
    except BaseException:
        _unlink_quietly(tmp_path)
        raise
    return tmp_path


def _atomic_write_text(path: Path, content: str) -> None:
    """Replace *path* with *content* so readers never see a partial file."""

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = _write_temp(path.parent, path.name, content)
    try:
        os.replace(tmp_path, str(path))
    except BaseException:
        _unlink_quietly(tmp_path)
        raise
    _fsync_directory(path.parent)


def _exclusive_write_text(path: Path, content: str) -> None:
    """Create *path* with *content*; raise FileExistsError if it exists."""

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = _write_temp(path.parent, path.name, content)
    try:
        os.link(tmp_path, str(path))
    finally:
        _unlink_quietly(tmp_path)
    _fsync_directory(path.parent)


def _fsync_directory(directory: Path) -> None:
    fd = os.open(str(directory), os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def _unlink_quietly(path: str) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass


def _read_text(path: Path, label: str) -> str:
    if not path.is_file():
        raise ConfigError(f"{label} not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as error:
        raise ConfigError(f"{label} at {path} contains invalid UTF-8 data") from error
    except OSError as error:
        raise ConfigError(f"{label} at {path} is unreadable: {error}") from error
    if not text.strip():
        raise ConfigError(f"{label} at {path} is empty")
    return text


def _load_json_object(path: Path, label: str) -> dict[str, Any]:
    text = _read_text(path, label)
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as error:
        raise ConfigError(f"{label} at {path} is not valid JSON: {error}") from error
    if not isinstance(payload, dict):
        raise ConfigError(f"Expected JSON object in {label} at {path}")
    return payload


def _dump_json(payload: dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True) + "\n"


def evidence_filename(iteration: int) -> str:
    return f"{iteration:04d}.json"


class TaskRoot:
    """Handle for one task lineage stored under *root*."""

    def __init__(self, root: Path) -> None:
        self.root = root

    @property
    def spec_path(self) -> Path:
        return self.root / SPEC_FILENAME

    @property
    def state_path(self) -> Path:
        return self.root / STATE_FILENAME

    @property
    def progress_path(self) -> Path:
        return self.root / PROGRESS_FILENAME

    @property
    def evidence_dir(self) -> Path:
        return self.root / EVIDENCE_DIRNAME

    @property
    def work_dir(self) -> Path:
        return self.root / WORK_DIRNAME

    @property
    def block_report_path(self) -> Path:
        return self.root / BLOCK_REPORT_FILENAME

    @property
    def run_lock_path(self) -> Path:
        return self.root / RUN_LOCK_FILENAME

    @property
    def cancel_path(self) -> Path:
        return self.root / CANCEL_FILENAME

    def exists(self) -> bool:
        return self.state_path.is_file()

    def create(self, *, spec_text: str, state: LoopState) -> None:
        """Write the immutable spec and the initial state record."""

        if not spec_text.strip():
            raise ConfigError("Task spec text must be non-empty.")
        if self.exists():
            raise ConfigError(f"Task root already initialized: {self.root}")
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            self.evidence_dir.mkdir(exist_ok=True)
            self.work_dir.mkdir(exist_ok=True)
            _atomic_write_text(self.spec_path, spec_text)
            self.progress_path.touch(exist_ok=True)
            self.write_state(state)
        except OSError as error:
            raise PersistenceError(f"Failed to initialize task root {self.root}: {error}") from error

    # ------------------------------------------------------------------
    # Spec
    # ------------------------------------------------------------------

    def read_spec(self) -> str:
        return _read_text(self.spec_path, "task spec")

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def read_state(self) -> LoopState:
        """Read loop state under the state lock."""

        if not self.state_path.is_file():
            raise ConfigError(f"Loop state not found: {self.state_path}")
        with _locked_file(self.state_path):
            return self._read_state_unlocked()

    def write_state(self, state: LoopState) -> None:
        try:
            with _locked_file(self.state_path):
                _atomic_write_text(self.state_path, _dump_json(state.to_dict()))
        except OSError as error:
            raise PersistenceError(f"Failed to write loop state {self.state_path}: {error}") from error

    @contextmanager
    def state_transaction(self) -> Iterator[LoopState]:
        """Read-modify-write loop state under one exclusive lock.

        The yielded state is written back only when the block exits without an
        exception, and ``updated_at`` is refreshed on commit.
        """

        if not self.state_path.is_file():
            raise ConfigError(f"Loop state not found: {self.state_path}")
        with _locked_file(self.state_path):
            state = self._read_state_unlocked()
            previous_iteration = state.iteration
            yield state
            if state.iteration < previous_iteration:
                raise PersistenceError(
                    f"Refusing to move iteration backwards: {previous_iteration} -> {state.iteration}",
                )
            state.updated_at = utc_now()
            try:
                _atomic_write_text(self.state_path, _dump_json(state.to_dict()))
            except OSError as error:
                raise PersistenceError(
                    f"Failed to write loop state {self.state_path}: {error}",
                ) from error

    def _read_state_unlocked(self) -> LoopState:
        payload = _load_json_object(self.state_path, "loop state")
        try:
            return LoopState.from_dict(payload)
        except (KeyError, TypeError, ValueError) as error:
            raise ConfigError(f"loop state at {self.state_path} failed validation: {error}") from error

    # ------------------------------------------------------------------
    # Progress log
    # ------------------------------------------------------------------

    def append_progress(self, entry: ProgressEntry) -> None:
        line = json.dumps(entry.to_dict(), ensure_ascii=False, sort_keys=True) + "\n"
        try:
            fd = os.open(str(self.progress_path), os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o644)
            try:
                os.write(fd, line.encode("utf-8"))
                os.fsync(fd)
            finally:
                os.close(fd)
        except OSError as error:
            raise PersistenceError(
                f"Failed to append progress entry {self.progress_path}: {error}",
            ) from error

    def read_progress(self, *, tail: int | None = None) -> list[ProgressEntry]:
        """Return progress entries in log order, optionally only the last *tail*."""

        if not self.progress_path.is_file():
            return []
        text = self.progress_path.read_text(encoding="utf-8")
        lines = text.split("\n")
        # An in-flight append may leave an unterminated final line.
        complete_lines = lines[:-1]
        entries: list[ProgressEntry] = []
        for number, line in enumerate(complete_lines, start=1):
            if not line.strip():
                continue
            try:
                entries.append(ProgressEntry.from_dict(json.loads(line)))
            except (json.JSONDecodeError, KeyError, TypeError, ValueError) as error:
                raise ConfigError(
                    f"progress log {self.progress_path} line {number} is malformed: {error}",
                ) from error
        if tail is not None:
            return entries[-tail:] if tail > 0 else []
        return entries

    def last_progress_iteration(self) -> int:
        entries = self.read_progress(tail=1)
        return entries[-1].iteration if entries else 0

    # ------------------------------------------------------------------
    # Evidence archive
    # ------------------------------------------------------------------

    def evidence_path(self, iteration: int) -> Path:
        return self.evidence_dir / evidence_filename(iteration)

    def has_evidence(self, iteration: int) -> bool:
        return self.evidence_path(iteration).is_file()

    def write_evidence(self, record: EvidenceRecord) -> Path:
        path = self.evidence_path(record.iteration)
        try:
            _exclusive_write_text(path, _dump_json(record.to_dict()))
        except FileExistsError as error:
            logger.error(
                "Evidence for iteration %d already exists at %s; refusing to overwrite",
                record.iteration,
                path,
            )
            raise PersistenceError(
                f"Evidence for iteration {record.iteration} already exists: {path}",
            ) from error
        except OSError as error:
            raise PersistenceError(f"Failed to write evidence {path}: {error}") from error
        return path

    def read_evidence(self, iteration: int) -> EvidenceRecord:
        path = self.evidence_path(iteration)
        payload = _load_json_object(path, "evidence record")
        try:
            record = EvidenceRecord.from_dict(payload)
        except (KeyError, TypeError, ValueError) as error:
            raise ConfigError(f"evidence record at {path} failed validation: {error}") from error
        if record.iteration != iteration:
            raise ConfigError(
                f"evidence record at {path} is keyed {iteration} but holds {record.iteration}",
            )
        return record

    def list_evidence(self) -> list[int]:
        if not self.evidence_dir.is_dir():
            return []
        iterations: list[int] = []
        for path in self.evidence_dir.glob("*.json"):
            if path.stem.isdigit():
                iterations.append(int(path.stem))
        return sorted(iterations)

    def recent_evidence(self, *, limit: int, up_to: int | None = None) -> list[EvidenceRecord]:
        """Return up to *limit* newest records, oldest first."""

        iterations = self.list_evidence()
        if up_to is not None:
            iterations = [iteration for iteration in iterations if iteration <= up_to]
        return [self.read_evidence(iteration) for iteration in iterations[-limit:]]

    # ------------------------------------------------------------------
    # Block report
    # ------------------------------------------------------------------

    def write_block_report(self, text: str) -> Path:
        try:
            _atomic_write_text(self.block_report_path, text)
        except OSError as error:
            raise PersistenceError(
                f"Failed to write block report {self.block_report_path}: {error}",
            ) from error
        return self.block_report_path

    def read_block_report(self) -> str | None:
        if not self.block_report_path.is_file():
            return None
        return self.block_report_path.read_text(encoding="utf-8")

    def remove_block_report(self) -> bool:
        try:
            self.block_report_path.unlink()
        except FileNotFoundError:
            return False
        return True

    # ------------------------------------------------------------------
    # Per-iteration scratch space
    # ------------------------------------------------------------------

    def iteration_workdir(self, iteration: int) -> Path:
        path = self.work_dir / f"{iteration:04d}"
        path.mkdir(parents=True, exist_ok=True)
        return path

    # ------------------------------------------------------------------
    # Run lock and cancellation
    # ------------------------------------------------------------------

    @contextmanager
    def run_lock(self) -> Iterator[None]:
        """Hold the single-controller lock; fail fast if another holds it."""

        self.root.mkdir(parents=True, exist_ok=True)
        with self.run_lock_path.open("a+", encoding="utf-8") as lock_handle:
            try:
                fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except OSError as error:
                if error.errno in (errno.EAGAIN, errno.EACCES):
                    raise LoopBusyError(
                        f"Another controller is running against {self.root}",
                    ) from error
                raise
            try:
                lock_handle.seek(0)
                lock_handle.truncate()
                lock_handle.write(f"{os.getpid()}\n")
                lock_handle.flush()
                yield
            finally:
                fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)

    def is_running(self) -> bool:
        """Probe the run lock without keeping it."""

        if not self.run_lock_path.is_file():
            return False
        with self.run_lock_path.open("a+", encoding="utf-8") as lock_handle:
            try:
                fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except OSError:
                return True
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)
            return False

    def request_cancel(self) -> None:
        _atomic_write_text(self.cancel_path, f"{utc_now().isoformat()}\n")

    def cancel_requested(self) -> bool:
        return self.cancel_path.is_file()

    def clear_cancel_request(self) -> None:
        _unlink_quietly(str(self.cancel_path))

    def destroy(self) -> None:
        """Delete the whole task-root. Refuses while a controller is running."""

        if self.is_running():
            raise LoopBusyError(f"Cannot delete {self.root} while a controller is running")
        shutil.rmtree(self.root)
