"""File-based contract handed to the worker for re-anchoring."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

CONTEXT_CONTRACT_VERSION = 1


@dataclass(slots=True)
class ProgressDigest:
    """Compact progress entry embedded in the context manifest."""

    iteration: int
    timestamp: str
    summary: str
    disposition: str | None = None


@dataclass(slots=True)
class IterationContext:
    """Everything a fresh worker needs to rebuild its working context."""

    contract_version: int
    iteration: int
    max_iterations: int
    attempts: int
    max_attempts: int
    promise_marker: str
    task_root: str
    spec_path: str
    state_path: str
    progress_log_path: str
    evidence_dir: str
    workdir: str
    prompt_path: str
    stdout_path: str
    stderr_path: str
    last_failure_reason: str | None = None
    recent_progress: list[ProgressDigest] = field(default_factory=list)


def write_json(path: Path, payload: dict[str, Any]) -> None:
    """Persist JSON payload using deterministic formatting."""

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True), "utf-8")


def load_json(path: Path) -> dict[str, Any]:
    """Load JSON document and validate top-level object type."""

    payload = json.loads(path.read_text("utf-8"))
    if not isinstance(payload, dict):
        raise TypeError(f"Expected JSON object in {path}")
    return payload


def write_context(path: Path, context: IterationContext) -> None:
    write_json(path, asdict(context))


def read_context(path: Path) -> IterationContext:
    payload = load_json(path)
    progress = [ProgressDigest(**item) for item in payload.pop("recent_progress", [])]
    return IterationContext(**payload, recent_progress=progress)
