"""Exception taxonomy for the loop controller."""

from __future__ import annotations


class LoopError(RuntimeError):
    """Base class for every error raised by the loop control plane."""


class ConfigError(LoopError):
    """Spec, state, or options are unreadable or malformed."""


class PersistenceError(LoopError):
    """A durable write of state, progress, or evidence failed."""


class WorkerError(LoopError):
    """Iteration-level worker failure; counted toward the attempt budget."""


class WorkerTimeoutError(WorkerError):
    """Worker exceeded its per-iteration timeout."""


class WorkerCrashError(WorkerError):
    """Worker could not be started or died abnormally."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class LoopGuardError(LoopError):
    """Operator-facing refusal of an invalid run request."""


class AlreadyTerminalError(LoopGuardError):
    """Loop already reached completed or max_iterations."""


class BlockedError(LoopGuardError):
    """Loop is blocked until the operator resets it."""


class LoopBusyError(LoopGuardError):
    """Another controller currently holds the run lock for this task-root."""
