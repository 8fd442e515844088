"""Autonomous iteration controller for stateless CLI agents.

Why a file-backed loop and not a job queue?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Each iteration starts a brand-new agent process that remembers nothing. The
only continuity between iterations is what sits on disk: the task spec, the
progress log, the evidence of earlier iterations, and the working tree the
agent edits. Keeping the control state in the same plain files means the
agent can read it to re-anchor, an operator can inspect it with `cat`, and a
restarted controller resumes exactly where the last one stopped.

One task-root runs one iteration at a time. Workers mutate a shared working
tree that the next iteration depends on, so there is nothing to parallelize.
"""

from ralph_loop.loop.controller import LoopController
from ralph_loop.loop.errors import (
    AlreadyTerminalError,
    BlockedError,
    ConfigError,
    LoopBusyError,
    LoopError,
    PersistenceError,
    WorkerCrashError,
    WorkerTimeoutError,
)
from ralph_loop.loop.models import LoopOptions, LoopStatus, RunOutcome
from ralph_loop.loop.storage import TaskRoot

__all__ = [
    "AlreadyTerminalError",
    "BlockedError",
    "ConfigError",
    "LoopBusyError",
    "LoopController",
    "LoopError",
    "LoopOptions",
    "LoopStatus",
    "PersistenceError",
    "RunOutcome",
    "TaskRoot",
    "WorkerCrashError",
    "WorkerTimeoutError",
]
