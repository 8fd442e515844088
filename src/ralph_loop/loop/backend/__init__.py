"""Worker backend implementations."""

from ralph_loop.loop.backend.base import WorkerBackend, WorkerResult, WorkerRunRequest
from ralph_loop.loop.backend.cli_backend import CliWorkerBackend

__all__ = [
    "CliWorkerBackend",
    "WorkerBackend",
    "WorkerResult",
    "WorkerRunRequest",
]
