"""Worker backend implementations."""

from agent_dispatch.orchestrator.backend.base import (
    BackendRunRequest,
    BackendRunResult,
    RunOutcome,
    TimeoutKind,
    WorkerBackend,
)
from agent_dispatch.orchestrator.backend.cli_backend import BackendRunError, CliWorkerBackend

__all__ = [
    "BackendRunError",
    "BackendRunRequest",
    "BackendRunResult",
    "CliWorkerBackend",
    "RunOutcome",
    "TimeoutKind",
    "WorkerBackend",
]
