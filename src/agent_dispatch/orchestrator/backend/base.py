"""Backend interface for supervised worker execution."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Protocol

from agent_dispatch.orchestrator.workdir import Workspace


class RunOutcome(str, Enum):
    """How the worker process ended."""

    EXITED = "exited"
    TIMED_OUT = "timed_out"
    KILLED = "killed"


class TimeoutKind(str, Enum):
    IDLE = "idle"
    HARD = "hard"


@dataclass(slots=True)
class BackendRunRequest:
    """Inputs required to execute one task attempt."""

    workspace: Workspace
    task_type: str
    command_template: str
    idle_timeout_seconds: float
    hard_timeout_seconds: float
    graceful_shutdown_seconds: float = 10.0
    poll_interval_seconds: float = 0.1
    cancel_requested: Callable[[], bool] | None = None
    on_spawn: Callable[[int], None] | None = None


@dataclass(slots=True)
class BackendRunResult:
    """Execution outcome from the supervisor."""

    outcome: RunOutcome
    exit_code: int | None
    timeout_kind: TimeoutKind | None
    started_at: datetime
    finished_at: datetime
    last_activity_at: datetime
    duration_ms: int
    stdout_path: Path
    stderr_path: Path
    pid: int | None = None


class WorkerBackend(Protocol):
    """Protocol implemented by backend runners."""

    def run(self, request: BackendRunRequest) -> BackendRunResult:
        """Run a task attempt and return execution metadata."""
