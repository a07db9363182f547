"""Domain models for orchestrator task queue and execution."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    QUEUED = "queued"
    ADMITTED = "admitted"
    ATTEMPT_RUNNING = "attempt_running"
    ATTEMPT_SUCCEEDED = "attempt_succeeded"
    ATTEMPT_FAILED = "attempt_failed"
    ATTEMPT_TIMED_OUT = "attempt_timed_out"
    COMPLETED = "completed"
    DEAD_LETTERED = "dead_lettered"

    @property
    def is_terminal(self) -> bool:
        return self in {TaskStatus.COMPLETED, TaskStatus.DEAD_LETTERED}


class AttemptStatus(str, Enum):
    """Per-attempt execution states."""

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    KILLED = "killed"


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy."""

    TIMEOUT = "timeout"
    INFRASTRUCTURE = "infrastructure"
    WORKER_CRASHED = "worker_crashed"
    OUTPUT_MISSING = "output_missing"
    OUTPUT_INVALID = "output_invalid"
    WORKER_REPORTED_FAILURE = "worker_reported_failure"
    CANCELED = "canceled"


class InboundDisposition(str, Enum):
    """What the dispatcher did with one inbound event."""

    RECEIVED = "received"
    ENQUEUED = "enqueued"
    DEDUPLICATED = "deduplicated"
    UNROUTABLE = "unroutable"


@dataclass(slots=True)
class NormalizedEvent:
    """Verified inbound event handed over by the ingress layer."""

    source: str
    event_type: str
    resource_id: str
    payload: dict[str, Any]
    received_at: datetime


@dataclass(slots=True)
class InboundEventView:
    """Persisted inbound event log entry."""

    event_id: int
    source: str
    event_type: str
    resource_id: str
    dedupe_key: str
    disposition: InboundDisposition
    task_id: str | None
    received_at: datetime


@dataclass(slots=True)
class TaskCreate:
    """Input payload for enqueuing a task."""

    source: str
    task_type: str
    resource_id: str
    context: dict[str, Any]
    task_id: str | None = None
    priority: int = 5
    max_retries: int = 3
    repository_ref: str | None = None
    inbound_event_id: int | None = None


@dataclass(slots=True)
class TaskView:
    """Readable task view for CLI and coordinator logic."""

    task_id: str
    source: str
    task_type: str
    resource_id: str
    inbound_event_id: int | None
    priority: int
    status: TaskStatus
    retry_count: int
    max_retries: int
    attempt_count: int
    infra_error_count: int
    context: dict[str, Any]
    repository_ref: str | None
    run_after: datetime
    queued_at: datetime
    admitted_at: datetime | None
    finished_at: datetime | None
    cancel_requested_at: datetime | None
    failure_class: FailureClass | None
    failure_signature: str | None
    last_exit_code: int | None
    error_summary: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class AttemptView:
    """Per-attempt execution record."""

    attempt_id: int
    task_id: str
    attempt_no: int
    status: AttemptStatus
    workspace_path: str
    started_at: datetime
    last_activity_at: datetime | None
    finished_at: datetime | None
    duration_ms: int | None
    exit_code: int | None
    timeout_kind: str | None
    failure_class: FailureClass | None
    error_summary: str | None
    result_path: str | None
    stdout_path: str | None
    stderr_path: str | None
    stdout_preview: str | None
    stderr_preview: str | None
    archive_path: str | None


@dataclass(slots=True)
class AttemptFinish:
    """Input to finalize one attempt row."""

    task_id: str
    attempt_no: int
    status: AttemptStatus
    finished_at: datetime
    last_activity_at: datetime | None = None
    exit_code: int | None = None
    timeout_kind: str | None = None
    failure_class: FailureClass | None = None
    error_summary: str | None = None
    result_path: str | None = None
    stdout_preview: str | None = None
    stderr_preview: str | None = None
    archive_path: str | None = None


@dataclass(slots=True)
class ActionRecord:
    """One validated side-effect reported by a worker."""

    action_type: str
    platform: str
    target_resource_id: str
    performed_at: datetime
    success: bool = True
    detail: dict[str, Any] | None = None


@dataclass(slots=True)
class ActionView:
    """Persisted audit row for an action."""

    action_id: int
    task_id: str
    attempt_no: int
    action_type: str
    platform: str
    target_resource_id: str
    performed_at: datetime | None
    success: bool
    detail: dict[str, Any] | None
    created_at: datetime


@dataclass(slots=True)
class TaskDetails:
    """Task details with attempts, actions and event stream."""

    task: TaskView
    events: list[TaskEventView]
    attempts: list[AttemptView] = field(default_factory=list)
    actions: list[ActionView] = field(default_factory=list)


@dataclass(slots=True)
class RetryDecision:
    """Coordinator outcome for one failed attempt."""

    requeue: bool
    permanent: bool
    charged: bool
    delay_seconds: float
    signature: str | None
    reason: str


@dataclass(slots=True)
class StatusSnapshot:
    """Operational status for the CLI."""

    active: int
    queued: int
    counts_by_status: dict[str, int]
    recent_terminal: list[TaskView]
