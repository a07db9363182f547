"""Controllers for orchestrator CLI commands."""

from __future__ import annotations

import json
import random
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from agent_dispatch.config import Settings
from agent_dispatch.orchestrator.admission import AdmissionController
from agent_dispatch.orchestrator.backend import CliWorkerBackend
from agent_dispatch.orchestrator.dispatcher import Dispatcher
from agent_dispatch.orchestrator.failure_classifier import RetryPolicy
from agent_dispatch.orchestrator.models import NormalizedEvent, TaskStatus
from agent_dispatch.orchestrator.repository import OrchestratorRepository
from agent_dispatch.orchestrator.workdir import TaskWorkspaceManager
from agent_dispatch.orchestrator.worker import CoordinatorOptions, OrchestratorWorker
from agent_dispatch.storage.common import utc_now


@dataclass(slots=True)
class DispatchEventCommand:
    """CLI input for ingesting one normalized event."""

    db_path: Path | None
    source: str
    event_type: str
    resource_id: str
    payload_json: str
    received_at: datetime | None
    priority: int | None


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for coordinator execution."""

    db_path: Path | None
    once: bool
    max_tasks: int | None
    until_idle: bool = True
    max_seconds: float | None = None


@dataclass(slots=True)
class ListTasksCommand:
    """CLI input for task listing."""

    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class InspectTaskCommand:
    """CLI input for task inspection."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class CancelTaskCommand:
    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class StatusCommand:
    """CLI input for the operational status view."""

    db_path: Path | None
    recent: int | None = None


@dataclass(slots=True)
class SweepCommand:
    db_path: Path | None


class OrchestratorCliController:
    """Coordinates dispatch, coordinator and inspection CLI operations."""

    def dispatch_event(self, command: DispatchEventCommand) -> list[str]:
        settings = _settings(command.db_path)
        try:
            payload = json.loads(command.payload_json)
        except json.JSONDecodeError as error:
            raise ValueError(f"Payload is not valid JSON: {error}") from error
        if not isinstance(payload, dict):
            raise ValueError("Payload must be a JSON object.")
        event = NormalizedEvent(
            source=command.source,
            event_type=command.event_type,
            resource_id=command.resource_id,
            payload=payload,
            received_at=command.received_at or utc_now(),
        )
        with _repository(settings) as repository:
            dispatcher = Dispatcher(
                repository=repository,
                routing=settings.dispatch.routing_policy(),
                dedup_window_seconds=settings.dispatch.dedup_window_seconds,
                max_retries=settings.retry.max_retries,
            )
            result = dispatcher.submit(event, priority=command.priority)

        lines = [
            "Event recorded: "
            f"event_id={result.event.event_id} disposition={result.disposition.value}"
            + (" redelivered=yes" if result.redelivered else ""),
        ]
        if result.task is not None:
            lines.append(
                "Task: "
                f"task_id={result.task.task_id} type={result.task.task_type} "
                f"priority={result.task.priority} status={result.task.status.value}",
            )
        elif result.event.task_id is not None:
            lines.append(f"Existing task: {result.event.task_id}")
        return lines

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            worker = build_worker(settings=settings, repository=repository)
            try:
                if command.once:
                    summary = worker.run_batch()
                else:
                    summary = worker.run_loop(
                        max_tasks=command.max_tasks,
                        until_idle=command.until_idle,
                        max_seconds=command.max_seconds,
                    )
            finally:
                worker.close()

        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"retried={summary.retried} dead_lettered={summary.dead_lettered} "
            f"timeouts={summary.timeouts} canceled={summary.canceled} "
            f"infrastructure_errors={summary.infrastructure_errors} "
            f"idle_polls={summary.idle_polls}",
        ]

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        settings = _settings(command.db_path)
        status_filter = _parse_status(command.status)
        with _repository(settings) as repository:
            tasks = repository.list_tasks(status=status_filter, limit=command.limit)

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.task_id} type={task.task_type} status={task.status.value} "
                f"priority={task.priority} retries={task.retry_count}/{task.max_retries} "
                f"attempts={task.attempt_count} resource={task.source}:{task.resource_id}",
            )
        return lines

    def inspect_task(self, command: InspectTaskCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            details = repository.get_task_details(task_id=command.task_id)
        if details is None:
            return [f"Task not found: {command.task_id}"]

        task = details.task
        lines = [
            f"Task: {task.task_id}",
            f"Type: {task.task_type}",
            f"Source: {task.source}",
            f"Resource: {task.resource_id}",
            f"Repository: {task.repository_ref or '-'}",
            f"Status: {task.status.value}",
            f"Priority: {task.priority}",
            f"Retries: {task.retry_count}/{task.max_retries}",
            f"Failure class: {task.failure_class.value if task.failure_class else '-'}",
            f"Error: {task.error_summary or '-'}",
            f"Attempts: {len(details.attempts)}",
        ]
        for attempt in details.attempts:
            lines.append(
                f"  #{attempt.attempt_no} status={attempt.status.value} "
                f"exit={attempt.exit_code if attempt.exit_code is not None else '-'} "
                f"timeout={attempt.timeout_kind or '-'} "
                f"failure={attempt.failure_class.value if attempt.failure_class else '-'} "
                f"duration_ms={attempt.duration_ms if attempt.duration_ms is not None else '-'} "
                f"archive={attempt.archive_path or '-'}",
            )
        lines.append(f"Actions: {len(details.actions)}")
        for action in details.actions:
            lines.append(
                f"  attempt={action.attempt_no} {action.action_type} "
                f"platform={action.platform} target={action.target_resource_id} "
                f"success={'yes' if action.success else 'no'}",
            )
        lines.append(f"Events: {len(details.events)}")
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def cancel_task(self, command: CancelTaskCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            previous = repository.request_cancel(task_id=command.task_id)
        if previous == TaskStatus.DEAD_LETTERED:
            return [f"Task canceled: {command.task_id}"]
        return [
            f"Cancel requested: {command.task_id} (status={previous.value}); "
            "the running coordinator will stop it.",
        ]

    def status(self, command: StatusCommand) -> list[str]:
        settings = _settings(command.db_path)
        limit = command.recent or settings.coordinator.recent_outcomes_limit
        with _repository(settings) as repository:
            counts = repository.count_by_status()
            recent = repository.recent_terminal_tasks(limit=limit)
            running = repository.running_attempt_keys()

        active = sum(counts.get(status.value, 0) for status in _ACTIVE_STATUSES)
        lines = [
            f"Capacity: {settings.admission.capacity}",
            f"Active: {active}",
            f"Queued: {counts.get(TaskStatus.QUEUED.value, 0)}",
            f"Running attempts: {len(running)}",
            "By status: "
            + (
                " ".join(f"{status}={count}" for status, count in sorted(counts.items()))
                or "-"
            ),
            f"Recent outcomes: {len(recent)}",
        ]
        for task in recent:
            finished = task.finished_at.isoformat() if task.finished_at is not None else "-"
            lines.append(
                f"  {finished} {task.task_id} type={task.task_type} "
                f"status={task.status.value} "
                f"failure={task.failure_class.value if task.failure_class else '-'}",
            )
        return lines

    def sweep(self, command: SweepCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            running = repository.running_attempt_keys()
        workspaces = _workspace_manager(settings)
        swept = workspaces.sweep_orphans(active=running)
        lines = [f"Orphan workspaces swept: {len(swept)}"]
        for workspace in swept:
            lines.append(f"  {workspace.task_id} attempt={workspace.attempt_no}")
        return lines


_ACTIVE_STATUSES = (
    TaskStatus.ADMITTED,
    TaskStatus.ATTEMPT_RUNNING,
    TaskStatus.ATTEMPT_SUCCEEDED,
    TaskStatus.ATTEMPT_FAILED,
    TaskStatus.ATTEMPT_TIMED_OUT,
)


def build_worker(*, settings: Settings, repository: OrchestratorRepository) -> OrchestratorWorker:
    """Wire a coordinator from settings."""

    rng = random.Random(settings.retry.seed)  # noqa: S311
    return OrchestratorWorker(
        repository=repository,
        backend=CliWorkerBackend(),
        workspaces=_workspace_manager(settings),
        admission=AdmissionController(
            capacity=settings.admission.capacity,
            starvation_age_seconds=settings.admission.starvation_age_seconds,
            starvation_age_floor_seconds=settings.admission.starvation_age_floor_seconds,
            sample_size=settings.admission.starvation_sample_size,
        ),
        retry_policy=RetryPolicy(
            max_retries=settings.retry.max_retries,
            base_seconds=settings.retry.backoff_base_seconds,
            max_seconds=settings.retry.backoff_max_seconds,
            multiplier=settings.retry.backoff_multiplier,
            rng=rng,
        ),
        options=CoordinatorOptions(
            command_template=settings.supervisor.command_template,
            idle_timeout_seconds=settings.supervisor.idle_timeout_seconds,
            hard_timeout_seconds=settings.supervisor.hard_timeout_seconds,
            graceful_shutdown_seconds=settings.supervisor.graceful_shutdown_seconds,
            supervisor_poll_seconds=settings.supervisor.poll_interval_seconds,
            poll_interval_seconds=settings.coordinator.poll_interval_seconds,
            drain_timeout_seconds=settings.coordinator.drain_timeout_seconds,
            infra_retry_limit=settings.workspace.infra_retry_limit,
            infra_retry_backoff_seconds=settings.workspace.infra_retry_backoff_seconds,
            preview_chars=settings.supervisor.preview_chars,
            recent_outcomes_limit=settings.coordinator.recent_outcomes_limit,
        ),
    )


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _workspace_manager(settings: Settings) -> TaskWorkspaceManager:
    return TaskWorkspaceManager(
        settings.workspace.root_dir,
        archive_dir=settings.workspace.archive_dir,
        archive_on_success=settings.workspace.archive_on_success,
    )


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    return TaskStatus(value.strip().lower())


@contextmanager
def _repository(settings: Settings) -> Iterator[OrchestratorRepository]:
    repository = OrchestratorRepository(
        db_path=settings.db_path,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
