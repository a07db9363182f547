"""Shared test fixtures."""

from __future__ import annotations

import random
import shlex
import sys
from collections.abc import Callable, Iterator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest

from agent_dispatch.orchestrator.admission import AdmissionController
from agent_dispatch.orchestrator.backend import CliWorkerBackend, WorkerBackend
from agent_dispatch.orchestrator.failure_classifier import RetryPolicy
from agent_dispatch.orchestrator.models import NormalizedEvent, TaskCreate, TaskView
from agent_dispatch.orchestrator.repository import OrchestratorRepository
from agent_dispatch.orchestrator.workdir import TaskWorkspaceManager
from agent_dispatch.orchestrator.worker import CoordinatorOptions, OrchestratorWorker

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{shlex.quote(sys.executable)} -m agent_dispatch.orchestrator.backend.echo_agent "
    "--prompt-file {prompt_file} --output-dir {output_dir}"
)


def echo_command(*args: str) -> str:
    """Echo agent command template with extra CLI arguments."""

    return " ".join([ECHO_AGENT_COMMAND_TEMPLATE, *(shlex.quote(arg) for arg in args)])


def make_event(
    *,
    source: str = "issue_tracker",
    event_type: str = "issue.created",
    resource_id: str = "ISSUE-1",
    payload: dict[str, Any] | None = None,
    received_at: datetime | None = None,
) -> NormalizedEvent:
    return NormalizedEvent(
        source=source,
        event_type=event_type,
        resource_id=resource_id,
        payload=payload if payload is not None else {"title": "Crash on start"},
        received_at=received_at or datetime(2026, 10, 12, 9, 0, tzinfo=UTC),
    )


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[OrchestratorRepository]:
    repo = OrchestratorRepository(tmp_path / "orchestrator.db")
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def workspaces(tmp_path: Path) -> TaskWorkspaceManager:
    return TaskWorkspaceManager(
        tmp_path / "workspaces",
        archive_dir=tmp_path / "archive",
    )


@pytest.fixture()
def enqueue(repository: OrchestratorRepository) -> Callable[..., TaskView]:
    def _enqueue(
        *,
        resource_id: str = "ISSUE-1",
        task_type: str = "triage",
        priority: int = 5,
        max_retries: int = 3,
        context: dict[str, Any] | None = None,
    ) -> TaskView:
        return repository.enqueue_task(
            TaskCreate(
                source="issue_tracker",
                task_type=task_type,
                resource_id=resource_id,
                context=context if context is not None else {"resource_id": resource_id},
                priority=priority,
                max_retries=max_retries,
            ),
        )

    return _enqueue


@pytest.fixture()
def make_worker(
    repository: OrchestratorRepository,
    workspaces: TaskWorkspaceManager,
) -> Iterator[Callable[..., OrchestratorWorker]]:
    """Coordinator factory with fast polling and zero backoff."""

    created: list[OrchestratorWorker] = []

    def _make(  # noqa: PLR0913
        *,
        command_template: str,
        capacity: int = 2,
        idle_timeout_seconds: float = 20.0,
        hard_timeout_seconds: float = 60.0,
        graceful_shutdown_seconds: float = 1.0,
        infra_retry_limit: int = 3,
        drain_timeout_seconds: float = 10.0,
        workspace_manager: TaskWorkspaceManager | None = None,
        backend: WorkerBackend | None = None,
        starvation_age_seconds: float | None = None,
    ) -> OrchestratorWorker:
        worker = OrchestratorWorker(
            repository=repository,
            backend=backend or CliWorkerBackend(),
            workspaces=workspace_manager or workspaces,
            admission=AdmissionController(
                capacity=capacity,
                starvation_age_seconds=starvation_age_seconds,
            ),
            retry_policy=RetryPolicy(base_seconds=0.0, max_seconds=0.0, rng=random.Random(7)),
            options=CoordinatorOptions(
                command_template=command_template,
                idle_timeout_seconds=idle_timeout_seconds,
                hard_timeout_seconds=hard_timeout_seconds,
                graceful_shutdown_seconds=graceful_shutdown_seconds,
                supervisor_poll_seconds=0.02,
                poll_interval_seconds=0.05,
                drain_timeout_seconds=drain_timeout_seconds,
                infra_retry_limit=infra_retry_limit,
                infra_retry_backoff_seconds=0.0,
            ),
        )
        created.append(worker)
        return worker

    yield _make
    for worker in created:
        worker.close()
