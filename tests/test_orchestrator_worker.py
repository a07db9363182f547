from __future__ import annotations

import time
from collections.abc import Callable
from datetime import timedelta
from pathlib import Path

import allure
import pytest
from conftest import echo_command
from sqlalchemy import update
from sqlmodel import col

from agent_dispatch.orchestrator.backend import (
    BackendRunError,
    BackendRunRequest,
    BackendRunResult,
    CliWorkerBackend,
)
from agent_dispatch.orchestrator.models import AttemptStatus, FailureClass, TaskStatus, TaskView
from agent_dispatch.orchestrator.repository import OrchestratorRepository
from agent_dispatch.orchestrator.workdir import TaskWorkspaceManager
from agent_dispatch.orchestrator.worker import OrchestratorWorker
from agent_dispatch.storage.common import to_db_datetime, utc_now
from agent_dispatch.storage.sqlmodel_models import Task

pytestmark = [
    allure.epic("Task Execution"),
    allure.feature("Coordinator"),
]


def _task(repository: OrchestratorRepository, task_id: str) -> TaskView:
    task = repository.get_task(task_id=task_id)
    assert task is not None
    return task


def _event_types(repository: OrchestratorRepository, task_id: str) -> list[str]:
    details = repository.get_task_details(task_id=task_id)
    assert details is not None
    return [event.event_type for event in details.events]


def _wait_for_status(
    worker: OrchestratorWorker,
    repository: OrchestratorRepository,
    task_id: str,
    status: TaskStatus,
    *,
    timeout: float = 15.0,
) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        worker.run_once()
        if _task(repository, task_id).status == status:
            return
        time.sleep(0.05)
    pytest.fail(f"task {task_id} never reached {status.value}")


def test_successful_attempt_completes_task_and_records_actions(
    repository: OrchestratorRepository,
    enqueue: Callable[..., TaskView],
    make_worker: Callable[..., OrchestratorWorker],
) -> None:
    task = enqueue(resource_id="ISSUE-9")
    worker = make_worker(command_template=echo_command("--mode", "ok"))

    summary = worker.run_loop(until_idle=True, max_seconds=30)

    stored = _task(repository, task.task_id)
    assert stored.status == TaskStatus.COMPLETED
    assert stored.retry_count == 0
    assert summary.processed == 1
    assert summary.succeeded == 1
    [attempt] = repository.list_attempts(task_id=task.task_id)
    assert attempt.status == AttemptStatus.SUCCEEDED
    assert attempt.exit_code == 0
    assert "echo_agent mode=ok resource=ISSUE-9" in (attempt.stdout_preview or "")
    [action] = repository.list_actions(task_id=task.task_id)
    assert action.action_type == "comment"
    assert action.target_resource_id == "ISSUE-9"
    assert _event_types(repository, task.task_id)[-1] == "completed"


def test_timeouts_are_retried_until_success(
    repository: OrchestratorRepository,
    enqueue: Callable[..., TaskView],
    make_worker: Callable[..., OrchestratorWorker],
) -> None:
    task = enqueue()
    worker = make_worker(
        command_template=echo_command("--modes", "silent,silent,ok", "--sleep", "30"),
        idle_timeout_seconds=1.5,
    )

    summary = worker.run_loop(until_idle=True, max_seconds=60)

    stored = _task(repository, task.task_id)
    assert stored.status == TaskStatus.COMPLETED
    assert stored.retry_count == 2
    assert summary.timeouts == 2
    assert summary.retried == 2
    attempts = repository.list_attempts(task_id=task.task_id)
    assert [attempt.status for attempt in attempts] == [
        AttemptStatus.TIMED_OUT,
        AttemptStatus.TIMED_OUT,
        AttemptStatus.SUCCEEDED,
    ]
    assert [attempt.timeout_kind for attempt in attempts[:2]] == ["idle", "idle"]
    assert _event_types(repository, task.task_id).count("retry_scheduled") == 2


def test_repeated_invalid_output_is_dead_lettered(
    repository: OrchestratorRepository,
    enqueue: Callable[..., TaskView],
    make_worker: Callable[..., OrchestratorWorker],
) -> None:
    task = enqueue(max_retries=5)
    worker = make_worker(command_template=echo_command("--mode", "invalid_json"))

    worker.run_loop(until_idle=True, max_seconds=30)

    stored = _task(repository, task.task_id)
    assert stored.status == TaskStatus.DEAD_LETTERED
    assert stored.failure_class == FailureClass.OUTPUT_INVALID
    assert stored.retry_count == 2
    assert len(repository.list_attempts(task_id=task.task_id)) == 2
    assert _event_types(repository, task.task_id).count("failure_classified") == 2


def test_missing_output_exhausts_retry_budget(
    repository: OrchestratorRepository,
    enqueue: Callable[..., TaskView],
    make_worker: Callable[..., OrchestratorWorker],
) -> None:
    task = enqueue(max_retries=1)
    worker = make_worker(command_template=echo_command("--mode", "no_result"))

    summary = worker.run_loop(until_idle=True, max_seconds=30)

    stored = _task(repository, task.task_id)
    assert stored.status == TaskStatus.DEAD_LETTERED
    assert stored.failure_class == FailureClass.OUTPUT_MISSING
    assert "completed" not in _event_types(repository, task.task_id)
    assert len(repository.list_attempts(task_id=task.task_id)) == 2
    assert summary.dead_lettered == 1


def test_permission_error_is_permanent(
    repository: OrchestratorRepository,
    enqueue: Callable[..., TaskView],
    make_worker: Callable[..., OrchestratorWorker],
) -> None:
    task = enqueue()
    worker = make_worker(
        command_template=echo_command("--mode", "crash", "--stderr", "fatal: Permission denied"),
    )

    worker.run_loop(until_idle=True, max_seconds=30)

    stored = _task(repository, task.task_id)
    assert stored.status == TaskStatus.DEAD_LETTERED
    assert stored.failure_class == FailureClass.WORKER_CRASHED
    assert stored.last_exit_code == 3
    [attempt] = repository.list_attempts(task_id=task.task_id)
    assert attempt.status == AttemptStatus.FAILED
    assert "Permission denied" in (attempt.stderr_preview or "")


def test_worker_reported_failure_keeps_actions_and_retries(
    repository: OrchestratorRepository,
    enqueue: Callable[..., TaskView],
    make_worker: Callable[..., OrchestratorWorker],
) -> None:
    task = enqueue()
    worker = make_worker(command_template=echo_command("--modes", "report_failure,ok"))

    worker.run_loop(until_idle=True, max_seconds=30)

    stored = _task(repository, task.task_id)
    assert stored.status == TaskStatus.COMPLETED
    assert stored.retry_count == 1
    assert [action.attempt_no for action in repository.list_actions(task_id=task.task_id)] == [
        1,
        2,
    ]


def test_cancel_running_task_kills_attempt(
    repository: OrchestratorRepository,
    enqueue: Callable[..., TaskView],
    make_worker: Callable[..., OrchestratorWorker],
) -> None:
    task = enqueue()
    worker = make_worker(command_template=echo_command("--mode", "silent", "--sleep", "30"))
    _wait_for_status(worker, repository, task.task_id, TaskStatus.ATTEMPT_RUNNING)

    assert repository.request_cancel(task_id=task.task_id) == TaskStatus.ATTEMPT_RUNNING
    summary = worker.run_loop(until_idle=True, max_seconds=20)

    stored = _task(repository, task.task_id)
    assert stored.status == TaskStatus.DEAD_LETTERED
    assert stored.failure_class == FailureClass.CANCELED
    assert summary.canceled == 1
    [attempt] = repository.list_attempts(task_id=task.task_id)
    assert attempt.status == AttemptStatus.KILLED
    assert attempt.failure_class == FailureClass.CANCELED


def test_canceled_queued_task_never_runs(
    repository: OrchestratorRepository,
    enqueue: Callable[..., TaskView],
    make_worker: Callable[..., OrchestratorWorker],
) -> None:
    task = enqueue()
    repository.request_cancel(task_id=task.task_id)
    worker = make_worker(command_template=echo_command("--mode", "ok"))

    summary = worker.run_loop(until_idle=True, max_seconds=10)

    assert summary.processed == 0
    assert repository.list_attempts(task_id=task.task_id) == []
    assert _task(repository, task.task_id).status == TaskStatus.DEAD_LETTERED


def test_shutdown_requeues_interrupted_attempt_without_charging(
    repository: OrchestratorRepository,
    enqueue: Callable[..., TaskView],
    make_worker: Callable[..., OrchestratorWorker],
) -> None:
    task = enqueue()
    worker = make_worker(
        command_template=echo_command("--mode", "silent", "--sleep", "30"),
        drain_timeout_seconds=0.5,
    )
    _wait_for_status(worker, repository, task.task_id, TaskStatus.ATTEMPT_RUNNING)

    worker.request_stop()
    worker.run_loop()

    stored = _task(repository, task.task_id)
    assert stored.status == TaskStatus.QUEUED
    assert stored.retry_count == 0
    [attempt] = repository.list_attempts(task_id=task.task_id)
    assert attempt.status == AttemptStatus.KILLED
    assert worker.status().active == 0


def test_every_attempt_workspace_is_torn_down(
    tmp_path: Path,
    repository: OrchestratorRepository,
    enqueue: Callable[..., TaskView],
    make_worker: Callable[..., OrchestratorWorker],
) -> None:
    manager = TaskWorkspaceManager(
        tmp_path / "isolated",
        archive_dir=tmp_path / "isolated-archive",
        archive_on_success=True,
    )
    for index in range(3):
        enqueue(resource_id=f"ISSUE-{index}")
    worker = make_worker(
        command_template=echo_command("--modes", "crash,ok"),
        workspace_manager=manager,
    )

    worker.run_loop(until_idle=True, max_seconds=60)

    attempts = repository.list_attempts()
    assert len(attempts) == 6
    assert all(attempt.archive_path for attempt in attempts)
    archived = sorted(manager.archive_dir.glob("*/attempt-*"))
    assert len(archived) == len(attempts)
    assert manager.list_workspaces() == []
    assert repository.count_by_status() == {"completed": 3}


def test_higher_priority_task_is_admitted_first(
    repository: OrchestratorRepository,
    enqueue: Callable[..., TaskView],
    make_worker: Callable[..., OrchestratorWorker],
) -> None:
    low = enqueue(resource_id="ISSUE-1", priority=7)
    high = enqueue(resource_id="ISSUE-2", priority=1)
    worker = make_worker(command_template=echo_command("--mode", "ok"), capacity=1)

    worker.run_loop(until_idle=True, max_seconds=30)

    attempts = sorted(repository.list_attempts(), key=lambda attempt: attempt.started_at)
    assert [attempt.task_id for attempt in attempts] == [high.task_id, low.task_id]


def test_worker_that_cannot_be_started_is_dead_lettered_with_alert(
    repository: OrchestratorRepository,
    enqueue: Callable[..., TaskView],
    make_worker: Callable[..., OrchestratorWorker],
    caplog: pytest.LogCaptureFixture,
) -> None:
    task = enqueue(max_retries=3)
    worker = make_worker(command_template="/nonexistent/agent-binary {prompt_file}")

    with caplog.at_level("ERROR"):
        summary = worker.run_loop(until_idle=True, max_seconds=30)

    stored = _task(repository, task.task_id)
    assert stored.status == TaskStatus.DEAD_LETTERED
    assert stored.retry_count == 0
    assert stored.failure_class == FailureClass.INFRASTRUCTURE
    assert summary.processed == 1
    assert summary.infrastructure_errors == 1
    assert summary.dead_lettered == 1
    [attempt] = repository.list_attempts(task_id=task.task_id)
    assert attempt.status == AttemptStatus.FAILED
    assert "not found" in (attempt.error_summary or "")
    assert _event_types(repository, task.task_id)[-2:] == ["dead_lettered", "platform_alert"]
    assert "Platform alert" in caplog.text


class _FlakySpawnBackend:
    """Fails to spawn the first ``failures`` times, then runs the real worker."""

    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0
        self._delegate = CliWorkerBackend()

    def run(self, request: BackendRunRequest) -> BackendRunResult:
        self.calls += 1
        if self.calls <= self.failures:
            raise BackendRunError(
                "Worker failed to start: resource temporarily unavailable",
                transient=True,
            )
        return self._delegate.run(request)


def test_transient_infrastructure_errors_do_not_charge_retries_and_raise_alert(
    repository: OrchestratorRepository,
    enqueue: Callable[..., TaskView],
    make_worker: Callable[..., OrchestratorWorker],
    caplog: pytest.LogCaptureFixture,
) -> None:
    task = enqueue(max_retries=1)
    backend = _FlakySpawnBackend(failures=3)
    worker = make_worker(
        command_template=echo_command("--mode", "ok"),
        backend=backend,
        infra_retry_limit=2,
    )

    with caplog.at_level("ERROR"):
        summary = worker.run_loop(until_idle=True, max_seconds=30)

    stored = _task(repository, task.task_id)
    assert stored.status == TaskStatus.COMPLETED
    assert stored.retry_count == 0
    assert stored.infra_error_count == 0
    assert backend.calls == 4
    assert summary.infrastructure_errors == 3
    assert summary.retried == 0
    assert [attempt.status for attempt in repository.list_attempts(task_id=task.task_id)] == [
        AttemptStatus.FAILED,
        AttemptStatus.FAILED,
        AttemptStatus.FAILED,
        AttemptStatus.SUCCEEDED,
    ]
    assert _event_types(repository, task.task_id).count("platform_alert") == 2
    assert "Platform alert" in caplog.text


def test_attempts_of_one_task_never_overlap(
    repository: OrchestratorRepository,
    enqueue: Callable[..., TaskView],
    make_worker: Callable[..., OrchestratorWorker],
) -> None:
    tasks = [enqueue(resource_id=f"ISSUE-{index}") for index in range(3)]
    worker = make_worker(
        command_template=echo_command("--modes", "crash,report_failure,ok"),
        capacity=3,
    )

    worker.run_loop(until_idle=True, max_seconds=60)

    for task in tasks:
        attempts = repository.list_attempts(task_id=task.task_id)
        assert [attempt.attempt_no for attempt in attempts] == [1, 2, 3]
        for previous, current in zip(attempts, attempts[1:], strict=False):
            assert previous.finished_at is not None
            assert previous.finished_at <= current.started_at
        assert _task(repository, task.task_id).status == TaskStatus.COMPLETED


def test_aged_task_is_admitted_ahead_of_a_full_page_of_urgent_work(
    repository: OrchestratorRepository,
    enqueue: Callable[..., TaskView],
    make_worker: Callable[..., OrchestratorWorker],
) -> None:
    urgent = [enqueue(resource_id=f"ISSUE-{index}", priority=1) for index in range(120)]
    aged = enqueue(resource_id="ISSUE-old", priority=9)
    with repository.engine.begin() as connection:
        connection.execute(
            update(Task)
            .where(col(Task.task_id) == aged.task_id)
            .values(queued_at=to_db_datetime(utc_now() - timedelta(hours=1))),
        )
    worker = make_worker(
        command_template=echo_command("--mode", "ok"),
        capacity=1,
        starvation_age_seconds=60.0,
    )

    worker.run_once()

    assert _task(repository, aged.task_id).status != TaskStatus.QUEUED
    assert all(_task(repository, task.task_id).status == TaskStatus.QUEUED for task in urgent)
    assert worker.admission.status().queued == len(urgent)


def test_start_recovers_interrupted_task_and_sweeps_workspace(
    repository: OrchestratorRepository,
    workspaces: TaskWorkspaceManager,
    enqueue: Callable[..., TaskView],
    make_worker: Callable[..., OrchestratorWorker],
) -> None:
    task = enqueue()
    repository.admit_task(task_id=task.task_id)
    stale = workspaces.create(task, 1)
    repository.start_attempt(
        task_id=task.task_id,
        attempt_no=1,
        workspace_path=str(stale.base_dir),
        stdout_path=str(stale.stdout_path),
        stderr_path=str(stale.stderr_path),
    )
    worker = make_worker(command_template=echo_command("--mode", "ok"))

    assert worker.start() == [task.task_id]
    assert not stale.exists()

    worker.run_loop(until_idle=True, max_seconds=30)

    stored = _task(repository, task.task_id)
    assert stored.status == TaskStatus.COMPLETED
    assert stored.retry_count == 0
    assert [attempt.status for attempt in repository.list_attempts(task_id=task.task_id)] == [
        AttemptStatus.KILLED,
        AttemptStatus.SUCCEEDED,
    ]
    assert "recovered" in _event_types(repository, task.task_id)


def test_malformed_actions_are_dropped_with_audit_event(
    repository: OrchestratorRepository,
    enqueue: Callable[..., TaskView],
    make_worker: Callable[..., OrchestratorWorker],
) -> None:
    task = enqueue()
    worker = make_worker(command_template=echo_command("--mode", "dropped_action"))

    worker.run_loop(until_idle=True, max_seconds=30)

    assert _task(repository, task.task_id).status == TaskStatus.COMPLETED
    assert [action.action_type for action in repository.list_actions(task_id=task.task_id)] == [
        "comment",
        "label",
    ]
    assert _event_types(repository, task.task_id).count("action_dropped") == 1


def test_status_snapshot_reports_outcomes(
    repository: OrchestratorRepository,
    enqueue: Callable[..., TaskView],
    make_worker: Callable[..., OrchestratorWorker],
) -> None:
    task = enqueue()
    worker = make_worker(command_template=echo_command("--mode", "noop"))
    worker.run_loop(until_idle=True, max_seconds=30)

    snapshot = worker.status()

    assert snapshot.active == 0
    assert snapshot.queued == 0
    assert snapshot.counts_by_status == {"completed": 1}
    assert [item.task_id for item in snapshot.recent_terminal] == [task.task_id]
