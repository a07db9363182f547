from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import replace
from pathlib import Path

import allure
import pytest

from agent_dispatch.orchestrator.contracts import WORKSPACE_CONTRACT_VERSION, read_workspace_meta
from agent_dispatch.orchestrator.models import TaskView
from agent_dispatch.orchestrator.workdir import TaskWorkspaceManager, Workspace, WorkspaceError

pytestmark = [
    allure.epic("Task Execution"),
    allure.feature("Workspace Isolation"),
]


def test_create_materializes_context_prompt_and_empty_output(
    workspaces: TaskWorkspaceManager,
    enqueue: Callable[..., TaskView],
) -> None:
    task = enqueue(
        task_type="review",
        resource_id="PR-7",
        context={"resource_id": "PR-7", "payload": {"title": "Add cache"}, "odd key/name": 1},
    )

    workspace = workspaces.create(task, 1)

    assert workspace.base_dir == workspaces.root_dir / task.task_id / "attempt-1"
    assert json.loads((workspace.context_dir / "resource_id.json").read_text("utf-8")) == "PR-7"
    assert json.loads((workspace.context_dir / "payload.json").read_text("utf-8")) == {
        "title": "Add cache",
    }
    assert (workspace.context_dir / "odd_key_name.json").exists()
    prompt = workspace.prompt_path.read_text("utf-8")
    assert "PR-7" in prompt
    assert "result.json" in prompt
    assert workspace.output_dir.is_dir()
    assert not workspace.result_path.exists()
    assert workspace.artifacts_dir.is_dir()
    assert workspace.stdout_path.exists()
    assert workspace.stderr_path.exists()

    meta = read_workspace_meta(workspace.meta_path)
    assert meta.contract_version == WORKSPACE_CONTRACT_VERSION
    assert meta.task_id == task.task_id
    assert meta.attempt_no == 1
    assert sorted(meta.context_files) == ["odd_key_name.json", "payload.json", "resource_id.json"]


def test_each_attempt_gets_its_own_workspace(
    workspaces: TaskWorkspaceManager,
    enqueue: Callable[..., TaskView],
) -> None:
    task = enqueue()
    first = workspaces.create(task, 1)
    second = workspaces.create(task, 2)

    assert first.base_dir != second.base_dir
    with pytest.raises(WorkspaceError, match="already exists"):
        workspaces.create(task, 1)


def test_destroy_failed_attempt_archives_and_removes(
    workspaces: TaskWorkspaceManager,
    enqueue: Callable[..., TaskView],
) -> None:
    task = enqueue()
    workspace = workspaces.create(task, 1)
    workspace.result_path.write_text('{"success": false}', "utf-8")
    workspace.stderr_path.write_text("boom\n", "utf-8")

    archive = workspaces.destroy(workspace, succeeded=False)

    assert archive is not None
    assert (archive / "output" / "result.json").read_text("utf-8") == '{"success": false}'
    assert (archive / "logs" / "stderr.log").read_text("utf-8") == "boom\n"
    assert not workspace.exists()
    assert not (workspaces.root_dir / task.task_id).exists()


def test_destroy_successful_attempt_skips_archive_by_default(
    workspaces: TaskWorkspaceManager,
    enqueue: Callable[..., TaskView],
) -> None:
    workspace = workspaces.create(enqueue(), 1)

    assert workspaces.destroy(workspace, succeeded=True) is None
    assert not workspace.exists()
    assert not workspaces.archive_dir.exists()


def test_archive_on_success_is_configurable(
    tmp_path: Path,
    enqueue: Callable[..., TaskView],
) -> None:
    manager = TaskWorkspaceManager(
        tmp_path / "ws",
        archive_dir=tmp_path / "archive",
        archive_on_success=True,
    )
    workspace = manager.create(enqueue(), 1)

    assert manager.destroy(workspace, succeeded=True) is not None


def test_destroy_is_idempotent_and_tolerates_partial_workspaces(
    workspaces: TaskWorkspaceManager,
) -> None:
    partial = Workspace.at(workspaces.root_dir, "task-x", 3)
    partial.logs_dir.mkdir(parents=True)

    assert workspaces.destroy(partial, succeeded=False) is not None
    assert workspaces.destroy(partial, succeeded=False) is None
    assert not partial.exists()


def test_sweep_orphans_keeps_active_workspaces(
    workspaces: TaskWorkspaceManager,
    enqueue: Callable[..., TaskView],
) -> None:
    live_task = enqueue(resource_id="ISSUE-1")
    dead_task = enqueue(resource_id="ISSUE-2")
    live = workspaces.create(live_task, 1)
    orphan = workspaces.create(dead_task, 2)

    swept = workspaces.sweep_orphans(active=[(live_task.task_id, 1)])

    assert [(item.task_id, item.attempt_no) for item in swept] == [(dead_task.task_id, 2)]
    assert live.exists()
    assert not orphan.exists()
    assert (workspaces.archive_dir / dead_task.task_id / "attempt-2").is_dir()
    assert workspaces.list_workspaces() == [live]


def test_create_with_retry_raises_after_limit(
    workspaces: TaskWorkspaceManager,
    enqueue: Callable[..., TaskView],
) -> None:
    task = enqueue()
    workspaces.create(task, 1)
    sleeps: list[float] = []

    with pytest.raises(WorkspaceError):
        workspaces.create_with_retry(
            task,
            1,
            limit=3,
            backoff_seconds=0.5,
            sleep=sleeps.append,
        )

    assert sleeps == [0.5, 1.0]


def test_create_cleans_up_after_materialization_failure(
    workspaces: TaskWorkspaceManager,
    enqueue: Callable[..., TaskView],
) -> None:
    task = replace(enqueue(), context={"payload": {"not", "json"}})

    with pytest.raises(WorkspaceError, match="Failed to create workspace"):
        workspaces.create(task, 1)

    assert not Workspace.at(workspaces.root_dir, task.task_id, 1).exists()


def test_context_keys_that_sanitize_alike_do_not_overwrite_each_other(
    workspaces: TaskWorkspaceManager,
    enqueue: Callable[..., TaskView],
) -> None:
    task = enqueue(context={"a b": 1, "a_b": 2, "a/b": 3})

    workspace = workspaces.create(task, 1)

    meta = read_workspace_meta(workspace.meta_path)
    assert sorted(meta.context_files) == ["a_b-2.json", "a_b-3.json", "a_b.json"]
    values = {
        json.loads((workspace.context_dir / name).read_text("utf-8"))
        for name in meta.context_files
    }
    assert values == {1, 2, 3}


def test_archive_failure_keeps_workspace_for_inspection(
    tmp_path: Path,
    enqueue: Callable[..., TaskView],
) -> None:
    blocked_archive = tmp_path / "archive"
    blocked_archive.write_text("not a directory", "utf-8")
    manager = TaskWorkspaceManager(tmp_path / "ws", archive_dir=blocked_archive)
    workspace = manager.create(enqueue(), 1)
    workspace.stderr_path.write_text("boom\n", "utf-8")

    assert manager.destroy(workspace, succeeded=False) is None

    assert workspace.exists()
    assert workspace.stderr_path.read_text("utf-8") == "boom\n"
    assert manager.sweep_orphans() == []
    assert workspace.exists()
