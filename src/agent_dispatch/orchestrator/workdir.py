"""Per-attempt workspace materialization, teardown and crash-recovery sweep."""

from __future__ import annotations

import contextlib
import json
import logging
import os
import re
import shutil
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path

from agent_dispatch.orchestrator.contracts import (
    ARTIFACTS_DIR_NAME,
    CONTEXT_DIR_NAME,
    LOGS_DIR_NAME,
    META_DIR_NAME,
    META_FILE_NAME,
    OUTPUT_DIR_NAME,
    PROMPT_FILE_NAME,
    RESULT_FILE_NAME,
    STDERR_LOG_NAME,
    STDOUT_LOG_NAME,
    WORKSPACE_CONTRACT_VERSION,
    WorkspaceMeta,
    write_workspace_meta,
)
from agent_dispatch.orchestrator.models import TaskView
from agent_dispatch.orchestrator.prompts import render_prompt
from agent_dispatch.storage.common import utc_now

logger = logging.getLogger(__name__)

_ATTEMPT_DIR_PATTERN = re.compile(r"^attempt-(\d+)$")
_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9_.\-]+")


class WorkspaceError(RuntimeError):
    """Workspace could not be materialized; an infrastructure failure."""


@dataclass(frozen=True, slots=True)
class Workspace:
    """Deterministic directory layout of one attempt sandbox."""

    task_id: str
    attempt_no: int
    base_dir: Path

    @classmethod
    def at(cls, root_dir: Path, task_id: str, attempt_no: int) -> Workspace:
        return cls(
            task_id=task_id,
            attempt_no=attempt_no,
            base_dir=root_dir / task_id / f"attempt-{attempt_no}",
        )

    @property
    def context_dir(self) -> Path:
        return self.base_dir / CONTEXT_DIR_NAME

    @property
    def prompt_path(self) -> Path:
        return self.base_dir / PROMPT_FILE_NAME

    @property
    def output_dir(self) -> Path:
        return self.base_dir / OUTPUT_DIR_NAME

    @property
    def result_path(self) -> Path:
        return self.output_dir / RESULT_FILE_NAME

    @property
    def artifacts_dir(self) -> Path:
        return self.base_dir / ARTIFACTS_DIR_NAME

    @property
    def logs_dir(self) -> Path:
        return self.base_dir / LOGS_DIR_NAME

    @property
    def stdout_path(self) -> Path:
        return self.logs_dir / STDOUT_LOG_NAME

    @property
    def stderr_path(self) -> Path:
        return self.logs_dir / STDERR_LOG_NAME

    @property
    def meta_path(self) -> Path:
        return self.base_dir / META_DIR_NAME / META_FILE_NAME

    def exists(self) -> bool:
        return self.base_dir.exists()


class TaskWorkspaceManager:
    """Creates and tears down per-attempt sandboxes under one root directory."""

    def __init__(
        self,
        root_dir: Path,
        *,
        archive_dir: Path,
        archive_on_success: bool = False,
    ) -> None:
        self.root_dir = root_dir
        self.archive_dir = archive_dir
        self.archive_on_success = archive_on_success
        self._lock = threading.Lock()

    def create(self, task: TaskView, attempt_no: int) -> Workspace:
        """Materialize a fresh sandbox for one attempt."""

        workspace = Workspace.at(self.root_dir, task.task_id, attempt_no)
        if workspace.exists():
            raise WorkspaceError(f"Workspace already exists: {workspace.base_dir}")
        try:
            context_files = self._materialize(workspace, task)
            write_workspace_meta(
                workspace.meta_path,
                WorkspaceMeta(
                    contract_version=WORKSPACE_CONTRACT_VERSION,
                    task_id=task.task_id,
                    attempt_no=attempt_no,
                    task_type=task.task_type,
                    source=task.source,
                    resource_id=task.resource_id,
                    workspace=str(workspace.base_dir),
                    prompt_path=str(workspace.prompt_path),
                    context_dir=str(workspace.context_dir),
                    output_dir=str(workspace.output_dir),
                    result_path=str(workspace.result_path),
                    artifacts_dir=str(workspace.artifacts_dir),
                    stdout_path=str(workspace.stdout_path),
                    stderr_path=str(workspace.stderr_path),
                    owner_pid=os.getpid(),
                    created_at=utc_now().isoformat(),
                    repository_ref=task.repository_ref,
                    context_files=context_files,
                ),
            )
        except (OSError, TypeError, ValueError) as error:
            shutil.rmtree(workspace.base_dir, ignore_errors=True)
            raise WorkspaceError(
                f"Failed to create workspace {workspace.base_dir}: {error}",
            ) from error
        logger.debug("Created workspace %s", workspace.base_dir)
        return workspace

    def create_with_retry(  # noqa: PLR0913
        self,
        task: TaskView,
        attempt_no: int,
        *,
        limit: int,
        backoff_seconds: float,
        sleep: Callable[[float], None] = time.sleep,
    ) -> Workspace:
        """Retry creation locally; re-raises the last ``WorkspaceError``."""

        last_error: WorkspaceError | None = None
        for try_no in range(1, max(1, limit) + 1):
            try:
                return self.create(task, attempt_no)
            except WorkspaceError as error:
                last_error = error
                logger.warning(
                    "Workspace creation failed for task %s (try %d/%d): %s",
                    task.task_id,
                    try_no,
                    limit,
                    error,
                )
                if try_no < limit:
                    sleep(backoff_seconds * (2 ** (try_no - 1)))
        assert last_error is not None
        raise last_error

    def destroy(self, workspace: Workspace, *, succeeded: bool) -> Path | None:
        """Archive (unless a non-archived success) and remove the sandbox.

        Safe to call more than once and on partially built workspaces. Returns
        the archive path when one was written. A sandbox that could not be
        archived is left in place for inspection and the next orphan sweep.
        """

        with self._lock:
            if not workspace.exists():
                return None
            archive_path: Path | None = None
            if not succeeded or self.archive_on_success:
                archive_path = self._archive(workspace)
                if archive_path is None:
                    logger.warning("Keeping workspace %s, archive failed", workspace.base_dir)
                    return None
            shutil.rmtree(workspace.base_dir, ignore_errors=True)
            with contextlib.suppress(OSError):
                workspace.base_dir.parent.rmdir()
        logger.debug("Destroyed workspace %s (archive=%s)", workspace.base_dir, archive_path)
        return archive_path

    def list_workspaces(self) -> list[Workspace]:
        """All attempt sandboxes currently on disk."""

        if not self.root_dir.exists():
            return []
        found: list[Workspace] = []
        for task_dir in sorted(self.root_dir.iterdir()):
            if not task_dir.is_dir():
                continue
            for attempt_dir in sorted(task_dir.iterdir()):
                match = _ATTEMPT_DIR_PATTERN.match(attempt_dir.name)
                if match is None or not attempt_dir.is_dir():
                    continue
                found.append(
                    Workspace(
                        task_id=task_dir.name,
                        attempt_no=int(match.group(1)),
                        base_dir=attempt_dir,
                    ),
                )
        return found

    def sweep_orphans(self, active: Iterable[tuple[str, int]] = ()) -> list[Workspace]:
        """Archive and remove every workspace not owned by a live attempt."""

        keep = set(active)
        swept: list[Workspace] = []
        for workspace in self.list_workspaces():
            if (workspace.task_id, workspace.attempt_no) in keep:
                continue
            logger.warning("Sweeping orphan workspace %s", workspace.base_dir)
            self.destroy(workspace, succeeded=False)
            if not workspace.exists():
                swept.append(workspace)
        return swept

    def _materialize(self, workspace: Workspace, task: TaskView) -> list[str]:
        for directory in (
            workspace.context_dir,
            workspace.output_dir,
            workspace.artifacts_dir,
            workspace.logs_dir,
            workspace.meta_path.parent,
        ):
            directory.mkdir(parents=True, exist_ok=True)

        context_files: list[str] = []
        for key, value in task.context.items():
            stem = _safe_filename(key)
            path = workspace.context_dir / f"{stem}.json"
            suffix = 2
            # distinct keys may sanitize to the same name
            while path.name in context_files:
                path = workspace.context_dir / f"{stem}-{suffix}.json"
                suffix += 1
            path.write_text(
                json.dumps(value, ensure_ascii=False, indent=2, sort_keys=True),
                "utf-8",
            )
            context_files.append(path.name)

        workspace.prompt_path.write_text(
            render_prompt(
                task_type=task.task_type,
                source=task.source,
                resource_id=task.resource_id,
                repository_ref=task.repository_ref,
            ),
            "utf-8",
        )
        workspace.stdout_path.touch()
        workspace.stderr_path.touch()
        return context_files

    def _archive(self, workspace: Workspace) -> Path | None:
        target = self.archive_dir / workspace.task_id / f"attempt-{workspace.attempt_no}"
        try:
            target.mkdir(parents=True, exist_ok=True)
            for directory in (
                workspace.output_dir,
                workspace.logs_dir,
                workspace.artifacts_dir,
                workspace.meta_path.parent,
            ):
                if directory.is_dir():
                    shutil.copytree(directory, target / directory.name, dirs_exist_ok=True)
        except OSError:
            logger.exception("Failed to archive workspace %s", workspace.base_dir)
            return None
        return target


def _safe_filename(key: str) -> str:
    cleaned = _UNSAFE_FILENAME_CHARS.sub("_", key.strip()).strip("._")
    return cleaned or "context"
