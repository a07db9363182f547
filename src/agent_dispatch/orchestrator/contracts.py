"""File-based contracts shared between the coordinator and worker processes."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

CONTEXT_DIR_NAME = "context"
OUTPUT_DIR_NAME = "output"
ARTIFACTS_DIR_NAME = "artifacts"
LOGS_DIR_NAME = "logs"
META_DIR_NAME = "meta"
PROMPT_FILE_NAME = "prompt.md"
RESULT_FILE_NAME = "result.json"
META_FILE_NAME = "workspace.json"
STDOUT_LOG_NAME = "stdout.log"
STDERR_LOG_NAME = "stderr.log"

WORKSPACE_CONTRACT_VERSION = 1


@dataclass(slots=True)
class WorkspaceMeta:
    """Metadata stored with each attempt workspace."""

    contract_version: int
    task_id: str
    attempt_no: int
    task_type: str
    source: str
    resource_id: str
    workspace: str
    prompt_path: str
    context_dir: str
    output_dir: str
    result_path: str
    artifacts_dir: str
    stdout_path: str
    stderr_path: str
    owner_pid: int
    created_at: str
    repository_ref: str | None = None
    context_files: list[str] = field(default_factory=list)


def write_json(path: Path, payload: dict[str, Any]) -> None:
    """Persist JSON payload using deterministic formatting."""

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True), "utf-8")


def load_json(path: Path) -> dict[str, Any]:
    """Load JSON document and validate top-level object type."""

    payload = json.loads(path.read_text("utf-8"))
    if not isinstance(payload, dict):
        raise TypeError(f"Expected JSON object in {path}")
    return payload


def write_workspace_meta(path: Path, meta: WorkspaceMeta) -> None:
    write_json(path, asdict(meta))


def read_workspace_meta(path: Path) -> WorkspaceMeta:
    """Load and validate workspace metadata."""

    raw = load_json(path)
    required = {
        "task_id",
        "attempt_no",
        "task_type",
        "workspace",
        "prompt_path",
        "context_dir",
        "output_dir",
        "result_path",
        "artifacts_dir",
        "stdout_path",
        "stderr_path",
    }
    missing = [key for key in sorted(required) if key not in raw]
    if missing:
        raise ValueError(f"Workspace meta missing required fields: {', '.join(missing)}")

    attempt_no = raw["attempt_no"]
    if not isinstance(attempt_no, int) or attempt_no < 1:
        raise ValueError("workspace.attempt_no must be an integer >= 1")
    context_files = raw.get("context_files", [])
    if not isinstance(context_files, list):
        raise TypeError("workspace.context_files must be an array")

    return WorkspaceMeta(
        contract_version=int(raw.get("contract_version", WORKSPACE_CONTRACT_VERSION)),
        task_id=str(raw["task_id"]),
        attempt_no=attempt_no,
        task_type=str(raw["task_type"]),
        source=str(raw.get("source", "")),
        resource_id=str(raw.get("resource_id", "")),
        workspace=str(raw["workspace"]),
        prompt_path=str(raw["prompt_path"]),
        context_dir=str(raw["context_dir"]),
        output_dir=str(raw["output_dir"]),
        result_path=str(raw["result_path"]),
        artifacts_dir=str(raw["artifacts_dir"]),
        stdout_path=str(raw["stdout_path"]),
        stderr_path=str(raw["stderr_path"]),
        owner_pid=int(raw.get("owner_pid", 0)),
        created_at=str(raw.get("created_at", "")),
        repository_ref=raw.get("repository_ref"),
        context_files=[str(item) for item in context_files],
    )
