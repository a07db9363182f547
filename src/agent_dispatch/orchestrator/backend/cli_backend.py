"""Subprocess supervisor for CLI workers.

Output is streamed into the workspace logs chunk by chunk as the process
writes it, newline or not; every chunk counts as activity for the idle
timeout. Shutdown is two phase: terminate, wait for the grace period, then
kill.
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import threading
import time
from datetime import datetime, timedelta
from pathlib import Path
from typing import IO

from agent_dispatch.orchestrator.backend.base import (
    BackendRunRequest,
    BackendRunResult,
    RunOutcome,
    TimeoutKind,
)
from agent_dispatch.orchestrator.workdir import Workspace
from agent_dispatch.storage.common import utc_now

logger = logging.getLogger(__name__)

CONTEXT_DIR_ENV = "AGENT_DISPATCH_CONTEXT_DIR"
OUTPUT_DIR_ENV = "AGENT_DISPATCH_OUTPUT_DIR"
PROMPT_FILE_ENV = "AGENT_DISPATCH_PROMPT_FILE"

_READER_JOIN_GRACE_SECONDS = 2.0
_READ_CHUNK_BYTES = 4096


class BackendRunError(RuntimeError):
    """Worker could not be started; retryability hint attached."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class _ActivityTracker:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._monotonic = time.monotonic()
        self._wall = utc_now()

    def touch(self) -> None:
        with self._lock:
            self._monotonic = time.monotonic()
            self._wall = utc_now()

    def idle_seconds(self) -> float:
        with self._lock:
            return time.monotonic() - self._monotonic

    @property
    def last_wall(self) -> datetime:
        with self._lock:
            return self._wall


class CliWorkerBackend:
    """Run the configured command template inside an attempt workspace."""

    def run(self, request: BackendRunRequest) -> BackendRunResult:
        workspace = request.workspace
        run_args = build_run_args(
            command_template=request.command_template,
            workspace=workspace,
            task_type=request.task_type,
        )
        env = os.environ.copy()
        env[CONTEXT_DIR_ENV] = str(workspace.context_dir)
        env[OUTPUT_DIR_ENV] = str(workspace.output_dir)
        env[PROMPT_FILE_ENV] = str(workspace.prompt_path)
        env["AGENT_DISPATCH_TASK_ID"] = workspace.task_id
        env["AGENT_DISPATCH_TASK_TYPE"] = request.task_type
        env["AGENT_DISPATCH_ATTEMPT_NO"] = str(workspace.attempt_no)

        workspace.logs_dir.mkdir(parents=True, exist_ok=True)
        started_at = utc_now()
        try:
            process = subprocess.Popen(  # noqa: S603
                run_args,
                cwd=workspace.base_dir,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                bufsize=0,
            )
        except FileNotFoundError as error:
            raise BackendRunError(
                f"Worker command not found: {run_args[0]}",
                transient=False,
            ) from error
        except OSError as error:
            raise BackendRunError(f"Worker failed to start: {error}", transient=True) from error

        logger.info(
            "Started worker pid=%s for task %s attempt %d",
            process.pid,
            workspace.task_id,
            workspace.attempt_no,
        )
        if request.on_spawn is not None:
            request.on_spawn(process.pid)

        tracker = _ActivityTracker()
        readers = [
            threading.Thread(
                target=_stream_pipe,
                args=(process.stdout, workspace.stdout_path, tracker),
                name=f"stdout-{workspace.task_id}-{workspace.attempt_no}",
                daemon=True,
            ),
            threading.Thread(
                target=_stream_pipe,
                args=(process.stderr, workspace.stderr_path, tracker),
                name=f"stderr-{workspace.task_id}-{workspace.attempt_no}",
                daemon=True,
            ),
        ]
        for reader in readers:
            reader.start()

        outcome, timeout_kind = _supervise(process=process, request=request, tracker=tracker)

        for reader in readers:
            reader.join(timeout=request.graceful_shutdown_seconds + _READER_JOIN_GRACE_SECONDS)

        finished_at = utc_now()
        duration = finished_at - started_at
        return BackendRunResult(
            outcome=outcome,
            exit_code=process.returncode,
            timeout_kind=timeout_kind,
            started_at=started_at,
            finished_at=finished_at,
            last_activity_at=tracker.last_wall,
            duration_ms=int(duration / timedelta(milliseconds=1)),
            stdout_path=workspace.stdout_path,
            stderr_path=workspace.stderr_path,
            pid=process.pid,
        )


def build_run_args(*, command_template: str, workspace: Workspace, task_type: str) -> list[str]:
    """Render the command template into an argv list."""

    stripped = command_template.strip()
    if not stripped:
        raise BackendRunError("Worker command template is empty.", transient=False)
    try:
        rendered = stripped.format(
            prompt_file=shlex.quote(str(workspace.prompt_path)),
            workspace=shlex.quote(str(workspace.base_dir)),
            context_dir=shlex.quote(str(workspace.context_dir)),
            output_dir=shlex.quote(str(workspace.output_dir)),
            task_type=shlex.quote(task_type),
            task_id=shlex.quote(workspace.task_id),
        )
    except (KeyError, IndexError) as error:
        raise BackendRunError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise BackendRunError(
            "Worker command template rendered empty command.",
            transient=False,
        )
    return argv


def _supervise(
    *,
    process: subprocess.Popen[bytes],
    request: BackendRunRequest,
    tracker: _ActivityTracker,
) -> tuple[RunOutcome, TimeoutKind | None]:
    start_monotonic = time.monotonic()
    poll_interval = max(0.01, request.poll_interval_seconds)
    while True:
        if process.poll() is not None:
            return RunOutcome.EXITED, None

        if request.cancel_requested is not None and request.cancel_requested():
            logger.warning("Cancel requested, stopping worker pid=%s", process.pid)
            terminate_process(process, grace_seconds=request.graceful_shutdown_seconds)
            return RunOutcome.KILLED, None

        if time.monotonic() - start_monotonic >= request.hard_timeout_seconds:
            logger.warning(
                "Worker pid=%s exceeded hard timeout of %.1fs",
                process.pid,
                request.hard_timeout_seconds,
            )
            terminate_process(process, grace_seconds=request.graceful_shutdown_seconds)
            return RunOutcome.TIMED_OUT, TimeoutKind.HARD

        if tracker.idle_seconds() >= request.idle_timeout_seconds:
            logger.warning(
                "Worker pid=%s produced no output for %.1fs",
                process.pid,
                request.idle_timeout_seconds,
            )
            terminate_process(process, grace_seconds=request.graceful_shutdown_seconds)
            return RunOutcome.TIMED_OUT, TimeoutKind.IDLE

        time.sleep(poll_interval)


def _stream_pipe(pipe: IO[bytes] | None, file_path: Path, tracker: _ActivityTracker) -> None:
    if pipe is None:
        return
    fd = pipe.fileno()
    try:
        with file_path.open("ab") as handle:
            while True:
                chunk = os.read(fd, _READ_CHUNK_BYTES)
                if not chunk:
                    break
                handle.write(chunk)
                handle.flush()
                tracker.touch()
    finally:
        pipe.close()


def terminate_process(process: subprocess.Popen[bytes], *, grace_seconds: float) -> None:
    """Terminate, wait for the grace period, then kill."""

    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=max(0.0, grace_seconds))
    except subprocess.TimeoutExpired:
        logger.warning("Worker pid=%s ignored terminate, killing", process.pid)
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=5)
