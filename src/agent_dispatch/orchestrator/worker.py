"""Coordinator that admits queued tasks and supervises their attempts.

The coordinator thread is the only writer of task state. Attempt threads
materialize the workspace, run the worker process and parse the result, then
report back through an inbox queue; the coordinator records the outcome,
tears the workspace down and only then requeues, completes or dead-letters
the task.
"""

from __future__ import annotations

import logging
import queue
import signal
import threading
import time
from collections.abc import Iterator
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path

from agent_dispatch.orchestrator.admission import AdmissionController, AdmissionEntry, Lease
from agent_dispatch.orchestrator.backend import (
    BackendRunError,
    BackendRunRequest,
    BackendRunResult,
    RunOutcome,
    WorkerBackend,
)
from agent_dispatch.orchestrator.failure_classifier import (
    AttemptFailure,
    RetryPolicy,
    classify_failure,
)
from agent_dispatch.orchestrator.models import (
    AttemptFinish,
    AttemptStatus,
    FailureClass,
    StatusSnapshot,
    TaskStatus,
    TaskView,
)
from agent_dispatch.orchestrator.repository import OrchestratorRepository
from agent_dispatch.orchestrator.sanitization import sanitize_preview, tail_preview
from agent_dispatch.orchestrator.validator import ParsedResult, ValidationError, parse_result
from agent_dispatch.orchestrator.workdir import TaskWorkspaceManager, Workspace, WorkspaceError
from agent_dispatch.storage.common import utc_now

logger = logging.getLogger(__name__)

_READY_PAGE_SIZE = 100


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate coordinator counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    retried: int = 0
    dead_lettered: int = 0
    timeouts: int = 0
    canceled: int = 0
    infrastructure_errors: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.retried += other.retried
        self.dead_lettered += other.dead_lettered
        self.timeouts += other.timeouts
        self.canceled += other.canceled
        self.infrastructure_errors += other.infrastructure_errors
        self.idle_polls += other.idle_polls


@dataclass(slots=True)
class CoordinatorOptions:
    """Tunables for one coordinator instance."""

    command_template: str
    idle_timeout_seconds: float = 300.0
    hard_timeout_seconds: float = 1_800.0
    graceful_shutdown_seconds: float = 10.0
    supervisor_poll_seconds: float = 0.1
    poll_interval_seconds: float = 1.0
    drain_timeout_seconds: float = 30.0
    infra_retry_limit: int = 3
    infra_retry_backoff_seconds: float = 0.5
    preview_chars: int = 2_000
    recent_outcomes_limit: int = 10


@dataclass(slots=True)
class _ActiveAttempt:
    task: TaskView
    lease: Lease
    cancel_event: threading.Event = field(default_factory=threading.Event)
    attempt_no: int | None = None
    workspace: Workspace | None = None


@dataclass(slots=True)
class _AttemptStarted:
    task_id: str
    attempt_no: int
    workspace: Workspace


@dataclass(slots=True)
class _AttemptFinished:
    task_id: str
    attempt_no: int | None
    workspace: Workspace | None
    run: BackendRunResult | None = None
    parsed: ParsedResult | None = None
    validation_error: ValidationError | None = None
    infra_error: str | None = None
    transient: bool = True
    stdout_text: str = ""
    stderr_text: str = ""


_InboxMessage = _AttemptStarted | _AttemptFinished


class OrchestratorWorker:
    """Admits queued tasks into bounded slots and drives them to a terminal state."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: OrchestratorRepository,
        backend: WorkerBackend,
        workspaces: TaskWorkspaceManager,
        admission: AdmissionController,
        retry_policy: RetryPolicy,
        options: CoordinatorOptions,
    ) -> None:
        self.repository = repository
        self.backend = backend
        self.workspaces = workspaces
        self.admission = admission
        self.retry_policy = retry_policy
        self.options = options
        self._inbox: queue.Queue[_InboxMessage] = queue.Queue()
        self._active: dict[str, _ActiveAttempt] = {}
        self._executor = ThreadPoolExecutor(
            max_workers=admission.capacity,
            thread_name_prefix="attempt",
        )
        self._started = False
        self._stop_requested = False
        self._shutdown_kill = threading.Event()

    # -- public API ----------------------------------------------------------

    def start(self) -> list[str]:
        """Crash recovery: settle interrupted tasks and sweep orphan workspaces."""

        if self._started:
            return []
        self._started = True
        recovered = self.repository.recover_interrupted()
        if recovered:
            logger.warning("Recovered %d interrupted task(s): %s", len(recovered), recovered)
        swept = self.workspaces.sweep_orphans(active=())
        if swept:
            logger.warning("Swept %d orphan workspace(s)", len(swept))
        return recovered

    def run_once(self) -> WorkerRunSummary:
        """Drain finished attempts, apply cancels and admit whatever fits."""

        self.start()
        summary = WorkerRunSummary()
        self._drain_inbox(summary, block_seconds=0.0)
        self._apply_cancel_requests()
        if not self._stop_requested:
            self._feed_admission()
            self._admit_ready()
        if not self._active and summary.processed == 0:
            summary.idle_polls = 1
        return summary

    def run_batch(self) -> WorkerRunSummary:
        """Admit what fits right now and wait for those attempts to finish."""

        with self._signal_handlers():
            aggregate = self.run_once()
            while self._active and not self._stop_requested:
                self._drain_inbox(aggregate, block_seconds=self.options.poll_interval_seconds)
            self._drain_active(aggregate)
        return aggregate

    def run_loop(
        self,
        *,
        max_tasks: int | None = None,
        until_idle: bool = False,
        max_seconds: float | None = None,
    ) -> WorkerRunSummary:
        """Run until stopped, ``max_tasks`` attempts finished or (optionally) idle.

        Args:
            max_tasks: Stop admitting after this many finished attempts (None = unlimited).
            until_idle: Return once nothing is running and no task is queued.
            max_seconds: Wall-clock bound; running attempts are drained on exit.
        """

        aggregate = WorkerRunSummary()
        deadline = time.monotonic() + max_seconds if max_seconds is not None else None
        with self._signal_handlers():
            while True:
                summary = self.run_once()
                aggregate.add(summary)
                if self._stop_requested:
                    break
                if max_tasks is not None and aggregate.processed >= max_tasks:
                    break
                if deadline is not None and time.monotonic() >= deadline:
                    break
                if until_idle and not self._active and not self._has_queued_tasks():
                    break
                self._drain_inbox(aggregate, block_seconds=self.options.poll_interval_seconds)
            self._drain_active(aggregate)
        return aggregate

    def request_stop(self) -> None:
        self._request_stop(signal_name="api")

    def status(self) -> StatusSnapshot:
        counts = self.repository.count_by_status()
        return StatusSnapshot(
            active=len(self._active),
            queued=counts.get(TaskStatus.QUEUED.value, 0),
            counts_by_status=counts,
            recent_terminal=self.repository.recent_terminal_tasks(
                limit=self.options.recent_outcomes_limit,
            ),
        )

    def close(self) -> None:
        self._shutdown_kill.set()
        self._executor.shutdown(wait=True)

    # -- admission -----------------------------------------------------------

    def _feed_admission(self) -> None:
        # Every ready task must reach the controller, or aging never applies to it.
        offset = 0
        while True:
            page = self.repository.list_ready_tasks(limit=_READY_PAGE_SIZE, offset=offset)
            for task in page:
                if task.task_id in self._active or self.admission.is_known(task.task_id):
                    continue
                self.admission.submit(
                    AdmissionEntry(
                        task_id=task.task_id,
                        priority=task.priority,
                        queued_at=task.queued_at.timestamp(),
                    ),
                )
            if len(page) < _READY_PAGE_SIZE:
                return
            offset += len(page)

    def _admit_ready(self) -> None:
        while True:
            lease = self.admission.try_admit()
            if lease is None:
                return
            task = self.repository.admit_task(task_id=lease.task_id)
            if task is None:
                logger.debug("Task %s left the queue before admission", lease.task_id)
                self.admission.release(lease)
                continue
            logger.info(
                "Admitted task %s (priority=%d effective=%d waited=%.1fs)",
                task.task_id,
                lease.priority,
                lease.effective_priority,
                lease.waited_seconds,
            )
            active = _ActiveAttempt(task=task, lease=lease)
            self._active[task.task_id] = active
            self._executor.submit(self._run_attempt, active)

    def _apply_cancel_requests(self) -> None:
        for task_id in self.repository.list_cancel_requested():
            active = self._active.get(task_id)
            if active is not None and not active.cancel_event.is_set():
                logger.warning("Cancel requested for running task %s", task_id)
                active.cancel_event.set()
            self.admission.withdraw(task_id)

    def _has_queued_tasks(self) -> bool:
        return self.repository.count_by_status().get(TaskStatus.QUEUED.value, 0) > 0

    # -- attempt thread --------------------------------------------------------

    def _run_attempt(self, active: _ActiveAttempt) -> None:
        task = active.task
        attempt_no = task.attempt_count + 1
        workspace: Workspace | None = None
        try:
            if active.cancel_event.is_set():
                self._inbox.put(
                    _AttemptFinished(task_id=task.task_id, attempt_no=None, workspace=None),
                )
                return
            try:
                workspace = self.workspaces.create_with_retry(
                    task,
                    attempt_no,
                    limit=self.options.infra_retry_limit,
                    backoff_seconds=self.options.infra_retry_backoff_seconds,
                )
            except WorkspaceError as error:
                self._inbox.put(
                    _AttemptFinished(
                        task_id=task.task_id,
                        attempt_no=None,
                        workspace=None,
                        infra_error=str(error),
                    ),
                )
                return

            self._inbox.put(
                _AttemptStarted(task_id=task.task_id, attempt_no=attempt_no, workspace=workspace),
            )
            try:
                run = self.backend.run(
                    BackendRunRequest(
                        workspace=workspace,
                        task_type=task.task_type,
                        command_template=self.options.command_template,
                        idle_timeout_seconds=self.options.idle_timeout_seconds,
                        hard_timeout_seconds=self.options.hard_timeout_seconds,
                        graceful_shutdown_seconds=self.options.graceful_shutdown_seconds,
                        poll_interval_seconds=self.options.supervisor_poll_seconds,
                        cancel_requested=lambda: (
                            active.cancel_event.is_set() or self._shutdown_kill.is_set()
                        ),
                    ),
                )
            except BackendRunError as error:
                self._inbox.put(
                    _AttemptFinished(
                        task_id=task.task_id,
                        attempt_no=attempt_no,
                        workspace=workspace,
                        infra_error=str(error),
                        transient=error.transient,
                        stderr_text=_read_text(workspace.stderr_path),
                    ),
                )
                return

            parsed: ParsedResult | None = None
            validation_error: ValidationError | None = None
            if run.outcome == RunOutcome.EXITED and run.exit_code == 0:
                outcome = parse_result(workspace.result_path)
                if isinstance(outcome, ValidationError):
                    validation_error = outcome
                else:
                    parsed = outcome
            self._inbox.put(
                _AttemptFinished(
                    task_id=task.task_id,
                    attempt_no=attempt_no,
                    workspace=workspace,
                    run=run,
                    parsed=parsed,
                    validation_error=validation_error,
                    stdout_text=_read_text(run.stdout_path),
                    stderr_text=_read_text(run.stderr_path),
                ),
            )
        except Exception as error:  # noqa: BLE001
            logger.exception("Attempt thread for task %s crashed", task.task_id)
            self._inbox.put(
                _AttemptFinished(
                    task_id=task.task_id,
                    attempt_no=attempt_no if workspace is not None else None,
                    workspace=workspace,
                    infra_error=f"Attempt runner error: {error}",
                ),
            )

    # -- coordinator: outcome handling -----------------------------------------

    def _drain_inbox(self, summary: WorkerRunSummary, *, block_seconds: float) -> None:
        timeout = block_seconds
        while True:
            try:
                if timeout > 0:
                    message = self._inbox.get(timeout=timeout)
                else:
                    message = self._inbox.get_nowait()
            except queue.Empty:
                return
            timeout = 0.0
            if isinstance(message, _AttemptStarted):
                self._on_attempt_started(message)
            else:
                self._on_attempt_finished(message, summary)

    def _drain_active(self, summary: WorkerRunSummary) -> None:
        if not self._active:
            return
        logger.info(
            "Waiting up to %.1fs for %d running attempt(s)",
            self.options.drain_timeout_seconds,
            len(self._active),
        )
        deadline = time.monotonic() + self.options.drain_timeout_seconds
        while self._active and time.monotonic() < deadline:
            self._drain_inbox(summary, block_seconds=0.1)
        if self._active:
            logger.warning("Stopping %d attempt(s) still running", len(self._active))
            self._shutdown_kill.set()
        while self._active:
            self._drain_inbox(summary, block_seconds=0.1)
        self._shutdown_kill.clear()

    def _on_attempt_started(self, message: _AttemptStarted) -> None:
        active = self._active[message.task_id]
        attempt = self.repository.start_attempt(
            task_id=message.task_id,
            attempt_no=message.attempt_no,
            workspace_path=str(message.workspace.base_dir),
            stdout_path=str(message.workspace.stdout_path),
            stderr_path=str(message.workspace.stderr_path),
        )
        if attempt is None:
            raise RuntimeError(f"Task {message.task_id} left admitted state unexpectedly")
        active.attempt_no = message.attempt_no
        active.workspace = message.workspace

    def _on_attempt_finished(self, message: _AttemptFinished, summary: WorkerRunSummary) -> None:
        active = self._active.pop(message.task_id)
        summary.processed += 1
        try:
            if message.attempt_no is None:
                self._finish_without_attempt(active, message, summary)
            else:
                self._finish_attempt(active, message, summary)
        finally:
            self.admission.release(active.lease)

    def _finish_without_attempt(
        self,
        active: _ActiveAttempt,
        message: _AttemptFinished,
        summary: WorkerRunSummary,
    ) -> None:
        task = active.task
        if active.cancel_event.is_set():
            self.repository.dead_letter_task(
                task_id=task.task_id,
                current=TaskStatus.ADMITTED,
                reason="canceled",
                failure_class=FailureClass.CANCELED,
            )
            summary.canceled += 1
            summary.dead_lettered += 1
            return
        summary.infrastructure_errors += 1
        self._requeue_infrastructure(
            task=task,
            current=TaskStatus.ADMITTED,
            error_summary=message.infra_error or "unknown infrastructure error",
        )

    def _finish_attempt(  # noqa: C901, PLR0912
        self,
        active: _ActiveAttempt,
        message: _AttemptFinished,
        summary: WorkerRunSummary,
    ) -> None:
        task = active.task
        attempt_no = message.attempt_no
        assert attempt_no is not None
        run = message.run
        finished_at = run.finished_at if run is not None else utc_now()
        stdout_preview = sanitize_preview(message.stdout_text, max_chars=self.options.preview_chars)
        stderr_preview = tail_preview(message.stderr_text, max_chars=self.options.preview_chars)

        failure: AttemptFailure | None = None
        attempt_status: AttemptStatus
        task_outcome: TaskStatus | None
        canceled = active.cancel_event.is_set()

        if message.infra_error is not None:
            attempt_status = AttemptStatus.FAILED
            task_outcome = TaskStatus.ATTEMPT_FAILED
            failure = AttemptFailure(
                failure_class=FailureClass.INFRASTRUCTURE,
                error_summary=message.infra_error,
            )
        elif run is None:
            raise RuntimeError(f"Attempt report without run result for task {task.task_id}")
        elif run.outcome == RunOutcome.KILLED:
            attempt_status = AttemptStatus.KILLED
            task_outcome = None
        elif run.outcome == RunOutcome.TIMED_OUT:
            attempt_status = AttemptStatus.TIMED_OUT
            task_outcome = TaskStatus.ATTEMPT_TIMED_OUT
            timeout_kind = run.timeout_kind.value if run.timeout_kind is not None else None
            failure = AttemptFailure(
                failure_class=FailureClass.TIMEOUT,
                error_summary=f"Worker {timeout_kind} timeout",
                exit_code=run.exit_code,
                timeout_kind=timeout_kind,
            )
        elif run.exit_code != 0:
            attempt_status = AttemptStatus.FAILED
            task_outcome = TaskStatus.ATTEMPT_FAILED
            failure = AttemptFailure(
                failure_class=FailureClass.WORKER_CRASHED,
                error_summary=f"Worker exited with code {run.exit_code}",
                exit_code=run.exit_code,
                stderr=message.stderr_text,
            )
        elif message.validation_error is not None:
            attempt_status = AttemptStatus.FAILED
            task_outcome = TaskStatus.ATTEMPT_FAILED
            failure = AttemptFailure(
                failure_class=message.validation_error.failure_class,
                error_summary=message.validation_error.message,
                exit_code=0,
            )
        elif message.parsed is not None and not message.parsed.success:
            attempt_status = AttemptStatus.FAILED
            task_outcome = TaskStatus.ATTEMPT_FAILED
            failure = AttemptFailure(
                failure_class=FailureClass.WORKER_REPORTED_FAILURE,
                error_summary=message.parsed.analysis_summary or "Worker reported failure",
                exit_code=0,
            )
        else:
            attempt_status = AttemptStatus.SUCCEEDED
            task_outcome = TaskStatus.ATTEMPT_SUCCEEDED

        if message.parsed is not None:
            self._record_actions(task_id=task.task_id, attempt_no=attempt_no, parsed=message.parsed)

        if task_outcome is not None:
            self.repository.record_attempt_outcome(
                task_id=task.task_id,
                status=task_outcome,
                attempt_no=attempt_no,
                failure_class=failure.failure_class if failure is not None else None,
                error_summary=failure.error_summary if failure is not None else None,
                last_exit_code=run.exit_code if run is not None else None,
            )

        archive_path = None
        if message.workspace is not None:
            archive_path = self.workspaces.destroy(
                message.workspace,
                succeeded=attempt_status == AttemptStatus.SUCCEEDED,
            )
            if message.workspace.exists():
                self.repository.add_task_event(
                    task_id=task.task_id,
                    event_type="workspace_kept",
                    details={
                        "attempt_no": attempt_no,
                        "workspace": str(message.workspace.base_dir),
                    },
                )
        self.repository.finish_attempt(
            AttemptFinish(
                task_id=task.task_id,
                attempt_no=attempt_no,
                status=attempt_status,
                finished_at=finished_at,
                last_activity_at=run.last_activity_at if run is not None else None,
                exit_code=run.exit_code if run is not None else None,
                timeout_kind=(
                    run.timeout_kind.value
                    if run is not None and run.timeout_kind is not None
                    else None
                ),
                failure_class=(
                    failure.failure_class
                    if failure is not None
                    else (FailureClass.CANCELED if canceled and task_outcome is None else None)
                ),
                error_summary=(
                    sanitize_preview(failure.error_summary) if failure is not None else None
                ),
                result_path=(
                    str(message.workspace.result_path)
                    if message.workspace is not None and message.parsed is not None
                    else None
                ),
                stdout_preview=stdout_preview,
                stderr_preview=stderr_preview,
            ),
        )
        if archive_path is not None:
            self.repository.set_attempt_archive(
                task_id=task.task_id,
                attempt_no=attempt_no,
                archive_path=str(archive_path),
            )

        if attempt_status == AttemptStatus.KILLED:
            if canceled:
                self.repository.dead_letter_task(
                    task_id=task.task_id,
                    current=TaskStatus.ATTEMPT_RUNNING,
                    reason="canceled",
                    failure_class=FailureClass.CANCELED,
                )
                summary.canceled += 1
                summary.dead_lettered += 1
                logger.warning("Task %s canceled during attempt %d", task.task_id, attempt_no)
            else:
                self.repository.requeue_interrupted(
                    task_id=task.task_id,
                    current=TaskStatus.ATTEMPT_RUNNING,
                )
            return

        if attempt_status == AttemptStatus.SUCCEEDED:
            assert message.parsed is not None
            self.repository.complete_task(
                task_id=task.task_id,
                analysis_summary=message.parsed.analysis_summary,
            )
            if task.infra_error_count:
                self.repository.reset_infra_error_count(task_id=task.task_id)
            summary.succeeded += 1
            logger.info("Task %s completed on attempt %d", task.task_id, attempt_no)
            return

        assert failure is not None and task_outcome is not None
        if attempt_status == AttemptStatus.TIMED_OUT:
            summary.timeouts += 1
        if failure.failure_class == FailureClass.INFRASTRUCTURE:
            summary.infrastructure_errors += 1
            if not message.transient:
                self._dead_letter_infrastructure(
                    task=task,
                    current=task_outcome,
                    error_summary=failure.error_summary,
                )
                summary.dead_lettered += 1
                return
            self._requeue_infrastructure(
                task=task,
                current=task_outcome,
                error_summary=failure.error_summary,
            )
            return
        self._apply_retry_policy(
            task=task,
            current=task_outcome,
            failure=failure,
            attempt_no=attempt_no,
            summary=summary,
        )

    def _apply_retry_policy(
        self,
        *,
        task: TaskView,
        current: TaskStatus,
        failure: AttemptFailure,
        attempt_no: int,
        summary: WorkerRunSummary,
    ) -> None:
        classification = classify_failure(failure, previous_signature=task.failure_signature)
        decision = self.retry_policy.decide(
            retry_count=task.retry_count,
            max_retries=task.max_retries,
            classification=classification,
        )
        self.repository.add_task_event(
            task_id=task.task_id,
            event_type="failure_classified",
            status=current,
            details={"attempt_no": attempt_no, **classification.to_event_details()},
        )
        retry_count = task.retry_count + 1
        if decision.requeue:
            run_after = utc_now() + timedelta(seconds=decision.delay_seconds)
            self.repository.schedule_retry(
                task_id=task.task_id,
                current=current,
                run_after=run_after,
                retry_count=retry_count,
                failure_signature=decision.signature,
                reason=decision.reason,
            )
            summary.retried += 1
            logger.info(
                "Task %s attempt %d failed (%s); retry %d/%d in %.2fs",
                task.task_id,
                attempt_no,
                failure.failure_class.value,
                retry_count,
                task.max_retries,
                decision.delay_seconds,
            )
            return

        self.repository.dead_letter_task(
            task_id=task.task_id,
            current=current,
            reason=decision.reason,
            failure_class=failure.failure_class,
            retry_count=retry_count,
            failure_signature=decision.signature,
        )
        summary.dead_lettered += 1
        logger.error(
            "Task %s dead-lettered after attempt %d: %s (%s: %s)",
            task.task_id,
            attempt_no,
            decision.reason,
            failure.failure_class.value,
            failure.error_summary,
        )

    def _requeue_infrastructure(
        self,
        *,
        task: TaskView,
        current: TaskStatus,
        error_summary: str,
    ) -> None:
        consecutive = task.infra_error_count + 1
        delay = min(
            self.retry_policy.max_seconds,
            self.options.infra_retry_backoff_seconds * (2 ** max(consecutive - 1, 0)),
        )
        count = self.repository.requeue_after_infrastructure_error(
            task_id=task.task_id,
            current=current,
            run_after=utc_now() + timedelta(seconds=delay),
            error_summary=sanitize_preview(error_summary),
        )
        logger.warning(
            "Infrastructure error on task %s (consecutive=%s): %s",
            task.task_id,
            count,
            error_summary,
        )
        if count is not None and count >= self.options.infra_retry_limit:
            logger.error(
                "Platform alert: task %s hit %d consecutive infrastructure errors: %s",
                task.task_id,
                count,
                error_summary,
            )
            self.repository.add_task_event(
                task_id=task.task_id,
                event_type="platform_alert",
                status=TaskStatus.QUEUED,
                details={"infra_error_count": count, "error_summary": error_summary},
            )

    def _dead_letter_infrastructure(
        self,
        *,
        task: TaskView,
        current: TaskStatus,
        error_summary: str,
    ) -> None:
        """Worker cannot be started at all; retrying only burns attempts."""

        self.repository.dead_letter_task(
            task_id=task.task_id,
            current=current,
            reason="permanent infrastructure error",
            failure_class=FailureClass.INFRASTRUCTURE,
        )
        logger.error(
            "Platform alert: task %s dead-lettered, worker cannot be started: %s",
            task.task_id,
            error_summary,
        )
        self.repository.add_task_event(
            task_id=task.task_id,
            event_type="platform_alert",
            status=TaskStatus.DEAD_LETTERED,
            details={"transient": False, "error_summary": sanitize_preview(error_summary)},
        )

    def _record_actions(self, *, task_id: str, attempt_no: int, parsed: ParsedResult) -> None:
        self.repository.add_actions(task_id=task_id, attempt_no=attempt_no, actions=parsed.actions)
        for dropped in parsed.dropped:
            self.repository.add_task_event(
                task_id=task_id,
                event_type="action_dropped",
                details={
                    "attempt_no": attempt_no,
                    "index": dropped.index,
                    "reason": dropped.reason,
                },
            )

    # -- signals ---------------------------------------------------------------

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self._request_stop(signal_name=name)

        installed = False
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            pass
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)

    def _request_stop(self, *, signal_name: str) -> None:
        if not self._stop_requested:
            logger.info("Stop requested (%s); no new tasks will be admitted", signal_name)
        self._stop_requested = True


def _read_text(path: Path) -> str:
    if not path.exists():
        return ""
    return path.read_text("utf-8", errors="replace")
