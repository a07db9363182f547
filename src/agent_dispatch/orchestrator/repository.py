"""Persistent queue repository for orchestrator tasks.

Every task status change goes through a guarded ``UPDATE ... WHERE status = ?``
whose edge is first checked against the lifecycle table; a zero row count
means somebody else moved the task and the caller gets ``False``.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from agent_dispatch.orchestrator.models import (
    ActionRecord,
    ActionView,
    AttemptFinish,
    AttemptStatus,
    AttemptView,
    FailureClass,
    InboundDisposition,
    InboundEventView,
    NormalizedEvent,
    TaskCreate,
    TaskDetails,
    TaskEventView,
    TaskStatus,
    TaskView,
)
from agent_dispatch.orchestrator.state_machine import require_transition
from agent_dispatch.storage.alembic_runner import upgrade_head
from agent_dispatch.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from agent_dispatch.storage.sqlmodel_models import (
    InboundEvent,
    Task,
    TaskAction,
    TaskAttempt,
    TaskEvent,
)

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = (TaskStatus.ADMITTED, TaskStatus.ATTEMPT_RUNNING)
TERMINAL_STATUSES = (TaskStatus.COMPLETED, TaskStatus.DEAD_LETTERED)
_INTERMEDIATE_STATUSES = (
    TaskStatus.ATTEMPT_SUCCEEDED,
    TaskStatus.ATTEMPT_FAILED,
    TaskStatus.ATTEMPT_TIMED_OUT,
)


class OrchestratorRepository:
    """Queue persistence facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # -- inbound event log -------------------------------------------------

    def record_inbound_event(
        self,
        event: NormalizedEvent,
        *,
        dedupe_key: str,
    ) -> tuple[InboundEventView, bool]:
        """Append the raw event; idempotent on ``dedupe_key``.

        Returns the stored row and whether it was newly inserted.
        """

        with Session(self.engine) as session:
            row = InboundEvent(
                source=event.source,
                event_type=event.event_type,
                resource_id=event.resource_id,
                dedupe_key=dedupe_key,
                payload_json=json.dumps(event.payload, ensure_ascii=False, sort_keys=True),
                received_at=to_db_datetime(event.received_at),
                disposition=InboundDisposition.RECEIVED.value,
                task_id=None,
                created_at=to_db_datetime(utc_now()),
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                existing = session.exec(
                    select(InboundEvent).where(InboundEvent.dedupe_key == dedupe_key),
                ).one()
                return _to_inbound_view(existing), False
            session.refresh(row)
            return _to_inbound_view(row), True

    def set_inbound_disposition(
        self,
        *,
        event_id: int,
        disposition: InboundDisposition,
        task_id: str | None = None,
    ) -> None:
        with Session(self.engine) as session:
            row = session.get(InboundEvent, event_id)
            if row is None:
                raise RuntimeError(f"Inbound event not found: {event_id}")
            row.disposition = disposition.value
            row.task_id = task_id
            session.add(row)
            session.commit()

    def find_enqueued_event_in_window(
        self,
        *,
        source: str,
        resource_id: str,
        received_at: datetime,
        window: timedelta,
        exclude_event_id: int | None = None,
    ) -> InboundEventView | None:
        """Most recent enqueued event for the same resource inside the window."""

        with Session(self.engine) as session:
            statement = (
                select(InboundEvent)
                .where(
                    InboundEvent.source == source,
                    InboundEvent.resource_id == resource_id,
                    InboundEvent.disposition == InboundDisposition.ENQUEUED.value,
                    col(InboundEvent.task_id).is_not(None),
                    col(InboundEvent.received_at) > to_db_datetime(received_at - window),
                    col(InboundEvent.received_at) < to_db_datetime(received_at + window),
                )
                .order_by(col(InboundEvent.received_at).desc())
                .limit(1)
            )
            if exclude_event_id is not None:
                statement = statement.where(col(InboundEvent.id) != exclude_event_id)
            row = session.exec(statement).one_or_none()
        return _to_inbound_view(row) if row is not None else None

    def list_inbound_events(self, *, limit: int = 50) -> list[InboundEventView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(InboundEvent).order_by(col(InboundEvent.id).desc()).limit(limit),
            ).all()
        return [_to_inbound_view(row) for row in rows]

    # -- task lifecycle ----------------------------------------------------

    def enqueue_task(self, payload: TaskCreate) -> TaskView:
        """Create a queued task and link it to its inbound event."""

        now = utc_now()
        task_id = payload.task_id or str(uuid4())
        with Session(self.engine) as session:
            row = Task(
                task_id=task_id,
                source=payload.source,
                task_type=payload.task_type,
                resource_id=payload.resource_id,
                inbound_event_id=payload.inbound_event_id,
                priority=payload.priority,
                status=TaskStatus.QUEUED.value,
                retry_count=0,
                max_retries=payload.max_retries,
                attempt_count=0,
                infra_error_count=0,
                context_json=json.dumps(payload.context, ensure_ascii=False, sort_keys=True),
                repository_ref=payload.repository_ref,
                run_after=to_db_datetime(now),
                queued_at=to_db_datetime(now),
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            if payload.inbound_event_id is not None:
                inbound = session.get(InboundEvent, payload.inbound_event_id)
                if inbound is not None:
                    inbound.disposition = InboundDisposition.ENQUEUED.value
                    inbound.task_id = task_id
                    session.add(inbound)
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="enqueued",
                status_from=None,
                status_to=TaskStatus.QUEUED,
                details={
                    "source": payload.source,
                    "task_type": payload.task_type,
                    "resource_id": payload.resource_id,
                    "priority": payload.priority,
                    "max_retries": payload.max_retries,
                    "inbound_event_id": payload.inbound_event_id,
                },
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def list_ready_tasks(
        self,
        *,
        now: datetime | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[TaskView]:
        """Queued tasks whose backoff gate has passed, one page at a time."""

        cutoff = to_db_datetime(now or utc_now())
        with Session(self.engine) as session:
            rows = session.exec(
                select(Task)
                .where(
                    Task.status == TaskStatus.QUEUED.value,
                    col(Task.run_after) <= cutoff,
                )
                .order_by(
                    col(Task.priority).asc(),
                    col(Task.queued_at).asc(),
                    col(Task.created_at).asc(),
                    col(Task.task_id).asc(),
                )
                .offset(offset)
                .limit(limit),
            ).all()
        return [_to_task_view(row) for row in rows]

    def admit_task(self, *, task_id: str) -> TaskView | None:
        """Move a queued task into an admission slot."""

        now = utc_now()
        with Session(self.engine) as session:
            moved = self._transition(
                session=session,
                task_id=task_id,
                current=TaskStatus.QUEUED,
                target=TaskStatus.ADMITTED,
                values={"admitted_at": to_db_datetime(now)},
                event_type="admitted",
                details={},
            )
            if not moved:
                session.rollback()
                return None
            session.commit()
            return _to_task_view(self._get_task_row(session=session, task_id=task_id))

    def start_attempt(
        self,
        *,
        task_id: str,
        attempt_no: int,
        workspace_path: str,
        stdout_path: str,
        stderr_path: str,
    ) -> AttemptView | None:
        """Record a new attempt and move the task into ``attempt_running``."""

        now = utc_now()
        with Session(self.engine) as session:
            moved = self._transition(
                session=session,
                task_id=task_id,
                current=TaskStatus.ADMITTED,
                target=TaskStatus.ATTEMPT_RUNNING,
                values={"attempt_count": attempt_no},
                event_type="attempt_started",
                details={"attempt_no": attempt_no, "workspace": workspace_path},
            )
            if not moved:
                session.rollback()
                return None
            attempt = TaskAttempt(
                task_id=task_id,
                attempt_no=attempt_no,
                status=AttemptStatus.RUNNING.value,
                workspace_path=workspace_path,
                started_at=to_db_datetime(now),
                last_activity_at=to_db_datetime(now),
                stdout_path=stdout_path,
                stderr_path=stderr_path,
                created_at=to_db_datetime(now),
            )
            session.add(attempt)
            session.commit()
            session.refresh(attempt)
            return _to_attempt_view(attempt)

    def finish_attempt(self, payload: AttemptFinish) -> None:
        """Finalize one attempt row. Finished attempts are never reopened."""

        with Session(self.engine) as session:
            row = session.exec(
                select(TaskAttempt).where(
                    TaskAttempt.task_id == payload.task_id,
                    TaskAttempt.attempt_no == payload.attempt_no,
                ),
            ).one_or_none()
            if row is None:
                raise RuntimeError(
                    "Attempt not found: "
                    f"task_id={payload.task_id}, attempt_no={payload.attempt_no}",
                )
            if row.status != AttemptStatus.RUNNING.value:
                logger.debug(
                    "Attempt %s/%d already finished as %s",
                    payload.task_id,
                    payload.attempt_no,
                    row.status,
                )
                return
            started_at = to_utc_aware_datetime(row.started_at)
            row.status = payload.status.value
            row.finished_at = to_db_datetime(payload.finished_at)
            row.duration_ms = max(
                0,
                int((payload.finished_at - started_at) / timedelta(milliseconds=1)),
            )
            if payload.last_activity_at is not None:
                row.last_activity_at = to_db_datetime(payload.last_activity_at)
            row.exit_code = payload.exit_code
            row.timeout_kind = payload.timeout_kind
            row.failure_class = (
                payload.failure_class.value if payload.failure_class is not None else None
            )
            row.error_summary = payload.error_summary
            row.result_path = payload.result_path
            row.stdout_preview = payload.stdout_preview
            row.stderr_preview = payload.stderr_preview
            session.add(row)
            session.commit()

    def set_attempt_archive(self, *, task_id: str, attempt_no: int, archive_path: str) -> None:
        with Session(self.engine) as session:
            row = session.exec(
                select(TaskAttempt).where(
                    TaskAttempt.task_id == task_id,
                    TaskAttempt.attempt_no == attempt_no,
                ),
            ).one_or_none()
            if row is None:
                return
            row.archive_path = archive_path
            session.add(row)
            session.commit()

    def record_attempt_outcome(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        status: TaskStatus,
        attempt_no: int,
        failure_class: FailureClass | None = None,
        error_summary: str | None = None,
        last_exit_code: int | None = None,
        details: dict[str, object] | None = None,
    ) -> bool:
        """Move a running task into one of the attempt outcome states."""

        if status not in _INTERMEDIATE_STATUSES:
            raise ValueError(f"Unsupported attempt outcome status: {status}")
        values: dict[str, Any] = {"last_exit_code": last_exit_code}
        if failure_class is not None:
            values["failure_class"] = failure_class.value
            values["error_summary"] = error_summary
        event_details: dict[str, object] = {"attempt_no": attempt_no}
        if failure_class is not None:
            event_details["failure_class"] = failure_class.value
            event_details["error_summary"] = error_summary
        if last_exit_code is not None:
            event_details["exit_code"] = last_exit_code
        event_details.update(details or {})

        with Session(self.engine) as session:
            moved = self._transition(
                session=session,
                task_id=task_id,
                current=TaskStatus.ATTEMPT_RUNNING,
                target=status,
                values=values,
                event_type=status.value,
                details=event_details,
            )
            if not moved:
                session.rollback()
                return False
            session.commit()
            return True

    def add_actions(self, *, task_id: str, attempt_no: int, actions: list[ActionRecord]) -> int:
        """Append validated actions to the audit trail."""

        if not actions:
            return 0
        now = utc_now()
        with Session(self.engine) as session:
            for action in actions:
                session.add(
                    TaskAction(
                        task_id=task_id,
                        attempt_no=attempt_no,
                        action_type=action.action_type,
                        platform=action.platform,
                        target_resource_id=action.target_resource_id,
                        performed_at=to_db_datetime(action.performed_at),
                        success=action.success,
                        detail_json=(
                            json.dumps(action.detail, ensure_ascii=False, sort_keys=True)
                            if action.detail is not None
                            else None
                        ),
                        created_at=to_db_datetime(now),
                    ),
                )
            session.commit()
        return len(actions)

    def complete_task(self, *, task_id: str, analysis_summary: str) -> bool:
        """Mark a succeeded attempt's task as completed."""

        now = utc_now()
        with Session(self.engine) as session:
            moved = self._transition(
                session=session,
                task_id=task_id,
                current=TaskStatus.ATTEMPT_SUCCEEDED,
                target=TaskStatus.COMPLETED,
                values={
                    "finished_at": to_db_datetime(now),
                    "failure_class": None,
                    "error_summary": None,
                },
                event_type="completed",
                details={"analysis_summary": analysis_summary},
            )
            if not moved:
                session.rollback()
                return False
            session.commit()
            return True

    def schedule_retry(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        current: TaskStatus,
        run_after: datetime,
        retry_count: int,
        failure_signature: str | None,
        reason: str,
    ) -> bool:
        """Requeue a failed attempt's task after charging one retry."""

        now = utc_now()
        with Session(self.engine) as session:
            moved = self._transition(
                session=session,
                task_id=task_id,
                current=current,
                target=TaskStatus.QUEUED,
                values={
                    "run_after": to_db_datetime(run_after),
                    "queued_at": to_db_datetime(now),
                    "retry_count": retry_count,
                    "failure_signature": failure_signature,
                    "admitted_at": None,
                },
                event_type="retry_scheduled",
                details={
                    "run_after": to_utc_aware_datetime(run_after).isoformat(),
                    "retry_count": retry_count,
                    "signature": failure_signature,
                    "reason": reason,
                },
            )
            if not moved:
                session.rollback()
                return False
            session.commit()
            return True

    def requeue_after_infrastructure_error(
        self,
        *,
        task_id: str,
        current: TaskStatus,
        run_after: datetime,
        error_summary: str,
    ) -> int | None:
        """Requeue without charging the retry budget; returns the new infra error count."""

        now = utc_now()
        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            infra_error_count = row.infra_error_count + 1
            moved = self._transition(
                session=session,
                task_id=task_id,
                current=current,
                target=TaskStatus.QUEUED,
                values={
                    "run_after": to_db_datetime(run_after),
                    "queued_at": to_db_datetime(now),
                    "infra_error_count": infra_error_count,
                    "failure_class": FailureClass.INFRASTRUCTURE.value,
                    "error_summary": error_summary,
                    "admitted_at": None,
                },
                event_type="infrastructure_error",
                details={
                    "run_after": to_utc_aware_datetime(run_after).isoformat(),
                    "infra_error_count": infra_error_count,
                    "error_summary": error_summary,
                },
            )
            if not moved:
                session.rollback()
                return None
            session.commit()
            return infra_error_count

    def reset_infra_error_count(self, *, task_id: str) -> None:
        with Session(self.engine) as session:
            session.exec(
                sa_update(Task)
                .where(col(Task.task_id) == task_id, col(Task.infra_error_count) != 0)
                .values(infra_error_count=0),
            )
            session.commit()

    def dead_letter_task(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        current: TaskStatus,
        reason: str,
        failure_class: FailureClass | None = None,
        retry_count: int | None = None,
        failure_signature: str | None = None,
    ) -> bool:
        """Move a task into the terminal dead-letter state."""

        now = utc_now()
        values: dict[str, Any] = {"finished_at": to_db_datetime(now)}
        if failure_class is not None:
            values["failure_class"] = failure_class.value
        if retry_count is not None:
            values["retry_count"] = retry_count
        if failure_signature is not None:
            values["failure_signature"] = failure_signature
        with Session(self.engine) as session:
            moved = self._transition(
                session=session,
                task_id=task_id,
                current=current,
                target=TaskStatus.DEAD_LETTERED,
                values=values,
                event_type="dead_lettered",
                details={
                    "reason": reason,
                    "failure_class": failure_class.value if failure_class is not None else None,
                    "retry_count": retry_count,
                },
            )
            if not moved:
                session.rollback()
                return False
            session.commit()
            return True

    def request_cancel(self, *, task_id: str) -> TaskStatus:
        """Cancel a task.

        Queued tasks are dead-lettered immediately; admitted or running tasks
        are flagged and the coordinator stops them.
        """

        now = utc_now()
        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            previous = TaskStatus(row.status)
            if previous.is_terminal:
                raise RuntimeError(f"Task cannot be canceled from status={row.status}")

            if previous == TaskStatus.QUEUED:
                moved = self._transition(
                    session=session,
                    task_id=task_id,
                    current=previous,
                    target=TaskStatus.DEAD_LETTERED,
                    values={
                        "finished_at": to_db_datetime(now),
                        "cancel_requested_at": to_db_datetime(now),
                        "failure_class": FailureClass.CANCELED.value,
                        "error_summary": "Canceled while queued.",
                    },
                    event_type="dead_lettered",
                    details={"reason": "canceled", "failure_class": FailureClass.CANCELED.value},
                )
                if not moved:
                    session.rollback()
                    raise RuntimeError(
                        "Task state changed concurrently while canceling; "
                        f"please retry command (task_id={task_id}).",
                    )
                session.commit()
                return TaskStatus.DEAD_LETTERED

            if row.cancel_requested_at is None:
                row.cancel_requested_at = to_db_datetime(now)
                row.updated_at = to_db_datetime(now)
                session.add(row)
                self._add_event(
                    session=session,
                    task_id=task_id,
                    event_type="cancel_requested",
                    status_from=previous,
                    status_to=previous,
                    details={},
                )
                session.commit()
            return previous

    def list_cancel_requested(self) -> list[str]:
        """Non-terminal task ids with a pending cancel request."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(Task.task_id).where(
                    col(Task.cancel_requested_at).is_not(None),
                    col(Task.status).not_in([status.value for status in TERMINAL_STATUSES]),
                ),
            ).all()
        return list(rows)

    def recover_interrupted(self) -> list[str]:
        """Settle tasks left mid-flight by a coordinator that died.

        Running attempts are marked killed and their tasks go back to ``queued``
        without charging a retry, or are dead-lettered if a cancel was pending.
        A task caught after its failure was recorded but before the retry
        decision was written is charged that failure; infrastructure errors
        stay free.
        """

        now = utc_now()
        recovered: list[str] = []
        with Session(self.engine) as session:
            running_attempts = session.exec(
                select(TaskAttempt).where(TaskAttempt.status == AttemptStatus.RUNNING.value),
            ).all()
            for attempt in running_attempts:
                attempt.status = AttemptStatus.KILLED.value
                attempt.finished_at = to_db_datetime(now)
                attempt.error_summary = "Coordinator stopped before the attempt finished."
                session.add(attempt)
            session.commit()

            rows = session.exec(
                select(Task).where(
                    col(Task.status).in_(
                        [status.value for status in (*ACTIVE_STATUSES, *_INTERMEDIATE_STATUSES)],
                    ),
                ),
            ).all()
            snapshot = [_to_task_view(row) for row in rows]

        for task in snapshot:
            task_id = task.task_id
            status = task.status
            if status == TaskStatus.ATTEMPT_SUCCEEDED:
                moved = self.complete_task(task_id=task_id, analysis_summary="recovered")
            elif task.cancel_requested_at is not None:
                moved = self.dead_letter_task(
                    task_id=task_id,
                    current=status,
                    reason="canceled",
                    failure_class=FailureClass.CANCELED,
                )
            elif (
                status in (TaskStatus.ATTEMPT_FAILED, TaskStatus.ATTEMPT_TIMED_OUT)
                and task.failure_class != FailureClass.INFRASTRUCTURE
            ):
                moved = self._charge_interrupted_failure(task)
            else:
                moved = self.requeue_interrupted(task_id=task_id, current=status)
            if moved:
                recovered.append(task_id)
        return recovered

    def _charge_interrupted_failure(self, task: TaskView) -> bool:
        retry_count = task.retry_count + 1
        if retry_count > task.max_retries:
            return self.dead_letter_task(
                task_id=task.task_id,
                current=task.status,
                reason=f"retry budget exhausted ({retry_count} > {task.max_retries})",
                failure_class=task.failure_class,
                retry_count=retry_count,
            )
        return self.schedule_retry(
            task_id=task.task_id,
            current=task.status,
            run_after=utc_now(),
            retry_count=retry_count,
            failure_signature=task.failure_signature,
            reason="recovered after interrupted retry decision",
        )

    def requeue_interrupted(self, *, task_id: str, current: TaskStatus) -> bool:
        """Send an interrupted task back to the queue without charging a retry."""

        now = utc_now()
        with Session(self.engine) as session:
            moved = self._transition(
                session=session,
                task_id=task_id,
                current=current,
                target=TaskStatus.QUEUED,
                values={
                    "run_after": to_db_datetime(now),
                    "queued_at": to_db_datetime(now),
                    "admitted_at": None,
                },
                event_type="recovered",
                details={"from": current.value},
            )
            if not moved:
                session.rollback()
                return False
            session.commit()
            return True

    # -- queries -----------------------------------------------------------

    def get_task(self, *, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.get(Task, task_id)
            return _to_task_view(row) if row is not None else None

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        """List recent tasks, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = select(Task).order_by(col(Task.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(Task.status == status.value)
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def recent_terminal_tasks(self, *, limit: int = 10) -> list[TaskView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Task)
                .where(col(Task.status).in_([status.value for status in TERMINAL_STATUSES]))
                .order_by(col(Task.finished_at).desc())
                .limit(limit),
            ).all()
        return [_to_task_view(row) for row in rows]

    def count_by_status(self) -> dict[str, int]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Task.status, func.count()).group_by(Task.status),
            ).all()
        return {status: int(count) for status, count in rows}

    def list_attempts(self, *, task_id: str | None = None) -> list[AttemptView]:
        with Session(self.engine) as session:
            statement = select(TaskAttempt).order_by(
                col(TaskAttempt.task_id).asc(),
                col(TaskAttempt.attempt_no).asc(),
            )
            if task_id is not None:
                statement = statement.where(TaskAttempt.task_id == task_id)
            rows = session.exec(statement).all()
        return [_to_attempt_view(row) for row in rows]

    def running_attempt_keys(self) -> list[tuple[str, int]]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskAttempt.task_id, TaskAttempt.attempt_no).where(
                    TaskAttempt.status == AttemptStatus.RUNNING.value,
                ),
            ).all()
        return [(task_id, attempt_no) for task_id, attempt_no in rows]

    def list_actions(self, *, task_id: str) -> list[ActionView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskAction)
                .where(TaskAction.task_id == task_id)
                .order_by(col(TaskAction.id).asc()),
            ).all()
        return [_to_action_view(row) for row in rows]

    def get_task_details(self, *, task_id: str) -> TaskDetails | None:
        """Return task details with attempts, actions and event stream."""

        with Session(self.engine) as session:
            task = session.get(Task, task_id)
            if task is None:
                return None
            task_view = _to_task_view(task)
            event_rows = session.exec(
                select(TaskEvent)
                .where(TaskEvent.task_id == task_id)
                .order_by(col(TaskEvent.created_at).asc(), col(TaskEvent.id).asc()),
            ).all()
            events = [_to_event_view(row) for row in event_rows]

        return TaskDetails(
            task=task_view,
            events=events,
            attempts=self.list_attempts(task_id=task_id),
            actions=self.list_actions(task_id=task_id),
        )

    def add_task_event(
        self,
        *,
        task_id: str,
        event_type: str,
        details: dict[str, object],
        status: TaskStatus | None = None,
    ) -> None:
        """Append a non-transition event to the audit trail."""

        with Session(self.engine) as session:
            self._add_event(
                session=session,
                task_id=task_id,
                event_type=event_type,
                status_from=status,
                status_to=status,
                details=details,
            )
            session.commit()

    # -- helpers -----------------------------------------------------------

    def _transition(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        current: TaskStatus,
        target: TaskStatus,
        values: dict[str, Any],
        event_type: str,
        details: dict[str, object],
    ) -> bool:
        require_transition(current, target)
        now = utc_now()
        result = session.exec(
            sa_update(Task)
            .where(
                col(Task.task_id) == task_id,
                col(Task.status) == current.value,
            )
            .values(status=target.value, updated_at=to_db_datetime(now), **values),
        )
        if result.rowcount != 1:
            return False
        self._add_event(
            session=session,
            task_id=task_id,
            event_type=event_type,
            status_from=current,
            status_to=target,
            details=details,
        )
        return True

    def _get_task_row(self, *, session: Session, task_id: str) -> Task:
        row = session.exec(select(Task).where(Task.task_id == task_id)).one_or_none()
        if row is None:
            raise RuntimeError(f"Task not found: {task_id}")
        return row

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            TaskEvent(
                task_id=task_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True, default=str)
                if details
                else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _optional_aware(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def _loads_object(raw: str | None) -> dict[str, Any] | None:
    if not raw:
        return None
    parsed = json.loads(raw)
    return parsed if isinstance(parsed, dict) else None


def _to_inbound_view(row: InboundEvent) -> InboundEventView:
    return InboundEventView(
        event_id=row.id or 0,
        source=row.source,
        event_type=row.event_type,
        resource_id=row.resource_id,
        dedupe_key=row.dedupe_key,
        disposition=InboundDisposition(row.disposition),
        task_id=row.task_id,
        received_at=to_utc_aware_datetime(row.received_at),
    )


def _to_task_view(row: Task) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        source=row.source,
        task_type=row.task_type,
        resource_id=row.resource_id,
        inbound_event_id=row.inbound_event_id,
        priority=row.priority,
        status=TaskStatus(row.status),
        retry_count=row.retry_count,
        max_retries=row.max_retries,
        attempt_count=row.attempt_count,
        infra_error_count=row.infra_error_count,
        context=_loads_object(row.context_json) or {},
        repository_ref=row.repository_ref,
        run_after=to_utc_aware_datetime(row.run_after),
        queued_at=to_utc_aware_datetime(row.queued_at),
        admitted_at=_optional_aware(row.admitted_at),
        finished_at=_optional_aware(row.finished_at),
        cancel_requested_at=_optional_aware(row.cancel_requested_at),
        failure_class=FailureClass(row.failure_class) if row.failure_class is not None else None,
        failure_signature=row.failure_signature,
        last_exit_code=row.last_exit_code,
        error_summary=row.error_summary,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_event_view(row: TaskEvent) -> TaskEventView:
    return TaskEventView(
        event_id=row.id or 0,
        task_id=row.task_id,
        event_type=row.event_type,
        status_from=TaskStatus(row.status_from) if row.status_from is not None else None,
        status_to=TaskStatus(row.status_to) if row.status_to is not None else None,
        created_at=to_utc_aware_datetime(row.created_at),
        details=_loads_object(row.details_json) or {},
    )


def _to_attempt_view(row: TaskAttempt) -> AttemptView:
    return AttemptView(
        attempt_id=row.attempt_id or 0,
        task_id=row.task_id,
        attempt_no=row.attempt_no,
        status=AttemptStatus(row.status),
        workspace_path=row.workspace_path,
        started_at=to_utc_aware_datetime(row.started_at),
        last_activity_at=_optional_aware(row.last_activity_at),
        finished_at=_optional_aware(row.finished_at),
        duration_ms=row.duration_ms,
        exit_code=row.exit_code,
        timeout_kind=row.timeout_kind,
        failure_class=FailureClass(row.failure_class) if row.failure_class is not None else None,
        error_summary=row.error_summary,
        result_path=row.result_path,
        stdout_path=row.stdout_path,
        stderr_path=row.stderr_path,
        stdout_preview=row.stdout_preview,
        stderr_preview=row.stderr_preview,
        archive_path=row.archive_path,
    )


def _to_action_view(row: TaskAction) -> ActionView:
    return ActionView(
        action_id=row.id or 0,
        task_id=row.task_id,
        attempt_no=row.attempt_no,
        action_type=row.action_type,
        platform=row.platform,
        target_resource_id=row.target_resource_id,
        performed_at=_optional_aware(row.performed_at),
        success=row.success,
        detail=_loads_object(row.detail_json),
        created_at=to_utc_aware_datetime(row.created_at),
    )
