"""SQLModel ORM tables for orchestrator storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    Text,
    UniqueConstraint,
)
from sqlmodel import Field, SQLModel


class InboundEvent(SQLModel, table=True):
    __tablename__ = "inbound_events"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("dedupe_key", name="uq_inbound_events_dedupe_key"),
        Index("idx_inbound_events_source_resource", "source", "resource_id", "received_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    source: str = Field(index=True)
    event_type: str = Field(index=True)
    resource_id: str = Field(index=True)
    dedupe_key: str
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    received_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    disposition: str = Field(index=True)
    task_id: str | None = Field(default=None, index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Task(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_tasks_queue", "status", "priority", "run_after"),
        Index("idx_tasks_source_resource", "source", "resource_id", "created_at"),
    )

    task_id: str = Field(primary_key=True)
    source: str = Field(index=True)
    task_type: str = Field(index=True)
    resource_id: str = Field(index=True)
    inbound_event_id: int | None = Field(default=None, index=True)
    priority: int = Field(default=5, index=True)
    status: str = Field(index=True)
    retry_count: int = Field(default=0)
    max_retries: int = Field(default=3)
    attempt_count: int = Field(default=0)
    infra_error_count: int = Field(default=0)
    context_json: str = Field(sa_column=Column(Text, nullable=False))
    repository_ref: str | None = None
    run_after: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    queued_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    admitted_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    cancel_requested_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    failure_class: str | None = Field(default=None, index=True)
    failure_signature: str | None = None
    last_exit_code: int | None = None
    error_summary: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskEvent(SQLModel, table=True):
    __tablename__ = "task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = Field(default=None, index=True)
    status_to: str | None = Field(default=None, index=True)
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskAttempt(SQLModel, table=True):
    __tablename__ = "task_attempts"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("task_id", "attempt_no", name="uq_task_attempts_task_attempt_no"),
        Index("idx_task_attempts_status_time", "status", "created_at"),
    )

    attempt_id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    attempt_no: int
    status: str = Field(index=True)
    workspace_path: str
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    last_activity_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    duration_ms: int | None = None
    exit_code: int | None = None
    timeout_kind: str | None = None
    failure_class: str | None = Field(default=None, index=True)
    error_summary: str | None = Field(default=None, sa_column=Column(Text))
    result_path: str | None = None
    stdout_path: str | None = None
    stderr_path: str | None = None
    stdout_preview: str | None = Field(default=None, sa_column=Column(Text))
    stderr_preview: str | None = Field(default=None, sa_column=Column(Text))
    archive_path: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskAction(SQLModel, table=True):
    __tablename__ = "task_actions"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_actions_task_attempt", "task_id", "attempt_no"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    attempt_no: int
    action_type: str = Field(index=True)
    platform: str = Field(index=True)
    target_resource_id: str
    performed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    success: bool
    detail_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
