"""CLI entrypoint for agent-dispatch."""

import logging
from datetime import datetime
from pathlib import Path

import rich_click as click

from agent_dispatch import __version__
from agent_dispatch.orchestrator.controllers import (
    CancelTaskCommand,
    DispatchEventCommand,
    InspectTaskCommand,
    ListTasksCommand,
    OrchestratorCliController,
    StatusCommand,
    SweepCommand,
    WorkerCommand,
)
from agent_dispatch.orchestrator.models import TaskStatus

click.rich_click.USE_MARKDOWN = True
ORCHESTRATOR_CONTROLLER = OrchestratorCliController()


@click.group()
@click.version_option(version=__version__, prog_name="agent-dispatch")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity.",
)
def agent_dispatch(log_level: str) -> None:
    """Agent task orchestration CLI."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@agent_dispatch.command("dispatch")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--source", required=True, help="Event source, for example issue_tracker.")
@click.option("--event-type", required=True, help="Event type, for example issue.created.")
@click.option("--resource-id", required=True, help="Resource the event is about.")
@click.option(
    "--payload",
    "payload_json",
    default="{}",
    show_default=True,
    help="Event payload as a JSON object.",
)
@click.option(
    "--received-at",
    type=click.DateTime(formats=["%Y-%m-%dT%H:%M:%S", "%Y-%m-%dT%H:%M:%S%z"]),
    default=None,
    help="Receive time (UTC when no offset is given); defaults to now.",
)
@click.option(
    "--priority",
    type=click.IntRange(min=0),
    default=None,
    help="Override the route priority (lower is more urgent).",
)
def dispatch_event(  # noqa: PLR0913
    db_path: Path | None,
    source: str,
    event_type: str,
    resource_id: str,
    payload_json: str,
    received_at: datetime | None,
    priority: int | None,
) -> None:
    """Record one normalized inbound event and enqueue a task for it."""

    try:
        lines = ORCHESTRATOR_CONTROLLER.dispatch_event(
            DispatchEventCommand(
                db_path=db_path,
                source=source,
                event_type=event_type,
                resource_id=resource_id,
                payload_json=payload_json,
                received_at=received_at,
                priority=priority,
            ),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@agent_dispatch.command("worker")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Run one admission batch to completion, or keep polling.",
)
@click.option(
    "--until-idle/--forever",
    default=True,
    show_default=True,
    help="In loop mode, stop once nothing is running or queued.",
)
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for finished attempts in loop mode.",
)
@click.option(
    "--max-seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Optional wall-clock bound in loop mode.",
)
def worker(
    db_path: Path | None,
    once: bool,
    until_idle: bool,
    max_tasks: int | None,
    max_seconds: float | None,
) -> None:
    """Run the coordinator: admit queued tasks and supervise their attempts."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.run_worker(
            WorkerCommand(
                db_path=db_path,
                once=once,
                max_tasks=max_tasks,
                until_idle=until_idle,
                max_seconds=max_seconds,
            ),
        ),
    )


@agent_dispatch.command("tasks")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max tasks to print.",
)
def list_tasks(db_path: Path | None, status: str | None, limit: int) -> None:
    """List orchestrator tasks."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.list_tasks(
            ListTasksCommand(
                db_path=db_path,
                status=status,
                limit=limit,
            ),
        ),
    )


@agent_dispatch.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
def inspect_task(db_path: Path | None, task_id: str) -> None:
    """Inspect one task with attempts, actions and event history."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.inspect_task(
            InspectTaskCommand(
                db_path=db_path,
                task_id=task_id,
            ),
        ),
    )


@agent_dispatch.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
def cancel_task(db_path: Path | None, task_id: str) -> None:
    """Cancel a queued or running task."""

    try:
        lines = ORCHESTRATOR_CONTROLLER.cancel_task(
            CancelTaskCommand(db_path=db_path, task_id=task_id),
        )
    except RuntimeError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@agent_dispatch.command("status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--recent",
    type=click.IntRange(min=1, max=500),
    default=None,
    help="How many recent terminal outcomes to print.",
)
def status(db_path: Path | None, recent: int | None) -> None:
    """Show active and queued counts with recent outcomes."""

    _emit_lines(ORCHESTRATOR_CONTROLLER.status(StatusCommand(db_path=db_path, recent=recent)))


@agent_dispatch.command("sweep")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def sweep(db_path: Path | None) -> None:
    """Archive and remove workspaces not owned by a running attempt."""

    _emit_lines(ORCHESTRATOR_CONTROLLER.sweep(SweepCommand(db_path=db_path)))


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_dispatch()
