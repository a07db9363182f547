"""Task lifecycle transition table.

Transitions are fail-closed: any ``(current, next)`` pair missing from the
table is illegal and raises before anything is written to storage.
"""

from __future__ import annotations

from dataclasses import dataclass

from agent_dispatch.orchestrator.models import TaskStatus


class IllegalTransitionError(ValueError):
    """Raised when a task is asked to move along an edge the lifecycle forbids."""

    def __init__(self, current: TaskStatus, target: TaskStatus) -> None:
        super().__init__(f"Illegal task transition: {current.value} -> {target.value}")
        self.current = current
        self.target = target


_ALLOWED: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.QUEUED: frozenset({TaskStatus.ADMITTED, TaskStatus.DEAD_LETTERED}),
    TaskStatus.ADMITTED: frozenset(
        {
            TaskStatus.ATTEMPT_RUNNING,
            # infrastructure failure before spawn, or crash recovery
            TaskStatus.QUEUED,
            TaskStatus.DEAD_LETTERED,
        },
    ),
    TaskStatus.ATTEMPT_RUNNING: frozenset(
        {
            TaskStatus.ATTEMPT_SUCCEEDED,
            TaskStatus.ATTEMPT_FAILED,
            TaskStatus.ATTEMPT_TIMED_OUT,
            # crash recovery
            TaskStatus.QUEUED,
            # cancellation
            TaskStatus.DEAD_LETTERED,
        },
    ),
    TaskStatus.ATTEMPT_SUCCEEDED: frozenset({TaskStatus.COMPLETED}),
    TaskStatus.ATTEMPT_FAILED: frozenset({TaskStatus.QUEUED, TaskStatus.DEAD_LETTERED}),
    TaskStatus.ATTEMPT_TIMED_OUT: frozenset({TaskStatus.QUEUED, TaskStatus.DEAD_LETTERED}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.DEAD_LETTERED: frozenset(),
}


@dataclass(frozen=True, slots=True)
class Transition:
    """A validated edge of the task lifecycle."""

    current: TaskStatus
    target: TaskStatus

    def __post_init__(self) -> None:
        if not is_allowed(self.current, self.target):
            raise IllegalTransitionError(self.current, self.target)


def is_allowed(current: TaskStatus, target: TaskStatus) -> bool:
    return target in _ALLOWED.get(current, frozenset())


def allowed_targets(current: TaskStatus) -> frozenset[TaskStatus]:
    return _ALLOWED.get(current, frozenset())


def require_transition(current: TaskStatus, target: TaskStatus) -> Transition:
    """Return the transition or raise ``IllegalTransitionError``."""

    return Transition(current=current, target=target)
