from __future__ import annotations

import allure
import pytest

from agent_dispatch.orchestrator.models import TaskStatus
from agent_dispatch.orchestrator.state_machine import (
    IllegalTransitionError,
    Transition,
    allowed_targets,
    is_allowed,
    require_transition,
)

pytestmark = [
    allure.epic("Task Lifecycle"),
    allure.feature("State Machine"),
]


def test_happy_path_edges_are_allowed() -> None:
    path = [
        TaskStatus.QUEUED,
        TaskStatus.ADMITTED,
        TaskStatus.ATTEMPT_RUNNING,
        TaskStatus.ATTEMPT_SUCCEEDED,
        TaskStatus.COMPLETED,
    ]
    for current, target in zip(path, path[1:], strict=False):
        assert is_allowed(current, target)
        assert require_transition(current, target) == Transition(current, target)


@pytest.mark.parametrize(
    "outcome",
    [TaskStatus.ATTEMPT_FAILED, TaskStatus.ATTEMPT_TIMED_OUT],
)
def test_failed_attempts_can_requeue_or_dead_letter(outcome: TaskStatus) -> None:
    assert allowed_targets(outcome) == frozenset({TaskStatus.QUEUED, TaskStatus.DEAD_LETTERED})


def test_dead_lettered_task_cannot_be_requeued() -> None:
    with pytest.raises(IllegalTransitionError) as error:
        Transition(TaskStatus.DEAD_LETTERED, TaskStatus.QUEUED)

    assert error.value.current == TaskStatus.DEAD_LETTERED
    assert error.value.target == TaskStatus.QUEUED
    assert "dead_lettered -> queued" in str(error.value)


def test_terminal_states_have_no_outgoing_edges() -> None:
    for status in TaskStatus:
        if status.is_terminal:
            assert allowed_targets(status) == frozenset()


def test_succeeded_attempt_cannot_be_retried() -> None:
    assert not is_allowed(TaskStatus.ATTEMPT_SUCCEEDED, TaskStatus.QUEUED)
    with pytest.raises(IllegalTransitionError):
        require_transition(TaskStatus.ATTEMPT_SUCCEEDED, TaskStatus.DEAD_LETTERED)


def test_queued_task_cannot_skip_admission() -> None:
    with pytest.raises(IllegalTransitionError):
        require_transition(TaskStatus.QUEUED, TaskStatus.ATTEMPT_RUNNING)
