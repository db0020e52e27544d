"""Execution and step state machine tests."""

import pytest

from forgeflow.errors import InvalidTransitionError
from forgeflow.persistence import (
    ExecutionStatus,
    StepStatus,
    WorkflowExecution,
    WorkflowStep,
)


def _execution(status=ExecutionStatus.PENDING):
    return WorkflowExecution(workflow_id="wf", workflow_version=1, status=status)


def _step(status=StepStatus.PENDING):
    return WorkflowStep(execution_id="exec-1", node_id="a", node_type="agent", status=status)


@pytest.mark.parametrize(
    "start, target",
    [
        (ExecutionStatus.PENDING, ExecutionStatus.RUNNING),
        (ExecutionStatus.PENDING, ExecutionStatus.CANCELLED),
        (ExecutionStatus.RUNNING, ExecutionStatus.COMPLETED),
        (ExecutionStatus.RUNNING, ExecutionStatus.FAILED),
        (ExecutionStatus.RUNNING, ExecutionStatus.CANCELLED),
    ],
)
def test_allowed_execution_transitions(start, target):
    moved = _execution(start).transition(target)

    assert moved.status == target
    assert (moved.finished_at is not None) == target.is_terminal


@pytest.mark.parametrize(
    "start, target",
    [
        (ExecutionStatus.PENDING, ExecutionStatus.COMPLETED),
        (ExecutionStatus.RUNNING, ExecutionStatus.PENDING),
        (ExecutionStatus.COMPLETED, ExecutionStatus.RUNNING),
        (ExecutionStatus.CANCELLED, ExecutionStatus.FAILED),
        (ExecutionStatus.FAILED, ExecutionStatus.COMPLETED),
    ],
)
def test_forbidden_execution_transitions(start, target):
    with pytest.raises(InvalidTransitionError):
        _execution(start).transition(target)


def test_transition_returns_copy_and_sets_started_once():
    pending = _execution()

    running = pending.transition(ExecutionStatus.RUNNING)
    done = running.transition(ExecutionStatus.COMPLETED)

    assert pending.status == ExecutionStatus.PENDING
    assert pending.started_at is None
    assert done.started_at == running.started_at


@pytest.mark.parametrize(
    "start, target",
    [
        (StepStatus.PENDING, StepStatus.RUNNING),
        (StepStatus.PENDING, StepStatus.SKIPPED),
        (StepStatus.RUNNING, StepStatus.PENDING),
        (StepStatus.RUNNING, StepStatus.SUCCEEDED),
        (StepStatus.RUNNING, StepStatus.FAILED),
        (StepStatus.RUNNING, StepStatus.SKIPPED),
    ],
)
def test_allowed_step_transitions(start, target):
    assert _step(start).transition(target).status == target


@pytest.mark.parametrize(
    "start, target",
    [
        (StepStatus.PENDING, StepStatus.SUCCEEDED),
        (StepStatus.SUCCEEDED, StepStatus.RUNNING),
        (StepStatus.FAILED, StepStatus.PENDING),
        (StepStatus.SKIPPED, StepStatus.RUNNING),
    ],
)
def test_terminal_steps_never_move(start, target):
    with pytest.raises(InvalidTransitionError):
        _step(start).transition(target)


def test_terminal_step_clears_waiting_flag():
    waiting = _step(StepStatus.RUNNING).model_copy(update={"waiting": True})

    done = waiting.transition(StepStatus.SUCCEEDED, output={"ok": True})

    assert done.waiting is False
    assert done.finished_at is not None
    assert done.output == {"ok": True}
