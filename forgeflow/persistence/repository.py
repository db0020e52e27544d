"""State store abstraction for workflow and execution persistence."""

from __future__ import annotations

from typing import List, Optional, Protocol, Tuple

from ..graph.model import Workflow
from .models import JoinState, WorkflowExecution, WorkflowStep


class StateStore(Protocol):
    """Protocol for durable engine state backends.

    Every ``update_*`` is a compare-and-set on the record's ``revision``: it
    succeeds only if the stored revision still equals the given one, stores
    the record with ``revision + 1`` and returns it. Otherwise it raises
    :class:`~forgeflow.errors.StateConflictError`. ``create_step`` and
    ``create_join`` insert only if no record exists for the same
    ``(execution_id, node_id)`` and report whether they inserted.
    """

    async def save_workflow(self, workflow: Workflow) -> None:
        """Persist a workflow version. Versions are never overwritten."""

    async def get_workflow(
        self, workflow_id: str, version: Optional[int] = None
    ) -> Workflow | None:
        """Return a workflow version, the latest when ``version`` is None."""

    async def list_workflows(self) -> list[Workflow]:
        """Return the latest version of every workflow."""

    async def publish_workflow(self, workflow_id: str, version: int) -> Workflow:
        """Mark a stored version as published and return it."""

    async def create_execution(self, execution: WorkflowExecution) -> None:
        """Persist a new execution."""

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        """Retrieve an execution by id."""

    async def update_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        """Compare-and-set an execution."""

    async def list_executions(
        self, workflow_id: Optional[str] = None
    ) -> list[WorkflowExecution]:
        """Return executions, optionally filtered by workflow."""

    async def create_step(self, step: WorkflowStep) -> Tuple[WorkflowStep, bool]:
        """Insert a step unless one exists for its node."""

    async def get_step(self, step_id: str) -> WorkflowStep | None:
        """Retrieve a step by id."""

    async def get_step_for_node(
        self, execution_id: str, node_id: str
    ) -> WorkflowStep | None:
        """Retrieve the step of ``node_id`` within an execution."""

    async def update_step(self, step: WorkflowStep) -> WorkflowStep:
        """Compare-and-set a step."""

    async def list_steps(self, execution_id: str) -> List[WorkflowStep]:
        """Return an execution's steps in creation order."""

    async def get_join(self, execution_id: str, node_id: str) -> JoinState | None:
        """Retrieve join bookkeeping for a node."""

    async def create_join(self, join: JoinState) -> Tuple[JoinState, bool]:
        """Insert join bookkeeping unless it exists."""

    async def update_join(self, join: JoinState) -> JoinState:
        """Compare-and-set join bookkeeping."""
