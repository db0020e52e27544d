"""In-memory implementation of the state store."""

from __future__ import annotations

import asyncio
from typing import Dict, List, Optional, Tuple

from ..errors import NotFoundError, StateConflictError
from ..graph.model import Workflow
from .models import JoinState, WorkflowExecution, WorkflowStep
from .repository import StateStore


class InMemoryStateStore(StateStore):
    """Store engine state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied on the way in and
    out so callers never share mutable state with the store.
    """

    def __init__(self) -> None:
        self._workflows: Dict[Tuple[str, int], Workflow] = {}
        self._executions: Dict[str, WorkflowExecution] = {}
        self._steps: Dict[str, WorkflowStep] = {}
        self._step_index: Dict[Tuple[str, str], str] = {}
        self._joins: Dict[Tuple[str, str], JoinState] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    async def save_workflow(self, workflow: Workflow) -> None:
        key = (workflow.id, workflow.version)
        async with self._lock:
            if key in self._workflows:
                raise StateConflictError(
                    f"Workflow {workflow.id} v{workflow.version} already exists"
                )
            self._workflows[key] = workflow

    async def get_workflow(
        self, workflow_id: str, version: Optional[int] = None
    ) -> Workflow | None:
        if version is not None:
            return self._workflows.get((workflow_id, version))
        versions = [v for (wf_id, v) in self._workflows if wf_id == workflow_id]
        if not versions:
            return None
        return self._workflows[(workflow_id, max(versions))]

    async def list_workflows(self) -> list[Workflow]:
        latest: Dict[str, Workflow] = {}
        for (wf_id, version), workflow in sorted(self._workflows.items()):
            latest[wf_id] = workflow
        return list(latest.values())

    async def publish_workflow(self, workflow_id: str, version: int) -> Workflow:
        key = (workflow_id, version)
        async with self._lock:
            workflow = self._workflows.get(key)
            if workflow is None:
                raise NotFoundError(f"Workflow {workflow_id} v{version} not found")
            workflow = workflow.model_copy(update={"published": True})
            self._workflows[key] = workflow
        return workflow

    # ------------------------------------------------------------------
    async def create_execution(self, execution: WorkflowExecution) -> None:
        async with self._lock:
            if execution.id in self._executions:
                raise StateConflictError(f"Execution {execution.id} already exists")
            self._executions[execution.id] = execution.model_copy(deep=True)

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        execution = self._executions.get(execution_id)
        return execution.model_copy(deep=True) if execution else None

    async def update_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        async with self._lock:
            current = self._executions.get(execution.id)
            if current is None or current.revision != execution.revision:
                raise StateConflictError(f"Execution {execution.id} changed concurrently")
            stored = execution.model_copy(
                update={"revision": execution.revision + 1}, deep=True
            )
            self._executions[execution.id] = stored
        return stored.model_copy(deep=True)

    async def list_executions(
        self, workflow_id: Optional[str] = None
    ) -> list[WorkflowExecution]:
        return [
            e.model_copy(deep=True)
            for e in self._executions.values()
            if workflow_id is None or e.workflow_id == workflow_id
        ]

    # ------------------------------------------------------------------
    async def create_step(self, step: WorkflowStep) -> Tuple[WorkflowStep, bool]:
        key = (step.execution_id, step.node_id)
        async with self._lock:
            existing_id = self._step_index.get(key)
            if existing_id is not None:
                return self._steps[existing_id].model_copy(deep=True), False
            self._steps[step.id] = step.model_copy(deep=True)
            self._step_index[key] = step.id
        return step.model_copy(deep=True), True

    async def get_step(self, step_id: str) -> WorkflowStep | None:
        step = self._steps.get(step_id)
        return step.model_copy(deep=True) if step else None

    async def get_step_for_node(
        self, execution_id: str, node_id: str
    ) -> WorkflowStep | None:
        step_id = self._step_index.get((execution_id, node_id))
        return await self.get_step(step_id) if step_id else None

    async def update_step(self, step: WorkflowStep) -> WorkflowStep:
        async with self._lock:
            current = self._steps.get(step.id)
            if current is None or current.revision != step.revision:
                raise StateConflictError(f"Step {step.id} changed concurrently")
            stored = step.model_copy(update={"revision": step.revision + 1}, deep=True)
            self._steps[step.id] = stored
        return stored.model_copy(deep=True)

    async def list_steps(self, execution_id: str) -> List[WorkflowStep]:
        # dicts keep insertion order, which is creation order
        return [
            s.model_copy(deep=True)
            for s in self._steps.values()
            if s.execution_id == execution_id
        ]

    # ------------------------------------------------------------------
    async def get_join(self, execution_id: str, node_id: str) -> JoinState | None:
        join = self._joins.get((execution_id, node_id))
        return join.model_copy(deep=True) if join else None

    async def create_join(self, join: JoinState) -> Tuple[JoinState, bool]:
        key = (join.execution_id, join.node_id)
        async with self._lock:
            existing = self._joins.get(key)
            if existing is not None:
                return existing.model_copy(deep=True), False
            self._joins[key] = join.model_copy(deep=True)
        return join.model_copy(deep=True), True

    async def update_join(self, join: JoinState) -> JoinState:
        key = (join.execution_id, join.node_id)
        async with self._lock:
            current = self._joins.get(key)
            if current is None or current.revision != join.revision:
                raise StateConflictError(
                    f"Join state of {join.node_id} in {join.execution_id} changed concurrently"
                )
            stored = join.model_copy(update={"revision": join.revision + 1}, deep=True)
            self._joins[key] = stored
        return stored.model_copy(deep=True)
