"""Data models for persisted execution state and their state machines."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..errors import InvalidTransitionError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_EXECUTION


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STEP


_TERMINAL_EXECUTION = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
)
_TERMINAL_STEP = frozenset({StepStatus.SUCCEEDED, StepStatus.FAILED, StepStatus.SKIPPED})

EXECUTION_TRANSITIONS: Dict[ExecutionStatus, frozenset] = {
    ExecutionStatus.PENDING: frozenset(
        {ExecutionStatus.RUNNING, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
    ),
    ExecutionStatus.RUNNING: _TERMINAL_EXECUTION,
}

# RUNNING -> PENDING is a retry; RUNNING -> SKIPPED happens to a step
# suspended on an approval, or whose executor stopped, when its execution is
# cancelled.
STEP_TRANSITIONS: Dict[StepStatus, frozenset] = {
    StepStatus.PENDING: frozenset({StepStatus.RUNNING, StepStatus.SKIPPED}),
    StepStatus.RUNNING: frozenset(
        {
            StepStatus.PENDING,
            StepStatus.SUCCEEDED,
            StepStatus.FAILED,
            StepStatus.SKIPPED,
        }
    ),
}


class ErrorInfo(BaseModel):
    """Structured error detail exposed through the query API."""

    code: str
    message: str
    node_id: Optional[str] = None


class TriggerInfo(BaseModel):
    """Who or what started an execution."""

    kind: str = "manual"
    actor: Optional[str] = None
    at: datetime = Field(default_factory=utcnow)
    data: Dict[str, Any] = Field(default_factory=dict)


class WorkflowExecution(BaseModel):
    """One run of a workflow version."""

    id: str = Field(default_factory=new_id)
    workflow_id: str
    workflow_version: int
    status: ExecutionStatus = ExecutionStatus.PENDING
    variables: Dict[str, Any] = Field(default_factory=dict)
    trigger: TriggerInfo = Field(default_factory=TriggerInfo)
    error: Optional[ErrorInfo] = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    revision: int = 0

    def transition(self, status: ExecutionStatus, **changes: Any) -> "WorkflowExecution":
        """Return a copy moved to ``status``; the stored record is untouched."""
        allowed = EXECUTION_TRANSITIONS.get(self.status, frozenset())
        if status not in allowed:
            raise InvalidTransitionError(
                f"Execution {self.id} cannot move from {self.status.value} to {status.value}"
            )
        if status == ExecutionStatus.RUNNING and self.started_at is None:
            changes.setdefault("started_at", utcnow())
        if status.is_terminal:
            changes.setdefault("finished_at", utcnow())
        return self.model_copy(update={"status": status, **changes}, deep=True)


class WorkflowStep(BaseModel):
    """Record of one node's execution within one workflow execution."""

    id: str = Field(default_factory=new_id)
    execution_id: str
    node_id: str
    node_type: str
    status: StepStatus = StepStatus.PENDING
    attempt: int = 1
    input: Dict[str, Any] = Field(default_factory=dict)
    output: Optional[Dict[str, Any]] = None
    active_branches: Optional[List[str]] = None
    error: Optional[ErrorInfo] = None
    warnings: List[str] = Field(default_factory=list)
    waiting: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    revision: int = 0

    def transition(self, status: StepStatus, **changes: Any) -> "WorkflowStep":
        """Return a copy moved to ``status``; the stored record is untouched."""
        allowed = STEP_TRANSITIONS.get(self.status, frozenset())
        if status not in allowed:
            raise InvalidTransitionError(
                f"Step {self.node_id} of execution {self.execution_id} cannot move "
                f"from {self.status.value} to {status.value}"
            )
        if status == StepStatus.RUNNING:
            changes.setdefault("started_at", utcnow())
        if status.is_terminal:
            changes.setdefault("finished_at", utcnow())
            changes.setdefault("waiting", False)
        return self.model_copy(update={"status": status, **changes}, deep=True)


class JoinState(BaseModel):
    """Predecessor bookkeeping for a node awaiting its incoming edges."""

    execution_id: str
    node_id: str
    remaining: int
    arrivals: Dict[str, bool] = Field(default_factory=dict)
    revision: int = 0
