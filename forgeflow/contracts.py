"""Queue message contracts exchanged between coordinators and workers."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .persistence.models import ErrorInfo


class MessageKind(str, Enum):
    DISPATCH = "dispatch"
    RESUME = "resume"
    COMPLETION = "completion"


class OutcomeStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    # the attempt stopped because its execution was cancelled
    CANCELLED = "cancelled"


class StepOutcome(BaseModel):
    """Result of one step attempt as reported back to the coordinator."""

    status: OutcomeStatus
    attempt: int
    output: Dict[str, Any] = Field(default_factory=dict)
    active_branches: Optional[List[str]] = None
    error: Optional[ErrorInfo] = None

    @property
    def succeeded(self) -> bool:
        return self.status == OutcomeStatus.SUCCEEDED

    @property
    def cancelled(self) -> bool:
        return self.status == OutcomeStatus.CANCELLED


class EngineMessage(BaseModel):
    """Envelope exchanged over the job queue.

    Dispatch and resume jobs carry only what a worker needs to find its
    work: the snapshot itself is persisted on the step and referenced by
    ``snapshot_ref``. Completion messages carry the attempt outcome.
    """

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    kind: MessageKind
    execution_id: str
    node_id: str
    step_id: str
    attempt: int = 1
    snapshot_ref: Optional[str] = None
    outcome: Optional[StepOutcome] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    spec_version: str = "1.0"

    def to_json(self) -> str:
        """Serialize message to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str | bytes) -> "EngineMessage":
        """Deserialize message from JSON."""
        return cls.model_validate_json(data)

    @property
    def idempotency_key(self) -> str:
        return f"{self.execution_id}:{self.node_id}:{self.attempt}"

    @classmethod
    def dispatch(
        cls, execution_id: str, node_id: str, step_id: str, attempt: int
    ) -> "EngineMessage":
        return cls(
            kind=MessageKind.DISPATCH,
            execution_id=execution_id,
            node_id=node_id,
            step_id=step_id,
            attempt=attempt,
            snapshot_ref=step_id,
        )

    def resume(self) -> "EngineMessage":
        """Follow-up job for a step whose executor deferred its work."""
        return self.model_copy(
            update={
                "kind": MessageKind.RESUME,
                "message_id": str(uuid.uuid4()),
                "timestamp": datetime.now(timezone.utc),
            }
        )

    def completion(self, outcome: StepOutcome) -> "EngineMessage":
        return EngineMessage(
            kind=MessageKind.COMPLETION,
            execution_id=self.execution_id,
            node_id=self.node_id,
            step_id=self.step_id,
            attempt=outcome.attempt,
            outcome=outcome,
        )
