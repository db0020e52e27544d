"""Executor contract shared by every node type."""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from pydantic import BaseModel, Field

from ..graph.model import Node
from ..persistence.models import ErrorInfo


class ExecutorStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    # waiting on an external event (approval decisions)
    SUSPENDED = "suspended"
    # asks the worker to run the step again later (delay nodes)
    DEFERRED = "deferred"
    CANCELLED = "cancelled"


class ExecutorResult(BaseModel):
    """What an executor hands back to the worker."""

    status: ExecutorStatus
    output: Dict[str, Any] = Field(default_factory=dict)
    active_branches: Optional[List[str]] = None
    error: Optional[ErrorInfo] = None
    resume_after: Optional[float] = None
    wait: Optional[Dict[str, Any]] = None

    @classmethod
    def success(
        cls,
        output: Optional[Dict[str, Any]] = None,
        branches: Optional[List[str]] = None,
    ) -> "ExecutorResult":
        return cls(
            status=ExecutorStatus.SUCCEEDED,
            output=output or {},
            active_branches=branches,
        )

    @classmethod
    def failure(cls, code: str, message: str) -> "ExecutorResult":
        return cls(
            status=ExecutorStatus.FAILED, error=ErrorInfo(code=code, message=message)
        )

    @classmethod
    def suspended(cls, wait: Optional[Dict[str, Any]] = None) -> "ExecutorResult":
        return cls(status=ExecutorStatus.SUSPENDED, wait=wait or {})

    @classmethod
    def deferred(cls, seconds: float) -> "ExecutorResult":
        return cls(status=ExecutorStatus.DEFERRED, resume_after=seconds)

    @classmethod
    def cancelled(cls) -> "ExecutorResult":
        return cls(status=ExecutorStatus.CANCELLED)


async def _never_cancelled() -> bool:
    return False


@dataclass
class ExecutorContext:
    """Per-attempt information handed to an executor."""

    execution_id: str
    step_id: str
    node: Node
    attempt: int = 1
    resumed: bool = False
    cancelled: Callable[[], Awaitable[bool]] = field(default=_never_cancelled)

    @property
    def node_id(self) -> str:
        return self.node.id

    @property
    def params(self) -> Dict[str, Any]:
        return self.node.params

    @property
    def idempotency_key(self) -> str:
        """Stable key for one logical attempt, identical across redeliveries."""
        return f"{self.execution_id}:{self.node.id}:{self.attempt}"

    async def is_cancelled(self) -> bool:
        """Best-effort check for long-running executors."""
        return await self.cancelled()

    def output_key(self) -> str:
        return self.node.params.get("output_key") or self.node.id


class NodeExecutor(metaclass=abc.ABCMeta):
    """Capability that runs one node type.

    Delivery from the job queue is at-least-once, so executors with side
    effects must be idempotent or honour ``context.idempotency_key``.
    """

    @abc.abstractmethod
    async def execute(
        self, input: Mapping[str, Any], context: ExecutorContext
    ) -> ExecutorResult:
        """Run the node against the ``input`` variable snapshot."""
        raise NotImplementedError


class _TemplateVariables(dict):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def render_template(value: Any, variables: Mapping[str, Any]) -> Any:
    """Substitute ``{name}`` placeholders in strings, recursing into containers.

    Unknown placeholders are left untouched.
    """
    if isinstance(value, str):
        return value.format_map(_TemplateVariables(variables))
    if isinstance(value, dict):
        return {k: render_template(v, variables) for k, v in value.items()}
    if isinstance(value, list):
        return [render_template(v, variables) for v in value]
    return value
