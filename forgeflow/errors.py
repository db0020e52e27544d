"""Error taxonomy for the forgeflow execution engine."""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class ForgeflowError(Exception):
    """Base class for engine errors carrying a stable error code."""

    code = "INTERNAL"

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Serialize error for API responses and persisted step records."""
        data: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            data["details"] = self.details
        return data


class CompilationError(ForgeflowError):
    """Workflow graph is structurally invalid. Never retried."""

    code = "GRAPH_INVALID"

    def __init__(
        self,
        message: str,
        *,
        cycle: Optional[List[str]] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        details = dict(details or {})
        if cycle is not None:
            details["cycle"] = list(cycle)
        super().__init__(message, details=details)
        self.cycle = cycle


class InputValidationError(ForgeflowError):
    """Execution input does not satisfy the workflow variable schema."""

    code = "INPUT_INVALID"


class ExecutorError(ForgeflowError):
    """A node executor failed. Retried according to the retry policy."""

    code = "EXECUTOR_FAILED"


class StepTimeoutError(ExecutorError):
    """A step ran past its maximum duration."""

    code = "TIMEOUT"


class StateConflictError(ForgeflowError):
    """A compare-and-set update lost a race against a concurrent writer."""

    code = "STATE_CONFLICT"


class CancellationError(ForgeflowError):
    """The execution was cancelled."""

    code = "CANCELLED"


class InvalidTransitionError(ForgeflowError):
    """A status change not permitted by the state machine was requested."""

    code = "INVALID_TRANSITION"


class NotFoundError(ForgeflowError):
    """Requested workflow, execution or step does not exist."""

    code = "NOT_FOUND"


class UnknownNodeTypeError(ForgeflowError):
    """No executor is registered for a node type."""

    code = "NODE_TYPE_UNKNOWN"


__all__ = [
    "ForgeflowError",
    "CompilationError",
    "InputValidationError",
    "ExecutorError",
    "StepTimeoutError",
    "StateConflictError",
    "CancellationError",
    "InvalidTransitionError",
    "NotFoundError",
    "UnknownNodeTypeError",
]
