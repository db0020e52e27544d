"""Task mutation executor backed by an external task service."""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional, Protocol

from ..errors import CancellationError, ExecutorError
from .base import ExecutorContext, ExecutorResult, NodeExecutor, render_template

logger = logging.getLogger(__name__)

TASK_OPERATIONS = frozenset({"create", "update", "delete", "assign", "transition"})


class TaskService(Protocol):
    """Task CRUD collaborator.

    Implementations must treat a repeated ``idempotency_key`` as the same
    request and return the original result.
    """

    async def apply(
        self,
        operation: str,
        task_id: Optional[str],
        fields: Dict[str, Any],
        idempotency_key: str,
    ) -> Dict[str, Any]:
        ...


class TaskMutationExecutor(NodeExecutor):
    def __init__(self, service: Optional[TaskService] = None) -> None:
        self._service = service

    async def execute(
        self, input: Mapping[str, Any], context: ExecutorContext
    ) -> ExecutorResult:
        if self._service is None:
            raise ExecutorError("No task service configured")

        operation = context.params.get("operation")
        if operation not in TASK_OPERATIONS:
            raise ExecutorError(f"Unsupported task operation: {operation!r}")

        task_id = render_template(context.params.get("task_id"), input)
        fields = render_template(context.params.get("fields", {}), input)
        if await context.is_cancelled():
            raise CancellationError(f"Execution {context.execution_id} was cancelled")
        result = await self._service.apply(
            operation, task_id, fields, context.idempotency_key
        )
        logger.info(f"Task {operation} applied for node {context.node_id}")
        return ExecutorResult.success({context.output_key(): result})
