"""Dispatch table from node type to executor."""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional

import httpx

from ..errors import UnknownNodeTypeError
from ..graph.model import NodeType
from .agent import AgentExecutor, AgentLike
from .base import ExecutorContext, ExecutorResult, NodeExecutor
from .control import ApprovalExecutor, ConditionExecutor, DelayExecutor, MergeExecutor
from .integration import IntegrationExecutor
from .tasks import TaskMutationExecutor, TaskService

logger = logging.getLogger(__name__)


class ExecutorRegistry:
    """Maps each :class:`NodeType` to the executor that runs it."""

    def __init__(self) -> None:
        self._executors: Dict[NodeType, NodeExecutor] = {}

    def register(self, node_type: NodeType | str, executor: NodeExecutor) -> None:
        node_type = NodeType(node_type)
        if node_type in self._executors:
            logger.debug(f"Replacing executor for {node_type.value}")
        self._executors[node_type] = executor

    def get(self, node_type: NodeType | str) -> NodeExecutor:
        try:
            return self._executors[NodeType(node_type)]
        except (KeyError, ValueError):
            raise UnknownNodeTypeError(
                f"No executor registered for node type '{getattr(node_type, 'value', node_type)}'"
            ) from None

    def __contains__(self, node_type: object) -> bool:
        try:
            return NodeType(node_type) in self._executors
        except ValueError:
            return False

    async def execute(
        self,
        node_type: NodeType | str,
        input: Mapping[str, Any],
        context: ExecutorContext,
    ) -> ExecutorResult:
        return await self.get(node_type).execute(input, context)


def default_registry(
    agents: Optional[Mapping[str, AgentLike]] = None,
    task_service: Optional[TaskService] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> ExecutorRegistry:
    """Registry with every built-in executor wired in."""
    registry = ExecutorRegistry()
    registry.register(NodeType.AGENT, AgentExecutor(agents))
    registry.register(NodeType.TASK_MUTATION, TaskMutationExecutor(task_service))
    registry.register(NodeType.CONDITION, ConditionExecutor())
    registry.register(NodeType.APPROVAL, ApprovalExecutor())
    registry.register(NodeType.INTEGRATION, IntegrationExecutor(http_client))
    registry.register(NodeType.DELAY, DelayExecutor())
    registry.register(NodeType.MERGE, MergeExecutor())
    return registry
