"""Node executors and the registry that dispatches to them."""

from .agent import AgentDependencies, AgentExecutor
from .base import (
    ExecutorContext,
    ExecutorResult,
    ExecutorStatus,
    NodeExecutor,
    render_template,
)
from .control import ApprovalExecutor, ConditionExecutor, DelayExecutor, MergeExecutor
from .integration import IntegrationExecutor
from .registry import ExecutorRegistry, default_registry
from .tasks import TaskMutationExecutor, TaskService

__all__ = [
    "AgentDependencies",
    "AgentExecutor",
    "ApprovalExecutor",
    "ConditionExecutor",
    "DelayExecutor",
    "ExecutorContext",
    "ExecutorRegistry",
    "ExecutorResult",
    "ExecutorStatus",
    "IntegrationExecutor",
    "MergeExecutor",
    "NodeExecutor",
    "TaskMutationExecutor",
    "TaskService",
    "default_registry",
    "render_template",
]
