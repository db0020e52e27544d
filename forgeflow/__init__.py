"""forgeflow: durable execution engine for user-authored workflow graphs."""

from .catalog import WorkflowCatalog
from .contracts import EngineMessage, StepOutcome
from .coordinator import ExecutionCoordinator, ExecutionView
from .events import EventEmitter, StepEvent
from .executors import ExecutorRegistry, NodeExecutor, default_registry
from .graph import Edge, Node, NodeType, Workflow, compile_workflow
from .persistence import get_state_store
from .transports import get_transport
from .worker import StepWorker

__version__ = "0.1.0"
__all__ = [
    "Edge",
    "EngineMessage",
    "EventEmitter",
    "ExecutionCoordinator",
    "ExecutionView",
    "ExecutorRegistry",
    "Node",
    "NodeExecutor",
    "NodeType",
    "StepEvent",
    "StepOutcome",
    "StepWorker",
    "Workflow",
    "WorkflowCatalog",
    "compile_workflow",
    "default_registry",
    "get_state_store",
    "get_transport",
]
