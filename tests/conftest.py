"""Shared fixtures: an in-process engine driven message by message."""

import asyncio
from collections import defaultdict
from typing import Any, Dict, List, Optional

import pytest

import forgeflow.persistence as persistence
from forgeflow.config import EngineConfig
from forgeflow.constants import COMPLETIONS_TOPIC, STEPS_TOPIC
from forgeflow.coordinator import ExecutionCoordinator
from forgeflow.events import EventEmitter, StepEvent
from forgeflow.executors import ExecutorResult, NodeExecutor, default_registry
from forgeflow.graph import Edge, Node, NodeType, RetryPolicy, Workflow
from forgeflow.persistence import InMemoryStateStore
from forgeflow.transports.inmemory import InMemoryTransport
from forgeflow.worker import StepWorker


class ScriptedExecutor(NodeExecutor):
    """Agent stand-in whose results are queued per node id.

    Unscripted calls succeed with ``{node_id: "<node_id>-done"}``.
    """

    def __init__(self) -> None:
        self.calls: List[tuple] = []
        self.script: Dict[str, List[Any]] = defaultdict(list)

    def then(self, node_id: str, *results: Any) -> "ScriptedExecutor":
        self.script[node_id].extend(results)
        return self

    def fail(self, node_id: str, times: int = 1) -> "ScriptedExecutor":
        return self.then(
            node_id,
            *[ExecutorResult.failure("EXECUTOR_FAILED", f"{node_id} broke")] * times,
        )

    def attempts(self, node_id: str) -> List[int]:
        return [attempt for node, attempt, _ in self.calls if node == node_id]

    async def execute(self, input, context):
        self.calls.append((context.node_id, context.attempt, dict(input)))
        queued = self.script.get(context.node_id)
        if queued:
            result = queued.pop(0)
            if isinstance(result, Exception):
                raise result
            if callable(result):
                return await result(input, context)
            return result
        return ExecutorResult.success({context.node_id: f"{context.node_id}-done"})


class Engine:
    """Coordinator and worker sharing one in-memory store and transport."""

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        store: Optional[InMemoryStateStore] = None,
    ) -> None:
        self.config = config or EngineConfig(retry=RetryPolicy(backoff_base=0.0))
        self.store = store or InMemoryStateStore()
        self.transport = InMemoryTransport()
        self.events = EventEmitter()
        self.recorded: List[StepEvent] = []
        self.events.subscribe(self.recorded.append)
        self.agent = ScriptedExecutor()
        self.registry = default_registry()
        self.registry.register(NodeType.AGENT, self.agent)
        self.coordinator = ExecutionCoordinator(
            self.store, self.transport, events=self.events, config=self.config
        )
        self.worker = StepWorker(
            self.store, self.transport, self.registry, events=self.events, config=self.config
        )

    async def save(self, workflow: Workflow) -> Workflow:
        await self.store.save_workflow(workflow)
        return workflow

    async def run_step(self):
        """Deliver the next dispatch job to the worker; None when idle."""
        item = await self.transport.take(STEPS_TOPIC, ignore_delay=True)
        if item is None:
            return None
        raw, message = item
        outcome = await self.worker.handle(message)
        await self.transport.ack(raw)
        return message, outcome

    async def deliver_completion(self):
        item = await self.transport.take(COMPLETIONS_TOPIC, ignore_delay=True)
        if item is None:
            return None
        raw, message = item
        await self.coordinator.handle_message(message)
        await self.transport.ack(raw)
        return message

    async def drain(self, max_rounds: int = 200) -> None:
        """Alternate workers and coordinator until both queues are empty."""
        for _ in range(max_rounds):
            progressed = False
            while await self.run_step() is not None:
                progressed = True
            while await self.deliver_completion() is not None:
                progressed = True
            if not progressed:
                return
        raise AssertionError("engine did not settle")

    async def step(self, execution_id: str, node_id: str):
        return await self.store.get_step_for_node(execution_id, node_id)

    async def status(self, execution_id: str, node_id: str) -> str:
        step = await self.step(execution_id, node_id)
        return step.status.value if step else "missing"


class YieldingStateStore(InMemoryStateStore):
    """Yields to the event loop before every access so concurrent callers interleave."""

    async def get_execution(self, execution_id):
        await asyncio.sleep(0)
        return await super().get_execution(execution_id)

    async def update_execution(self, execution):
        await asyncio.sleep(0)
        return await super().update_execution(execution)

    async def get_step(self, step_id):
        await asyncio.sleep(0)
        return await super().get_step(step_id)

    async def update_step(self, step):
        await asyncio.sleep(0)
        return await super().update_step(step)

    async def create_step(self, step):
        await asyncio.sleep(0)
        return await super().create_step(step)

    async def get_join(self, execution_id, node_id):
        await asyncio.sleep(0)
        return await super().get_join(execution_id, node_id)

    async def create_join(self, join):
        await asyncio.sleep(0)
        return await super().create_join(join)

    async def update_join(self, join):
        await asyncio.sleep(0)
        return await super().update_join(join)


def make_workflow(
    nodes: List[Any],
    edges: List[Any],
    workflow_id: str = "wf",
    **kwargs: Any,
) -> Workflow:
    """Build a workflow from node ids or Node objects and (source, target[, branch]) tuples."""
    built_nodes = [
        n if isinstance(n, Node) else Node(id=n, type=NodeType.AGENT) for n in nodes
    ]
    built_edges = [
        e if isinstance(e, Edge) else Edge(source=e[0], target=e[1], branch=(e[2] if len(e) > 2 else None))
        for e in edges
    ]
    return Workflow(id=workflow_id, nodes=built_nodes, edges=built_edges, **kwargs)


def diamond(**kwargs: Any) -> Workflow:
    return make_workflow(
        ["A", "B", "C", "D"],
        [("A", "B"), ("A", "C"), ("B", "D"), ("C", "D")],
        **kwargs,
    )


@pytest.fixture
def engine() -> Engine:
    return Engine()


@pytest.fixture
def workflow_factory():
    return make_workflow


@pytest.fixture
def diamond_workflow():
    return diamond


@pytest.fixture
def memory_store() -> InMemoryStateStore:
    store = InMemoryStateStore()
    persistence._store_instance = store
    yield store
    persistence._store_instance = None


@pytest.fixture
def yielding_engine() -> Engine:
    return Engine(store=YieldingStateStore())


@pytest.fixture
def engine_factory():
    return Engine
