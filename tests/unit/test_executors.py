"""Built-in executor and registry tests."""

import json
from types import SimpleNamespace

import httpx
import pytest
from pydantic import BaseModel

from forgeflow.errors import CancellationError, ExecutorError, UnknownNodeTypeError
from forgeflow.executors import (
    AgentExecutor,
    ApprovalExecutor,
    ConditionExecutor,
    DelayExecutor,
    ExecutorContext,
    ExecutorRegistry,
    ExecutorResult,
    ExecutorStatus,
    IntegrationExecutor,
    MergeExecutor,
    TaskMutationExecutor,
    default_registry,
    render_template,
)
from forgeflow.graph import Node, NodeType


def _context(node_type, params=None, attempt=1, resumed=False, node_id="n1"):
    return ExecutorContext(
        execution_id="exec-1",
        step_id="step-1",
        node=Node(id=node_id, type=node_type, params=params or {}),
        attempt=attempt,
        resumed=resumed,
    )


def test_idempotency_key_combines_execution_node_and_attempt():
    context = _context(NodeType.AGENT, attempt=3)

    assert context.idempotency_key == "exec-1:n1:3"


def test_render_template_leaves_unknown_placeholders():
    rendered = render_template(
        {"title": "Review {name}", "items": ["{missing}", 3]}, {"name": "Q3 plan"}
    )

    assert rendered == {"title": "Review Q3 plan", "items": ["{missing}", 3]}


@pytest.mark.asyncio
async def test_is_cancelled_uses_supplied_probe():
    async def cancelled():
        return True

    context = _context(NodeType.AGENT)
    assert await context.is_cancelled() is False
    context.cancelled = cancelled
    assert await context.is_cancelled() is True


class Summary(BaseModel):
    text: str


class RecordingAgent:
    def __init__(self, output):
        self.output = output
        self.calls = []

    async def run(self, prompt, deps=None):
        self.calls.append((prompt, deps))
        return SimpleNamespace(output=self.output)


@pytest.mark.asyncio
async def test_agent_executor_formats_prompt_and_stores_output():
    agent = RecordingAgent(Summary(text="short"))
    executor = AgentExecutor({"summarizer": agent})
    context = _context(
        NodeType.AGENT,
        {"agent": "summarizer", "prompt": "Summarize {doc}", "output_key": "summary"},
    )

    result = await executor.execute({"doc": "the report"}, context)

    assert result.status == ExecutorStatus.SUCCEEDED
    assert result.output == {"summary": {"text": "short"}}
    prompt, deps = agent.calls[0]
    assert prompt == "Summarize the report"
    assert deps.idempotency_key == "exec-1:n1:1"
    assert deps.variables == {"doc": "the report"}


@pytest.mark.asyncio
async def test_agent_executor_requires_registered_agent():
    executor = AgentExecutor()
    executor.register("other", RecordingAgent("x"))

    with pytest.raises(ExecutorError):
        await executor.execute({}, _context(NodeType.AGENT, {"agent": "missing"}))


class FakeTaskService:
    def __init__(self):
        self.calls = []

    async def apply(self, operation, task_id, fields, idempotency_key):
        self.calls.append((operation, task_id, fields, idempotency_key))
        return {"id": task_id or "new-task", **fields}


@pytest.mark.asyncio
async def test_task_mutation_passes_idempotency_key():
    service = FakeTaskService()
    executor = TaskMutationExecutor(service)
    context = _context(
        NodeType.TASK_MUTATION,
        {"operation": "update", "task_id": "{task}", "fields": {"status": "done"}},
        attempt=2,
    )

    result = await executor.execute({"task": "T-7"}, context)

    assert service.calls == [("update", "T-7", {"status": "done"}, "exec-1:n1:2")]
    assert result.output == {"n1": {"id": "T-7", "status": "done"}}


@pytest.mark.asyncio
async def test_task_mutation_skips_side_effect_once_cancelled():
    async def cancelled():
        return True

    service = FakeTaskService()
    context = _context(NodeType.TASK_MUTATION, {"operation": "create"})
    context.cancelled = cancelled

    with pytest.raises(CancellationError):
        await TaskMutationExecutor(service).execute({}, context)

    assert service.calls == []


@pytest.mark.asyncio
async def test_task_mutation_rejects_unknown_operation():
    executor = TaskMutationExecutor(FakeTaskService())

    with pytest.raises(ExecutorError):
        await executor.execute({}, _context(NodeType.TASK_MUTATION, {"operation": "drop"}))


@pytest.mark.asyncio
@pytest.mark.parametrize("amount, branch", [(500, "true"), (5, "false")])
async def test_condition_selects_branch(amount, branch):
    context = _context(
        NodeType.CONDITION, {"expression": "amount > 100", "output_key": "large"}
    )

    result = await ConditionExecutor().execute({"amount": amount}, context)

    assert result.active_branches == [branch]
    assert result.output == {"large": amount > 100}


@pytest.mark.asyncio
async def test_condition_with_bad_expression_fails():
    context = _context(NodeType.CONDITION, {"expression": "unknown_var > 1"})

    with pytest.raises(ExecutorError):
        await ConditionExecutor().execute({}, context)


@pytest.mark.asyncio
async def test_approval_suspends_with_request():
    context = _context(
        NodeType.APPROVAL, {"prompt": "Approve {amount}?", "approvers": ["ops"]}
    )

    result = await ApprovalExecutor().execute({"amount": 10}, context)

    assert result.status == ExecutorStatus.SUSPENDED
    assert result.wait == {"prompt": "Approve 10?", "approvers": ["ops"]}


@pytest.mark.asyncio
async def test_delay_defers_then_succeeds_when_resumed():
    executor = DelayExecutor()

    first = await executor.execute({}, _context(NodeType.DELAY, {"seconds": 15}))
    resumed = await executor.execute(
        {}, _context(NodeType.DELAY, {"seconds": 15}, resumed=True)
    )
    past = await executor.execute(
        {}, _context(NodeType.DELAY, {"until": "2000-01-01T00:00:00+00:00"})
    )

    assert first.status == ExecutorStatus.DEFERRED
    assert first.resume_after == 15.0
    assert resumed.status == ExecutorStatus.SUCCEEDED
    assert past.status == ExecutorStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_merge_projects_selected_keys():
    context = _context(NodeType.MERGE, {"select": ["a", "c"], "output_key": "merged"})

    result = await MergeExecutor().execute({"a": 1, "b": 2}, context)

    assert result.output == {"merged": {"a": 1, "c": None}}


@pytest.mark.asyncio
async def test_integration_sends_idempotency_key_and_returns_body():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["key"] = request.headers["Idempotency-Key"]
        seen["body"] = json.loads(request.content)
        seen["url"] = str(request.url)
        return httpx.Response(201, json={"id": "hook-1"})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    executor = IntegrationExecutor(client)
    context = _context(
        NodeType.INTEGRATION,
        {"url": "https://hooks.test/{team}", "body": {"text": "Hi {name}"}},
    )

    result = await executor.execute({"team": "ops", "name": "Ana"}, context)
    await client.aclose()

    assert seen == {
        "key": "exec-1:n1:1",
        "body": {"text": "Hi Ana"},
        "url": "https://hooks.test/ops",
    }
    assert result.output == {"n1": {"status_code": 201, "body": {"id": "hook-1"}}}


@pytest.mark.asyncio
async def test_integration_non_2xx_is_failure():
    client = httpx.AsyncClient(
        transport=httpx.MockTransport(lambda request: httpx.Response(503, text="down"))
    )
    context = _context(NodeType.INTEGRATION, {"url": "https://hooks.test/x"})

    with pytest.raises(ExecutorError) as exc_info:
        await IntegrationExecutor(client).execute({}, context)
    await client.aclose()

    assert exc_info.value.details == {"status_code": 503}


@pytest.mark.asyncio
async def test_registry_dispatches_by_node_type():
    class Constant:
        async def execute(self, input, context):
            return ExecutorResult.success({"value": 42})

    registry = ExecutorRegistry()
    registry.register("agent", Constant())

    result = await registry.execute(NodeType.AGENT, {}, _context(NodeType.AGENT))

    assert result.output == {"value": 42}
    assert NodeType.AGENT in registry
    assert NodeType.MERGE not in registry
    with pytest.raises(UnknownNodeTypeError):
        registry.get(NodeType.MERGE)
    with pytest.raises(UnknownNodeTypeError):
        registry.get("teleport")


def test_default_registry_covers_every_node_type():
    registry = default_registry()

    assert all(node_type in registry for node_type in NodeType)
