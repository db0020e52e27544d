"""Step worker behaviour: claiming, redelivery, deferral and failures."""

import asyncio

import pytest

from forgeflow.constants import COMPLETIONS_TOPIC, STEPS_TOPIC
from forgeflow.contracts import MessageKind, OutcomeStatus
from forgeflow.errors import CancellationError
from forgeflow.executors import ExecutorRegistry, ExecutorResult
from forgeflow.graph import Node, NodeType
from forgeflow.persistence import ExecutionStatus, StepStatus
from forgeflow.worker import StepWorker


async def _start_single(engine, workflow_factory, node=None):
    workflow = workflow_factory([node or "solo"], [])
    await engine.save(workflow)
    return await engine.coordinator.start(workflow.id)


@pytest.mark.asyncio
async def test_redelivery_after_outcome_is_applied_is_dropped(engine, workflow_factory):
    execution_id = await _start_single(engine, workflow_factory)
    raw, message = await engine.transport.take(STEPS_TOPIC)

    first = await engine.worker.handle(message)
    await engine.deliver_completion()
    second = await engine.worker.handle(message)

    assert first.status == OutcomeStatus.SUCCEEDED
    assert second is None
    assert engine.agent.attempts("solo") == [1]
    assert engine.transport.pending(COMPLETIONS_TOPIC) == 0
    assert await engine.status(execution_id, "solo") == "succeeded"


@pytest.mark.asyncio
async def test_redelivered_job_reruns_step_claimed_by_crashed_worker(
    engine, workflow_factory
):
    await engine.save(workflow_factory(["A", "B"], [("A", "B")]))
    execution_id = await engine.coordinator.start("wf")

    async def crash(input, context):
        raise asyncio.CancelledError()

    engine.agent.then("A", crash)
    raw, message = await engine.transport.take(STEPS_TOPIC)
    with pytest.raises(asyncio.CancelledError):
        await engine.worker.handle(message)
    assert await engine.status(execution_id, "A") == "running"

    await engine.transport.nack(raw, requeue=True)
    await engine.drain()

    assert engine.agent.attempts("A") == [1, 1]
    assert await engine.status(execution_id, "A") == "succeeded"
    assert await engine.status(execution_id, "B") == "succeeded"
    view = await engine.coordinator.describe(execution_id)
    assert view.status == ExecutionStatus.COMPLETED


@pytest.mark.asyncio
async def test_redelivered_job_of_cancelled_execution_releases_claimed_step(
    engine, workflow_factory
):
    execution_id = await _start_single(engine, workflow_factory)
    _, message = await engine.transport.take(STEPS_TOPIC)
    step = await engine.step(execution_id, "solo")
    await engine.store.update_step(step.transition(StepStatus.RUNNING))
    await engine.coordinator.cancel(execution_id)

    outcome = await engine.worker.handle(message)
    await engine.deliver_completion()

    assert outcome.status == OutcomeStatus.CANCELLED
    assert engine.agent.calls == []
    step = await engine.step(execution_id, "solo")
    assert step.status == StepStatus.SKIPPED
    assert step.error is None


@pytest.mark.asyncio
async def test_waiting_step_is_not_rerun_on_redelivery(engine, workflow_factory):
    execution_id = await _start_single(
        engine, workflow_factory, Node(id="solo", type=NodeType.APPROVAL)
    )
    _, message = await engine.transport.take(STEPS_TOPIC)
    await engine.worker.handle(message)

    assert await engine.worker.handle(message) is None
    step = await engine.step(execution_id, "solo")
    assert step.waiting is True
    assert engine.transport.pending(COMPLETIONS_TOPIC) == 0


@pytest.mark.asyncio
async def test_cancellation_raised_by_executor_is_reported_as_cancelled(
    engine, workflow_factory
):
    engine.agent.then("solo", CancellationError("stopped"))
    await _start_single(engine, workflow_factory)

    _, outcome = await engine.run_step()

    assert outcome.status == OutcomeStatus.CANCELLED
    assert outcome.error is None


@pytest.mark.asyncio
async def test_stale_attempt_is_dropped(engine, workflow_factory):
    await _start_single(engine, workflow_factory)
    _, message = await engine.transport.take(STEPS_TOPIC)

    stale = message.model_copy(update={"attempt": 2})

    assert await engine.worker.handle(stale) is None
    assert engine.agent.calls == []


@pytest.mark.asyncio
async def test_step_of_cancelled_execution_is_not_started(engine, workflow_factory):
    execution_id = await _start_single(engine, workflow_factory)
    _, message = await engine.transport.take(STEPS_TOPIC)
    execution = await engine.store.get_execution(execution_id)
    await engine.store.update_execution(execution.transition(ExecutionStatus.CANCELLED))

    assert await engine.worker.handle(message) is None
    assert await engine.status(execution_id, "solo") == "pending"
    assert engine.agent.calls == []


@pytest.mark.asyncio
async def test_unknown_node_type_reports_failure(engine, workflow_factory):
    execution_id = await _start_single(engine, workflow_factory)
    worker = StepWorker(engine.store, engine.transport, ExecutorRegistry())
    _, message = await engine.transport.take(STEPS_TOPIC)

    outcome = await worker.handle(message)

    assert outcome.status == OutcomeStatus.FAILED
    assert outcome.error.code == "NODE_TYPE_UNKNOWN"
    assert await engine.status(execution_id, "solo") == "running"


@pytest.mark.asyncio
async def test_unexpected_exception_becomes_failure(engine, workflow_factory):
    engine.agent.then("solo", RuntimeError("disk full"))
    await _start_single(engine, workflow_factory)

    _, outcome = await engine.run_step()

    assert outcome.status == OutcomeStatus.FAILED
    assert outcome.error.code == "EXECUTOR_FAILED"
    assert outcome.error.message == "disk full"


@pytest.mark.asyncio
async def test_deferred_step_is_resumed_later(engine, workflow_factory):
    published = []
    original_publish = engine.transport.publish

    async def recording_publish(topic, message, delay=0.0):
        published.append((topic, message.kind, delay))
        await original_publish(topic, message, delay=delay)

    engine.transport.publish = recording_publish
    execution_id = await _start_single(
        engine, workflow_factory, Node(id="solo", type=NodeType.DELAY, params={"seconds": 30})
    )

    message, outcome = await engine.run_step()
    assert outcome is None
    assert published[-1] == (STEPS_TOPIC, MessageKind.RESUME, 30.0)
    assert await engine.status(execution_id, "solo") == "running"

    resumed, outcome = await engine.run_step()
    assert resumed.kind == MessageKind.RESUME
    assert outcome.status == OutcomeStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_suspended_step_is_marked_waiting(engine, workflow_factory):
    execution_id = await _start_single(
        engine,
        workflow_factory,
        Node(id="solo", type=NodeType.APPROVAL, params={"approvers": ["lead"]}),
    )

    _, outcome = await engine.run_step()

    step = await engine.step(execution_id, "solo")
    assert outcome is None
    assert step.status == StepStatus.RUNNING
    assert step.waiting is True
    assert step.output == {"request": {"prompt": "", "approvers": ["lead"]}}
    assert engine.transport.pending(COMPLETIONS_TOPIC) == 0


@pytest.mark.asyncio
async def test_worker_loop_acks_and_nacks(engine, workflow_factory):
    await _start_single(engine, workflow_factory)
    handled = []

    async def flaky_handle(message):
        handled.append(message.message_id)
        if len(handled) == 1:
            raise RuntimeError("lost connection to store")
        return None

    engine.worker.handle = flaky_handle
    await engine.worker.start(lifespan=0.1)

    assert len(handled) == 2
    assert handled[0] == handled[1]
    assert engine.transport.pending(STEPS_TOPIC) == 0


@pytest.mark.asyncio
async def test_worker_runs_jobs_concurrently(engine, workflow_factory):
    await engine.save(workflow_factory(["A", "B"], []))
    execution_id = await engine.coordinator.start("wf")
    started = []
    both_started = asyncio.Event()

    async def slow(input, context):
        started.append(context.node_id)
        if len(started) == 2:
            both_started.set()
        await asyncio.wait_for(both_started.wait(), timeout=1.0)
        return ExecutorResult.success({context.node_id: "slow-done"})

    engine.agent.then("A", slow).then("B", slow)
    await engine.worker.start(lifespan=0.2, concurrency=2)

    assert sorted(started) == ["A", "B"]
    assert engine.transport.pending(STEPS_TOPIC) == 0
    assert engine.transport.pending(COMPLETIONS_TOPIC) == 2

    await engine.drain()
    view = await engine.coordinator.describe(execution_id)
    assert view.status == ExecutionStatus.COMPLETED
    assert view.variables == {"A": "slow-done", "B": "slow-done"}
