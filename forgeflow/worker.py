"""Step worker: runs node executors for dispatch jobs pulled from the queue."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional, Set

from .config import EngineConfig
from .contracts import EngineMessage, MessageKind, OutcomeStatus, StepOutcome
from .errors import CancellationError, ForgeflowError, StateConflictError, StepTimeoutError
from .events import EventEmitter
from .executors import ExecutorContext, ExecutorRegistry, ExecutorResult, ExecutorStatus
from .graph import Workflow
from .persistence.models import ExecutionStatus, StepStatus, WorkflowExecution, WorkflowStep
from .persistence.repository import StateStore
from .transports import BaseTransport
from .utils.retry import retry_on_conflict

logger = logging.getLogger(__name__)

_OUTCOME_FOR = {
    ExecutorStatus.SUCCEEDED: OutcomeStatus.SUCCEEDED,
    ExecutorStatus.CANCELLED: OutcomeStatus.CANCELLED,
}


class StepWorker:
    """Executes workflow steps by listening to the steps topic.

    A worker only ever moves a step from PENDING to RUNNING (and marks a
    suspended step as waiting); every other transition is left to the
    coordinator, which receives the attempt outcome as a completion message.

    Delivery is at-least-once. A dispatch job that finds its step RUNNING
    at the same attempt, and not waiting on a decision, was claimed by a
    worker that never reported back, so the attempt runs again under the
    same idempotency key.
    """

    def __init__(
        self,
        store: StateStore,
        transport: BaseTransport,
        registry: ExecutorRegistry,
        events: Optional[EventEmitter] = None,
        config: Optional[EngineConfig] = None,
    ) -> None:
        self._store = store
        self._transport = transport
        self._registry = registry
        self._events = events or EventEmitter()
        self._config = config or EngineConfig()

    async def start(
        self, lifespan: Optional[float] = None, concurrency: Optional[int] = None
    ) -> None:
        """Start listening for dispatch jobs.

        Args:
            lifespan: Seconds to keep consuming. If None, runs indefinitely.
            concurrency: Jobs run at once; defaults to
                ``EngineConfig.worker_concurrency``. Jobs still in flight
                when the subscription ends are awaited before returning.
        """
        limit = asyncio.Semaphore(concurrency or self._config.worker_concurrency)
        in_flight: Set[asyncio.Task] = set()

        def finished(task: asyncio.Task) -> None:
            in_flight.discard(task)
            limit.release()

        try:
            async for raw_message, message in self._transport.subscribe(
                self._config.topics.steps, lifespan=lifespan
            ):
                await limit.acquire()
                task = asyncio.create_task(self._process(raw_message, message))
                in_flight.add(task)
                task.add_done_callback(finished)
        finally:
            if in_flight:
                await asyncio.gather(*in_flight, return_exceptions=True)

    async def _process(self, raw_message: Any, message: EngineMessage) -> None:
        try:
            await self.handle(message)
        except Exception:
            logger.exception(
                f"Step job {message.message_id} failed; returning it to the queue"
            )
            await self._transport.nack(raw_message, requeue=True)
            return
        await self._transport.ack(raw_message)

    async def handle(self, message: EngineMessage) -> Optional[StepOutcome]:
        """Run one dispatch or resume job.

        Returns the reported outcome, or None when the job was a duplicate,
        stale, cancelled, deferred or suspended.
        """
        if message.kind not in (MessageKind.DISPATCH, MessageKind.RESUME):
            logger.warning(f"Worker ignoring {message.kind.value} message")
            return None

        step = await self._store.get_step(message.step_id)
        if step is None:
            logger.warning(f"Step {message.step_id} of {message.execution_id} not found")
            return None
        if step.attempt != message.attempt:
            logger.debug(
                f"Dropping stale job for {step.node_id} attempt {message.attempt} "
                f"(step is on attempt {step.attempt})"
            )
            return None

        execution = await self._store.get_execution(message.execution_id)
        if execution is None:
            logger.warning(f"Execution {message.execution_id} not found")
            return None
        workflow = await self._store.get_workflow(
            execution.workflow_id, execution.workflow_version
        )
        if workflow is None:
            logger.warning(
                f"Workflow {execution.workflow_id} v{execution.workflow_version} not found"
            )
            return None

        resumed = message.kind == MessageKind.RESUME
        if resumed:
            if step.status != StepStatus.RUNNING:
                return None
            running = step
        elif step.status == StepStatus.RUNNING and not step.waiting:
            running = step
            if execution.status != ExecutionStatus.RUNNING:
                # the claiming worker died and the execution was cancelled since
                return await self._report(message, running, ExecutorResult.cancelled())
            logger.warning(
                f"Step {step.node_id} of {step.execution_id} attempt {step.attempt} "
                f"was claimed but never reported; running it again"
            )
        else:
            running = await self._claim(step, execution)
            if running is None:
                return None

        result = await self._execute(workflow, running, resumed)
        return await self._report(message, running, result)

    async def _claim(
        self, step: WorkflowStep, execution: WorkflowExecution
    ) -> Optional[WorkflowStep]:
        """Move a PENDING step to RUNNING; None if it is not ours to run."""
        if step.status != StepStatus.PENDING:
            logger.debug(f"Step {step.node_id} already {step.status.value}")
            return None
        if execution.status != ExecutionStatus.RUNNING:
            logger.info(
                f"Not starting {step.node_id}: execution {execution.id} is "
                f"{execution.status.value}"
            )
            return None
        try:
            running = await self._store.update_step(step.transition(StepStatus.RUNNING))
        except StateConflictError:
            logger.debug(f"Step {step.node_id} was claimed concurrently")
            return None
        await self._events.step_changed(
            running.execution_id,
            running.node_id,
            running.id,
            StepStatus.PENDING.value,
            StepStatus.RUNNING.value,
            attempt=running.attempt,
        )
        return running

    async def _report(
        self, message: EngineMessage, running: WorkflowStep, result: ExecutorResult
    ) -> Optional[StepOutcome]:
        if result.status == ExecutorStatus.DEFERRED:
            delay = max(result.resume_after or 0.0, 0.0)
            logger.info(f"Step {running.node_id} deferred for {delay:.2f}s")
            await self._transport.publish(
                self._config.topics.steps, message.resume(), delay=delay
            )
            return None

        if result.status == ExecutorStatus.SUSPENDED:
            await self._mark_waiting(running, result)
            return None

        outcome = StepOutcome(
            status=_OUTCOME_FOR.get(result.status, OutcomeStatus.FAILED),
            attempt=running.attempt,
            output=result.output,
            active_branches=result.active_branches,
            error=result.error,
        )
        await self._transport.publish(
            self._config.topics.completions, message.completion(outcome)
        )
        return outcome

    async def _execute(
        self, workflow: Workflow, step: WorkflowStep, resumed: bool
    ) -> ExecutorResult:
        node = workflow.node(step.node_id)
        timeout = workflow.timeout_for(node, self._config.step_timeout_seconds)

        async def cancelled() -> bool:
            execution = await self._store.get_execution(step.execution_id)
            return execution is None or execution.status == ExecutionStatus.CANCELLED

        context = ExecutorContext(
            execution_id=step.execution_id,
            step_id=step.id,
            node=node,
            attempt=step.attempt,
            resumed=resumed,
            cancelled=cancelled,
        )
        try:
            return await asyncio.wait_for(
                self._registry.execute(node.type, step.input, context), timeout
            )
        except asyncio.TimeoutError:
            logger.error(f"Step {node.id} timed out after {timeout}s")
            return ExecutorResult.failure(
                StepTimeoutError.code, f"Step {node.id} exceeded {timeout}s"
            )
        except CancellationError:
            logger.info(f"Step {node.id} of {step.execution_id} stopped on cancellation")
            return ExecutorResult.cancelled()
        except ForgeflowError as exc:
            logger.error(f"Step {node.id} failed: {exc.code} {exc.message}")
            return ExecutorResult.failure(exc.code, exc.message)
        except Exception as exc:
            logger.error(f"Step {node.id} raised {type(exc).__name__}: {exc}")
            return ExecutorResult.failure(
                "EXECUTOR_FAILED", str(exc) or type(exc).__name__
            )

    async def _mark_waiting(self, step: WorkflowStep, result: ExecutorResult) -> None:
        async def mark() -> Optional[WorkflowStep]:
            current = await self._store.get_step(step.id)
            if (
                current is None
                or current.status != StepStatus.RUNNING
                or current.attempt != step.attempt
            ):
                return None
            return await self._store.update_step(
                current.model_copy(
                    update={"waiting": True, "output": {"request": result.wait or {}}},
                    deep=True,
                )
            )

        waiting = await retry_on_conflict(mark)
        if waiting is None:
            return
        logger.info(f"Step {step.node_id} of {step.execution_id} awaiting a decision")
        await self._events.step_changed(
            waiting.execution_id,
            waiting.node_id,
            waiting.id,
            StepStatus.RUNNING.value,
            StepStatus.RUNNING.value,
            waiting=True,
        )
