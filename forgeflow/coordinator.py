"""Execution coordinator: drives workflow runs from start to completion."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from .config import EngineConfig
from .constants import APPROVED, ERRORS_KEY, REJECTED
from .contracts import EngineMessage, MessageKind, OutcomeStatus, StepOutcome
from .errors import ForgeflowError, InvalidTransitionError, NotFoundError
from .events import EventEmitter
from .graph import CompiledPlan, JoinPolicy, MergePolicy, NodeType, PlanCache, Workflow
from .persistence.models import (
    ErrorInfo,
    ExecutionStatus,
    JoinState,
    StepStatus,
    TriggerInfo,
    WorkflowExecution,
    WorkflowStep,
)
from .persistence.repository import StateStore
from .schema import validate_variables
from .transports import BaseTransport
from .utils.retry import attempts_remain, compute_backoff, retry_on_conflict

logger = logging.getLogger(__name__)

StepMutation = Callable[[WorkflowStep], Optional[WorkflowStep]]


class ExecutionView(BaseModel):
    """Read model returned by :meth:`ExecutionCoordinator.describe`."""

    execution_id: str
    workflow_id: str
    workflow_version: int
    status: ExecutionStatus
    progress: float
    variables: Dict[str, Any] = Field(default_factory=dict)
    steps: List[WorkflowStep] = Field(default_factory=list)
    error: Optional[ErrorInfo] = None
    trigger: TriggerInfo
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class ExecutionCoordinator:
    """Owns execution state transitions.

    Workers never decide what runs next: they report outcomes as completion
    messages and the coordinator turns them into step transitions, join
    arrivals and new dispatch jobs. Every write is a compare-and-set so any
    number of coordinators may consume completions concurrently.
    """

    def __init__(
        self,
        store: StateStore,
        transport: BaseTransport,
        events: Optional[EventEmitter] = None,
        config: Optional[EngineConfig] = None,
        plan_cache: Optional[PlanCache] = None,
    ) -> None:
        self._store = store
        self._transport = transport
        self._events = events or EventEmitter()
        self._config = config or EngineConfig()
        self._plans = plan_cache or PlanCache(self._config.plan_cache_size)

    @property
    def store(self) -> StateStore:
        return self._store

    @property
    def transport(self) -> BaseTransport:
        return self._transport

    @property
    def events(self) -> EventEmitter:
        return self._events

    @property
    def config(self) -> EngineConfig:
        return self._config

    # ------------------------------------------------------------------
    # Public operations
    async def start(
        self,
        workflow_id: str,
        version: Optional[int] = None,
        trigger: Optional[TriggerInfo] = None,
        input: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Create an execution and dispatch its entry nodes.

        Raises:
            NotFoundError: Unknown workflow or version.
            CompilationError: The stored graph is invalid.
            InputValidationError: ``input`` violates the variable schema.
        """
        workflow = await self._store.get_workflow(workflow_id, version)
        if workflow is None:
            suffix = f" v{version}" if version is not None else ""
            raise NotFoundError(f"Workflow {workflow_id}{suffix} not found")
        plan = self._plans.get(workflow)
        variables = dict(input or {})
        validate_variables(workflow.variable_schema, variables)

        execution = WorkflowExecution(
            workflow_id=workflow.id,
            workflow_version=workflow.version,
            variables=variables,
            trigger=trigger or TriggerInfo(),
        )
        await self._store.create_execution(execution)
        await self._events.execution_changed(
            execution.id, None, ExecutionStatus.PENDING.value
        )

        running = await self._store.update_execution(
            execution.transition(ExecutionStatus.RUNNING)
        )
        await self._events.execution_changed(
            execution.id, ExecutionStatus.PENDING.value, ExecutionStatus.RUNNING.value
        )
        logger.info(
            f"Execution {execution.id} started for workflow {workflow.id} "
            f"v{workflow.version}"
        )

        for node_id in plan.entry_nodes():
            await self._dispatch(running.id, workflow, node_id, dict(variables), [])
        return execution.id

    async def advance(
        self, execution_id: str, step_id: str, outcome: StepOutcome
    ) -> None:
        """Apply one attempt outcome to its step and move the execution on.

        Redelivered or stale outcomes (terminal step, different attempt) are
        ignored.
        """
        step = await self._require_step(execution_id, step_id)
        if step.status != StepStatus.RUNNING or step.attempt != outcome.attempt:
            logger.debug(
                f"Ignoring outcome for step {step.node_id} of {execution_id}: "
                f"step is {step.status.value} attempt {step.attempt}, "
                f"outcome attempt {outcome.attempt}"
            )
            return

        workflow, plan = await self._workflow_and_plan(execution_id)
        if outcome.succeeded:
            await self._on_success(workflow, plan, step, outcome)
        elif outcome.cancelled:
            await self._on_cancelled(workflow, plan, step, outcome)
        else:
            await self._on_failure(workflow, plan, step, outcome)
        await self._maybe_complete(execution_id, plan)

    async def cancel(self, execution_id: str) -> WorkflowExecution:
        """Cancel cooperatively: nothing new is dispatched, running steps finish."""

        async def mark() -> Tuple[WorkflowExecution, Optional[ExecutionStatus]]:
            execution = await self._require_execution(execution_id)
            if execution.status.is_terminal:
                return execution, None
            previous = execution.status
            updated = await self._store.update_execution(
                execution.transition(ExecutionStatus.CANCELLED)
            )
            return updated, previous

        execution, previous = await retry_on_conflict(mark)
        if previous is None:
            if execution.status == ExecutionStatus.CANCELLED:
                return execution
            raise InvalidTransitionError(
                f"Execution {execution_id} is already {execution.status.value}"
            )

        await self._events.execution_changed(
            execution_id, previous.value, ExecutionStatus.CANCELLED.value
        )
        logger.info(f"Execution {execution_id} cancelled")

        workflow, plan = await self._workflow_and_plan(execution_id)
        for step in await self._store.list_steps(execution_id):
            if step.status == StepStatus.PENDING or step.waiting:
                await self._skip_step(workflow, plan, step.id, reason="cancelled")
        return await self._require_execution(execution_id)

    async def decide(
        self,
        execution_id: str,
        step_id: str,
        approved: bool,
        decided_by: Optional[str] = None,
        comment: Optional[str] = None,
    ) -> None:
        """Feed a human decision into a suspended approval step."""
        step = await self._require_step(execution_id, step_id)
        if step.node_type != NodeType.APPROVAL.value:
            raise InvalidTransitionError(f"Step {step_id} is not an approval step")
        if step.status != StepStatus.RUNNING or not step.waiting:
            raise InvalidTransitionError(
                f"Step {step_id} is not awaiting a decision ({step.status.value})"
            )

        workflow, _ = await self._workflow_and_plan(execution_id)
        node = workflow.node(step.node_id)
        output_key = node.params.get("output_key") or node.id
        outcome = StepOutcome(
            status=OutcomeStatus.SUCCEEDED,
            attempt=step.attempt,
            output={
                output_key: {
                    "approved": approved,
                    "decided_by": decided_by,
                    "comment": comment,
                }
            },
            active_branches=[APPROVED if approved else REJECTED],
        )
        logger.info(
            f"Approval {step.node_id} of {execution_id} "
            f"{'approved' if approved else 'rejected'} by {decided_by or 'unknown'}"
        )
        await self.advance(execution_id, step_id, outcome)

    async def describe(self, execution_id: str) -> ExecutionView:
        execution = await self._require_execution(execution_id)
        _, plan = await self._workflow_and_plan(execution_id)
        steps = await self._store.list_steps(execution_id)

        skipped = sum(1 for s in steps if s.status == StepStatus.SKIPPED)
        finished = sum(
            1 for s in steps if s.status.is_terminal and s.status != StepStatus.SKIPPED
        )
        reachable = plan.size - skipped
        progress = round(100.0 * finished / reachable, 2) if reachable else 100.0

        return ExecutionView(
            execution_id=execution.id,
            workflow_id=execution.workflow_id,
            workflow_version=execution.workflow_version,
            status=execution.status,
            progress=progress,
            variables=execution.variables,
            steps=steps,
            error=execution.error,
            trigger=execution.trigger,
            created_at=execution.created_at,
            started_at=execution.started_at,
            finished_at=execution.finished_at,
        )

    async def handle_message(self, message: EngineMessage) -> None:
        """Process one message from the completions topic."""
        if message.kind != MessageKind.COMPLETION or message.outcome is None:
            logger.warning(
                f"Coordinator ignoring {message.kind.value} message {message.message_id}"
            )
            return
        await self.advance(message.execution_id, message.step_id, message.outcome)

    async def consume_completions(self, lifespan: Optional[float] = None) -> None:
        """Consume completion messages until ``lifespan`` elapses."""
        topic = self._config.topics.completions
        async for raw_message, message in self._transport.subscribe(
            topic, lifespan=lifespan
        ):
            try:
                await self.handle_message(message)
            except ForgeflowError as exc:
                logger.error(
                    f"Dropping completion {message.message_id} for "
                    f"{message.execution_id}: {exc.code} {exc.message}"
                )
            except Exception:
                logger.exception(
                    f"Completion {message.message_id} failed; returning it to the queue"
                )
                await self._transport.nack(raw_message, requeue=True)
                continue
            await self._transport.ack(raw_message)

    # ------------------------------------------------------------------
    # Outcome handling
    async def _on_success(
        self,
        workflow: Workflow,
        plan: CompiledPlan,
        step: WorkflowStep,
        outcome: StepOutcome,
    ) -> None:
        finished = await self._update_running_step(
            step.id,
            outcome.attempt,
            lambda s: s.transition(
                StepStatus.SUCCEEDED,
                output=outcome.output,
                active_branches=outcome.active_branches,
                error=None,
            ),
        )
        if finished is None:
            return
        await self._step_changed(step, finished)
        await self._merge_variables(finished.execution_id, outcome.output)
        await self._propagate(workflow, plan, finished)

    async def _on_cancelled(
        self,
        workflow: Workflow,
        plan: CompiledPlan,
        step: WorkflowStep,
        outcome: StepOutcome,
    ) -> None:
        """An executor stopped on cancellation: the step is skipped, not failed."""
        skipped = await self._update_running_step(
            step.id, outcome.attempt, lambda s: s.transition(StepStatus.SKIPPED)
        )
        if skipped is None:
            return
        logger.info(f"Skipped {step.node_id} of {step.execution_id} (cancelled)")
        await self._step_changed(step, skipped, reason="cancelled")
        await self._propagate(workflow, plan, skipped)

    async def _on_failure(
        self,
        workflow: Workflow,
        plan: CompiledPlan,
        step: WorkflowStep,
        outcome: StepOutcome,
    ) -> None:
        node = workflow.node(step.node_id)
        error = outcome.error or ErrorInfo(code="EXECUTOR_FAILED", message="failed")
        error = error.model_copy(update={"node_id": node.id})
        policy = workflow.retry_policy_for(node, self._config.retry)
        execution = await self._require_execution(step.execution_id)

        if (
            attempts_remain(policy, outcome.attempt)
            and execution.status == ExecutionStatus.RUNNING
        ):
            retried = await self._update_running_step(
                step.id,
                outcome.attempt,
                lambda s: s.transition(
                    StepStatus.PENDING, attempt=s.attempt + 1, error=error, started_at=None
                ),
            )
            if retried is None:
                return
            delay = compute_backoff(policy, outcome.attempt)
            logger.warning(
                f"Step {node.id} of {step.execution_id} failed attempt "
                f"{outcome.attempt}/{policy.max_attempts} ({error.code}); "
                f"retrying in {delay:.2f}s"
            )
            await self._step_changed(step, retried, attempt=retried.attempt)
            await self._transport.publish(
                self._config.topics.steps,
                EngineMessage.dispatch(
                    retried.execution_id, node.id, retried.id, retried.attempt
                ),
                delay=delay,
            )
            return

        output = None
        if node.continue_on_failure:
            output = {ERRORS_KEY: {node.id: error.model_dump(exclude={"node_id"})}}
        failed = await self._update_running_step(
            step.id,
            outcome.attempt,
            lambda s: s.transition(StepStatus.FAILED, error=error, output=output),
        )
        if failed is None:
            return
        logger.error(
            f"Step {node.id} of {step.execution_id} failed after "
            f"{outcome.attempt} attempt(s): {error.code} {error.message}"
        )
        await self._step_changed(step, failed, error=error.code)
        if output:
            await self._merge_variables(failed.execution_id, output)
        await self._propagate(workflow, plan, failed)

    # ------------------------------------------------------------------
    # Fan-out / fan-in
    def _edge_active(
        self, workflow: Workflow, step: WorkflowStep, branch: Optional[str]
    ) -> bool:
        if step.status == StepStatus.SUCCEEDED:
            return branch is None or branch in (step.active_branches or [])
        if step.status == StepStatus.FAILED:
            return branch is None and workflow.node(step.node_id).continue_on_failure
        return False

    async def _propagate(
        self, workflow: Workflow, plan: CompiledPlan, step: WorkflowStep
    ) -> None:
        """Record ``step``'s arrival at each successor."""
        for target, branch in plan.outgoing_edges(step.node_id):
            satisfied = self._edge_active(workflow, step, branch)
            await self._arrive(
                workflow, plan, step.execution_id, target, step.node_id, satisfied
            )

    async def _arrive(
        self,
        workflow: Workflow,
        plan: CompiledPlan,
        execution_id: str,
        node_id: str,
        source: str,
        satisfied: bool,
    ) -> None:
        await self._store.create_join(
            JoinState(
                execution_id=execution_id,
                node_id=node_id,
                remaining=len(plan.predecessors_of(node_id)),
            )
        )

        async def record() -> Optional[JoinState]:
            join = await self._store.get_join(execution_id, node_id)
            if join is None or source in join.arrivals:
                return None
            return await self._store.update_join(
                join.model_copy(
                    update={
                        "remaining": join.remaining - 1,
                        "arrivals": {**join.arrivals, source: satisfied},
                    }
                )
            )

        join = await retry_on_conflict(record)
        # only the arrival that drove the count to zero decides the node
        if join is None or join.remaining > 0:
            return

        node = workflow.node(node_id)
        if node.join == JoinPolicy.ALL:
            ready = all(join.arrivals.values())
        else:
            ready = any(join.arrivals.values())
        execution = await self._require_execution(execution_id)

        if execution.status != ExecutionStatus.RUNNING:
            await self._skip_node(workflow, plan, execution_id, node_id, "cancelled")
        elif not ready:
            await self._skip_node(workflow, plan, execution_id, node_id, "unsatisfied")
        else:
            snapshot, warnings = await self._join_snapshot(
                workflow, plan, execution_id, node_id, join.arrivals
            )
            await self._dispatch(execution_id, workflow, node_id, snapshot, warnings)

    async def _join_snapshot(
        self,
        workflow: Workflow,
        plan: CompiledPlan,
        execution_id: str,
        node_id: str,
        arrivals: Dict[str, bool],
    ) -> Tuple[Dict[str, Any], List[str]]:
        """Merge satisfied predecessors in edge declaration order.

        Inputs are layered first, then outputs. Two outputs writing the same
        variable is a collision resolved by the merge policy and reported
        as a warning.
        """
        policy = self._config.merge_policy or workflow.merge_policy
        sources = [src for src, _ in plan.incoming_edges(node_id) if arrivals.get(src)]
        steps = []
        for source in sources:
            step = await self._store.get_step_for_node(execution_id, source)
            if step is not None:
                steps.append(step)

        snapshot: Dict[str, Any] = {}
        for step in steps:
            _layer(snapshot, step.input)

        warnings: List[str] = []
        writers: Dict[str, str] = {}
        for step in steps:
            for key, value in (step.output or {}).items():
                if key == ERRORS_KEY:
                    _layer(snapshot, {key: value})
                    continue
                if key in writers:
                    keep_new = policy == MergePolicy.LAST_WINS
                    winner = step.node_id if keep_new else writers[key]
                    message = (
                        f"Variable '{key}' written by both {writers[key]} and "
                        f"{step.node_id}; keeping value from {winner}"
                    )
                    logger.warning(f"Join {node_id} of {execution_id}: {message}")
                    warnings.append(message)
                    if not keep_new:
                        continue
                snapshot[key] = value
                writers[key] = step.node_id
        return snapshot, warnings

    async def _dispatch(
        self,
        execution_id: str,
        workflow: Workflow,
        node_id: str,
        snapshot: Dict[str, Any],
        warnings: List[str],
    ) -> None:
        node = workflow.node(node_id)
        step, created = await self._store.create_step(
            WorkflowStep(
                execution_id=execution_id,
                node_id=node_id,
                node_type=node.type.value,
                input=snapshot,
                warnings=warnings,
            )
        )
        if not created:
            logger.debug(f"Step {node_id} of {execution_id} already exists")
            return
        await self._events.step_changed(
            execution_id, node_id, step.id, None, StepStatus.PENDING.value
        )
        await self._transport.publish(
            self._config.topics.steps,
            EngineMessage.dispatch(execution_id, node_id, step.id, step.attempt),
        )
        logger.info(f"Dispatched {node_id} ({node.type.value}) for {execution_id}")

    async def _skip_node(
        self,
        workflow: Workflow,
        plan: CompiledPlan,
        execution_id: str,
        node_id: str,
        reason: str,
    ) -> None:
        node = workflow.node(node_id)
        pending = WorkflowStep(
            execution_id=execution_id, node_id=node_id, node_type=node.type.value
        )
        step, created = await self._store.create_step(
            pending.transition(StepStatus.SKIPPED)
        )
        if not created:
            return
        logger.info(f"Skipped {node_id} of {execution_id} ({reason})")
        await self._events.step_changed(
            execution_id, node_id, step.id, None, StepStatus.SKIPPED.value, reason=reason
        )
        await self._propagate(workflow, plan, step)

    async def _skip_step(
        self, workflow: Workflow, plan: CompiledPlan, step_id: str, reason: str
    ) -> None:
        """Skip an existing step still waiting to run or for a decision."""

        async def mark() -> Tuple[Optional[WorkflowStep], Optional[WorkflowStep]]:
            current = await self._store.get_step(step_id)
            if current is None:
                return None, None
            if current.status != StepStatus.PENDING and not current.waiting:
                return current, None
            return current, await self._store.update_step(
                current.transition(StepStatus.SKIPPED)
            )

        before, skipped = await retry_on_conflict(mark)
        if skipped is None:
            return
        logger.info(f"Skipped {skipped.node_id} of {skipped.execution_id} ({reason})")
        await self._step_changed(before, skipped, reason=reason)
        await self._propagate(workflow, plan, skipped)

    # ------------------------------------------------------------------
    # Execution state
    async def _merge_variables(self, execution_id: str, output: Dict[str, Any]) -> None:
        if not output:
            return

        async def merge() -> None:
            execution = await self._require_execution(execution_id)
            variables = dict(execution.variables)
            _layer(variables, output)
            await self._store.update_execution(
                execution.model_copy(update={"variables": variables}, deep=True)
            )

        await retry_on_conflict(merge)

    async def _maybe_complete(self, execution_id: str, plan: CompiledPlan) -> None:
        """Finish the execution once every node has a terminal step."""
        steps = await self._store.list_steps(execution_id)
        if len(steps) < plan.size or not all(s.status.is_terminal for s in steps):
            return

        succeeded = any(
            s.status == StepStatus.SUCCEEDED and plan.is_sink(s.node_id) for s in steps
        )
        error = None
        if not succeeded:
            failed = next((s for s in steps if s.status == StepStatus.FAILED), None)
            if failed is not None and failed.error is not None:
                error = failed.error
            else:
                error = ErrorInfo(
                    code="NO_SUCCESSFUL_PATH",
                    message="No terminal node completed successfully",
                )
        status = ExecutionStatus.COMPLETED if succeeded else ExecutionStatus.FAILED

        async def finish() -> Optional[WorkflowExecution]:
            execution = await self._require_execution(execution_id)
            if execution.status != ExecutionStatus.RUNNING:
                return None
            return await self._store.update_execution(
                execution.transition(status, error=error)
            )

        finished = await retry_on_conflict(finish)
        if finished is None:
            return
        await self._events.execution_changed(
            execution_id, ExecutionStatus.RUNNING.value, status.value
        )
        if succeeded:
            logger.info(f"Execution {execution_id} completed")
        else:
            logger.error(f"Execution {execution_id} failed: {error.code} {error.message}")

    # ------------------------------------------------------------------
    # Helpers
    async def _update_running_step(
        self, step_id: str, attempt: int, mutate: StepMutation
    ) -> Optional[WorkflowStep]:
        """CAS ``mutate`` onto the step while it is still RUNNING ``attempt``.

        Returns None when another caller already moved the step on.
        """

        async def apply() -> Optional[WorkflowStep]:
            current = await self._store.get_step(step_id)
            if (
                current is None
                or current.status != StepStatus.RUNNING
                or current.attempt != attempt
            ):
                return None
            updated = mutate(current)
            if updated is None:
                return None
            return await self._store.update_step(updated)

        return await retry_on_conflict(apply)

    async def _step_changed(
        self, before: WorkflowStep, after: WorkflowStep, **detail: Any
    ) -> None:
        await self._events.step_changed(
            after.execution_id,
            after.node_id,
            after.id,
            before.status.value,
            after.status.value,
            **detail,
        )

    async def _require_execution(self, execution_id: str) -> WorkflowExecution:
        execution = await self._store.get_execution(execution_id)
        if execution is None:
            raise NotFoundError(f"Execution {execution_id} not found")
        return execution

    async def _require_step(self, execution_id: str, step_id: str) -> WorkflowStep:
        step = await self._store.get_step(step_id)
        if step is None or step.execution_id != execution_id:
            raise NotFoundError(f"Step {step_id} not found in execution {execution_id}")
        return step

    async def _workflow_and_plan(
        self, execution_id: str
    ) -> Tuple[Workflow, CompiledPlan]:
        execution = await self._require_execution(execution_id)
        workflow = await self._store.get_workflow(
            execution.workflow_id, execution.workflow_version
        )
        if workflow is None:
            raise NotFoundError(
                f"Workflow {execution.workflow_id} v{execution.workflow_version} not found"
            )
        return workflow, self._plans.get(workflow)


def _layer(target: Dict[str, Any], values: Optional[Dict[str, Any]]) -> None:
    """Apply ``values`` onto ``target``; the reserved errors map merges key-wise."""
    for key, value in (values or {}).items():
        if key == ERRORS_KEY and isinstance(value, dict):
            target[key] = {**target.get(key, {}), **value}
        else:
            target[key] = value
