"""Control-flow executors: condition, approval, delay and merge."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Mapping

from ..constants import CONDITION_FALSE, CONDITION_TRUE
from ..errors import ExecutorError
from .base import ExecutorContext, ExecutorResult, NodeExecutor, render_template
from .expressions import ExpressionError, evaluate_bool

logger = logging.getLogger(__name__)


class ConditionExecutor(NodeExecutor):
    """Evaluates ``params.expression`` and activates the matching branch."""

    async def execute(
        self, input: Mapping[str, Any], context: ExecutorContext
    ) -> ExecutorResult:
        expression = context.params.get("expression")
        if not expression:
            raise ExecutorError(f"Condition node {context.node_id} has no expression")
        try:
            outcome = evaluate_bool(expression, input)
        except ExpressionError as exc:
            raise ExecutorError(f"Condition {context.node_id}: {exc}") from exc

        branch = CONDITION_TRUE if outcome else CONDITION_FALSE
        logger.debug(f"Condition {context.node_id} -> {branch}")
        output = {}
        if context.params.get("output_key"):
            output[context.params["output_key"]] = outcome
        return ExecutorResult.success(output, branches=[branch])


class ApprovalExecutor(NodeExecutor):
    """Suspends the step until a human decision arrives.

    The decision is fed back through the coordinator's ``decide``; this
    executor only describes what is being waited for.
    """

    async def execute(
        self, input: Mapping[str, Any], context: ExecutorContext
    ) -> ExecutorResult:
        return ExecutorResult.suspended(
            {
                "prompt": render_template(context.params.get("prompt", ""), input),
                "approvers": list(context.params.get("approvers", [])),
            }
        )


class DelayExecutor(NodeExecutor):
    """Waits ``params.seconds`` or until ``params.until`` (ISO timestamp).

    The wait is handed to the queue as a delayed resume job rather than
    sleeping in the worker.
    """

    async def execute(
        self, input: Mapping[str, Any], context: ExecutorContext
    ) -> ExecutorResult:
        if context.resumed:
            return ExecutorResult.success()

        seconds = _delay_seconds(render_template(context.params, input))
        if seconds <= 0:
            return ExecutorResult.success()
        return ExecutorResult.deferred(seconds)


def _delay_seconds(params: Mapping[str, Any]) -> float:
    if params.get("until"):
        try:
            until = datetime.fromisoformat(str(params["until"]))
        except ValueError as exc:
            raise ExecutorError(f"Invalid delay timestamp: {params['until']!r}") from exc
        if until.tzinfo is None:
            until = until.replace(tzinfo=timezone.utc)
        return (until - datetime.now(timezone.utc)).total_seconds()
    try:
        return float(params.get("seconds", 0))
    except (TypeError, ValueError) as exc:
        raise ExecutorError(f"Invalid delay: {params.get('seconds')!r}") from exc


class MergeExecutor(NodeExecutor):
    """Pass-through for the merged join snapshot.

    With ``params.select`` the listed variables are copied into
    ``output_key`` (default node id).
    """

    async def execute(
        self, input: Mapping[str, Any], context: ExecutorContext
    ) -> ExecutorResult:
        select = context.params.get("select")
        if not select:
            return ExecutorResult.success()
        return ExecutorResult.success(
            {context.output_key(): {key: input.get(key) for key in select}}
        )
