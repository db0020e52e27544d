"""Agent node executor."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field

from ..errors import ExecutorError
from .base import ExecutorContext, ExecutorResult, NodeExecutor, render_template

if TYPE_CHECKING:
    from pydantic_ai import Agent  # noqa: F401

logger = logging.getLogger(__name__)


class AgentLike(Protocol):
    """Anything with a pydantic-ai style ``run`` coroutine."""

    async def run(self, prompt: str, deps: Any = None) -> Any:
        ...


class AgentDependencies(BaseModel):
    """Dependencies passed to the agent for one step attempt."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    execution_id: str
    node_id: str
    idempotency_key: str
    variables: Dict[str, Any] = Field(default_factory=dict)
    extra: Any = None


class AgentExecutor(NodeExecutor):
    """Runs the agent named by the node's ``agent`` param.

    Node params:
        agent: registered agent name.
        prompt: template formatted with the snapshot variables.
        output_key: where the result lands (defaults to the node id).
    """

    def __init__(
        self,
        agents: Optional[Mapping[str, AgentLike]] = None,
        deps: Any = None,
    ) -> None:
        self._agents: Dict[str, AgentLike] = dict(agents or {})
        self._deps = deps

    def register(self, name: str, agent: "AgentLike | Agent") -> None:
        self._agents[name] = agent

    async def execute(
        self, input: Mapping[str, Any], context: ExecutorContext
    ) -> ExecutorResult:
        name = context.params.get("agent")
        agent = self._agents.get(name) if name else None
        if agent is None:
            raise ExecutorError(f"Agent '{name}' is not registered")

        prompt = render_template(context.params.get("prompt", ""), input)
        deps = AgentDependencies(
            execution_id=context.execution_id,
            node_id=context.node_id,
            idempotency_key=context.idempotency_key,
            variables=dict(input),
            extra=self._deps,
        )
        result = await agent.run(prompt, deps=deps)
        logger.info(
            f"Agent {name} completed for execution {context.execution_id} "
            f"node {context.node_id}"
        )
        return ExecutorResult.success({context.output_key(): _agent_output(result)})


def _agent_output(result: Any) -> Any:
    output = result.output if hasattr(result, "output") else result
    if isinstance(output, BaseModel):
        return output.model_dump(mode="json")
    if output is None or isinstance(output, (str, int, float, bool, list, dict)):
        return output
    return str(output)
