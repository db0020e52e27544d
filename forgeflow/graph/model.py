"""Immutable workflow definition: nodes, typed edges and policies."""

from __future__ import annotations

import hashlib
import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

from ..constants import (
    DEFAULT_BACKOFF_BASE,
    DEFAULT_BACKOFF_MULTIPLIER,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_BACKOFF,
)


class NodeType(str, Enum):
    """Closed set of node capabilities understood by the executor registry."""

    AGENT = "agent"
    TASK_MUTATION = "task_mutation"
    CONDITION = "condition"
    APPROVAL = "approval"
    INTEGRATION = "integration"
    DELAY = "delay"
    MERGE = "merge"


class JoinPolicy(str, Enum):
    """How a node with several predecessors decides to run."""

    ALL = "all"
    ANY = "any"


class MergePolicy(str, Enum):
    """Which value survives when parallel branches write the same variable."""

    LAST_WINS = "last_wins"
    FIRST_WINS = "first_wins"


class BackoffStrategy(str, Enum):
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


class RetryPolicy(BaseModel):
    """Retry configuration for a node or a whole workflow."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1)
    backoff_base: float = Field(default=DEFAULT_BACKOFF_BASE, ge=0)
    multiplier: float = Field(default=DEFAULT_BACKOFF_MULTIPLIER, ge=1)
    max_backoff: float = Field(default=DEFAULT_MAX_BACKOFF, ge=0)
    strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    jitter: float = Field(default=0.0, ge=0)


class Node(BaseModel):
    """A single step definition within a workflow."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    type: NodeType
    name: Optional[str] = None
    params: Dict[str, Any] = Field(default_factory=dict)
    retry: Optional[RetryPolicy] = None
    timeout_seconds: Optional[float] = Field(default=None, gt=0)
    continue_on_failure: bool = False
    join: JoinPolicy = JoinPolicy.ALL


class Edge(BaseModel):
    """Directed dependency between two nodes.

    ``branch`` restricts the edge to results that name it among their
    active branches (condition and approval nodes).
    """

    model_config = ConfigDict(frozen=True)

    source: str
    target: str
    branch: Optional[str] = None


class Workflow(BaseModel):
    """Versioned workflow definition. Never mutated once published."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    version: int = Field(default=1, ge=1)
    name: Optional[str] = None
    nodes: Tuple[Node, ...] = ()
    edges: Tuple[Edge, ...] = ()
    retry: Optional[RetryPolicy] = None
    timeout_seconds: Optional[float] = Field(default=None, gt=0)
    variable_schema: Dict[str, Any] = Field(default_factory=dict)
    merge_policy: MergePolicy = MergePolicy.LAST_WINS
    published: bool = False
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    _node_index: Dict[str, Node] = PrivateAttr(default_factory=dict)

    def model_post_init(self, __context: Any) -> None:
        self._node_index = {node.id: node for node in self.nodes}

    def node(self, node_id: str) -> Node:
        return self._node_index[node_id]

    def retry_policy_for(
        self, node: Node, default: Optional[RetryPolicy] = None
    ) -> RetryPolicy:
        """Node policy, else the workflow default, else ``default``."""
        return node.retry or self.retry or default or RetryPolicy()

    def timeout_for(self, node: Node, default: float) -> float:
        return node.timeout_seconds or self.timeout_seconds or default

    def fingerprint(self) -> str:
        """Hash of everything that affects execution semantics.

        Version, publication flag and timestamps are excluded so two saves of
        the same structure produce the same fingerprint.
        """
        data = self.model_dump(
            mode="json", exclude={"version", "published", "created_at", "name"}
        )
        encoded = json.dumps(data, sort_keys=True).encode()
        return hashlib.sha256(encoded).hexdigest()
