"""Graph validation and compilation into an index-based execution plan."""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict

from ..constants import DEFAULT_PLAN_CACHE_SIZE
from ..errors import CompilationError
from .model import Workflow

logger = logging.getLogger(__name__)

_UNVISITED, _IN_PROGRESS, _DONE = 0, 1, 2


class CompiledPlan(BaseModel):
    """Validated, execution-ready form of a workflow graph.

    Nodes and edges are addressed by integer index; every adjacency list
    keeps edge declaration order so merges at join nodes are deterministic.
    """

    model_config = ConfigDict(frozen=True)

    workflow_id: str
    version: int
    node_ids: Tuple[str, ...]
    index: Dict[str, int]
    edges: Tuple[Tuple[int, int], ...]
    branches: Tuple[Optional[str], ...]
    predecessors: Tuple[Tuple[int, ...], ...]
    successors: Tuple[Tuple[int, ...], ...]
    incoming: Tuple[Tuple[int, ...], ...]
    outgoing: Tuple[Tuple[int, ...], ...]
    entry: Tuple[int, ...]
    order: Tuple[int, ...]

    @property
    def size(self) -> int:
        return len(self.node_ids)

    def entry_nodes(self) -> List[str]:
        return [self.node_ids[i] for i in self.entry]

    def predecessors_of(self, node_id: str) -> List[str]:
        return [self.node_ids[i] for i in self.predecessors[self.index[node_id]]]

    def successors_of(self, node_id: str) -> List[str]:
        return [self.node_ids[i] for i in self.successors[self.index[node_id]]]

    def incoming_edges(self, node_id: str) -> List[Tuple[str, Optional[str]]]:
        """Return ``(source, branch)`` pairs in edge declaration order."""
        return [
            (self.node_ids[self.edges[e][0]], self.branches[e])
            for e in self.incoming[self.index[node_id]]
        ]

    def outgoing_edges(self, node_id: str) -> List[Tuple[str, Optional[str]]]:
        """Return ``(target, branch)`` pairs in edge declaration order."""
        return [
            (self.node_ids[self.edges[e][1]], self.branches[e])
            for e in self.outgoing[self.index[node_id]]
        ]

    def is_sink(self, node_id: str) -> bool:
        return not self.successors[self.index[node_id]]

    def topological_order(self) -> List[str]:
        return [self.node_ids[i] for i in self.order]


def compile_workflow(workflow: Workflow) -> CompiledPlan:
    """Validate ``workflow`` and build its :class:`CompiledPlan`.

    Raises:
        CompilationError: For empty graphs, duplicate node ids, dangling or
            duplicate edges, cycles, or graphs without an entry node.
    """
    if not workflow.nodes:
        raise CompilationError(f"Workflow {workflow.id} has no nodes")

    index: Dict[str, int] = {}
    for position, node in enumerate(workflow.nodes):
        if node.id in index:
            raise CompilationError(f"Duplicate node id '{node.id}'")
        index[node.id] = position

    size = len(index)
    predecessors: List[List[int]] = [[] for _ in range(size)]
    successors: List[List[int]] = [[] for _ in range(size)]
    incoming: List[List[int]] = [[] for _ in range(size)]
    outgoing: List[List[int]] = [[] for _ in range(size)]
    edges: List[Tuple[int, int]] = []
    seen: set[Tuple[int, int]] = set()

    for edge_index, edge in enumerate(workflow.edges):
        missing = [end for end in (edge.source, edge.target) if end not in index]
        if missing:
            raise CompilationError(
                f"Edge {edge.source} -> {edge.target} references unknown node(s): "
                f"{', '.join(missing)}",
                details={"edge": edge_index},
            )
        source, target = index[edge.source], index[edge.target]
        if (source, target) in seen:
            raise CompilationError(
                f"Duplicate edge {edge.source} -> {edge.target}",
                details={"edge": edge_index},
            )
        seen.add((source, target))
        edges.append((source, target))
        predecessors[target].append(source)
        successors[source].append(target)
        incoming[target].append(edge_index)
        outgoing[source].append(edge_index)

    node_ids = tuple(node.id for node in workflow.nodes)
    order = _topological_order(node_ids, successors)

    entry = tuple(i for i in range(size) if not predecessors[i])
    if not entry:
        raise CompilationError(f"Workflow {workflow.id} has no entry node")

    plan = CompiledPlan(
        workflow_id=workflow.id,
        version=workflow.version,
        node_ids=node_ids,
        index=index,
        edges=tuple(edges),
        branches=tuple(edge.branch for edge in workflow.edges),
        predecessors=tuple(tuple(p) for p in predecessors),
        successors=tuple(tuple(s) for s in successors),
        incoming=tuple(tuple(i) for i in incoming),
        outgoing=tuple(tuple(o) for o in outgoing),
        entry=entry,
        order=order,
    )
    logger.debug(
        f"Compiled workflow {workflow.id} v{workflow.version}: "
        f"{size} nodes, {len(edges)} edges, entry={plan.entry_nodes()}"
    )
    return plan


def _topological_order(
    node_ids: Tuple[str, ...], successors: List[List[int]]
) -> Tuple[int, ...]:
    """Depth-first topological sort with three-colour marking.

    A successor found in progress closes a cycle; the offending path is
    reported starting and ending at the same node.
    """
    color = [_UNVISITED] * len(node_ids)
    postorder: List[int] = []

    for root in range(len(node_ids)):
        if color[root] != _UNVISITED:
            continue
        color[root] = _IN_PROGRESS
        path = [root]
        pending = [iter(successors[root])]
        while pending:
            current = path[-1]
            for nxt in pending[-1]:
                if color[nxt] == _IN_PROGRESS:
                    start = path.index(nxt)
                    cycle = [node_ids[i] for i in path[start:]] + [node_ids[nxt]]
                    raise CompilationError(
                        f"Workflow graph contains a cycle: {' -> '.join(cycle)}",
                        cycle=cycle,
                    )
                if color[nxt] == _UNVISITED:
                    color[nxt] = _IN_PROGRESS
                    path.append(nxt)
                    pending.append(iter(successors[nxt]))
                    break
            else:
                pending.pop()
                path.pop()
                color[current] = _DONE
                postorder.append(current)

    return tuple(reversed(postorder))


class PlanCache:
    """LRU cache of compiled plans keyed by ``(workflow_id, version)``.

    Compilation is deterministic, so concurrent misses for the same key only
    waste work.
    """

    def __init__(self, max_size: int = DEFAULT_PLAN_CACHE_SIZE) -> None:
        self._max_size = max_size
        self._plans: "OrderedDict[Tuple[str, int], CompiledPlan]" = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._plans)

    def get(self, workflow: Workflow) -> CompiledPlan:
        key = (workflow.id, workflow.version)
        with self._lock:
            plan = self._plans.get(key)
            if plan is not None:
                self._plans.move_to_end(key)
                return plan

        plan = compile_workflow(workflow)
        with self._lock:
            self._plans[key] = plan
            self._plans.move_to_end(key)
            while len(self._plans) > self._max_size:
                self._plans.popitem(last=False)
        return plan

    def clear(self) -> None:
        with self._lock:
            self._plans.clear()
