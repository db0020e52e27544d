"""Workflow graph model and compiler."""

from __future__ import annotations

from .compiler import CompiledPlan, PlanCache, compile_workflow
from .model import (
    BackoffStrategy,
    Edge,
    JoinPolicy,
    MergePolicy,
    Node,
    NodeType,
    RetryPolicy,
    Workflow,
)

__all__ = [
    "BackoffStrategy",
    "CompiledPlan",
    "Edge",
    "JoinPolicy",
    "MergePolicy",
    "Node",
    "NodeType",
    "PlanCache",
    "RetryPolicy",
    "Workflow",
    "compile_workflow",
]
