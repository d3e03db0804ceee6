"""Prompt tree interface and level planning."""

from cascade_engine.tree.node import InMemoryTreeProvider, NodeId, PromptNode, TreeProvider
from cascade_engine.tree.planner import CascadeLevel, CascadePlan, LevelPlanner

__all__ = [
    "CascadeLevel",
    "CascadePlan",
    "InMemoryTreeProvider",
    "LevelPlanner",
    "NodeId",
    "PromptNode",
    "TreeProvider",
]
