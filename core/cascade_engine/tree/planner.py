"""
Level Planner - computes the breadth-first execution plan of a cascade.

The root is the conversation context and never executes. Level 0 holds
the root's eligible children, each following level the eligible nodes one
depth further down, in the provider's sibling order.

Eligibility:
- soft-deleted nodes are invisible together with their sub-tree
- ``exclude_from_cascade`` skips only the flagged node; its children are
  still traversed and may run
"""

import inspect
import logging
from dataclasses import dataclass, field
from typing import Any

from cascade_engine.errors import RootNotFoundError
from cascade_engine.schemas.run_state import SkippedNode, SkipReason
from cascade_engine.tree.node import NodeId, PromptNode, TreeProvider

logger = logging.getLogger(__name__)

# Payload keys that count as prompt content for the pre-flight check
CONTENT_KEYS = ("user_prompt", "system_prompt", "input_user_prompt", "input_admin_prompt")


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


@dataclass
class CascadeLevel:
    """Eligible nodes sharing one depth below the root."""

    index: int  # position in the plan (empty depths are not counted)
    depth: int  # tree depth relative to the root, children of root = 1
    node_ids: list[NodeId] = field(default_factory=list)


@dataclass
class CascadePlan:
    """Result of planning a cascade."""

    root: PromptNode
    cascade_levels: list[CascadeLevel] = field(default_factory=list)
    nodes: dict[NodeId, PromptNode] = field(default_factory=dict)
    skipped: list[SkippedNode] = field(default_factory=list)
    content_warnings: list[NodeId] = field(default_factory=list)

    @property
    def levels(self) -> list[list[NodeId]]:
        return [list(level.node_ids) for level in self.cascade_levels]

    @property
    def total_levels(self) -> int:
        return len(self.cascade_levels)

    @property
    def total_node_count(self) -> int:
        return sum(len(level.node_ids) for level in self.cascade_levels)

    @property
    def node_order(self) -> list[NodeId]:
        """Flattened execution order across all levels."""
        return [nid for level in self.cascade_levels for nid in level.node_ids]

    def parent_of(self, node_id: NodeId) -> PromptNode | None:
        node = self.nodes.get(node_id)
        if node is None or node.parent_id is None:
            return None
        if node.parent_id == self.root.id:
            return self.root
        return self.nodes.get(node.parent_id)


def has_content(node: PromptNode) -> bool:
    return any(str(node.payload.get(key) or "").strip() for key in CONTENT_KEYS)


class LevelPlanner:
    """
    Plans cascades over a tree provider.

    Example:
        planner = LevelPlanner(tree)
        plan = await planner.plan("root")
        plan.levels  # [["a", "b"], ["c"]]
    """

    def __init__(self, tree: TreeProvider):
        self.tree = tree

    async def plan(self, root_id: NodeId) -> CascadePlan:
        """
        Build the level plan for ``root_id``.

        Raises:
            RootNotFoundError: root missing or soft-deleted
        """
        root = await _maybe_await(self.tree.get_node(root_id))
        if root is None or root.is_deleted:
            raise RootNotFoundError(root_id)

        plan = CascadePlan(root=root)
        plan.nodes[root.id] = root
        seen: set[NodeId] = {root.id}

        frontier: list[PromptNode] = [root]
        depth = 0
        while frontier:
            depth += 1
            next_frontier: list[PromptNode] = []
            eligible: list[NodeId] = []

            for parent in frontier:
                children = await _maybe_await(self.tree.children_of(parent.id))
                for child in children or []:
                    if child.is_deleted:
                        continue
                    if child.id in seen:
                        logger.warning(
                            f"Node {child.id} reached twice while planning root {root_id}, ignoring"
                        )
                        continue
                    seen.add(child.id)
                    plan.nodes[child.id] = child
                    next_frontier.append(child)

                    if child.exclude_from_cascade:
                        plan.skipped.append(
                            SkippedNode(
                                node_id=child.id,
                                node_name=child.display_name,
                                reason=SkipReason.EXCLUDED_FLAG,
                            )
                        )
                        continue

                    eligible.append(child.id)
                    if not has_content(child):
                        plan.content_warnings.append(child.id)

            if eligible:
                plan.cascade_levels.append(
                    CascadeLevel(index=len(plan.cascade_levels), depth=depth, node_ids=eligible)
                )
            frontier = next_frontier

        del plan.nodes[root.id]

        if plan.content_warnings:
            names = ", ".join(plan.nodes[nid].display_name for nid in plan.content_warnings)
            logger.warning(
                f"{len(plan.content_warnings)} prompt(s) have no content: {names}",
                extra={"event": "content_validation_warning"},
            )

        logger.info(
            f"Planned cascade for {root.display_name}: "
            f"{plan.total_node_count} prompts across {plan.total_levels} levels "
            f"({len(plan.skipped)} excluded)"
        )
        return plan
