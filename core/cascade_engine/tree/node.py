"""
Prompt tree interface consumed by the cascade engine.

The engine only needs identity, ordering and the cascade flags of each
node. Everything else a prompt carries (text, model settings, variables)
lives in ``payload`` and is read by collaborators, never by the engine.
"""

import json
from collections.abc import Awaitable, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

NodeId = str


def _first_present(record: dict[str, Any], *keys: str) -> Any:
    """First value under ``keys`` that is neither None nor empty. Numeric 0 counts."""
    for key in keys:
        value = record.get(key)
        if value is not None and value != "":
            return value
    return None


@dataclass
class PromptNode:
    """A node of the prompt tree."""

    id: NodeId
    name: str = ""
    parent_id: NodeId | None = None
    position: str = ""  # lexicographic sort key among siblings
    is_assistant: bool = False
    exclude_from_cascade: bool = False
    is_deleted: bool = False
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def display_name(self) -> str:
        return self.name or self.id

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "PromptNode":
        """Build a node from an exported row (``row_id``/``prompt_name`` style or plain keys)."""
        node_id = _first_present(record, "id", "row_id")
        if node_id is None:
            raise ValueError(f"Prompt record has no id: {record!r}")

        known = {
            "id",
            "row_id",
            "name",
            "prompt_name",
            "parent_id",
            "parent_row_id",
            "position",
            "position_lex",
            "is_assistant",
            "exclude_from_cascade",
            "is_deleted",
            "payload",
        }
        payload = dict(record.get("payload") or {})
        payload.update({k: v for k, v in record.items() if k not in known})
        parent_id = _first_present(record, "parent_id", "parent_row_id")

        return cls(
            id=str(node_id),
            name=record.get("name") or record.get("prompt_name") or "",
            parent_id=str(parent_id) if parent_id is not None else None,
            position=str(record.get("position") or record.get("position_lex") or ""),
            is_assistant=bool(record.get("is_assistant", False)),
            exclude_from_cascade=bool(record.get("exclude_from_cascade", False)),
            is_deleted=bool(record.get("is_deleted", False)),
            payload=payload,
        )


@runtime_checkable
class TreeProvider(Protocol):
    """
    Read contract of the prompt tree.

    Either method may return a plain value or an awaitable; the planner
    handles both so database-backed providers can be async.
    """

    def get_node(self, node_id: NodeId) -> PromptNode | None | Awaitable[PromptNode | None]: ...

    def children_of(self, node_id: NodeId) -> list[PromptNode] | Awaitable[list[PromptNode]]: ...


class InMemoryTreeProvider:
    """
    Tree provider over an in-memory list of nodes.

    Children are returned in sibling order: position key, then name, then id.
    Soft-deleted nodes are hidden from ``children_of`` and ``get_node``.

    Example:
        tree = InMemoryTreeProvider([
            PromptNode(id="root", name="Root", is_assistant=True),
            PromptNode(id="a", name="A", parent_id="root", position="a0"),
        ])
        tree.children_of("root")  # [PromptNode(id="a", ...)]
    """

    def __init__(self, nodes: Iterable[PromptNode] = ()):
        self._nodes: dict[NodeId, PromptNode] = {}
        self._children: dict[NodeId, list[NodeId]] = {}
        for node in nodes:
            self.add(node)

    def add(self, node: PromptNode) -> None:
        """Add or replace a node."""
        previous = self._nodes.get(node.id)
        if previous is not None and previous.parent_id is not None:
            siblings = self._children.get(previous.parent_id, [])
            if node.id in siblings:
                siblings.remove(node.id)

        self._nodes[node.id] = node
        if node.parent_id is not None:
            self._children.setdefault(node.parent_id, []).append(node.id)

    def get_node(self, node_id: NodeId) -> PromptNode | None:
        node = self._nodes.get(node_id)
        if node is None or node.is_deleted:
            return None
        return node

    def children_of(self, node_id: NodeId) -> list[PromptNode]:
        children = [self._nodes[cid] for cid in self._children.get(node_id, [])]
        children = [c for c in children if not c.is_deleted]
        return sorted(children, key=lambda c: (c.position, c.name, c.id))

    def __len__(self) -> int:
        return len(self._nodes)

    @classmethod
    def from_records(cls, records: Iterable[dict[str, Any]]) -> "InMemoryTreeProvider":
        return cls(PromptNode.from_record(r) for r in records)

    @classmethod
    def from_json_file(cls, path: str | Path) -> "InMemoryTreeProvider":
        """
        Load a tree export.

        Accepts either a flat list of records or ``{"prompts": [...]}``.
        """
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        if isinstance(data, dict):
            data = data.get("prompts", [])
        if not isinstance(data, list):
            raise ValueError(f"Unsupported tree export format in {path}")
        return cls.from_records(data)
