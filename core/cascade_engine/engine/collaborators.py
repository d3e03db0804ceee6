"""Collaborators the executor calls around each generation."""

from typing import Protocol, runtime_checkable

from cascade_engine.llm.provider import GenerationContext, GenerationOutput
from cascade_engine.tree.node import PromptNode


@runtime_checkable
class InputResolver(Protocol):
    """Resolves the effective generation variables of a node."""

    async def resolve(self, node: PromptNode, context: GenerationContext) -> dict[str, str]: ...


@runtime_checkable
class ResultSink(Protocol):
    """Persists the result of a successful generation."""

    async def save(
        self, node: PromptNode, output: GenerationOutput, context: GenerationContext
    ) -> None: ...


class DefaultInputResolver:
    """Cascade variables overlaid with the node's own ``payload["variables"]``."""

    async def resolve(self, node: PromptNode, context: GenerationContext) -> dict[str, str]:
        variables = dict(context.variables)
        user_vars = node.payload.get("variables") or {}
        for name, value in user_vars.items():
            if name:
                variables[name] = "" if value is None else str(value)
        return variables


class NullResultSink:
    """Keeps nothing. Results stay available on the run state."""

    async def save(
        self, node: PromptNode, output: GenerationOutput, context: GenerationContext
    ) -> None:
        return None


class InMemoryResultSink:
    """Stores results per node id; handy for tests and the CLI."""

    def __init__(self):
        self.results: dict[str, GenerationOutput] = {}

    async def save(
        self, node: PromptNode, output: GenerationOutput, context: GenerationContext
    ) -> None:
        self.results[node.id] = output
