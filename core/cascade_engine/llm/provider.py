"""Generation client abstraction - the per-node AI call behind a cascade."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from cascade_engine.schemas.run_state import TokenUsage
from cascade_engine.tree.node import PromptNode


@dataclass
class GenerationContext:
    """What a generation client knows about the cascade around a node."""

    run_id: str
    root: PromptNode
    parent: PromptNode | None = None
    level_index: int = 0
    node_index: int = 0  # 1-based across the run
    total_nodes: int = 0
    variables: dict[str, str] = field(default_factory=dict)
    skip_all_previews: bool = False


@dataclass
class GenerationOutput:
    """Result of one generation call."""

    text: str
    usage: TokenUsage | None = None
    latency_ms: int | None = None
    model: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def tokens_used(self) -> int:
        return self.usage.total_tokens if self.usage else 0


class GenerationClient(ABC):
    """
    Abstract generation client - plug in any AI backend.

    Implementations raise:
    - NodeGenerationError for a failure of this one call
    - StructuralError for auth, configuration or connectivity failures
      that make every following call pointless
    Any other exception is treated by the executor as a per-node failure.
    """

    @abstractmethod
    async def generate(self, node: PromptNode, context: GenerationContext) -> GenerationOutput:
        """Run the generation for ``node``."""
        raise NotImplementedError
