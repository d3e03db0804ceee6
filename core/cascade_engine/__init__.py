"""
Cascade execution engine for prompt trees.

Walks a prompt tree level by level, runs one generation per eligible node
in strict order, and lets an operator pause, resume or cancel between
nodes while observers follow a live run state.
"""

from cascade_engine.config import CascadeConfig
from cascade_engine.engine import (
    CascadeExecutor,
    CascadeResult,
    ErrorAction,
    InMemoryResultSink,
)
from cascade_engine.errors import (
    CascadeAlreadyRunningError,
    CascadeError,
    GenerationError,
    NodeGenerationError,
    RootNotFoundError,
    StructuralError,
)
from cascade_engine.llm import (
    GenerationClient,
    GenerationContext,
    GenerationOutput,
    LiteLLMGenerationClient,
    MockGenerationClient,
)
from cascade_engine.runtime import CascadeEvent, EventBus, EventType, RunStateStore
from cascade_engine.schemas import RunState, RunStatus
from cascade_engine.tree import (
    CascadePlan,
    InMemoryTreeProvider,
    LevelPlanner,
    PromptNode,
    TreeProvider,
)

__all__ = [
    "CascadeAlreadyRunningError",
    "CascadeConfig",
    "CascadeError",
    "CascadeEvent",
    "CascadeExecutor",
    "CascadePlan",
    "CascadeResult",
    "ErrorAction",
    "EventBus",
    "EventType",
    "GenerationClient",
    "GenerationContext",
    "GenerationError",
    "GenerationOutput",
    "InMemoryResultSink",
    "InMemoryTreeProvider",
    "LevelPlanner",
    "LiteLLMGenerationClient",
    "MockGenerationClient",
    "NodeGenerationError",
    "PromptNode",
    "RootNotFoundError",
    "RunState",
    "RunStateStore",
    "RunStatus",
    "StructuralError",
    "TreeProvider",
]
