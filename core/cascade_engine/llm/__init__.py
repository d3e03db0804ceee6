"""Generation client abstraction."""

from cascade_engine.llm.litellm import LiteLLMGenerationClient
from cascade_engine.llm.mock import MockGenerationClient
from cascade_engine.llm.provider import GenerationClient, GenerationContext, GenerationOutput

__all__ = [
    "GenerationClient",
    "GenerationContext",
    "GenerationOutput",
    "LiteLLMGenerationClient",
    "MockGenerationClient",
]
