"""LiteLLM-backed generation client.

Turns a prompt node into a chat completion request. Prompt text lives in
the node payload (``input_user_prompt``/``user_prompt`` and
``input_admin_prompt``/``system_prompt``); ``{{name}}`` placeholders are
filled from the cascade variables handed over in the context.
"""

import logging
import re
import time
from typing import Any

import litellm

from cascade_engine.config import CascadeConfig
from cascade_engine.errors import NodeGenerationError, StructuralError
from cascade_engine.llm.provider import GenerationClient, GenerationContext, GenerationOutput
from cascade_engine.schemas.run_state import TokenUsage
from cascade_engine.tree.node import PromptNode

logger = logging.getLogger(__name__)

DEFAULT_FALLBACK_MESSAGE = "Execute this prompt"

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")

# Errors after which every further call would fail the same way
STRUCTURAL_ERRORS: tuple[type[Exception], ...] = (
    litellm.AuthenticationError,
    litellm.PermissionDeniedError,
    litellm.NotFoundError,
    litellm.APIConnectionError,
)


def fill_placeholders(text: str, variables: dict[str, str]) -> str:
    """Replace ``{{name}}`` with its variable value. Unknown names are left as-is."""

    def replace(match: re.Match) -> str:
        name = match.group(1)
        if name in variables:
            return str(variables[name])
        return match.group(0)

    return PLACEHOLDER_PATTERN.sub(replace, text)


def _payload_text(node: PromptNode, *keys: str) -> str:
    for key in keys:
        value = str(node.payload.get(key) or "").strip()
        if value:
            return value
    return ""


class LiteLLMGenerationClient(GenerationClient):
    """
    Generation client calling ``litellm.acompletion``.

    Example:
        client = LiteLLMGenerationClient(CascadeConfig(model="gpt-4o-mini"))
        output = await client.generate(node, context)
    """

    def __init__(
        self,
        config: CascadeConfig | None = None,
        fallback_message: str = DEFAULT_FALLBACK_MESSAGE,
    ):
        self.config = config or CascadeConfig()
        self.fallback_message = fallback_message

    def build_messages(self, node: PromptNode, context: GenerationContext) -> list[dict[str, Any]]:
        """Build the chat messages for one node."""
        variables = context.variables
        messages: list[dict[str, Any]] = []

        system_parts = []
        if context.root.is_assistant:
            root_instructions = _payload_text(
                context.root, "input_admin_prompt", "system_prompt", "instructions"
            )
            if root_instructions:
                system_parts.append(root_instructions)
        node_system = _payload_text(node, "input_admin_prompt", "system_prompt")
        if node_system:
            system_parts.append(node_system)
        if system_parts:
            system_text = fill_placeholders("\n\n".join(system_parts), variables)
            messages.append({"role": "system", "content": system_text})

        user_message = _payload_text(node, "input_user_prompt", "user_prompt")
        if not user_message:
            # Empty prompts fall back to the admin prompt, then to a fixed message
            user_message = node_system or self.fallback_message
        messages.append({"role": "user", "content": fill_placeholders(user_message, variables)})
        return messages

    async def generate(self, node: PromptNode, context: GenerationContext) -> GenerationOutput:
        model = node.payload.get("model") or self.config.model
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": self.build_messages(node, context),
            "temperature": node.payload.get("temperature", self.config.temperature),
            "max_tokens": node.payload.get("max_tokens", self.config.max_tokens),
        }
        if self.config.api_key:
            kwargs["api_key"] = self.config.api_key
        if self.config.api_base:
            kwargs["api_base"] = self.config.api_base
        if self.config.request_timeout is not None:
            kwargs["timeout"] = self.config.request_timeout

        start = time.monotonic()
        try:
            response = await litellm.acompletion(**kwargs)
        except STRUCTURAL_ERRORS as e:
            raise StructuralError(
                f"{type(e).__name__} calling {model}: {e}",
                code=type(e).__name__,
                cause=e,
            ) from e
        except Exception as e:
            status_code = getattr(e, "status_code", None)
            raise NodeGenerationError(
                f"Generation failed for {node.display_name}: {e}",
                code=str(status_code) if status_code is not None else type(e).__name__,
                cause=e,
            ) from e
        latency_ms = int((time.monotonic() - start) * 1000)

        try:
            text = response.choices[0].message.content or ""
        except (AttributeError, IndexError) as e:
            raise NodeGenerationError(
                f"Malformed response for {node.display_name}", code="bad_response", cause=e
            ) from e

        usage = None
        raw_usage = getattr(response, "usage", None)
        if raw_usage is not None:
            usage = TokenUsage(
                input_tokens=getattr(raw_usage, "prompt_tokens", 0) or 0,
                output_tokens=getattr(raw_usage, "completion_tokens", 0) or 0,
            )

        logger.debug(
            f"Generated {len(text)} chars for {node.display_name}",
            extra={"latency_ms": latency_ms, "model": model},
        )
        return GenerationOutput(
            text=text,
            usage=usage,
            latency_ms=latency_ms,
            model=getattr(response, "model", None) or model,
            metadata={"finish_reason": getattr(response.choices[0], "finish_reason", None)},
        )
