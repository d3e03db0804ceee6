"""
Tests for LiteLLMGenerationClient.

litellm.acompletion is replaced with an AsyncMock, so no network calls
are made. Covers message building, placeholder filling, request options
and the mapping of provider errors to node and structural failures.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock

import litellm
import pytest

from cascade_engine.config import CascadeConfig
from cascade_engine.errors import NodeGenerationError, StructuralError
from cascade_engine.llm import GenerationContext, LiteLLMGenerationClient
from cascade_engine.llm.litellm import fill_placeholders
from cascade_engine.tree import PromptNode

ROOT = PromptNode(
    id="root",
    name="Assistant",
    is_assistant=True,
    payload={"input_admin_prompt": "You are a careful editor."},
)


def make_response(text="done", prompt_tokens=12, completion_tokens=3):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=text), finish_reason="stop")],
        usage=SimpleNamespace(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens),
        model="gpt-4o-mini",
    )


@pytest.fixture
def acompletion(monkeypatch):
    mock = AsyncMock(return_value=make_response())
    monkeypatch.setattr(litellm, "acompletion", mock)
    return mock


@pytest.fixture
def client():
    config = CascadeConfig(
        model="gpt-4o-mini",
        temperature=0.2,
        max_tokens=256,
        api_key=None,
        request_timeout=None,
    )
    return LiteLLMGenerationClient(config)


def context(variables=None, root=ROOT):
    return GenerationContext(run_id="run_1", root=root, variables=variables or {})


class TestFillPlaceholders:
    def test_known_names_are_replaced(self):
        text = "Summarise {{cascade_previous_response}} for {{ q.parent.prompt.name }}"

        filled = fill_placeholders(
            text, {"cascade_previous_response": "the draft", "q.parent.prompt.name": "Outline"}
        )

        assert filled == "Summarise the draft for Outline"

    def test_unknown_names_are_kept(self):
        assert fill_placeholders("Hi {{who}}", {}) == "Hi {{who}}"


class TestBuildMessages:
    def test_root_instructions_and_node_prompts(self, client):
        node = PromptNode(
            id="a",
            parent_id="root",
            payload={
                "input_admin_prompt": "Answer in French.",
                "input_user_prompt": "Rewrite {{cascade_previous_response}}",
            },
        )

        messages = client.build_messages(node, context({"cascade_previous_response": "hello"}))

        assert messages == [
            {"role": "system", "content": "You are a careful editor.\n\nAnswer in French."},
            {"role": "user", "content": "Rewrite hello"},
        ]

    def test_non_assistant_root_adds_no_instructions(self, client):
        root = PromptNode(id="root", payload={"input_admin_prompt": "ignored"})
        node = PromptNode(id="a", parent_id="root", payload={"user_prompt": "Go"})

        messages = client.build_messages(node, context(root=root))

        assert messages == [{"role": "user", "content": "Go"}]

    def test_empty_user_prompt_falls_back_to_admin_prompt(self, client):
        node = PromptNode(id="a", parent_id="root", payload={"system_prompt": "List three ideas"})

        messages = client.build_messages(node, context())

        assert messages[-1] == {"role": "user", "content": "List three ideas"}

    def test_empty_node_uses_fallback_message(self, client):
        node = PromptNode(id="a", parent_id="root")

        messages = client.build_messages(node, context())

        assert messages[-1] == {"role": "user", "content": "Execute this prompt"}


class TestGenerate:
    @pytest.mark.asyncio
    async def test_successful_call(self, client, acompletion):
        node = PromptNode(id="a", parent_id="root", payload={"input_user_prompt": "Go"})

        output = await client.generate(node, context())

        assert output.text == "done"
        assert output.usage.input_tokens == 12
        assert output.usage.output_tokens == 3
        assert output.tokens_used == 15
        assert output.model == "gpt-4o-mini"
        assert output.metadata == {"finish_reason": "stop"}
        kwargs = acompletion.await_args.kwargs
        assert kwargs["model"] == "gpt-4o-mini"
        assert kwargs["temperature"] == 0.2
        assert kwargs["max_tokens"] == 256
        assert "api_key" not in kwargs
        assert "timeout" not in kwargs

    @pytest.mark.asyncio
    async def test_node_settings_override_config(self, client, acompletion):
        client.config.api_key = "sk-test"
        client.config.request_timeout = 30.0
        node = PromptNode(
            id="a",
            payload={"input_user_prompt": "Go", "model": "claude-3-haiku", "temperature": 0},
        )

        await client.generate(node, context())

        kwargs = acompletion.await_args.kwargs
        assert kwargs["model"] == "claude-3-haiku"
        assert kwargs["temperature"] == 0
        assert kwargs["api_key"] == "sk-test"
        assert kwargs["timeout"] == 30.0

    @pytest.mark.asyncio
    async def test_missing_usage_is_tolerated(self, client, acompletion):
        response = make_response()
        response.usage = None
        acompletion.return_value = response

        output = await client.generate(PromptNode(id="a"), context())

        assert output.usage is None
        assert output.tokens_used == 0

    @pytest.mark.asyncio
    async def test_auth_error_is_structural(self, client, acompletion):
        acompletion.side_effect = litellm.AuthenticationError(
            message="invalid x-api-key", llm_provider="anthropic", model="claude-3-haiku"
        )

        with pytest.raises(StructuralError) as exc_info:
            await client.generate(PromptNode(id="a"), context())

        assert exc_info.value.code == "AuthenticationError"
        assert isinstance(exc_info.value.cause, litellm.AuthenticationError)

    @pytest.mark.asyncio
    async def test_rate_limit_is_node_failure(self, client, acompletion):
        acompletion.side_effect = litellm.RateLimitError(
            message="slow down", llm_provider="openai", model="gpt-4o-mini"
        )

        with pytest.raises(NodeGenerationError) as exc_info:
            await client.generate(PromptNode(id="a", name="Draft"), context())

        assert exc_info.value.code == "429"
        assert "Draft" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_unexpected_error_is_node_failure(self, client, acompletion):
        acompletion.side_effect = ValueError("bad json")

        with pytest.raises(NodeGenerationError) as exc_info:
            await client.generate(PromptNode(id="a"), context())

        assert exc_info.value.code == "ValueError"

    @pytest.mark.asyncio
    async def test_malformed_response(self, client, acompletion):
        acompletion.return_value = SimpleNamespace(choices=[], usage=None)

        with pytest.raises(NodeGenerationError) as exc_info:
            await client.generate(PromptNode(id="a"), context())

        assert exc_info.value.code == "bad_response"
