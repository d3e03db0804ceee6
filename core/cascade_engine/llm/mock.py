"""Scripted generation client for tests and dry runs."""

import asyncio
import inspect
from collections.abc import Callable
from typing import Any

from cascade_engine.llm.provider import GenerationClient, GenerationContext, GenerationOutput
from cascade_engine.schemas.run_state import TokenUsage
from cascade_engine.tree.node import PromptNode


class MockGenerationClient(GenerationClient):
    """
    Generation client that answers from a script instead of a model.

    Args:
        responses: node id -> response text (default "response:<node id>")
        failures: node id -> exception, or list of exceptions/None consumed
            one per attempt (None means that attempt succeeds)
        delay: seconds to sleep inside every call
        on_call: callback(node, context) run when a call starts, sync or async
        gates: node id -> asyncio.Event the call waits on before returning

    Example:
        client = MockGenerationClient(failures={"b": NodeGenerationError("boom")})
        ...
        client.calls  # ["a", "b", "c"]
    """

    def __init__(
        self,
        responses: dict[str, str] | None = None,
        failures: dict[str, Exception | list[Exception | None]] | None = None,
        delay: float = 0.0,
        on_call: Callable[[PromptNode, GenerationContext], Any] | None = None,
        gates: dict[str, asyncio.Event] | None = None,
    ):
        self.responses = responses or {}
        self.failures = failures or {}
        self.delay = delay
        self.on_call = on_call
        self.gates = gates or {}
        self.calls: list[str] = []
        self.contexts: list[GenerationContext] = []
        self.in_flight = 0
        self.max_in_flight = 0

    def _next_failure(self, node_id: str) -> Exception | None:
        failure = self.failures.get(node_id)
        if isinstance(failure, list):
            return failure.pop(0) if failure else None
        return failure

    async def generate(self, node: PromptNode, context: GenerationContext) -> GenerationOutput:
        self.calls.append(node.id)
        self.contexts.append(context)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.on_call is not None:
                result = self.on_call(node, context)
                if inspect.isawaitable(result):
                    await result
            if self.delay:
                await asyncio.sleep(self.delay)
            gate = self.gates.get(node.id)
            if gate is not None:
                await gate.wait()

            failure = self._next_failure(node.id)
            if failure is not None:
                raise failure

            text = self.responses.get(node.id, f"response:{node.id}")
            return GenerationOutput(
                text=text,
                usage=TokenUsage(input_tokens=10, output_tokens=len(text.split())),
                latency_ms=int(self.delay * 1000),
                model="mock",
            )
        finally:
            self.in_flight -= 1
