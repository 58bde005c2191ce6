"""Mock LLM Layer for testing without API calls.

Returns (result, LLMResponse) tuples matching the real LLMLayer.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator

from pydantic import BaseModel

from discovery.config import ModelTier
from discovery.llm.layer import LLMResponse


class MockLLMLayer:
    """Returns predefined responses for testing.

    Usage:
        mock = MockLLMLayer({
            "sonnet:ToolPlan": ToolPlan(tool_calls=[
                PlannedToolCall(tool="search_experiences", arguments={"query": "lights"}),
            ]),
            "sonnet:stream": ["Two reports ", "mention lights [1]."],
        })

    A value that is an Exception instance is raised instead of returned.
    ``chunk_delay`` pauses between streamed chunks so tests can cancel mid-stream.
    ``stall_after`` stops the stream after that many chunks without ending it,
    like a connection that hangs.
    """

    def __init__(
        self,
        responses: dict[str, BaseModel | str | list[str] | Exception] | None = None,
        chunk_delay: float = 0.0,
        stall_after: int | None = None,
    ) -> None:
        self.responses = responses or {}
        self.chunk_delay = chunk_delay
        self.stall_after = stall_after
        self.call_log: list[dict] = []

    def _mock_meta(self, model_tier: ModelTier) -> LLMResponse:
        return LLMResponse(
            model_version=f"mock-{model_tier}",
            input_tokens=100,
            output_tokens=50,
            stop_reason="end_turn",
            cost=0.0,
        )

    async def complete_structured(
        self,
        messages: list[dict],
        model_tier: ModelTier,
        response_model: type[BaseModel],
        system: str | list[dict] | None = None,
        max_tokens: int | None = None,
        max_retries: int | None = None,
        temperature: float | None = None,
    ) -> tuple[BaseModel, LLMResponse]:
        """Return predefined response or construct a default instance."""
        key = f"{model_tier}:{response_model.__name__}"
        self.call_log.append({
            "method": "complete_structured",
            "model_tier": model_tier,
            "response_model": response_model.__name__,
            "messages": messages,
            "system": system,
            "temperature": temperature,
        })
        result = self.responses.get(key)
        if isinstance(result, Exception):
            raise result
        if result is None:
            result = response_model()
        return result, self._mock_meta(model_tier)

    async def complete_stream(
        self,
        messages: list[dict],
        model_tier: ModelTier,
        system: str | list[dict] | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> AsyncGenerator[tuple[str, LLMResponse | None], None]:
        """Yield the ``"<tier>:stream"`` text chunk by chunk, then metadata."""
        self.call_log.append({
            "method": "complete_stream",
            "model_tier": model_tier,
            "messages": messages,
            "system": system,
            "temperature": temperature,
        })
        result = self.responses.get(f"{model_tier}:stream", "Mock response")
        if isinstance(result, Exception):
            raise result
        chunks = [result] if isinstance(result, str) else list(result)
        for i, chunk in enumerate(chunks):
            if self.stall_after is not None and i >= self.stall_after:
                await asyncio.Event().wait()
            if self.chunk_delay:
                await asyncio.sleep(self.chunk_delay)
            yield chunk, None
        yield "", self._mock_meta(model_tier)

    def build_cached_system(self, text: str) -> list[dict]:
        return [{"type": "text", "text": text, "cache_control": {"type": "ephemeral"}}]
