"""LLM Layer: the planner and synthesizer reach the model API only through here.

Uses AsyncAnthropic + Instructor for structured outputs.

- complete_structured: the planner's ToolPlan, validated by Pydantic
- complete_stream: the synthesizer's answer, chunk by chunk
- every request, and every step of a stream, is bounded by ``timeout``
- transport failures are retried with backoff; once retries run out, or the
  breaker is open, callers get UpstreamUnavailableError
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncGenerator, AsyncIterator, Awaitable, Callable
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, TypeVar

import anthropic
import instructor
from pydantic import BaseModel

from discovery.config import MODELS, ModelTier, settings
from discovery.models.errors import UpstreamUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Worth another attempt; anything else from the SDK is reported at once.
RETRYABLE = (
    anthropic.RateLimitError,
    anthropic.APIConnectionError,
    anthropic.InternalServerError,
    asyncio.TimeoutError,
)

END = object()  # returned by UpstreamGuard.step when a stream is exhausted


@dataclass
class LLMResponse:
    """Metadata from an LLM call, carried alongside the result."""

    model_version: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    cached_input_tokens: int = 0
    stop_reason: str = ""
    cost: float = 0.0
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class UpstreamGuard:
    """Timeout, retry and circuit breaking around model API calls.

    After ``failure_threshold`` consecutive failures the guard opens and
    rejects calls for ``cooldown`` seconds. The first call after the cooldown
    is a trial: success closes the guard, failure opens it again.
    """

    def __init__(
        self,
        timeout: float,
        max_retries: int = 2,
        base_delay: float = 0.5,
        max_delay: float = 8.0,
        failure_threshold: int = 5,
        cooldown: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.timeout = timeout
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.failure_threshold = failure_threshold
        self.cooldown = cooldown
        self.clock = clock
        self.failures = 0
        self.opened_at: float | None = None

    @property
    def state(self) -> str:
        if self.opened_at is None:
            return "closed"
        if self.clock() - self.opened_at < self.cooldown:
            return "open"
        return "trial"

    def ensure_available(self) -> None:
        if self.state == "open":
            raise UpstreamUnavailableError("Model API disabled after repeated failures; try again shortly")

    def succeeded(self) -> None:
        self.failures = 0
        self.opened_at = None

    def failed(self, error: BaseException) -> None:
        self.failures += 1
        if self.state == "trial" or self.failures >= self.failure_threshold:
            if self.state != "open":
                logger.warning("Model API guard opened after %d failures (last: %s)",
                               self.failures, type(error).__name__)
            self.opened_at = self.clock()

    async def call(self, factory: Callable[[], Awaitable[T]], what: str = "Model call") -> T:
        """Await ``factory()`` under the timeout, retrying transport failures."""
        self.ensure_available()
        attempt = 0
        while True:
            try:
                result = await asyncio.wait_for(factory(), timeout=self.timeout)
            except RETRYABLE as e:
                self.failed(e)
                attempt += 1
                if attempt > self.max_retries or self.state == "open":
                    raise UpstreamUnavailableError(
                        f"{what} failed after {attempt} attempts: {type(e).__name__}"
                    ) from e
                delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
                logger.warning("%s attempt %d/%d failed (%s), retrying in %.1fs",
                               what, attempt, self.max_retries + 1, type(e).__name__, delay)
                await asyncio.sleep(delay)
            except anthropic.APIError as e:
                self.failed(e)
                raise UpstreamUnavailableError(f"{what} rejected: {type(e).__name__}") from e
            else:
                self.succeeded()
                return result

    async def once(self, awaitable: Awaitable[T], what: str = "Model stream") -> T:
        """Await a single step under the timeout. Not retried."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except (asyncio.TimeoutError, anthropic.APIError) as e:
            self.failed(e)
            raise UpstreamUnavailableError(f"{what} stalled or broke: {type(e).__name__}") from e

    async def step(self, iterator: AsyncIterator[T], what: str = "Model stream") -> T | object:
        """Next item of a stream under the timeout; ``END`` once it is exhausted."""
        return await self.once(anext_or_end(iterator), what)


async def anext_or_end(iterator: AsyncIterator[Any]) -> Any:
    async for item in iterator:
        return item
    return END


class LLMLayer:
    """Model access for the planner and synthesizer agents."""

    def __init__(self, timeout: float | None = None, guard: UpstreamGuard | None = None) -> None:
        self.raw_client = anthropic.AsyncAnthropic(api_key=settings.anthropic_api_key, max_retries=0)
        self.client = instructor.from_anthropic(self.raw_client)
        self.guard = guard or UpstreamGuard(
            timeout=timeout if timeout is not None else settings.llm_timeout_seconds,
            max_retries=settings.llm_max_retries,
            failure_threshold=settings.llm_breaker_threshold,
            cooldown=settings.llm_breaker_cooldown_seconds,
        )

    @property
    def timeout(self) -> float:
        return self.guard.timeout

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
        """Structured output validated against ``response_model``.

        ``max_retries`` counts Instructor's re-asks on validation failure; transport
        retries belong to the guard.
        """
        kwargs: dict[str, Any] = {
            "model": MODELS[model_tier].model_id,
            "max_tokens": max_tokens or settings.default_max_tokens,
            "messages": messages,
            "response_model": response_model,
            "max_retries": max_retries or settings.default_max_retries,
            "temperature": temperature if temperature is not None else settings.default_temperature,
        }
        if system:
            kwargs["system"] = system

        result, raw_response = await self.guard.call(
            lambda: self.client.messages.create_with_completion(**kwargs),
            what=f"{response_model.__name__} completion",
        )
        return result, self._metadata(raw_response, model_tier)

    async def complete_stream(
        self,
        messages: list[dict],
        model_tier: ModelTier,
        system: str | list[dict] | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> AsyncGenerator[tuple[str, LLMResponse | None], None]:
        """Yield (chunk, None) per text chunk, then ("", LLMResponse).

        Opening the stream is retried like any call. Once text flows, a chunk
        that does not arrive within the timeout ends the stream with
        UpstreamUnavailableError. Closing the generator early closes the
        HTTP response.
        """
        kwargs: dict[str, Any] = {
            "model": MODELS[model_tier].model_id,
            "max_tokens": max_tokens or settings.default_max_tokens,
            "messages": messages,
            "temperature": temperature if temperature is not None else settings.default_temperature,
        }
        if system:
            kwargs["system"] = system

        async with AsyncExitStack() as stack:
            stream = await self.guard.call(
                lambda: stack.enter_async_context(self.raw_client.messages.stream(**kwargs)),
                what="Answer stream",
            )
            chunks = stream.text_stream
            while True:
                text = await self.guard.step(chunks)
                if text is END:
                    break
                yield text, None
            response = await self.guard.once(stream.get_final_message(), what="Answer stream")
        yield "", self._metadata(response, model_tier)

    def _metadata(self, response: anthropic.types.Message, model_tier: ModelTier) -> LLMResponse:
        usage = response.usage
        input_tokens = getattr(usage, "input_tokens", 0)
        output_tokens = getattr(usage, "output_tokens", 0)
        cached = getattr(usage, "cache_read_input_tokens", 0) or 0
        return LLMResponse(
            model_version=response.model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cached_input_tokens=cached,
            stop_reason=response.stop_reason or "",
            cost=MODELS[model_tier].cost(input_tokens, output_tokens, cached),
        )

    def build_cached_system(self, text: str) -> list[dict]:
        """System prompt as one ephemeral cache_control block (prompts repeat every turn)."""
        return [{"type": "text", "text": text, "cache_control": {"type": "ephemeral"}}]
