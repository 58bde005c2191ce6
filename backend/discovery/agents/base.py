"""BaseAgent: abstract base class for the discovery agents.

Design decisions:
- Each agent has a spec (YAML) and a system prompt (.md)
- Retry: Instructor handles schema validation retries, the LLM layer handles
  transport retries; BaseAgent retries the whole step ``spec.max_attempts`` times
- execute() never raises: failures come back as an AgentOutput with ``error``
  set, so the orchestrator can degrade instead of failing the turn
- Every run() returns AgentOutput with cost tracking
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import yaml

from discovery.config import ModelTier
from discovery.llm.layer import LLMLayer, LLMResponse
from discovery.models.agent import AgentOutput, AgentSpec, AgentStatus
from discovery.models.messages import ContextPackage

logger = logging.getLogger(__name__)

AGENTS_DIR = Path(__file__).parent
PROMPTS_DIR = AGENTS_DIR / "prompts"
SPECS_DIR = AGENTS_DIR / "specs"


class BaseAgent(ABC):
    """Abstract base class for discovery agents.

    Subclasses must implement:
    - run(context) -> AgentOutput: Core execution logic

    Usage:
        class MyAgent(BaseAgent):
            async def run(self, context: ContextPackage) -> AgentOutput:
                result, meta = await self.llm.complete_structured(
                    messages=[{"role": "user", "content": context.task_description}],
                    model_tier=self.model_tier,
                    response_model=MyOutputModel,
                    system=self.system_prompt_cached,
                )
                return self.build_output(
                    output=result.model_dump(),
                    summary="...",
                    llm_response=meta,
                )
    """

    def __init__(self, spec: AgentSpec, llm: LLMLayer) -> None:
        self.spec = spec
        self.llm = llm
        self.status = AgentStatus(agent_id=spec.id)

        self._system_prompt = self._load_prompt()

        # Pre-build cached version for prompt caching
        self.system_prompt_cached = self.llm.build_cached_system(self._system_prompt)

    @property
    def agent_id(self) -> str:
        return self.spec.id

    @property
    def model_tier(self) -> ModelTier:
        return self.spec.model_tier

    @property
    def system_prompt(self) -> str:
        return self._system_prompt

    def _load_prompt(self) -> str:
        """Load system prompt from markdown file."""
        prompt_path = PROMPTS_DIR / self.spec.system_prompt_file
        if prompt_path.exists():
            return prompt_path.read_text(encoding="utf-8")
        logger.warning("Prompt file missing for %s: %s", self.agent_id, prompt_path)
        return f"You are {self.spec.name}, part of an anomalous-experience discovery assistant."

    async def execute(self, context: ContextPackage) -> AgentOutput:
        """Execute the agent with timing and error handling.

        This wraps the subclass's run() method with:
        1. Status management (idle -> busy -> idle)
        2. Timing and cost tracking
        3. Retry with exponential backoff (1s, 2s, ...)
        """
        self.status.state = "busy"
        start_time = time.time()
        last_error: Exception | None = None
        attempts = self.spec.max_attempts

        for attempt in range(attempts):
            try:
                output = await self.run(context)
                output.duration_ms = int((time.time() - start_time) * 1000)
                output.agent_id = self.agent_id
                output.retry_count = attempt

                self.status.state = "idle"
                self.status.total_calls += 1
                self.status.total_cost += output.cost
                self.status.consecutive_failures = 0
                return output

            except Exception as e:
                last_error = e
                logger.warning("Agent %s attempt %d/%d failed: %s", self.agent_id, attempt + 1, attempts, e)
                if attempt < attempts - 1:
                    await asyncio.sleep(2 ** attempt)
                    continue

        # All retries failed
        self.status.state = "idle"
        self.status.consecutive_failures += 1
        duration_ms = int((time.time() - start_time) * 1000)

        return AgentOutput(
            agent_id=self.agent_id,
            error=f"{type(last_error).__name__}: {last_error}" if last_error else "Unknown error",
            duration_ms=duration_ms,
            retry_count=attempts,
            model_tier=self.model_tier,
        )

    @abstractmethod
    async def run(self, context: ContextPackage) -> AgentOutput:
        """Core agent logic. Subclasses implement this.

        Args:
            context: Task, conversation history, prior tool outputs.

        Returns:
            AgentOutput with the structured result.
        """
        ...

    def build_output(
        self,
        output: Any = None,
        output_type: str = "",
        summary: str = "",
        llm_response: LLMResponse | None = None,
    ) -> AgentOutput:
        """Helper to construct AgentOutput, taking tokens and cost from the LLM response."""
        if llm_response is None:
            return AgentOutput(
                agent_id=self.agent_id,
                output=output,
                output_type=output_type,
                summary=summary,
                model_tier=self.model_tier,
            )
        return AgentOutput(
            agent_id=self.agent_id,
            output=output,
            output_type=output_type,
            summary=summary,
            model_tier=self.model_tier,
            model_version=llm_response.model_version,
            input_tokens=llm_response.input_tokens,
            output_tokens=llm_response.output_tokens,
            cached_input_tokens=llm_response.cached_input_tokens,
            cost=llm_response.cost,
        )

    @classmethod
    def load_spec(cls, spec_id: str) -> AgentSpec:
        """Load an AgentSpec from a YAML file."""
        spec_path = SPECS_DIR / f"{spec_id}.yaml"
        if not spec_path.exists():
            raise FileNotFoundError(f"Agent spec not found: {spec_path}")
        data = yaml.safe_load(spec_path.read_text(encoding="utf-8"))
        return AgentSpec(**data)
