"""Planner Agent: turns a user message into proposed tool calls.

The tool catalog (sorted by name) is rendered into the prompt and the model
answers with a ToolPlan, validated by Instructor. Arguments are NOT checked
here; the orchestrator validates each call against the tool's schema so a
single bad call is skipped rather than failing the whole plan.
"""

from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel, Field

from discovery.agents.base import BaseAgent
from discovery.agents.tools import ToolRegistry
from discovery.llm.layer import LLMLayer
from discovery.models.agent import AgentOutput, AgentSpec
from discovery.models.messages import ContextPackage, ToolCall

# === Output Models ===


class PlannedToolCall(BaseModel):
    tool: str = Field(description="Tool name, exactly as listed in the catalog")
    arguments: dict[str, Any] = Field(default_factory=dict)
    reason: str = Field(default="", description="One line on what this call contributes")


class ToolPlan(BaseModel):
    """Tool calls proposed for one user message, in intended order."""

    tool_calls: list[PlannedToolCall] = Field(default_factory=list)
    reasoning: str = ""


# === Agent Implementation ===


class PlannerAgent(BaseAgent):
    """Proposes which discovery tools to run for a message."""

    def __init__(self, spec: AgentSpec, llm: LLMLayer, tools: ToolRegistry) -> None:
        super().__init__(spec, llm)
        self.tools = tools

    def build_messages(self, context: ContextPackage) -> list[dict]:
        catalog = json.dumps(self.tools.definitions(self.spec.tools or None), indent=2, sort_keys=True)
        limit = context.constraints.get("max_tool_calls")
        budget = f"Propose at most {limit} tool calls.\n\n" if limit else ""
        content = (
            f"## Available tools\n{catalog}\n\n"
            f"{budget}"
            f"## User message\n{context.task_description}"
        )
        return [*context.history, {"role": "user", "content": content}]

    async def run(self, context: ContextPackage) -> AgentOutput:
        result, meta = await self.llm.complete_structured(
            messages=self.build_messages(context),
            model_tier=self.model_tier,
            response_model=ToolPlan,
            system=self.system_prompt_cached,
            max_tokens=self.spec.max_tokens,
            temperature=0.0,
        )
        calls = [
            ToolCall(tool=c.tool, arguments=c.arguments, index=i)
            for i, c in enumerate(result.tool_calls)
        ]
        return self.build_output(
            output=[c.model_dump() for c in calls],
            output_type="ToolPlan",
            summary=", ".join(c.tool for c in calls) or "no tools",
            llm_response=meta,
        )
