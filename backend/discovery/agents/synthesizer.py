"""Synthesizer Agent: writes the answer from numbered evidence sources.

Sources are numbered 1..n by the orchestrator; the prompt restricts the
model to citing those markers. stream() is the path used during a turn;
run() collects the stream for callers that want the whole answer at once.
"""

from __future__ import annotations

import json
from collections.abc import AsyncGenerator
from contextlib import aclosing

from discovery.agents.base import BaseAgent
from discovery.llm.layer import LLMResponse
from discovery.models.agent import AgentOutput
from discovery.models.messages import ContextPackage

_MAX_OUTPUT_CHARS = 4000


def format_sources(sources: list[dict]) -> str:
    if not sources:
        return "(no experiences were retrieved)"
    lines = []
    for s in sources:
        lines.append(f"[{s['marker']}] {s['title'] or '(untitled)'} ({s['category']}, id {s['experience_id']})")
        if s.get("snippet"):
            lines.append(f"    {s['snippet']}")
    return "\n".join(lines)


class SynthesizerAgent(BaseAgent):
    """Streams an answer grounded in the turn's tool outputs."""

    def build_messages(self, context: ContextPackage) -> list[dict]:
        sources = context.metadata.get("sources", [])
        analyses = []
        for step in context.prior_step_outputs:
            if step.get("status") != "ok" or step.get("tool") == "search_experiences":
                continue
            output = json.dumps(step.get("output"), sort_keys=True, default=str)
            analyses.append(f"### {step['tool']}\n{output[:_MAX_OUTPUT_CHARS]}")
        incomplete = context.metadata.get("incomplete_analyses", [])

        parts = [
            f"## Sources\n{format_sources(sources)}",
            "## Analyses\n" + ("\n\n".join(analyses) if analyses else "(none)"),
        ]
        if incomplete:
            parts.append("## Did not complete\n" + ", ".join(incomplete))
        parts.append(f"## Question\n{context.task_description}")
        return [*context.history, {"role": "user", "content": "\n\n".join(parts)}]

    async def stream(self, context: ContextPackage) -> AsyncGenerator[tuple[str, LLMResponse | None], None]:
        """Yield (chunk, None) per token chunk, then ("", LLMResponse)."""
        stream = self.llm.complete_stream(
            messages=self.build_messages(context),
            model_tier=self.model_tier,
            system=self.system_prompt_cached,
            max_tokens=self.spec.max_tokens,
            temperature=0.0,
        )
        async with aclosing(stream):
            async for chunk, meta in stream:
                yield chunk, meta

    async def run(self, context: ContextPackage) -> AgentOutput:
        parts: list[str] = []
        final: LLMResponse | None = None
        async for chunk, meta in self.stream(context):
            if meta is not None:
                final = meta
            else:
                parts.append(chunk)
        answer = "".join(parts)
        return self.build_output(
            output=answer,
            output_type="Answer",
            summary=answer[:100],
            llm_response=final,
        )
