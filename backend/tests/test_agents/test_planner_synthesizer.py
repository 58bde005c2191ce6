"""Tests for PlannerAgent and SynthesizerAgent with MockLLMLayer."""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))
os.environ.setdefault("DATABASE_URL", "sqlite:///test.db")
os.environ.setdefault("ANTHROPIC_API_KEY", "test")

import asyncio

from conftest import plan, planner_spec
from discovery.agents.base import BaseAgent
from discovery.agents.planner import PlannerAgent
from discovery.agents.synthesizer import SynthesizerAgent, format_sources
from discovery.agents.tools import create_tool_registry
from discovery.llm.mock_layer import MockLLMLayer
from discovery.models.messages import ContextPackage

SOURCES = [
    {"marker": 1, "experience_id": "e1", "title": "Orange lights", "category": "ufo_uap", "snippet": "Three lights hovered."},
    {"marker": 2, "experience_id": "e2", "title": "", "category": "dreams", "snippet": ""},
]


def _planner(llm: MockLLMLayer) -> PlannerAgent:
    return PlannerAgent(spec=planner_spec(), llm=llm, tools=create_tool_registry())


def _synthesizer(llm: MockLLMLayer) -> SynthesizerAgent:
    return SynthesizerAgent(spec=BaseAgent.load_spec("synthesizer"), llm=llm)


# === Planner ===


def test_planner_message_carries_catalog_and_budget():
    planner = _planner(MockLLMLayer())
    messages = planner.build_messages(ContextPackage(
        task_description="Any lights near lakes?",
        history=[{"role": "user", "content": "hi"}, {"role": "assistant", "content": "hello"}],
        constraints={"max_tool_calls": 4},
    ))
    assert len(messages) == 3
    content = messages[-1]["content"]
    assert '"name": "search_experiences"' in content
    assert "Propose at most 4 tool calls." in content
    assert content.endswith("Any lights near lakes?")
    # catalog is sorted by name
    assert content.index("build_tag_network") < content.index("search_experiences")


def test_planner_returns_indexed_calls():
    llm = MockLLMLayer({"sonnet:ToolPlan": plan(
        ("search_experiences", {"query": "lake"}),
        ("build_tag_network", {}),
    )})
    output = asyncio.run(_planner(llm).execute(ContextPackage(task_description="lake lights")))
    assert output.is_success
    assert output.output_type == "ToolPlan"
    assert [c["tool"] for c in output.output] == ["search_experiences", "build_tag_network"]
    assert [c["index"] for c in output.output] == [0, 1]
    assert llm.call_log[0]["temperature"] == 0.0


def test_planner_empty_plan():
    output = asyncio.run(_planner(MockLLMLayer()).execute(ContextPackage(task_description="hello")))
    assert output.is_success
    assert output.output == []
    assert output.summary == "no tools"


def test_planner_failure_is_reported_not_raised():
    llm = MockLLMLayer({"sonnet:ToolPlan": RuntimeError("model down")})
    planner = _planner(llm)
    output = asyncio.run(planner.execute(ContextPackage(task_description="q")))
    assert not output.is_success
    assert "RuntimeError" in output.error
    assert planner.status.consecutive_failures == 1


# === Synthesizer ===


def test_format_sources():
    text = format_sources(SOURCES)
    assert "[1] Orange lights (ufo_uap, id e1)" in text
    assert "    Three lights hovered." in text
    assert "[2] (untitled) (dreams, id e2)" in text
    assert format_sources([]) == "(no experiences were retrieved)"


def test_synthesizer_message_sections():
    synth = _synthesizer(MockLLMLayer())
    messages = synth.build_messages(ContextPackage(
        task_description="What patterns are there?",
        prior_step_outputs=[
            {"tool": "search_experiences", "status": "ok", "output": {"items": []}},
            {"tool": "build_tag_network", "status": "ok", "output": [{"tag_a": "lake", "tag_b": "lights"}]},
            {"tool": "detect_temporal_cycles", "status": "timeout", "output": None},
        ],
        metadata={"sources": SOURCES, "incomplete_analyses": ["detect_temporal_cycles"]},
    ))
    content = messages[-1]["content"]
    assert "## Sources" in content
    assert "### build_tag_network" in content
    assert "### search_experiences" not in content
    assert "## Did not complete\ndetect_temporal_cycles" in content
    assert content.endswith("## Question\nWhat patterns are there?")


def test_synthesizer_run_collects_stream():
    llm = MockLLMLayer({"sonnet:stream": ["Two reports ", "mention lights [1]."]})
    output = asyncio.run(_synthesizer(llm).execute(ContextPackage(task_description="q")))
    assert output.output == "Two reports mention lights [1]."
    assert output.model_version == "mock-sonnet"
    assert output.input_tokens == 100
