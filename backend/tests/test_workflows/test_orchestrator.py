"""Tests for the Orchestrator: planning, staged execution, synthesis, cancellation."""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))
os.environ.setdefault("DATABASE_URL", "sqlite:///test.db")
os.environ.setdefault("ANTHROPIC_API_KEY", "test")

import asyncio

import pytest
from pydantic import BaseModel

from conftest import make_services, plan, seed_store
from discovery.agents.tools import INDEPENDENT_STAGE, ToolDefinition, ToolResult
from discovery.llm.mock_layer import MockLLMLayer
from discovery.middleware.rate_limit import FixedWindowLimiter
from discovery.models.errors import InvalidRequestError, PermissionDeniedError
from discovery.models.messages import ToolOutcome
from discovery.workflows.orchestrator import ANSWER_DEADLINE_NOTE, incomplete_note, validate_citations

MESSAGE = "lights over the lake"

SOURCES = [
    {"marker": 1, "experience_id": "e1", "tool": "search_experiences", "snippet": "Orange lights."},
    {"marker": 2, "experience_id": "e2", "tool": "search_experiences", "snippet": "A dream."},
]


def _seeded_with(db_engine, tmp_path, embedder_fn, llm):
    services = make_services(db_engine, tmp_path, llm, embedder_fn)
    return services, seed_store(services.store)


class _SlowArgs(BaseModel):
    pass


async def _slow_handler(args, ctx):
    await asyncio.sleep(5)
    return ToolResult(output=None)


def _register_slow_tool(services):
    services.tools.register(ToolDefinition(
        name="slow_tool",
        description="Sleeps.",
        args_model=_SlowArgs,
        handler=_slow_handler,
        stage=INDEPENDENT_STAGE,
    ))


# === Citation validation ===


def test_validate_citations_keeps_resolvable_markers():
    answer, citations, ungrounded = validate_citations("Lights [1] and a dream [2].", SOURCES)
    assert answer == "Lights [1] and a dream [2]."
    assert [(c.marker, c.experience_id) for c in citations] == [(1, "e1"), (2, "e2")]
    assert ungrounded == []


def test_validate_citations_strips_ungrounded_markers():
    answer, citations, ungrounded = validate_citations("Lights [1] and more [7]. Also [7] and [9].", SOURCES)
    assert answer == "Lights [1] and more. Also and."
    assert [c.marker for c in citations] == [1]
    assert ungrounded == ["[7]", "[9]"]


def test_validate_citations_without_sources():
    answer, citations, ungrounded = validate_citations("Nothing found [1].", [])
    assert answer == "Nothing found."
    assert citations == []
    assert ungrounded == ["[1]"]


def test_incomplete_note():
    outcomes = [
        ToolOutcome(call_id="a", tool="search_experiences", status="ok"),
        ToolOutcome(call_id="b", tool="detect_temporal_cycles", status="timeout"),
        ToolOutcome(call_id="c", tool="find_twins", status="error"),
    ]
    assert incomplete_note(outcomes) == "Could not complete: detect_temporal_cycles (timeout), find_twins (error)."
    assert incomplete_note(outcomes[:1]) == ""


# === Full turns ===


@pytest.mark.asyncio
async def test_turn_delivers_grounded_answer(seeded):
    services, ids = seeded
    turn = await services.orchestrator.converse("s1", MESSAGE, user_id="alice")

    assert turn.state == "DELIVERED"
    assert turn.turn_number == 1
    assert [c.tool for c in turn.plan] == ["search_experiences"]
    search = turn.tool_outcomes[0]
    assert search.status == "ok"
    assert ids["lake_lights"] in search.experience_ids
    assert turn.answer == "Several people saw lights over the lake [1]."
    assert turn.citations[0].marker == 1
    assert turn.citations[0].experience_id == search.experience_ids[0]
    assert turn.ungrounded_citations == []
    assert turn.incomplete_analyses == []


@pytest.mark.asyncio
async def test_stream_event_sequence(seeded):
    services, _ = seeded
    events = [e async for e in services.orchestrator.converse_stream("s1", MESSAGE)]
    kinds = [e.event for e in events]
    states = [e.data["state"] for e in events if e.event == "state"]

    assert states == ["RECEIVED", "PLANNING", "EXECUTING", "SYNTHESIZING", "DELIVERED"]
    assert kinds.index("plan") < kinds.index("tool") < kinds.index("token")
    assert kinds[-1] == "done"
    assert "".join(e.data["text"] for e in events if e.event == "token") == "Several people saw lights over the lake [1]."
    assert events[-1].turn.state == "DELIVERED"


@pytest.mark.asyncio
async def test_ungrounded_citation_is_stripped(db_engine, tmp_path, embedder_fn):
    llm = MockLLMLayer({
        "sonnet:ToolPlan": plan(("search_experiences", {"query": MESSAGE, "limit": 2})),
        "sonnet:stream": ["Lights [1] and more [7]."],
    })
    services, _ = _seeded_with(db_engine, tmp_path, embedder_fn, llm)
    turn = await services.orchestrator.converse("s1", MESSAGE)

    assert turn.answer == "Lights [1] and more."
    assert turn.ungrounded_citations == ["[7]"]
    assert [c.marker for c in turn.citations] == [1]


@pytest.mark.asyncio
async def test_failed_tool_does_not_fail_the_turn(db_engine, tmp_path, embedder_fn):
    llm = MockLLMLayer({
        "sonnet:ToolPlan": plan(
            ("search_experiences", {"query": MESSAGE}),
            ("explain_similarity", {"experience_a": "nope-1", "experience_b": "nope-2"}),
        ),
        "sonnet:stream": ["Lights were seen [1]."],
    })
    services, _ = _seeded_with(db_engine, tmp_path, embedder_fn, llm)
    turn = await services.orchestrator.converse("s1", MESSAGE)

    assert turn.state == "DELIVERED"
    # merge order: stage, then tool name, then proposal index
    assert [(o.tool, o.status) for o in turn.tool_outcomes] == [
        ("explain_similarity", "error"),
        ("search_experiences", "ok"),
    ]
    assert turn.incomplete_analyses == ["explain_similarity"]
    assert turn.answer.endswith("Could not complete: explain_similarity (error).")
    assert turn.answer.startswith("Lights were seen [1].")


@pytest.mark.asyncio
async def test_invalid_calls_are_skipped(db_engine, tmp_path, embedder_fn):
    llm = MockLLMLayer({"sonnet:ToolPlan": plan(
        ("summon_aliens", {}),
        ("search_experiences", {"query": MESSAGE, "colour": "red"}),
        ("search_experiences", {"query": MESSAGE}),
    )})
    services, _ = _seeded_with(db_engine, tmp_path, embedder_fn, llm)
    turn = await services.orchestrator.converse("s1", MESSAGE)

    assert turn.state == "DELIVERED"
    assert len(turn.plan) == 1
    skipped = [o for o in turn.tool_outcomes if o.status == "skipped"]
    assert [o.tool for o in skipped] == ["summon_aliens", "search_experiences"]
    assert "Unknown tool" in skipped[0].error
    assert "colour" in skipped[1].error


@pytest.mark.asyncio
async def test_budget_and_duplicates(db_engine, tmp_path, embedder_fn):
    llm = MockLLMLayer({"sonnet:ToolPlan": plan(
        ("search_experiences", {"query": "lake"}),
        ("search_experiences", {"query": "lake"}),
        ("search_experiences", {"query": "forest"}),
        ("search_experiences", {"query": "shadow"}),
    )})
    services, _ = _seeded_with(db_engine, tmp_path, embedder_fn, llm)
    services.orchestrator.max_tool_calls = 2
    turn = await services.orchestrator.converse("s1", MESSAGE)

    assert [c.arguments["query"] for c in turn.plan] == ["lake", "forest"]
    over = [o for o in turn.tool_outcomes if o.status == "skipped"]
    assert len(over) == 1
    assert over[0].arguments == {"query": "shadow"}
    assert "budget" in over[0].error
    assert len(turn.tool_outcomes) == 3


@pytest.mark.asyncio
async def test_implicit_search_counts_against_budget(db_engine, tmp_path, embedder_fn):
    llm = MockLLMLayer({"sonnet:ToolPlan": plan(
        ("build_tag_network", {"min_cooccurrence": 2}),
        ("detect_geographic_clusters", {"epsilon_km": 50.0}),
    )})
    services, _ = _seeded_with(db_engine, tmp_path, embedder_fn, llm)
    services.orchestrator.max_tool_calls = 2
    turn = await services.orchestrator.converse("s1", MESSAGE)

    assert [c.tool for c in turn.plan] == ["build_tag_network", "search_experiences"]
    ran = [o for o in turn.tool_outcomes if o.status != "skipped"]
    assert len(ran) <= 2
    over = [o for o in turn.tool_outcomes if o.status == "skipped"]
    assert [o.tool for o in over] == ["detect_geographic_clusters"]
    assert "budget" in over[0].error


@pytest.mark.asyncio
async def test_single_slot_budget_skips_lone_detector(db_engine, tmp_path, embedder_fn):
    llm = MockLLMLayer({"sonnet:ToolPlan": plan(("build_tag_network", {}))})
    services, _ = _seeded_with(db_engine, tmp_path, embedder_fn, llm)
    services.orchestrator.max_tool_calls = 1
    turn = await services.orchestrator.converse("s1", MESSAGE)

    assert turn.plan == []
    assert [(o.tool, o.status) for o in turn.tool_outcomes] == [("build_tag_network", "skipped")]
    assert turn.answer.endswith("Could not complete: build_tag_network (skipped).")


@pytest.mark.asyncio
async def test_detector_only_plan_gets_implicit_search(db_engine, tmp_path, embedder_fn):
    llm = MockLLMLayer({"sonnet:ToolPlan": plan(("build_tag_network", {"min_cooccurrence": 2}))})
    services, ids = _seeded_with(db_engine, tmp_path, embedder_fn, llm)
    turn = await services.orchestrator.converse("s1", MESSAGE)

    assert [c.tool for c in turn.plan] == ["build_tag_network", "search_experiences"]
    assert turn.plan[1].arguments == {"query": MESSAGE}
    by_tool = {o.tool: o for o in turn.tool_outcomes}
    assert by_tool["search_experiences"].stage == 1
    assert by_tool["build_tag_network"].stage == 2
    assert by_tool["build_tag_network"].status == "ok"
    pairs = {(p["tag_a"], p["tag_b"]) for p in by_tool["build_tag_network"].output}
    assert ("lake", "lights") in pairs


@pytest.mark.asyncio
async def test_planner_failure_falls_back_to_search(db_engine, tmp_path, embedder_fn):
    llm = MockLLMLayer({"sonnet:ToolPlan": RuntimeError("model down")})
    services, _ = _seeded_with(db_engine, tmp_path, embedder_fn, llm)
    turn = await services.orchestrator.converse("s1", MESSAGE)

    assert turn.state == "DELIVERED"
    assert [(c.tool, c.arguments) for c in turn.plan] == [("search_experiences", {"query": MESSAGE})]


@pytest.mark.asyncio
async def test_empty_plan_is_respected(db_engine, tmp_path, embedder_fn):
    llm = MockLLMLayer({"sonnet:ToolPlan": plan(), "sonnet:stream": ["Hello! Ask me about sightings."]})
    services, _ = _seeded_with(db_engine, tmp_path, embedder_fn, llm)
    turn = await services.orchestrator.converse("s1", "hello")

    assert turn.state == "DELIVERED"
    assert turn.plan == []
    assert turn.tool_outcomes == []
    assert turn.citations == []
    assert turn.answer == "Hello! Ask me about sightings."


@pytest.mark.asyncio
async def test_tool_calls_are_rate_limited_per_user(db_engine, tmp_path, embedder_fn):
    llm = MockLLMLayer({"sonnet:ToolPlan": plan(
        ("search_experiences", {"query": "lake"}),
        ("search_experiences", {"query": "forest"}),
    )})
    services, _ = _seeded_with(db_engine, tmp_path, embedder_fn, llm)
    services.orchestrator.tool_limiter = FixedWindowLimiter(limit=1, window_seconds=3600)
    turn = await services.orchestrator.converse("s1", MESSAGE, user_id="alice")

    assert turn.state == "DELIVERED"
    assert sorted(o.status for o in turn.tool_outcomes) == ["ok", "rate_limited"]


@pytest.mark.asyncio
async def test_slow_tool_times_out(db_engine, tmp_path, embedder_fn):
    llm = MockLLMLayer({"sonnet:ToolPlan": plan(("slow_tool", {}), ("search_experiences", {"query": MESSAGE}))})
    services, _ = _seeded_with(db_engine, tmp_path, embedder_fn, llm)
    _register_slow_tool(services)
    services.orchestrator.tool_timeout = 0.1
    turn = await services.orchestrator.converse("s1", MESSAGE)

    by_tool = {o.tool: o for o in turn.tool_outcomes}
    assert by_tool["slow_tool"].status == "timeout"
    assert by_tool["search_experiences"].status == "ok"
    assert turn.state == "DELIVERED"


@pytest.mark.asyncio
async def test_turn_deadline_still_synthesizes(db_engine, tmp_path, embedder_fn):
    llm = MockLLMLayer({"sonnet:ToolPlan": plan(("slow_tool", {}))})
    services, _ = _seeded_with(db_engine, tmp_path, embedder_fn, llm)
    _register_slow_tool(services)
    services.orchestrator.turn_timeout = 0.3
    turn = await services.orchestrator.converse("s1", MESSAGE)

    assert turn.state == "DELIVERED"
    assert [(o.tool, o.status) for o in turn.tool_outcomes] == [("slow_tool", "timeout")]
    assert turn.answer.endswith("Could not complete: slow_tool (timeout).")


@pytest.mark.asyncio
async def test_stalled_answer_is_delivered_partial_at_deadline(db_engine, tmp_path, embedder_fn):
    llm = MockLLMLayer({"sonnet:stream": ["Partial ", "never arrives"]}, stall_after=1)
    services, _ = _seeded_with(db_engine, tmp_path, embedder_fn, llm)
    services.orchestrator.turn_timeout = 0.4

    turn = await asyncio.wait_for(services.orchestrator.converse("s1", MESSAGE), timeout=5.0)

    assert turn.state == "DELIVERED"
    assert turn.answer == f"Partial\n\n{ANSWER_DEADLINE_NOTE}"
    # the session is free for the next turn
    assert not services.sessions.is_active("s1")
    assert len(services.sessions) == 0


# === Cancellation and sessions ===


@pytest.mark.asyncio
async def test_cancel_mid_stream(db_engine, tmp_path, embedder_fn):
    llm = MockLLMLayer({"sonnet:stream": ["one ", "two ", "three ", "four"]}, chunk_delay=0.01)
    services, _ = _seeded_with(db_engine, tmp_path, embedder_fn, llm)
    orchestrator = services.orchestrator

    assert await orchestrator.cancel("s1", "alice") is False
    events = []
    async for event in orchestrator.converse_stream("s1", MESSAGE, "alice"):
        events.append(event)
        if event.event == "token":
            assert await orchestrator.cancel("s1", "alice") is True

    tokens = [e for e in events if e.event == "token"]
    assert len(tokens) == 1
    assert events[-1].event == "error"
    assert events[-1].turn.state == "FAILED"
    assert events[-1].turn.failure_reason == "cancelled"
    assert not services.sessions.is_active("s1")

    _, turns = await services.turn_log.get_session("s1")
    assert [t.state for t in turns] == ["FAILED"]


@pytest.mark.asyncio
async def test_only_the_owner_can_cancel_a_running_turn(db_engine, tmp_path, embedder_fn):
    llm = MockLLMLayer({"sonnet:stream": ["one ", "two ", "three"]}, chunk_delay=0.01)
    services, _ = _seeded_with(db_engine, tmp_path, embedder_fn, llm)
    orchestrator = services.orchestrator

    events = []
    async for event in orchestrator.converse_stream("s1", MESSAGE, "alice"):
        events.append(event)
        if event.event == "token":
            # first turn of the session: nothing persisted yet, the running turn knows its owner
            with pytest.raises(PermissionDeniedError):
                await orchestrator.cancel("s1", "bob")
            with pytest.raises(PermissionDeniedError):
                await orchestrator.cancel("s1")

    assert events[-1].event == "done"
    assert events[-1].turn.answer == "one two three"
    with pytest.raises(PermissionDeniedError):
        await orchestrator.cancel("s1", "bob")


@pytest.mark.asyncio
async def test_turns_in_one_session_are_serialized(seeded):
    services, _ = seeded
    first, second = await asyncio.gather(
        services.orchestrator.converse("s1", "first question about lights", "alice"),
        services.orchestrator.converse("s1", "second question about the lake", "alice"),
    )
    assert sorted([first.turn_number, second.turn_number]) == [1, 2]
    conv, turns = await services.turn_log.get_session("s1")
    assert conv.turn_count == 2
    assert [t.turn_number for t in turns] == [1, 2]


@pytest.mark.asyncio
async def test_history_reaches_the_planner(seeded):
    services, _ = seeded
    llm = services.agents.get("planner").llm
    await services.orchestrator.converse("s1", "first question", "alice")
    await services.orchestrator.converse("s1", "follow-up", "alice")

    planner_calls = [c for c in llm.call_log if c["method"] == "complete_structured"]
    second = planner_calls[-1]["messages"]
    assert second[0] == {"role": "user", "content": "first question"}
    assert second[1]["role"] == "assistant"
    assert second[-1]["content"].endswith("follow-up")


@pytest.mark.asyncio
async def test_session_belongs_to_its_first_user(seeded):
    services, _ = seeded
    await services.orchestrator.converse("s1", MESSAGE, "alice")
    with pytest.raises(PermissionDeniedError):
        await services.orchestrator.converse("s1", MESSAGE, "bob")
    with pytest.raises(PermissionDeniedError):
        await services.orchestrator.converse("s1", MESSAGE)


@pytest.mark.asyncio
async def test_empty_message_rejected(seeded):
    services, _ = seeded
    with pytest.raises(InvalidRequestError):
        await services.orchestrator.converse("s1", "   ")
