"""Tests for the tool registry: argument validation, catalog order, handlers."""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))
os.environ.setdefault("DATABASE_URL", "sqlite:///test.db")
os.environ.setdefault("ANTHROPIC_API_KEY", "test")

import pytest

from discovery.agents.tools import (
    DETECTOR_STAGE,
    INDEPENDENT_STAGE,
    SearchArgs,
    ToolContext,
    create_tool_registry,
)
from discovery.models.errors import InvalidRequestError
from discovery.models.messages import ToolCall

ALL_TOOLS = [
    "attribute_correlation",
    "build_tag_network",
    "compare_categories",
    "detect_cross_category_overlap",
    "detect_geographic_clusters",
    "detect_temporal_cycles",
    "explain_similarity",
    "find_twins",
    "search_experiences",
]


def _ctx(services, viewer_id=None, candidate_ids=None) -> ToolContext:
    return ToolContext(
        retriever=services.retriever,
        patterns=services.patterns,
        similarity=services.similarity,
        viewer_id=viewer_id,
        candidate_ids=candidate_ids or [],
    )


# === Registry ===


def test_registry_names_sorted():
    registry = create_tool_registry()
    assert registry.names() == ALL_TOOLS
    assert [d["name"] for d in registry.definitions()] == ALL_TOOLS


def test_definitions_can_be_restricted():
    registry = create_tool_registry()
    defs = registry.definitions(["find_twins", "search_experiences"])
    assert [d["name"] for d in defs] == ["find_twins", "search_experiences"]
    assert "properties" in defs[1]["input_schema"]


def test_stages():
    registry = create_tool_registry()
    assert registry.get("search_experiences").stage == INDEPENDENT_STAGE
    assert registry.get("find_twins").stage == INDEPENDENT_STAGE
    assert registry.get("detect_geographic_clusters").stage == DETECTOR_STAGE
    assert registry.get("build_tag_network").stage == DETECTOR_STAGE
    assert registry.get("compare_categories").stage == DETECTOR_STAGE
    assert registry.get("attribute_correlation").stage == DETECTOR_STAGE


def test_validate_parses_arguments():
    registry = create_tool_registry()
    tool, args = registry.validate(ToolCall(tool="search_experiences", arguments={"query": "orbs", "limit": 5}))
    assert tool.name == "search_experiences"
    assert isinstance(args, SearchArgs)
    assert args.limit == 5


def test_validate_unknown_tool():
    registry = create_tool_registry()
    with pytest.raises(InvalidRequestError, match="Unknown tool: summon_aliens"):
        registry.validate(ToolCall(tool="summon_aliens"))


def test_validate_rejects_extra_and_out_of_range_fields():
    registry = create_tool_registry()
    with pytest.raises(InvalidRequestError, match="Invalid arguments for search_experiences"):
        registry.validate(ToolCall(tool="search_experiences", arguments={"query": "x", "colour": "red"}))
    with pytest.raises(InvalidRequestError, match="limit"):
        registry.validate(ToolCall(tool="search_experiences", arguments={"limit": 500}))
    with pytest.raises(InvalidRequestError):
        registry.validate(ToolCall(tool="detect_temporal_cycles", arguments={"cycle": "yearly"}))
    with pytest.raises(InvalidRequestError):
        registry.validate(ToolCall(tool="explain_similarity", arguments={"experience_a": "x"}))


# === Handlers over seeded data ===


@pytest.mark.asyncio
async def test_search_handler_returns_ids(seeded):
    services, ids = seeded
    tool, args = services.tools.validate(ToolCall(tool="search_experiences", arguments={"query": "lights over the lake"}))
    result = await tool.handler(args, _ctx(services))
    assert ids["lake_lights"] in result.experience_ids
    assert result.output["items"]
    assert ids["carol_private"] not in result.experience_ids


@pytest.mark.asyncio
async def test_detector_handler_runs_over_candidates(seeded):
    services, ids = seeded
    candidates = [ids["lake_lights"], ids["shore_lights"], ids["lake_dream"]]
    tool, args = services.tools.validate(ToolCall(tool="build_tag_network", arguments={"min_cooccurrence": 2}))
    result = await tool.handler(args, _ctx(services, candidate_ids=candidates))
    assert result.output[0]["tag_a"] == "lake"
    assert result.output[0]["tag_b"] == "lights"
    assert set(result.experience_ids) == {ids["lake_lights"], ids["shore_lights"]}


@pytest.mark.asyncio
async def test_twins_handler_defaults_to_caller(seeded):
    services, _ = seeded
    tool, args = services.tools.validate(ToolCall(tool="find_twins", arguments={"min_score": 0.0}))
    result = await tool.handler(args, _ctx(services, viewer_id="alice"))
    assert [t["user_id"] for t in result.output] == ["carol", "bob"]

    with pytest.raises(InvalidRequestError):
        await tool.handler(args, _ctx(services))


@pytest.mark.asyncio
async def test_explain_handler(seeded):
    services, ids = seeded
    tool, args = services.tools.validate(ToolCall(
        tool="explain_similarity",
        arguments={"experience_a": ids["lake_lights"], "experience_b": ids["shore_lights"]},
    ))
    result = await tool.handler(args, _ctx(services))
    assert result.experience_ids == [ids["lake_lights"], ids["shore_lights"]]
    assert result.output["kind"] == "similarity"


@pytest.mark.asyncio
async def test_compare_categories_handler(seeded):
    services, ids = seeded
    tool, args = services.tools.validate(ToolCall(
        tool="compare_categories", arguments={"category_a": "ufo_uap", "category_b": "dreams"},
    ))
    result = await tool.handler(args, _ctx(services, candidate_ids=list(ids.values())))
    assert result.output["kind"] == "category_comparison"
    assert result.output["difference"] == 2
    assert result.output["ratio"] == 3.0
    assert result.experience_ids == [ids["lake_lights"], ids["forest_triangle"], ids["shore_lights"], ids["lake_dream"]]

    with pytest.raises(InvalidRequestError):
        services.tools.validate(ToolCall(tool="compare_categories", arguments={"category_a": "ufo_uap", "category_b": "ufo_uap"}))


@pytest.mark.asyncio
async def test_attribute_correlation_handler(seeded):
    services, ids = seeded
    tool, args = services.tools.validate(ToolCall(tool="attribute_correlation", arguments={"min_cooccurrence": 1}))
    result = await tool.handler(args, _ctx(services, candidate_ids=list(ids.values())))
    assert result.output["total_experiences"] == 5
    assert result.output["correlations"] == []
    assert result.experience_ids == []

    with pytest.raises(InvalidRequestError):
        services.tools.validate(ToolCall(tool="attribute_correlation", arguments={"lift": 2}))
