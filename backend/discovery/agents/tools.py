"""Tool registry: the operations the planner may call during a turn.

Design decisions:
- Each tool declares a Pydantic argument model; the planner's proposed
  arguments are validated against it before anything runs
- Argument models forbid unknown fields, so a misspelled parameter is an
  invalid call rather than a silently ignored one
- Stage 1 tools (search, explain similarity, twins) are independent of each
  other. Stage 2 tools are pattern detectors and analytics that run over the
  union of the experience ids surfaced in stage 1
- Definitions are exported sorted by name so the planner prompt is stable
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from discovery.engines.pattern_service import PatternService
from discovery.engines.patterns import (
    AttributeCorrelationParams,
    CompareCategoriesParams,
    CrossCategoryParams,
    GeographicParams,
    TagNetworkParams,
    TemporalParams,
)
from discovery.engines.retriever import HybridRetriever
from discovery.engines.user_similarity import UserSimilarityEngine
from discovery.models.errors import InvalidRequestError
from discovery.models.experience import SearchFilters
from discovery.models.messages import ToolCall

logger = logging.getLogger(__name__)

INDEPENDENT_STAGE = 1
DETECTOR_STAGE = 2


# === Argument models ===


class SearchArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")

    query: str = Field(default="", description="Free-text question or keywords")
    categories: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    date_from: date | None = None
    date_to: date | None = None
    location_text: str | None = None
    similar_to: str | None = Field(default=None, description="Experience id to find neighbours of")
    limit: int = Field(default=20, ge=1, le=50)


class ExplainSimilarityArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")

    experience_a: str
    experience_b: str


class FindTwinsArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_id: str | None = Field(default=None, description="Defaults to the calling user")
    min_score: float | None = Field(default=None, ge=0.0, le=1.0)
    limit: int = Field(default=10, ge=1, le=50)


class GeographicArgs(GeographicParams):
    model_config = ConfigDict(extra="forbid")


class TemporalArgs(TemporalParams):
    model_config = ConfigDict(extra="forbid")


class TagNetworkArgs(TagNetworkParams):
    model_config = ConfigDict(extra="forbid")


class CrossCategoryArgs(CrossCategoryParams):
    model_config = ConfigDict(extra="forbid")


class CompareCategoriesArgs(CompareCategoriesParams):
    model_config = ConfigDict(extra="forbid")


class AttributeCorrelationArgs(AttributeCorrelationParams):
    model_config = ConfigDict(extra="forbid")


# === Execution ===


@dataclass
class ToolContext:
    """Services and caller identity shared by every tool call in a turn."""

    retriever: HybridRetriever
    patterns: PatternService
    similarity: UserSimilarityEngine
    viewer_id: str | None = None
    locale: str = "en"
    candidate_ids: list[str] = field(default_factory=list)  # stage-1 union, filled by the orchestrator


@dataclass
class ToolResult:
    output: Any
    experience_ids: list[str] = field(default_factory=list)


ToolHandler = Callable[[Any, ToolContext], Awaitable[ToolResult]]


@dataclass
class ToolDefinition:
    name: str
    description: str
    args_model: type[BaseModel]
    handler: ToolHandler
    stage: int = INDEPENDENT_STAGE

    def schema(self) -> dict:
        """Anthropic-style tool definition."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.args_model.model_json_schema(),
        }


async def _search(args: SearchArgs, ctx: ToolContext) -> ToolResult:
    filters = SearchFilters(
        categories=args.categories,
        tags=args.tags,
        date_from=args.date_from,
        date_to=args.date_to,
        location_text=args.location_text,
    )
    result = await ctx.retriever.retrieve(
        query_text=args.query,
        filters=filters,
        limit=args.limit,
        viewer_id=ctx.viewer_id,
        similar_to=args.similar_to,
        locale=ctx.locale,
    )
    return ToolResult(output=result.model_dump(mode="json"), experience_ids=result.ids)


async def _explain(args: ExplainSimilarityArgs, ctx: ToolContext) -> ToolResult:
    explanation = await ctx.patterns.explain(args.experience_a, args.experience_b, ctx.viewer_id)
    return ToolResult(output=explanation.model_dump(mode="json"), experience_ids=list(explanation.experience_ids))


async def _twins(args: FindTwinsArgs, ctx: ToolContext) -> ToolResult:
    user_id = args.user_id or ctx.viewer_id
    if not user_id:
        raise InvalidRequestError("find_twins needs a user_id when the caller is anonymous")
    twins = await ctx.similarity.find_twins(user_id, min_score=args.min_score, limit=args.limit)
    return ToolResult(output=[t.model_dump(mode="json") for t in twins])


def _detector_handler(detector: str) -> ToolHandler:
    async def handler(args: BaseModel, ctx: ToolContext) -> ToolResult:
        results = await ctx.patterns.detect(detector, ctx.candidate_ids, args.model_dump(), ctx.viewer_id)
        ids: list[str] = []
        for r in results:
            ids.extend(r.experience_ids)
        return ToolResult(
            output=[r.model_dump(mode="json") for r in results],
            experience_ids=list(dict.fromkeys(ids)),
        )
    return handler


async def _compare_categories(args: CompareCategoriesArgs, ctx: ToolContext) -> ToolResult:
    comparison = await ctx.patterns.compare_categories(ctx.candidate_ids, args.model_dump(), ctx.viewer_id)
    return ToolResult(output=comparison.model_dump(mode="json"), experience_ids=comparison.experience_ids)


async def _attribute_correlation(args: AttributeCorrelationArgs, ctx: ToolContext) -> ToolResult:
    report = await ctx.patterns.correlate_attributes(ctx.candidate_ids, args.model_dump(), ctx.viewer_id)
    return ToolResult(output=report.model_dump(mode="json"), experience_ids=report.experience_ids)


# === Registry ===


class ToolRegistry:
    """Name -> ToolDefinition, plus validation of proposed calls."""

    def __init__(self) -> None:
        self._tools: dict[str, ToolDefinition] = {}

    def register(self, tool: ToolDefinition) -> None:
        self._tools[tool.name] = tool

    def get(self, name: str) -> ToolDefinition | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return sorted(self._tools)

    def definitions(self, allowed: list[str] | None = None) -> list[dict]:
        """Tool schemas sorted by name, optionally restricted to ``allowed``."""
        return [
            self._tools[name].schema()
            for name in self.names()
            if not allowed or name in allowed
        ]

    def validate(self, call: ToolCall) -> tuple[ToolDefinition, BaseModel]:
        """Resolve the tool and parse its arguments, or raise InvalidRequestError."""
        tool = self._tools.get(call.tool)
        if tool is None:
            raise InvalidRequestError(f"Unknown tool: {call.tool}")
        try:
            args = tool.args_model(**call.arguments)
        except ValidationError as e:
            first = e.errors()[0]
            loc = ".".join(str(p) for p in first["loc"])
            raise InvalidRequestError(f"Invalid arguments for {call.tool}: {loc}: {first['msg']}")
        return tool, args


def create_tool_registry() -> ToolRegistry:
    """Registry with every discovery tool."""
    registry = ToolRegistry()
    registry.register(ToolDefinition(
        name="search_experiences",
        description="Hybrid semantic + keyword search over experience reports, with optional filters.",
        args_model=SearchArgs,
        handler=_search,
    ))
    registry.register(ToolDefinition(
        name="explain_similarity",
        description="Explain, component by component, why two experiences are similar.",
        args_model=ExplainSimilarityArgs,
        handler=_explain,
    ))
    registry.register(ToolDefinition(
        name="find_twins",
        description="Find users whose experience profile resembles a user's.",
        args_model=FindTwinsArgs,
        handler=_twins,
    ))
    registry.register(ToolDefinition(
        name="detect_geographic_clusters",
        description="Density clusters of located experiences among the search results.",
        args_model=GeographicArgs,
        handler=_detector_handler("geographic"),
        stage=DETECTOR_STAGE,
    ))
    registry.register(ToolDefinition(
        name="detect_temporal_cycles",
        description="Lunar-phase or weekday concentrations among the search results.",
        args_model=TemporalArgs,
        handler=_detector_handler("temporal"),
        stage=DETECTOR_STAGE,
    ))
    registry.register(ToolDefinition(
        name="build_tag_network",
        description="Tag pairs that co-occur among the search results.",
        args_model=TagNetworkArgs,
        handler=_detector_handler("tag_network"),
        stage=DETECTOR_STAGE,
    ))
    registry.register(ToolDefinition(
        name="detect_cross_category_overlap",
        description="Signals (tag, place, time window) shared across categories in the search results.",
        args_model=CrossCategoryArgs,
        handler=_detector_handler("cross_category"),
        stage=DETECTOR_STAGE,
    ))
    registry.register(ToolDefinition(
        name="compare_categories",
        description="Compare two categories in the search results: volume, places, months and attribute keys.",
        args_model=CompareCategoriesArgs,
        handler=_compare_categories,
        stage=DETECTOR_STAGE,
    ))
    registry.register(ToolDefinition(
        name="attribute_correlation",
        description="Structured attribute values that co-occur in the search results, ranked by lift.",
        args_model=AttributeCorrelationArgs,
        handler=_attribute_correlation,
        stage=DETECTOR_STAGE,
    ))
    logger.debug("Tool registry: %s", ", ".join(registry.names()))
    return registry
