"""Service wiring: builds the object graph the API routers use.

One DiscoveryServices per process. Tests build their own with a temporary
database, a temporary Chroma directory, a deterministic embedding function
and MockLLMLayer.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from sqlalchemy.engine import Engine

from discovery.agents.registry import AgentRegistry, create_registry
from discovery.agents.tools import ToolRegistry, create_tool_registry
from discovery.config import settings
from discovery.embeddings.service import EmbeddingFunction, EmbeddingService
from discovery.engines.keywords import KeywordExtractor
from discovery.engines.pattern_service import PatternService
from discovery.engines.retriever import HybridRetriever
from discovery.engines.user_similarity import UserSimilarityEngine
from discovery.llm.layer import LLMLayer
from discovery.middleware.rate_limit import FixedWindowLimiter
from discovery.sessions.registry import SessionRegistry
from discovery.sessions.turn_log import TurnLog
from discovery.store.experience_store import ExperienceStore
from discovery.store.vector_index import VectorIndex
from discovery.workflows.orchestrator import Orchestrator

logger = logging.getLogger(__name__)


@dataclass
class DiscoveryServices:
    store: ExperienceStore
    embedder: EmbeddingService
    retriever: HybridRetriever
    patterns: PatternService
    similarity: UserSimilarityEngine
    tools: ToolRegistry
    agents: AgentRegistry
    turn_log: TurnLog
    sessions: SessionRegistry
    orchestrator: Orchestrator


def build_services(
    engine: Engine | None = None,
    chroma_dir: str | Path | None = None,
    llm: LLMLayer | None = None,
    embedding_function: EmbeddingFunction | None = None,
) -> DiscoveryServices:
    """Wire every component. Defaults come from settings."""
    if engine is None:
        from discovery.db.database import engine as default_engine
        engine = default_engine

    embedder = EmbeddingService(embedding_function=embedding_function)
    store = ExperienceStore(engine, VectorIndex(chroma_dir or settings.chroma_dir), embedder)
    retriever = HybridRetriever(store, embedder, KeywordExtractor())
    patterns = PatternService(store)
    similarity = UserSimilarityEngine(store)
    tools = create_tool_registry()
    agents = create_registry(llm or LLMLayer(), tools)
    turn_log = TurnLog(engine)
    sessions = SessionRegistry()
    orchestrator = Orchestrator(
        agents=agents,
        tools=tools,
        retriever=retriever,
        patterns=patterns,
        similarity=similarity,
        store=store,
        turn_log=turn_log,
        sessions=sessions,
        tool_limiter=FixedWindowLimiter(settings.tool_rate_limit_requests, settings.rate_limit_window_seconds),
    )
    logger.info("Discovery services ready (%d tools, %d agents)", len(tools.names()), len(agents.list_agents()))
    return DiscoveryServices(
        store=store,
        embedder=embedder,
        retriever=retriever,
        patterns=patterns,
        similarity=similarity,
        tools=tools,
        agents=agents,
        turn_log=turn_log,
        sessions=sessions,
        orchestrator=orchestrator,
    )
