"""Shared test fixtures for XP Discovery backend tests."""

import asyncio
import concurrent.futures
import os
import sys
import zlib
from datetime import date

import pytest

# Ensure backend is on the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))
os.environ.setdefault("DATABASE_URL", "sqlite:///test.db")
os.environ.setdefault("ANTHROPIC_API_KEY", "test")
# Shared app instances must not trip the HTTP limiter across a whole test run
os.environ.setdefault("RATE_LIMIT_REQUESTS", "100000")
os.environ.setdefault("RATE_LIMIT_EXPENSIVE_REQUESTS", "100000")
os.environ.setdefault("TOOL_RATE_LIMIT_REQUESTS", "100000")

from discovery.agents.base import BaseAgent
from discovery.agents.planner import PlannedToolCall, ToolPlan
from discovery.db.database import create_db_and_tables, make_engine
from discovery.engines.keywords import normalize_text
from discovery.llm.mock_layer import MockLLMLayer
from discovery.models.experience import AttributeSchema, ExperienceCreate
from discovery.services import build_services


class HashEmbeddingFunction:
    """Deterministic bag-of-words vectors: each token adds 1 to a hashed dimension."""

    def __init__(self, dim: int = 64) -> None:
        self.dim = dim
        self.calls = 0

    def __call__(self, input):
        self.calls += 1
        vectors = []
        for text in input:
            vec = [0.0] * self.dim
            for token in normalize_text(text).split():
                vec[zlib.crc32(token.encode("utf-8")) % self.dim] += 1.0
            if not any(vec):
                vec[0] = 1.0
            vectors.append(vec)
        return vectors


class FailingEmbeddingFunction:
    """Always raises, to exercise the degraded (keyword-only) paths."""

    def __call__(self, input):
        raise RuntimeError("embedding model offline")


# name -> payload. Users: alice (lake lights), bob (forest triangle), carol (lake shore).
SEED_EXPERIENCES: dict[str, dict] = {
    "lake_lights": dict(
        user_id="alice",
        category="ufo_uap",
        title="Orange lights over the lake",
        narrative="Three orange lights hovered silently over the lake at night, then shot upward.",
        latitude=47.37,
        longitude=8.54,
        location_text="Zurich, Switzerland",
        occurred_on=date(2023, 8, 1),
        time_of_day="night",
        tags=["lights", "lake", "night"],
        attributes={"shape": "sphere"},
    ),
    "lake_dream": dict(
        user_id="alice",
        category="dreams",
        title="Dream of a glowing lake",
        narrative="The night before the sighting I dreamed of a glowing lake and a humming sound.",
        occurred_on=date(2023, 7, 31),
        tags=["dream", "lake"],
    ),
    "forest_triangle": dict(
        user_id="bob",
        category="ufo_uap",
        title="Triangle over the forest",
        narrative="A black triangle moved slowly over the forest without a sound.",
        latitude=47.40,
        longitude=8.50,
        location_text="Zurich, Switzerland",
        occurred_on=date(2023, 8, 3),
        time_of_day="evening",
        tags=["triangle", "forest", "night"],
        attributes={"shape": "triangle"},
    ),
    "hallway_shadow": dict(
        user_id="bob",
        category="paranormal",
        title="Shadow in the hallway",
        narrative="A tall shadow figure crossed the hallway and vanished into the wall.",
        location_text="Basel, Switzerland",
        occurred_on=date(2021, 2, 14),
        tags=["shadow"],
    ),
    "shore_lights": dict(
        user_id="carol",
        category="ufo_uap",
        title="Pulsing lights above the shore",
        narrative="Bright lights pulsed above the lake shore for ten minutes.",
        latitude=47.36,
        longitude=8.55,
        location_text="Zurich, Switzerland",
        occurred_on=date(2023, 8, 2),
        tags=["lights", "lake"],
        attributes={"shape": "sphere"},
    ),
    "carol_private": dict(
        user_id="carol",
        category="ufo_uap",
        title="Private lights over the lake",
        narrative="A private account of lights over the lake that only I should see.",
        tags=["lights", "lake"],
        visibility="private",
    ),
}


def seed_store(store) -> dict[str, str]:
    """Create the seed experiences in order; returns name -> experience id."""

    async def _seed():
        ids = {}
        for name, payload in SEED_EXPERIENCES.items():
            exp = await store.create(ExperienceCreate(**payload))
            ids[name] = exp.id
        await store.put_attribute_schema(AttributeSchema(key="shape", label="Shape", allowed_values=["sphere", "triangle"]))
        await store.put_attribute_schema(AttributeSchema(key="witness_name", label="Witness", data_type="text", is_filterable=False))
        return ids

    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(_seed())
    # Called from inside an async test: seed on a separate thread's event loop
    with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
        return pool.submit(asyncio.run, _seed()).result()


def planner_spec(**overrides):
    """Planner spec with a single attempt so failing-planner tests do not sleep."""
    spec = BaseAgent.load_spec("planner")
    return spec.model_copy(update={"max_attempts": 1, **overrides})


def plan(*calls: tuple[str, dict]) -> ToolPlan:
    return ToolPlan(tool_calls=[PlannedToolCall(tool=tool, arguments=args) for tool, args in calls])


@pytest.fixture
def db_engine(tmp_path):
    """Fresh SQLite database with all tables."""
    engine = make_engine(f"sqlite:///{tmp_path / 'discovery.db'}")
    create_db_and_tables(engine)
    return engine


@pytest.fixture
def embedder_fn():
    return HashEmbeddingFunction()


@pytest.fixture
def mock_llm():
    """MockLLMLayer with a search-only plan and a cited answer."""
    return MockLLMLayer({
        "sonnet:ToolPlan": plan(("search_experiences", {"query": "lights over the lake"})),
        "sonnet:stream": ["Several people saw ", "lights over the lake [1]."],
    })


def make_services(db_engine, tmp_path, llm, embedding_function):
    services = build_services(
        engine=db_engine,
        chroma_dir=tmp_path / "chroma",
        llm=llm,
        embedding_function=embedding_function,
    )
    # Whole-step retries sleep between attempts; tests want one attempt each
    for agent_id in ("planner", "synthesizer"):
        agent = services.agents.get(agent_id)
        agent.spec = agent.spec.model_copy(update={"max_attempts": 1})
    return services


@pytest.fixture
def services(db_engine, tmp_path, mock_llm, embedder_fn):
    """Fully wired services over an empty store."""
    return make_services(db_engine, tmp_path, mock_llm, embedder_fn)


@pytest.fixture
def seeded(services):
    """(services, ids) with SEED_EXPERIENCES stored and embedded."""
    return services, seed_store(services.store)
