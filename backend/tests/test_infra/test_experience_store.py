"""Tests for ExperienceStore writes: ownership, locking, soft delete, deferred embedding."""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))
os.environ.setdefault("DATABASE_URL", "sqlite:///test.db")
os.environ.setdefault("ANTHROPIC_API_KEY", "test")

import pytest
from pydantic import ValidationError

from conftest import SEED_EXPERIENCES, FailingEmbeddingFunction, HashEmbeddingFunction
from discovery.embeddings.service import EmbeddingService
from discovery.models.errors import NotFoundError, PermissionDeniedError
from discovery.models.experience import ExperienceCreate, VisibilityScope
from discovery.store.experience_store import ExperienceStore
from discovery.store.vector_index import VectorIndex


def _payload(**overrides) -> ExperienceCreate:
    return ExperienceCreate(**{**SEED_EXPERIENCES["lake_lights"], **overrides})


def _store(db_engine, tmp_path, fn) -> ExperienceStore:
    return ExperienceStore(
        db_engine,
        VectorIndex(tmp_path / "chroma"),
        EmbeddingService(fn, retry_delay=0.0),
    )


def test_create_payload_validation():
    with pytest.raises(ValidationError):
        _payload(category="martians")
    with pytest.raises(ValidationError):
        _payload(narrative="")
    assert _payload(tags=["Lake", " lake", "NIGHT"]).tags == ["lake", "night"]


@pytest.mark.asyncio
async def test_create_indexes_text_and_vector(db_engine, tmp_path):
    store = _store(db_engine, tmp_path, HashEmbeddingFunction())
    exp = await store.create(_payload(title="Lumière sur le LAC"))
    assert "lumiere sur le lac" in exp.search_text

    loaded = await store.get(exp.id, VisibilityScope())
    assert loaded.embedded_at is not None
    assert store.vectors.count() == 1
    assert exp.id in await store.get_embeddings([exp.id])


@pytest.mark.asyncio
async def test_only_owner_can_update(db_engine, tmp_path):
    store = _store(db_engine, tmp_path, HashEmbeddingFunction())
    exp = await store.create(_payload())

    with pytest.raises(PermissionDeniedError):
        await store.update(exp.id, "mallory", _payload(title="Hijacked"))

    updated = await store.update(exp.id, "alice", _payload(title="Orange lights, revised"))
    assert updated.title == "Orange lights, revised"
    assert updated.user_id == "alice"


@pytest.mark.asyncio
async def test_locked_experience_rejects_owner_edits(db_engine, tmp_path):
    store = _store(db_engine, tmp_path, HashEmbeddingFunction())
    exp = await store.create(_payload())
    await store.lock(exp.id)

    with pytest.raises(PermissionDeniedError, match="locked"):
        await store.update(exp.id, "alice", _payload(title="Too late"))
    with pytest.raises(PermissionDeniedError):
        await store.soft_delete(exp.id, "alice")


@pytest.mark.asyncio
async def test_soft_delete_hides_from_every_scope(db_engine, tmp_path):
    store = _store(db_engine, tmp_path, HashEmbeddingFunction())
    exp = await store.create(_payload())
    await store.soft_delete(exp.id, "alice")

    with pytest.raises(NotFoundError):
        await store.get(exp.id, VisibilityScope(viewer_id="alice"))
    assert await store.get_many([exp.id], VisibilityScope(viewer_id="alice")) == {}
    with pytest.raises(NotFoundError):
        await store.soft_delete(exp.id, "alice")


@pytest.mark.asyncio
async def test_embedding_failure_saves_then_reindexes(db_engine, tmp_path):
    store = _store(db_engine, tmp_path, FailingEmbeddingFunction())
    exp = await store.create(_payload())

    saved = await store.get(exp.id, VisibilityScope())
    assert saved.embedded_at is None
    assert store.vectors.count() == 0

    store.embedder = EmbeddingService(HashEmbeddingFunction(), retry_delay=0.0)
    assert await store.reindex_pending() == 1
    assert (await store.get(exp.id, VisibilityScope())).embedded_at is not None
    assert await store.reindex_pending() == 0


@pytest.mark.asyncio
async def test_get_many_applies_visibility(db_engine, tmp_path):
    store = _store(db_engine, tmp_path, HashEmbeddingFunction())
    public = await store.create(_payload())
    private = await store.create(_payload(user_id="carol", visibility="private"))

    anonymous = await store.get_many([public.id, private.id], VisibilityScope())
    owner = await store.get_many([public.id, private.id], VisibilityScope(viewer_id="carol"))
    assert set(anonymous) == {public.id}
    assert set(owner) == {public.id, private.id}
