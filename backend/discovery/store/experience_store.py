"""Experience store: SQLite rows + ChromaDB vectors behind one async facade.

Design decisions:
- Every read takes a VisibilityScope and applies it inside the query
  (SQL WHERE / Chroma where), so invisible rows never reach ranking
- SQLite and Chroma are synchronous; each call runs in the default executor
  under ``asyncio.wait_for(settings.store_timeout_seconds)``
- Failures surface as UpstreamUnavailableError; domain errors pass through
- Experiences are saved before they are embedded. An embedding failure
  leaves ``embedded_at`` empty and ``reindex_pending`` picks it up later
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import partial
from typing import Any, Callable

from sqlalchemy import or_
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from discovery.config import settings
from discovery.embeddings.service import EmbeddingService
from discovery.engines.keywords import normalize_text
from discovery.engines.patterns.geo import location_cell
from discovery.models.errors import (
    DiscoveryError,
    NotFoundError,
    PermissionDeniedError,
    UpstreamUnavailableError,
)
from discovery.models.experience import (
    AttributeSchema,
    Experience,
    ExperienceCreate,
    SearchFilters,
    VisibilityScope,
)
from discovery.models.similarity import UserSimilarityEntry, canonical_pair
from discovery.store.vector_index import VectorIndex

logger = logging.getLogger(__name__)


def build_search_text(exp: Experience) -> str:
    parts = [exp.title, exp.narrative, " ".join(exp.tags), exp.location_text]
    return normalize_text(" ".join(p for p in parts if p))


@dataclass
class UserProfile:
    """Aggregate view of one user's visible experiences."""

    user_id: str
    category_counts: dict[str, int] = field(default_factory=dict)
    location_cell: str | None = None

    @property
    def total(self) -> int:
        return sum(self.category_counts.values())


class ExperienceStore:
    """Async access to experiences, attribute schema and the similarity cache."""

    def __init__(
        self,
        engine: Engine,
        vectors: VectorIndex,
        embedder: EmbeddingService | None = None,
        timeout: float | None = None,
    ) -> None:
        self.engine = engine
        self.vectors = vectors
        self.embedder = embedder
        self.timeout = timeout if timeout is not None else settings.store_timeout_seconds

    async def _run(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, partial(fn, *args, **kwargs)),
                timeout=self.timeout,
            )
        except DiscoveryError:
            raise
        except asyncio.TimeoutError:
            raise UpstreamUnavailableError(f"Store call {fn.__name__} timed out after {self.timeout}s")
        except Exception as e:
            logger.error("Store call %s failed: %s", fn.__name__, e)
            raise UpstreamUnavailableError(f"Store unavailable: {type(e).__name__}")

    # === Writes ===

    async def create(self, payload: ExperienceCreate) -> Experience:
        exp = Experience(**payload.model_dump())
        exp.search_text = build_search_text(exp)
        exp = await self._run(self._save, exp)
        await self._embed(exp)
        return exp

    async def update(self, exp_id: str, editor_id: str, payload: ExperienceCreate) -> Experience:
        exp = await self._run(self._update, exp_id, editor_id, payload)
        await self._embed(exp)
        return exp

    async def soft_delete(self, exp_id: str, editor_id: str) -> None:
        exp = await self._run(self._soft_delete, exp_id, editor_id)
        await self._run(self.vectors.update_metadata, exp)

    async def lock(self, exp_id: str) -> None:
        await self._run(self._lock, exp_id)

    async def reindex_pending(self, limit: int = 100) -> int:
        """Embed experiences whose embedding is missing. Returns count embedded."""
        pending = await self._run(self._pending_embeddings, limit)
        done = 0
        for exp in pending:
            if await self._embed(exp):
                done += 1
        return done

    async def _embed(self, exp: Experience) -> bool:
        if self.embedder is None:
            return False
        try:
            vector = await self.embedder.embed(build_embedding_text(exp))
        except UpstreamUnavailableError as e:
            logger.warning("Experience %s saved without embedding: %s", exp.id, e)
            return False
        await self._run(self.vectors.upsert, exp, vector)
        await self._run(self._mark_embedded, exp.id)
        return True

    def _save(self, exp: Experience) -> Experience:
        with Session(self.engine) as session:
            session.add(exp)
            session.commit()
            session.refresh(exp)
            return exp

    def _load_for_write(self, session: Session, exp_id: str, editor_id: str) -> Experience:
        exp = session.get(Experience, exp_id)
        if exp is None or exp.deleted_at is not None:
            raise NotFoundError(f"Experience not found: {exp_id}")
        if exp.user_id != editor_id:
            raise PermissionDeniedError("Only the owner can modify an experience.")
        if exp.is_locked:
            raise PermissionDeniedError("Experience is locked.")
        return exp

    def _update(self, exp_id: str, editor_id: str, payload: ExperienceCreate) -> Experience:
        with Session(self.engine) as session:
            exp = self._load_for_write(session, exp_id, editor_id)
            for key, value in payload.model_dump(exclude={"user_id"}).items():
                setattr(exp, key, value)
            exp.search_text = build_search_text(exp)
            exp.updated_at = datetime.now(timezone.utc)
            exp.embedded_at = None
            session.add(exp)
            session.commit()
            session.refresh(exp)
            return exp

    def _soft_delete(self, exp_id: str, editor_id: str) -> Experience:
        with Session(self.engine) as session:
            exp = self._load_for_write(session, exp_id, editor_id)
            exp.deleted_at = datetime.now(timezone.utc)
            session.add(exp)
            session.commit()
            session.refresh(exp)
            return exp

    def _lock(self, exp_id: str) -> None:
        with Session(self.engine) as session:
            exp = session.get(Experience, exp_id)
            if exp is None:
                raise NotFoundError(f"Experience not found: {exp_id}")
            exp.is_locked = True
            session.add(exp)
            session.commit()

    def _mark_embedded(self, exp_id: str) -> None:
        with Session(self.engine) as session:
            exp = session.get(Experience, exp_id)
            if exp is not None:
                exp.embedded_at = datetime.now(timezone.utc)
                session.add(exp)
                session.commit()

    def _pending_embeddings(self, limit: int) -> list[Experience]:
        with Session(self.engine) as session:
            stmt = (
                select(Experience)
                .where(Experience.embedded_at == None)  # noqa: E711
                .where(Experience.deleted_at == None)  # noqa: E711
                .order_by(Experience.created_at, Experience.id)
                .limit(limit)
            )
            return list(session.exec(stmt).all())

    # === Reads ===

    @staticmethod
    def _scoped(stmt, scope: VisibilityScope):
        stmt = stmt.where(Experience.deleted_at == None)  # noqa: E711
        if scope.viewer_id:
            return stmt.where(or_(Experience.visibility == "public", Experience.user_id == scope.viewer_id))
        return stmt.where(Experience.visibility == "public")

    @staticmethod
    def _filtered(stmt, filters: SearchFilters):
        if filters.categories:
            stmt = stmt.where(col(Experience.category).in_(filters.categories))
        if filters.date_from:
            stmt = stmt.where(Experience.occurred_on >= filters.date_from)
        if filters.date_to:
            stmt = stmt.where(Experience.occurred_on <= filters.date_to)
        return stmt

    async def get(self, exp_id: str, scope: VisibilityScope) -> Experience:
        found = await self.get_many([exp_id], scope)
        if exp_id not in found:
            raise NotFoundError(f"Experience not found: {exp_id}")
        return found[exp_id]

    async def get_many(self, ids: list[str], scope: VisibilityScope) -> dict[str, Experience]:
        if not ids:
            return {}
        return await self._run(self._get_many, list(ids), scope)

    def _get_many(self, ids: list[str], scope: VisibilityScope) -> dict[str, Experience]:
        with Session(self.engine) as session:
            stmt = self._scoped(select(Experience).where(col(Experience.id).in_(ids)), scope)
            return {exp.id: exp for exp in session.exec(stmt).all()}

    async def keyword_search(
        self,
        groups: list[set[str]],
        filters: SearchFilters,
        scope: VisibilityScope,
        limit: int,
    ) -> dict[str, float]:
        """Score = share of term groups with at least one member in search_text."""
        if not groups:
            return {}
        return await self._run(self._keyword_search, groups, filters, scope, limit)

    def _keyword_search(
        self,
        groups: list[set[str]],
        filters: SearchFilters,
        scope: VisibilityScope,
        limit: int,
    ) -> dict[str, float]:
        terms = sorted({term for group in groups for term in group})
        with Session(self.engine) as session:
            stmt = select(Experience.id, Experience.search_text).where(
                or_(*[col(Experience.search_text).contains(term) for term in terms])
            )
            stmt = self._filtered(self._scoped(stmt, scope), filters).order_by(Experience.id)
            rows = session.exec(stmt).all()

        scores: dict[str, float] = {}
        for exp_id, text in rows:
            matched = sum(1 for group in groups if any(term in text for term in group))
            if matched:
                scores[exp_id] = matched / len(groups)
        ranked = sorted(scores.items(), key=lambda kv: (-kv[1], kv[0]))[:limit]
        return dict(ranked)

    async def vector_search(
        self,
        embedding: list[float],
        filters: SearchFilters,
        scope: VisibilityScope,
        limit: int,
    ) -> dict[str, float]:
        return await self._run(self.vectors.query, embedding, limit, scope, filters.categories or None)

    async def filter_search(
        self,
        filters: SearchFilters,
        scope: VisibilityScope,
        limit: int,
    ) -> list[Experience]:
        """Filter-only listing, newest first."""
        return await self._run(self._filter_search, filters, scope, limit)

    def _filter_search(self, filters: SearchFilters, scope: VisibilityScope, limit: int) -> list[Experience]:
        with Session(self.engine) as session:
            stmt = self._filtered(self._scoped(select(Experience), scope), filters)
            stmt = stmt.order_by(col(Experience.created_at).desc(), Experience.id).limit(limit)
            return list(session.exec(stmt).all())

    async def get_embeddings(self, ids: list[str]) -> dict[str, list[float]]:
        return await self._run(self.vectors.get_embeddings, list(ids))

    async def attribute_schema(self) -> dict[str, AttributeSchema]:
        return await self._run(self._attribute_schema)

    def _attribute_schema(self) -> dict[str, AttributeSchema]:
        with Session(self.engine) as session:
            return {row.key: row for row in session.exec(select(AttributeSchema)).all()}

    async def put_attribute_schema(self, schema: AttributeSchema) -> None:
        await self._run(self._merge, schema)

    def _merge(self, row) -> None:
        with Session(self.engine) as session:
            session.merge(row)
            session.commit()

    # === User aggregates ===

    async def user_profiles(
        self, scope: VisibilityScope, user_ids: list[str] | None = None
    ) -> dict[str, UserProfile]:
        """Category counts and dominant location cell per user."""
        return await self._run(self._user_profiles, scope, user_ids)

    def _user_profiles(self, scope: VisibilityScope, user_ids: list[str] | None) -> dict[str, UserProfile]:
        with Session(self.engine) as session:
            stmt = select(
                Experience.user_id, Experience.category, Experience.latitude, Experience.longitude
            )
            if user_ids is not None:
                stmt = stmt.where(col(Experience.user_id).in_(user_ids))
            rows = session.exec(self._scoped(stmt, scope)).all()

        counts: dict[str, Counter] = {}
        cells: dict[str, Counter] = {}
        for user_id, category, lat, lng in rows:
            counts.setdefault(user_id, Counter())[category] += 1
            if lat is not None and lng is not None:
                cells.setdefault(user_id, Counter())[location_cell(lat, lng)] += 1

        profiles: dict[str, UserProfile] = {}
        for user_id, counter in counts.items():
            cell = None
            if user_id in cells:
                # most frequent cell; ties resolved by cell name
                cell = sorted(cells[user_id].items(), key=lambda kv: (-kv[1], kv[0]))[0][0]
            profiles[user_id] = UserProfile(
                user_id=user_id,
                category_counts=dict(sorted(counter.items())),
                location_cell=cell,
            )
        return profiles

    # === Similarity cache ===

    async def get_similarity(self, user_a: str, user_b: str) -> UserSimilarityEntry | None:
        return await self._run(self._get_similarity, *canonical_pair(user_a, user_b))

    def _get_similarity(self, user_a: str, user_b: str) -> UserSimilarityEntry | None:
        with Session(self.engine) as session:
            return session.get(UserSimilarityEntry, (user_a, user_b))

    async def replace_similarity(self, entry: UserSimilarityEntry) -> None:
        """Replace the cached row for a pair (delete + insert in one transaction)."""
        await self._run(self._replace_similarity, entry)

    def _replace_similarity(self, entry: UserSimilarityEntry) -> None:
        with Session(self.engine) as session:
            existing = session.get(UserSimilarityEntry, (entry.user_a, entry.user_b))
            if existing is not None:
                session.delete(existing)
                session.flush()
            session.add(entry)
            session.commit()


def build_embedding_text(exp: Experience) -> str:
    return f"{exp.title}\n\n{exp.narrative}".strip()
