"""Hybrid retriever: vector similarity + keyword match under a structured-filter gate.

Design decisions:
- Vector and keyword signals are fetched concurrently; each is already in
  [0, 1] (cosine similarity clipped, share of matched term groups)
- Combined score = w_v * vector + w_k * keyword, weights normalised to sum 1
- Structured filters are a hard gate: a non-matching experience is dropped
  before scoring, never down-ranked
- Visibility is applied inside every store query, upstream of ranking
- Ties: newer created_at first, then id. Identical inputs over unchanged
  data give identical output
- Embedding failure degrades to keyword-only ranking (``degraded_signals``)
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

from discovery.config import settings
from discovery.embeddings.service import EmbeddingService
from discovery.engines.keywords import ExtractedTerms, KeywordExtractor
from discovery.models.errors import InvalidRequestError, UpstreamUnavailableError
from discovery.models.experience import CATEGORIES, Experience, SearchFilters, VisibilityScope
from discovery.models.patterns import CandidateItem, CandidateSet
from discovery.store.experience_store import ExperienceStore, build_embedding_text

logger = logging.getLogger(__name__)


def _timestamp(dt: datetime) -> float:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


class HybridRetriever:
    """Ranks visible experiences for a question and a set of filters."""

    def __init__(
        self,
        store: ExperienceStore,
        embedder: EmbeddingService | None,
        extractor: KeywordExtractor | None = None,
        vector_weight: float | None = None,
        keyword_weight: float | None = None,
        candidate_pool: int | None = None,
    ) -> None:
        self.store = store
        self.embedder = embedder
        self.extractor = extractor or KeywordExtractor()
        wv = settings.retriever_vector_weight if vector_weight is None else vector_weight
        wk = settings.retriever_keyword_weight if keyword_weight is None else keyword_weight
        if wv < 0 or wk < 0 or wv + wk <= 0:
            raise ValueError("Retriever weights must be non-negative and not both zero")
        self.vector_weight = wv / (wv + wk)
        self.keyword_weight = wk / (wv + wk)
        self.candidate_pool = candidate_pool or settings.retriever_candidate_pool

    async def validate(self, filters: SearchFilters, limit: int, offset: int) -> None:
        if limit < 1 or limit > settings.retriever_max_limit:
            raise InvalidRequestError(f"limit must be between 1 and {settings.retriever_max_limit}")
        if offset < 0:
            raise InvalidRequestError("offset must be >= 0")
        unknown = sorted(set(filters.categories) - set(CATEGORIES))
        if unknown:
            raise InvalidRequestError(f"Unknown categories: {', '.join(unknown)}")
        if filters.date_from and filters.date_to and filters.date_from > filters.date_to:
            raise InvalidRequestError("date_from must not be after date_to")
        if filters.attribute_keys:
            schema = await self.store.attribute_schema()
            bad = sorted(k for k in filters.attribute_keys if k not in schema or not schema[k].is_filterable)
            if bad:
                raise InvalidRequestError(f"Attributes not filterable: {', '.join(bad)}")

    async def retrieve(
        self,
        query_text: str = "",
        filters: SearchFilters | None = None,
        limit: int = 20,
        offset: int = 0,
        viewer_id: str | None = None,
        similar_to: str | None = None,
        locale: str = "en",
    ) -> CandidateSet:
        filters = filters or SearchFilters()
        await self.validate(filters, limit, offset)
        scope = VisibilityScope(viewer_id=viewer_id)
        pool = max(self.candidate_pool, offset + limit)
        query_text = (query_text or "").strip()

        query_vector: list[float] | None = None
        if similar_to:
            source = await self.store.get(similar_to, scope)
            stored = await self.store.get_embeddings([similar_to])
            query_vector = stored.get(similar_to)
            if not query_text:
                query_text = build_embedding_text(source)

        if not query_text:
            return await self._filter_only(filters, scope, pool, limit, offset)

        terms = self.extractor.extract(query_text, locale)
        vector_result, keyword_result = await asyncio.gather(
            self._vector_signal(query_text, query_vector, similar_to, filters, scope, pool),
            self._keyword_signal(terms, filters, scope, pool),
            return_exceptions=True,
        )

        degraded: list[str] = []
        for name, result in (("vector", vector_result), ("keyword", keyword_result)):
            if isinstance(result, BaseException):
                if not isinstance(result, UpstreamUnavailableError):
                    raise result
                logger.warning("Retriever %s signal unavailable: %s", name, result)
                degraded.append(name)
        if len(degraded) == 2:
            raise UpstreamUnavailableError("Both retrieval signals are unavailable")

        vector_scores = {} if "vector" in degraded else vector_result
        keyword_scores = {} if "keyword" in degraded else keyword_result
        if similar_to:
            vector_scores.pop(similar_to, None)
            keyword_scores.pop(similar_to, None)

        candidate_ids = sorted(set(vector_scores) | set(keyword_scores))
        experiences = await self.store.get_many(candidate_ids, scope)

        scored: list[tuple[Experience, float, float, float]] = []
        for exp_id in candidate_ids:
            exp = experiences.get(exp_id)
            if exp is None or not filters.matches(exp):
                continue
            v = vector_scores.get(exp_id, 0.0)
            k = keyword_scores.get(exp_id, 0.0)
            score = round(self.vector_weight * v + self.keyword_weight * k, 6)
            scored.append((exp, score, v, k))

        scored.sort(key=lambda row: (-row[1], -_timestamp(row[0].created_at), row[0].id))
        page = scored[offset: offset + limit]
        return CandidateSet(
            items=[
                CandidateItem(experience_id=exp.id, score=min(1.0, score), vector_score=round(v, 6), keyword_score=round(k, 6))
                for exp, score, v, k in page
            ],
            total=len(scored),
            limit=limit,
            offset=offset,
            degraded_signals=degraded,
        )

    async def _vector_signal(
        self,
        query_text: str,
        query_vector: list[float] | None,
        similar_to: str | None,
        filters: SearchFilters,
        scope: VisibilityScope,
        pool: int,
    ) -> dict[str, float]:
        if query_vector is None:
            if self.embedder is None:
                raise UpstreamUnavailableError("No embedding service configured")
            query_vector = await self.embedder.embed(query_text)
        # one extra slot so excluding the source experience keeps the pool size
        n = pool + 1 if similar_to else pool
        return await self.store.vector_search(query_vector, filters, scope, n)

    async def _keyword_signal(
        self,
        terms: ExtractedTerms,
        filters: SearchFilters,
        scope: VisibilityScope,
        pool: int,
    ) -> dict[str, float]:
        return await self.store.keyword_search(terms.groups, filters, scope, pool)

    async def _filter_only(
        self,
        filters: SearchFilters,
        scope: VisibilityScope,
        pool: int,
        limit: int,
        offset: int,
    ) -> CandidateSet:
        """No query text: newest experiences passing the filter gate."""
        experiences = await self.store.filter_search(filters, scope, pool)
        gated = [e for e in experiences if filters.matches(e)]
        gated.sort(key=lambda e: (-_timestamp(e.created_at), e.id))
        page = gated[offset: offset + limit]
        return CandidateSet(
            items=[CandidateItem(experience_id=e.id, score=0.0) for e in page],
            total=len(gated),
            limit=limit,
            offset=offset,
        )
