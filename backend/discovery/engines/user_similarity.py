"""User similarity engine ("XP twins").

Two users are compared on the categories of their public experiences:
- Jaccard overlap of the category sets
- Cosine similarity of the category distributions (share per category)
- A fixed bonus when their most frequent location cells match

score = min(1, w_j * jaccard + w_c * cosine + bonus)

Results are cached per canonical pair (user_a < user_b) in
``user_similarity_cache``. A row older than the staleness window is treated
as absent. Concurrent requests for the same pair share one recomputation.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from discovery.config import settings
from discovery.models.errors import InvalidRequestError, NotFoundError
from discovery.models.experience import VisibilityScope
from discovery.models.similarity import (
    Twin,
    UserSimilarity,
    UserSimilarityEntry,
    canonical_pair,
    match_quality,
)
from discovery.store.experience_store import ExperienceStore, UserProfile

logger = logging.getLogger(__name__)

_PUBLIC = VisibilityScope()


def _utc(dt: datetime) -> datetime:
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)


def score_profiles(
    a: UserProfile,
    b: UserProfile,
    jaccard_weight: float,
    cosine_weight: float,
    location_bonus: float,
) -> UserSimilarity:
    cats_a, cats_b = set(a.category_counts), set(b.category_counts)
    union = cats_a | cats_b
    shared = sorted(cats_a & cats_b)
    jaccard = len(shared) / len(union) if union else 0.0

    total_a, total_b = a.total or 1, b.total or 1
    dot = norm_a = norm_b = 0.0
    for cat in union:
        va = a.category_counts.get(cat, 0) / total_a
        vb = b.category_counts.get(cat, 0) / total_b
        dot += va * vb
        norm_a += va * va
        norm_b += vb * vb
    cosine = dot / math.sqrt(norm_a * norm_b) if norm_a and norm_b else 0.0

    same_location = a.location_cell is not None and a.location_cell == b.location_cell
    score = jaccard_weight * jaccard + cosine_weight * cosine + (location_bonus if same_location else 0.0)
    user_a, user_b = canonical_pair(a.user_id, b.user_id)
    return UserSimilarity(
        user_a=user_a,
        user_b=user_b,
        score=round(max(0.0, min(1.0, score)), 4),
        jaccard=round(jaccard, 4),
        cosine=round(cosine, 4),
        shared_categories=shared,
        shared_category_count=len(shared),
        same_location=same_location,
    )


class UserSimilarityEngine:
    """Read-through cached user similarity with single-flight recomputation."""

    def __init__(
        self,
        store: ExperienceStore,
        ttl_hours: float | None = None,
        jaccard_weight: float | None = None,
        cosine_weight: float | None = None,
        location_bonus: float | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.ttl = timedelta(hours=settings.similarity_cache_ttl_hours if ttl_hours is None else ttl_hours)
        self.jaccard_weight = settings.similarity_jaccard_weight if jaccard_weight is None else jaccard_weight
        self.cosine_weight = settings.similarity_cosine_weight if cosine_weight is None else cosine_weight
        self.location_bonus = settings.similarity_location_bonus if location_bonus is None else location_bonus
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._inflight: dict[tuple[str, str], asyncio.Future] = {}
        self.computations = 0  # recomputations performed, for observability

    def is_fresh(self, entry: UserSimilarityEntry) -> bool:
        return self._clock() - _utc(entry.computed_at) < self.ttl

    async def similarity(self, user_a: str, user_b: str) -> UserSimilarity:
        if user_a == user_b:
            raise InvalidRequestError("Cannot compare a user with themselves.")
        return await self._resolve(user_a, user_b, profiles=None)

    async def find_twins(
        self,
        user_id: str,
        min_score: float | None = None,
        limit: int = 10,
    ) -> list[Twin]:
        min_score = settings.twins_default_min_score if min_score is None else min_score
        if not 0.0 <= min_score <= 1.0:
            raise InvalidRequestError("min_score must be between 0 and 1")
        if limit < 1 or limit > 100:
            raise InvalidRequestError("limit must be between 1 and 100")

        profiles = await self.store.user_profiles(_PUBLIC)
        if user_id not in profiles:
            raise NotFoundError(f"No public experiences for user: {user_id}")

        others = sorted(uid for uid in profiles if uid != user_id)
        results = await asyncio.gather(*[self._resolve(user_id, other, profiles) for other in others])

        twins = []
        for other, sim in zip(others, results):
            if sim.score < min_score:
                continue
            twins.append(Twin(
                user_id=other,
                score=sim.score,
                match_quality=match_quality(sim.score),
                shared_categories=sim.shared_categories,
                shared_category_count=sim.shared_category_count,
                same_location=sim.same_location,
            ))
        twins.sort(key=lambda t: (-t.score, t.user_id))
        return twins[:limit]

    async def _resolve(
        self,
        user_a: str,
        user_b: str,
        profiles: dict[str, UserProfile] | None,
    ) -> UserSimilarity:
        key = canonical_pair(user_a, user_b)
        entry = await self.store.get_similarity(*key)
        if entry is not None and self.is_fresh(entry):
            return UserSimilarity.from_entry(entry, cached=True)

        inflight = self._inflight.get(key)
        if inflight is None:
            inflight = asyncio.ensure_future(self._recompute(key, profiles))
            self._inflight[key] = inflight
            inflight.add_done_callback(lambda _f, k=key: self._inflight.pop(k, None))
        # shield: one cancelled waiter must not cancel the shared computation
        return await asyncio.shield(inflight)

    async def _recompute(
        self,
        key: tuple[str, str],
        profiles: dict[str, UserProfile] | None,
    ) -> UserSimilarity:
        user_a, user_b = key
        if profiles is None or user_a not in profiles or user_b not in profiles:
            profiles = await self.store.user_profiles(_PUBLIC, [user_a, user_b])
        missing = [u for u in key if u not in profiles]
        if missing:
            raise NotFoundError(f"No public experiences for user: {', '.join(missing)}")

        self.computations += 1
        result = score_profiles(
            profiles[user_a],
            profiles[user_b],
            self.jaccard_weight,
            self.cosine_weight,
            self.location_bonus,
        )
        result.computed_at = self._clock()
        await self.store.replace_similarity(result.to_entry())
        logger.debug("Recomputed similarity %s/%s = %.3f", user_a, user_b, result.score)
        return result
