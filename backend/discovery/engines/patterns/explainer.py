"""Pairwise similarity explainer.

Breaks the similarity of two experiences into named components. A component
without data for this pair (no coordinates, no date, no embedding) is
reported with ``score=None`` and left out of the aggregate, which is the
weight-normalised mean of the available components. ``confidence`` is the
share of total weight that was available.
"""

from __future__ import annotations

import math

from discovery.engines.patterns.geo import haversine_km
from discovery.engines.patterns.tag_network import normalize_tag
from discovery.models.experience import Experience
from discovery.models.patterns import SimilarityComponent, SimilarityExplanation

COMPONENT_WEIGHTS: dict[str, float] = {
    "semantic": 0.25,
    "tag_overlap": 0.25,
    "geographic_proximity": 0.20,
    "category_match": 0.15,
    "temporal_proximity": 0.15,
}

GEO_ZERO_KM = 500.0  # proximity decays linearly to 0 here
TEMPORAL_DECAY_DAYS = 30.0


def cosine(u: list[float], v: list[float]) -> float:
    dot = sum(a * b for a, b in zip(u, v))
    nu = math.sqrt(sum(a * a for a in u))
    nv = math.sqrt(sum(b * b for b in v))
    if nu == 0 or nv == 0:
        return 0.0
    return dot / (nu * nv)


def _tag_overlap(a: Experience, b: Experience) -> SimilarityComponent:
    ta = {normalize_tag(t) for t in a.tags} - {""}
    tb = {normalize_tag(t) for t in b.tags} - {""}
    if not ta and not tb:
        return SimilarityComponent(name="tag_overlap", weight=COMPONENT_WEIGHTS["tag_overlap"], detail="no tags")
    shared = sorted(ta & tb)
    score = len(shared) / len(ta | tb)
    detail = f"shared: {', '.join(shared)}" if shared else "no shared tags"
    return SimilarityComponent(name="tag_overlap", weight=COMPONENT_WEIGHTS["tag_overlap"], score=round(score, 4), detail=detail)


def _category(a: Experience, b: Experience) -> SimilarityComponent:
    same = a.category == b.category
    detail = f"both {a.category}" if same else f"{a.category} vs {b.category}"
    return SimilarityComponent(name="category_match", weight=COMPONENT_WEIGHTS["category_match"], score=1.0 if same else 0.0, detail=detail)


def _geographic(a: Experience, b: Experience) -> SimilarityComponent:
    weight = COMPONENT_WEIGHTS["geographic_proximity"]
    if not (a.has_location and b.has_location):
        return SimilarityComponent(name="geographic_proximity", weight=weight, detail="location missing")
    km = haversine_km(a.latitude, a.longitude, b.latitude, b.longitude)
    score = max(0.0, 1.0 - km / GEO_ZERO_KM)
    return SimilarityComponent(name="geographic_proximity", weight=weight, score=round(score, 4), detail=f"{km:.1f} km apart")


def _temporal(a: Experience, b: Experience) -> SimilarityComponent:
    weight = COMPONENT_WEIGHTS["temporal_proximity"]
    if a.occurred_on is None or b.occurred_on is None:
        return SimilarityComponent(name="temporal_proximity", weight=weight, detail="date missing")
    days = abs((a.occurred_on - b.occurred_on).days)
    score = math.exp(-days / TEMPORAL_DECAY_DAYS)
    return SimilarityComponent(name="temporal_proximity", weight=weight, score=round(score, 4), detail=f"{days} days apart")


def _semantic(ea: list[float] | None, eb: list[float] | None) -> SimilarityComponent:
    weight = COMPONENT_WEIGHTS["semantic"]
    if not ea or not eb:
        return SimilarityComponent(name="semantic", weight=weight, detail="embedding missing")
    score = max(0.0, min(1.0, cosine(ea, eb)))
    return SimilarityComponent(name="semantic", weight=weight, score=round(score, 4), detail="narrative embedding cosine")


def explain_pair(
    a: Experience,
    b: Experience,
    embedding_a: list[float] | None = None,
    embedding_b: list[float] | None = None,
) -> SimilarityExplanation:
    components = [
        _semantic(embedding_a, embedding_b),
        _tag_overlap(a, b),
        _geographic(a, b),
        _category(a, b),
        _temporal(a, b),
    ]
    available = [c for c in components if c.available]
    total_weight = sum(COMPONENT_WEIGHTS.values())
    used_weight = sum(c.weight for c in available)
    score = sum(c.weight * c.score for c in available) / used_weight if used_weight else 0.0

    return SimilarityExplanation(
        experience_a=a.id,
        experience_b=b.id,
        score=round(min(1.0, max(0.0, score)), 4),
        components=components,
        confidence=round(used_weight / total_weight, 4),
        experience_ids=[a.id, b.id],
    )
