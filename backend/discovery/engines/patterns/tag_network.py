"""Tag co-occurrence network.

Edges are unordered pairs of distinct tags that appear together on at least
``min_cooccurrence`` experiences. Confidence is the Jaccard overlap of the
two tags' experience sets, so a pair that always travels together scores 1.
Every qualifying pair is returned unless ``max_pairs`` caps the list, in
which case the heaviest pairs are kept.
"""

from __future__ import annotations

from itertools import combinations

from pydantic import BaseModel, Field

from discovery.models.experience import Experience
from discovery.models.patterns import TagPair


class TagNetworkParams(BaseModel):
    min_cooccurrence: int = Field(default=2, ge=1)
    min_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    max_pairs: int | None = Field(default=None, ge=1)


def normalize_tag(tag: str) -> str:
    return tag.strip().lower()


def detect_tag_pairs(experiences: list[Experience], params: TagNetworkParams) -> list[TagPair]:
    tag_members: dict[str, set[str]] = {}
    pair_members: dict[tuple[str, str], list[str]] = {}

    for exp in experiences:
        tags = sorted({normalize_tag(t) for t in exp.tags if normalize_tag(t)})
        for tag in tags:
            tag_members.setdefault(tag, set()).add(exp.id)
        for a, b in combinations(tags, 2):
            pair_members.setdefault((a, b), []).append(exp.id)

    pairs: list[TagPair] = []
    for (a, b), ids in pair_members.items():
        if len(ids) < params.min_cooccurrence:
            continue
        union = tag_members[a] | tag_members[b]
        confidence = round(len(ids) / len(union), 4)
        if confidence < params.min_confidence:
            continue
        pairs.append(TagPair(tag_a=a, tag_b=b, weight=len(ids), confidence=confidence, experience_ids=ids))

    pairs.sort(key=lambda p: (-p.weight, -p.confidence, p.tag_a, p.tag_b))
    if params.max_pairs is not None:
        pairs = pairs[: params.max_pairs]
    return pairs
