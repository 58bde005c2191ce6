"""Attribute correlation: which structured attribute values travel together.

Items are ``key=value`` strings over the attribute keys the caller marks as
filterable; free-text attributes never enter. For each unordered pair of items
on at least ``min_cooccurrence`` experiences:

- lift = P(a, b) / (P(a) * P(b)), so 1 means independent
- confidence = P(b | a), with a the alphabetically first item

Pairs are ranked by lift, then co-occurrence count.
"""

from __future__ import annotations

from collections import Counter
from itertools import combinations

from pydantic import BaseModel, Field, field_validator

from discovery.models.experience import CATEGORIES, Experience
from discovery.models.patterns import AttributeCorrelation, AttributeCorrelationReport


class AttributeCorrelationParams(BaseModel):
    category: str | None = Field(default=None, description="Restrict to one category")
    attribute_key: str | None = Field(default=None, description="Only pairs involving this key")
    min_cooccurrence: int = Field(default=3, ge=1)
    top_n: int = Field(default=10, ge=1, le=50)

    @field_validator("category")
    @classmethod
    def _known_category(cls, value: str | None) -> str | None:
        if value is not None and value not in CATEGORIES:
            raise ValueError(f"Unknown category: {value}")
        return value


def _items(exp: Experience, filterable: set[str]) -> list[str]:
    return sorted(
        f"{key}={str(value).strip().lower()}"
        for key, value in exp.attributes.items()
        if key in filterable and str(value).strip()
    )


def correlate_attributes(
    experiences: list[Experience],
    params: AttributeCorrelationParams,
    filterable: set[str],
) -> AttributeCorrelationReport:
    selected = [e for e in experiences if params.category is None or e.category == params.category]
    item_counts: Counter = Counter()
    pair_members: dict[tuple[str, str], list[str]] = {}
    for exp in selected:
        items = _items(exp, filterable)
        item_counts.update(items)
        for a, b in combinations(items, 2):
            pair_members.setdefault((a, b), []).append(exp.id)

    n = len(selected)
    prefix = f"{params.attribute_key}=" if params.attribute_key else None
    correlations: list[AttributeCorrelation] = []
    for (a, b), ids in pair_members.items():
        if len(ids) < params.min_cooccurrence:
            continue
        if prefix and not (a.startswith(prefix) or b.startswith(prefix)):
            continue
        count = len(ids)
        correlations.append(AttributeCorrelation(
            attribute_a=a,
            attribute_b=b,
            cooccurrences=count,
            lift=round(count * n / (item_counts[a] * item_counts[b]), 3),
            confidence=round(count / item_counts[a], 3),
            experience_ids=ids,
        ))

    correlations.sort(key=lambda c: (-c.lift, -c.cooccurrences, c.attribute_a, c.attribute_b))
    top = correlations[: params.top_n]
    return AttributeCorrelationReport(
        category=params.category,
        attribute_key=params.attribute_key,
        total_experiences=n,
        total_attributes=len(item_counts),
        total_pairs=len(correlations),
        average_lift=round(sum(c.lift for c in top) / len(top), 3) if top else 0.0,
        correlations=top,
    )
