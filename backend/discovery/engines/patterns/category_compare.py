"""Side-by-side comparison of two categories within a candidate set.

Each side gets its volume, most common places (normalised ``location_text``),
monthly distribution and most common attribute keys. The two sides are then
compared: shared places, shared and unique attribute keys, and the Pearson
correlation of the monthly counts over the union of months.
"""

from __future__ import annotations

import math
from collections import Counter
from datetime import date

from pydantic import BaseModel, Field, field_validator, model_validator

from discovery.models.experience import CATEGORIES, Experience
from discovery.models.patterns import CategoryComparison, CategoryProfile, LabelCount


class CompareCategoriesParams(BaseModel):
    category_a: str
    category_b: str
    date_from: date | None = None
    date_to: date | None = None
    top_n: int = Field(default=5, ge=1, le=20)

    @field_validator("category_a", "category_b")
    @classmethod
    def _known_category(cls, value: str) -> str:
        if value not in CATEGORIES:
            raise ValueError(f"Unknown category: {value}")
        return value

    @model_validator(mode="after")
    def _distinct(self) -> CompareCategoriesParams:
        if self.category_a == self.category_b:
            raise ValueError("category_a and category_b must differ")
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise ValueError("date_from is after date_to")
        return self


def _ranked(counts: Counter) -> list[LabelCount]:
    return [LabelCount(label=k, count=v) for k, v in sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))]


def _in_range(exp: Experience, params: CompareCategoriesParams) -> bool:
    if params.date_from is None and params.date_to is None:
        return True
    if exp.occurred_on is None:
        return False
    if params.date_from and exp.occurred_on < params.date_from:
        return False
    if params.date_to and exp.occurred_on > params.date_to:
        return False
    return True


def _profile(category: str, members: list[Experience], top_n: int) -> tuple[CategoryProfile, Counter, Counter, Counter]:
    places = Counter(e.location_text.strip().lower() for e in members if e.location_text.strip())
    months = Counter(e.occurred_on.strftime("%Y-%m") for e in members if e.occurred_on is not None)
    keys = Counter(key for e in members for key in e.attributes)
    by_month = sorted(months.items())
    peak = max(by_month, key=lambda kv: kv[1])[0] if by_month else None
    profile = CategoryProfile(
        category=category,
        count=len(members),
        top_locations=_ranked(places)[:top_n],
        peak_month=peak,
        months=[LabelCount(label=m, count=c) for m, c in by_month],
        top_attributes=_ranked(keys)[:top_n],
        experience_ids=[e.id for e in members],
    )
    return profile, places, months, keys


def pearson(xs: list[float], ys: list[float]) -> float:
    """Correlation of two aligned series; 0 when either is constant or shorter than 2."""
    n = len(xs)
    if n < 2:
        return 0.0
    mean_x = sum(xs) / n
    mean_y = sum(ys) / n
    cov = sum((x - mean_x) * (y - mean_y) for x, y in zip(xs, ys))
    var_x = sum((x - mean_x) ** 2 for x in xs)
    var_y = sum((y - mean_y) ** 2 for y in ys)
    if var_x == 0 or var_y == 0:
        return 0.0
    return round(cov / math.sqrt(var_x * var_y), 3)


def compare_categories(experiences: list[Experience], params: CompareCategoriesParams) -> CategoryComparison:
    selected = [e for e in experiences if _in_range(e, params)]
    members_a = [e for e in selected if e.category == params.category_a]
    members_b = [e for e in selected if e.category == params.category_b]
    side_a, places_a, months_a, keys_a = _profile(params.category_a, members_a, params.top_n)
    side_b, places_b, months_b, keys_b = _profile(params.category_b, members_b, params.top_n)
    all_months = sorted(set(months_a) | set(months_b))

    return CategoryComparison(
        category_a=side_a,
        category_b=side_b,
        difference=side_a.count - side_b.count,
        ratio=round(side_a.count / side_b.count, 2) if side_b.count else None,
        shared_locations=sorted(set(places_a) & set(places_b)),
        temporal_correlation=pearson(
            [months_a.get(m, 0) for m in all_months],
            [months_b.get(m, 0) for m in all_months],
        ),
        shared_attributes=sorted(set(keys_a) & set(keys_b)),
        unique_to_a=sorted(set(keys_a) - set(keys_b)),
        unique_to_b=sorted(set(keys_b) - set(keys_a)),
    )
