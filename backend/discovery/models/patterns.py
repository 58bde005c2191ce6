"""Retrieval and pattern-detection result models (Pydantic, not persisted).

PatternResult is a discriminated union on ``kind``; every variant carries a
``confidence`` in [0, 1] and the ``experience_ids`` that support it.
"""

from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field


class CandidateItem(BaseModel):
    experience_id: str
    score: float = Field(ge=0.0, le=1.0)
    vector_score: float = 0.0
    keyword_score: float = 0.0


class CandidateSet(BaseModel):
    """Ordered retrieval output. Ranking is the order of ``items``."""

    items: list[CandidateItem] = Field(default_factory=list)
    total: int = 0  # matches before limit/offset
    limit: int = 20
    offset: int = 0
    degraded_signals: list[str] = Field(default_factory=list)

    @property
    def ids(self) -> list[str]:
        return [item.experience_id for item in self.items]


class _PatternBase(BaseModel):
    confidence: float = Field(ge=0.0, le=1.0)
    experience_ids: list[str] = Field(default_factory=list)


class GeographicCluster(_PatternBase):
    kind: Literal["geographic_cluster"] = "geographic_cluster"
    cluster_id: int
    centroid_lat: float
    centroid_lng: float
    member_count: int
    radius_km: float


class TemporalPattern(_PatternBase):
    kind: Literal["temporal_cycle"] = "temporal_cycle"
    cycle: str  # "lunar" | "weekday"
    phase: str
    phase_label: str
    observed: int
    expected: float
    z_score: float  # deviation from the uniform expectation, in standard errors
    excess_ratio: float  # observed / expected - 1


class TagPair(_PatternBase):
    kind: Literal["tag_pair"] = "tag_pair"
    tag_a: str
    tag_b: str
    weight: int  # experiences carrying both tags


class CrossCategoryPattern(_PatternBase):
    kind: Literal["cross_category"] = "cross_category"
    signal_type: Literal["tag", "location", "time_window"]
    signal_value: str
    categories: list[str]
    pair_count: int  # distinct experience pairs with differing categories


class SimilarityComponent(BaseModel):
    name: str
    weight: float
    score: float | None = None  # None = unavailable for this pair
    detail: str = ""

    @property
    def available(self) -> bool:
        return self.score is not None


class SimilarityExplanation(_PatternBase):
    kind: Literal["similarity"] = "similarity"
    experience_a: str
    experience_b: str
    score: float = Field(ge=0.0, le=1.0)
    components: list[SimilarityComponent] = Field(default_factory=list)


PatternResult = Annotated[
    Union[
        GeographicCluster,
        TemporalPattern,
        TagPair,
        CrossCategoryPattern,
        SimilarityExplanation,
    ],
    Field(discriminator="kind"),
]


class LabelCount(BaseModel):
    label: str
    count: int


class CategoryProfile(BaseModel):
    category: str
    count: int
    top_locations: list[LabelCount] = Field(default_factory=list)
    peak_month: str | None = None  # YYYY-MM
    months: list[LabelCount] = Field(default_factory=list)  # chronological
    top_attributes: list[LabelCount] = Field(default_factory=list)
    experience_ids: list[str] = Field(default_factory=list)


class CategoryComparison(BaseModel):
    kind: Literal["category_comparison"] = "category_comparison"
    category_a: CategoryProfile
    category_b: CategoryProfile
    difference: int  # count_a - count_b
    ratio: float | None = None  # count_a / count_b; None when category_b is empty
    shared_locations: list[str] = Field(default_factory=list)
    temporal_correlation: float = Field(default=0.0, ge=-1.0, le=1.0)
    shared_attributes: list[str] = Field(default_factory=list)
    unique_to_a: list[str] = Field(default_factory=list)
    unique_to_b: list[str] = Field(default_factory=list)

    @property
    def experience_ids(self) -> list[str]:
        return self.category_a.experience_ids + self.category_b.experience_ids


class AttributeCorrelation(_PatternBase):
    kind: Literal["attribute_correlation"] = "attribute_correlation"
    attribute_a: str  # "key=value"
    attribute_b: str
    cooccurrences: int
    lift: float


class AttributeCorrelationReport(BaseModel):
    category: str | None = None
    attribute_key: str | None = None
    total_experiences: int = 0
    total_attributes: int = 0  # distinct key=value items
    total_pairs: int = 0  # before top_n
    average_lift: float = 0.0  # over the returned pairs
    correlations: list[AttributeCorrelation] = Field(default_factory=list)

    @property
    def experience_ids(self) -> list[str]:
        return list(dict.fromkeys(i for c in self.correlations for i in c.experience_ids))


class PatternSummary(BaseModel):
    """All set-level detectors run over one candidate set."""

    geographic: list[GeographicCluster] = Field(default_factory=list)
    temporal: list[TemporalPattern] = Field(default_factory=list)
    tag_network: list[TagPair] = Field(default_factory=list)
    cross_category: list[CrossCategoryPattern] = Field(default_factory=list)
    membership: dict[str, list[str]] = Field(default_factory=dict)  # experience_id -> kinds
    errors: dict[str, str] = Field(default_factory=dict)  # detector -> error
