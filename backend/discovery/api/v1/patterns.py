"""Patterns & similarity API.

POST /api/v1/patterns/summary                : All set-level detectors at once
POST /api/v1/patterns/compare-categories     : Two categories side by side
POST /api/v1/patterns/attribute-correlation  : Co-occurring attribute values
POST /api/v1/patterns/{detector}             : One detector over candidate ids
POST /api/v1/experiences/explain-similarity  : Component breakdown for a pair
GET  /api/v1/users/{user_id}/twins           : Users with similar profiles
GET  /api/v1/users/{user_a}/similarity/{user_b}: One cached pair score
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from discovery.api.deps import get_caller_id, get_services
from discovery.models.patterns import (
    AttributeCorrelationReport,
    CategoryComparison,
    PatternResult,
    PatternSummary,
    SimilarityExplanation,
)
from discovery.models.similarity import Twin, UserSimilarity
from discovery.services import DiscoveryServices

router = APIRouter(prefix="/api/v1", tags=["patterns"])


# === Request models ===


class DetectRequest(BaseModel):
    candidate_ids: list[str] = Field(default_factory=list)
    params: dict = Field(default_factory=dict)


class SummaryRequest(BaseModel):
    candidate_ids: list[str] = Field(default_factory=list)
    params: dict[str, dict] = Field(default_factory=dict)  # detector name -> params


class ExplainRequest(BaseModel):
    experience_a: str
    experience_b: str


# === Endpoints ===


@router.post("/patterns/summary", response_model=PatternSummary)
async def pattern_summary(
    request: SummaryRequest,
    caller_id: str | None = Depends(get_caller_id),
    services: DiscoveryServices = Depends(get_services),
) -> PatternSummary:
    return await services.patterns.summarize(request.candidate_ids, request.params, caller_id)


@router.post("/patterns/compare-categories", response_model=CategoryComparison)
async def compare_categories(
    request: DetectRequest,
    caller_id: str | None = Depends(get_caller_id),
    services: DiscoveryServices = Depends(get_services),
) -> CategoryComparison:
    return await services.patterns.compare_categories(request.candidate_ids, request.params, caller_id)


@router.post("/patterns/attribute-correlation", response_model=AttributeCorrelationReport)
async def attribute_correlation(
    request: DetectRequest,
    caller_id: str | None = Depends(get_caller_id),
    services: DiscoveryServices = Depends(get_services),
) -> AttributeCorrelationReport:
    return await services.patterns.correlate_attributes(request.candidate_ids, request.params, caller_id)


@router.post("/patterns/{detector}", response_model=list[PatternResult])
async def detect_patterns(
    detector: str,
    request: DetectRequest,
    caller_id: str | None = Depends(get_caller_id),
    services: DiscoveryServices = Depends(get_services),
) -> list:
    """Run ``geographic``, ``temporal``, ``tag_network`` or ``cross_category``."""
    return await services.patterns.detect(detector, request.candidate_ids, request.params, caller_id)


@router.post("/experiences/explain-similarity", response_model=SimilarityExplanation)
async def explain_similarity(
    request: ExplainRequest,
    caller_id: str | None = Depends(get_caller_id),
    services: DiscoveryServices = Depends(get_services),
) -> SimilarityExplanation:
    return await services.patterns.explain(request.experience_a, request.experience_b, caller_id)


@router.get("/users/{user_id}/twins", response_model=list[Twin])
async def find_twins(
    user_id: str,
    min_score: float | None = Query(default=None),
    limit: int = Query(default=10),
    services: DiscoveryServices = Depends(get_services),
) -> list[Twin]:
    """Most similar users, best first. Never includes ``user_id`` itself."""
    return await services.similarity.find_twins(user_id, min_score=min_score, limit=limit)


@router.get("/users/{user_a}/similarity/{user_b}", response_model=UserSimilarity)
async def user_similarity(
    user_a: str,
    user_b: str,
    services: DiscoveryServices = Depends(get_services),
) -> UserSimilarity:
    return await services.similarity.similarity(user_a, user_b)
