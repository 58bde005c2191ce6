"""Search API: hybrid retrieval over experiences.

POST /api/v1/search: ranked CandidateSet for a question and filters
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from discovery.api.deps import get_caller_id, get_services
from discovery.models.experience import SearchFilters
from discovery.models.patterns import CandidateSet
from discovery.services import DiscoveryServices

router = APIRouter(prefix="/api/v1", tags=["search"])


class SearchRequest(BaseModel):
    query: str = ""
    filters: SearchFilters = Field(default_factory=SearchFilters)
    similar_to: str | None = None
    locale: str = "en"
    limit: int = 20
    offset: int = 0


@router.post("/search", response_model=CandidateSet)
async def search(
    request: SearchRequest,
    caller_id: str | None = Depends(get_caller_id),
    services: DiscoveryServices = Depends(get_services),
) -> CandidateSet:
    """Visible experiences ranked by combined vector + keyword score."""
    return await services.retriever.retrieve(
        query_text=request.query,
        filters=request.filters,
        limit=request.limit,
        offset=request.offset,
        viewer_id=caller_id,
        similar_to=request.similar_to,
        locale=request.locale,
    )
