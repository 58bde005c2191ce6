"""Experiences API: submission and owner edits.

POST   /api/v1/experiences       : Submit an experience (embedded on write)
POST   /api/v1/experiences/suggest-tags : Canonical tags found in draft text
GET    /api/v1/experiences/{id}  : Fetch one visible experience
PUT    /api/v1/experiences/{id}  : Owner edit (rejected once locked)
DELETE /api/v1/experiences/{id}  : Owner soft delete
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from discovery.api.deps import get_caller_id, get_services
from discovery.models.errors import PermissionDeniedError
from discovery.models.experience import (
    Experience,
    ExperienceCreate,
    TagSuggestion,
    TagSuggestionRequest,
    VisibilityScope,
)
from discovery.services import DiscoveryServices

router = APIRouter(prefix="/api/v1", tags=["experiences"])


def _require_caller(caller_id: str | None) -> str:
    if not caller_id:
        raise PermissionDeniedError("X-Caller-Id is required to modify experiences")
    return caller_id


@router.post("/experiences", response_model=Experience, status_code=201)
async def create_experience(
    payload: ExperienceCreate,
    caller_id: str | None = Depends(get_caller_id),
    services: DiscoveryServices = Depends(get_services),
) -> Experience:
    if _require_caller(caller_id) != payload.user_id:
        raise PermissionDeniedError("Experiences can only be submitted for the calling user")
    return await services.store.create(payload)


@router.post("/experiences/suggest-tags", response_model=TagSuggestion)
async def suggest_tags(
    payload: TagSuggestionRequest,
    services: DiscoveryServices = Depends(get_services),
) -> TagSuggestion:
    """Tags the draft mentions that are not chosen yet."""
    text = f"{payload.title} {payload.narrative}"
    chosen = {t.strip().lower() for t in payload.tags}
    derived = services.retriever.extractor.derive_tags(text, payload.locale)
    return TagSuggestion(tags=[t for t in derived if t not in chosen])


@router.get("/experiences/{experience_id}", response_model=Experience)
async def get_experience(
    experience_id: str,
    caller_id: str | None = Depends(get_caller_id),
    services: DiscoveryServices = Depends(get_services),
) -> Experience:
    return await services.store.get(experience_id, VisibilityScope(viewer_id=caller_id))


@router.put("/experiences/{experience_id}", response_model=Experience)
async def update_experience(
    experience_id: str,
    payload: ExperienceCreate,
    caller_id: str | None = Depends(get_caller_id),
    services: DiscoveryServices = Depends(get_services),
) -> Experience:
    return await services.store.update(experience_id, _require_caller(caller_id), payload)


@router.delete("/experiences/{experience_id}", status_code=204)
async def delete_experience(
    experience_id: str,
    caller_id: str | None = Depends(get_caller_id),
    services: DiscoveryServices = Depends(get_services),
) -> None:
    await services.store.soft_delete(experience_id, _require_caller(caller_id))
