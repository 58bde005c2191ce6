"""Conversational sessions API.

POST /api/v1/sessions/{id}/turns         : Run a turn, return the finished AgentTurn
GET  /api/v1/sessions/{id}/turns/stream  : Same turn as SSE (state, plan, tool, token, done, error)
POST /api/v1/sessions/{id}/cancel        : Cancel the session's running turn
GET  /api/v1/sessions                    : List sessions (newest first)
GET  /api/v1/sessions/{id}               : Session with its turn log
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from discovery.api.deps import get_caller_id, get_services
from discovery.models.errors import DiscoveryError
from discovery.models.messages import AgentTurn
from discovery.services import DiscoveryServices

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["sessions"])


# === Request / response models ===


class TurnRequest(BaseModel):
    message: str = Field(min_length=1, max_length=4000)
    locale: str = "en"


class CancelResponse(BaseModel):
    session_id: str
    cancelled: bool


class SessionSummary(BaseModel):
    id: str
    title: str
    created_at: datetime
    updated_at: datetime
    total_cost: float
    turn_count: int


class SessionDetail(SessionSummary):
    turns: list[AgentTurn] = Field(default_factory=list)


def _sse_event(event: str, data: dict) -> str:
    """Format a named SSE event."""
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


# === Endpoints ===


@router.post("/sessions/{session_id}/turns", response_model=AgentTurn)
async def create_turn(
    session_id: str,
    request: TurnRequest,
    caller_id: str | None = Depends(get_caller_id),
    services: DiscoveryServices = Depends(get_services),
) -> AgentTurn:
    """Run one turn. A FAILED turn is still a 200; see ``state`` and ``failure_reason``."""
    return await services.orchestrator.converse(session_id, request.message, caller_id, request.locale)


@router.get("/sessions/{session_id}/turns/stream")
async def stream_turn(
    session_id: str,
    message: str = Query(min_length=1, max_length=4000),
    locale: str = Query(default="en"),
    caller_id: str | None = Depends(get_caller_id),
    services: DiscoveryServices = Depends(get_services),
) -> StreamingResponse:
    """SSE endpoint for a streamed turn.

    Uses GET because EventSource API only supports GET.
    """
    orchestrator = services.orchestrator
    message = await orchestrator.prepare(session_id, message, caller_id)

    async def event_generator():
        try:
            async for event in orchestrator.converse_stream(session_id, message, caller_id, locale):
                yield _sse_event(event.event, event.data)
        except asyncio.CancelledError:
            # client disconnected; the turn was logged as cancelled
            return
        except DiscoveryError as e:
            yield _sse_event("error", e.to_dict())
        except Exception as e:
            logger.error("Stream error for session %s: %s", session_id, e)
            yield _sse_event("error", {"detail": "Internal server error", "error": "server"})

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.post("/sessions/{session_id}/cancel", response_model=CancelResponse)
async def cancel_turn(
    session_id: str,
    caller_id: str | None = Depends(get_caller_id),
    services: DiscoveryServices = Depends(get_services),
) -> CancelResponse:
    """``cancelled`` is false when the session has no running turn. Owner only."""
    cancelled = await services.orchestrator.cancel(session_id, caller_id)
    return CancelResponse(session_id=session_id, cancelled=cancelled)


@router.get("/sessions", response_model=list[SessionSummary])
async def list_sessions(
    limit: int = 50,
    offset: int = 0,
    caller_id: str | None = Depends(get_caller_id),
    services: DiscoveryServices = Depends(get_services),
) -> list[SessionSummary]:
    """The caller's sessions, most recently active first."""
    sessions = await services.turn_log.list_sessions(caller_id, limit=limit, offset=offset)
    return [
        SessionSummary(
            id=c.id,
            title=c.title,
            created_at=c.created_at,
            updated_at=c.updated_at,
            total_cost=c.total_cost,
            turn_count=c.turn_count,
        )
        for c in sessions
    ]


@router.get("/sessions/{session_id}", response_model=SessionDetail)
async def get_session_detail(
    session_id: str,
    caller_id: str | None = Depends(get_caller_id),
    services: DiscoveryServices = Depends(get_services),
) -> SessionDetail:
    await services.turn_log.check_owner(session_id, caller_id)
    conv, turns = await services.turn_log.get_session(session_id)
    return SessionDetail(
        id=conv.id,
        title=conv.title,
        created_at=conv.created_at,
        updated_at=conv.updated_at,
        total_cost=conv.total_cost,
        turn_count=conv.turn_count,
        turns=turns,
    )
