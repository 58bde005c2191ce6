"""Conversation and orchestration models.

Includes: Conversation (SQL), ConversationTurn (SQL, the append-only turn log),
ContextPackage, ToolCall, ToolOutcome, Citation, AgentTurn (Pydantic).
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, Field
from sqlmodel import JSON, Column, SQLModel
from sqlmodel import Field as SQLField

TurnState = Literal["RECEIVED", "PLANNING", "EXECUTING", "SYNTHESIZING", "DELIVERED", "FAILED"]
OutcomeStatus = Literal["ok", "error", "timeout", "rate_limited", "skipped", "cancelled"]


class Conversation(SQLModel, table=True):
    """A discovery session. One row per session id."""

    __tablename__ = "conversation"

    id: str = SQLField(default_factory=lambda: str(uuid4()), primary_key=True)
    user_id: str | None = SQLField(default=None, index=True)
    title: str = ""
    created_at: datetime = SQLField(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = SQLField(default_factory=lambda: datetime.now(timezone.utc))
    total_cost: float = 0.0
    turn_count: int = 0


class ConversationTurn(SQLModel, table=True):
    """A finished turn. Written once when the turn reaches a terminal state."""

    __tablename__ = "conversation_turn"

    id: str = SQLField(default_factory=lambda: str(uuid4()), primary_key=True)
    conversation_id: str = SQLField(index=True)
    turn_number: int = 0
    message: str = ""
    state: str = "DELIVERED"
    plan: list[dict] = SQLField(default_factory=list, sa_column=Column(JSON))
    tool_outcomes: list[dict] = SQLField(default_factory=list, sa_column=Column(JSON))
    answer: str | None = None
    citations: list[dict] = SQLField(default_factory=list, sa_column=Column(JSON))
    ungrounded_citations: list[str] = SQLField(default_factory=list, sa_column=Column(JSON))
    failure_reason: str | None = None
    cost: float = 0.0
    duration_ms: int = 0
    created_at: datetime = SQLField(default_factory=lambda: datetime.now(timezone.utc))


# === Pydantic-only models (not persisted) ===


class ContextPackage(BaseModel):
    """Context handed to an agent for one step of a turn."""

    task_description: str
    history: list[dict] = Field(default_factory=list)  # prior turns as LLM messages
    prior_step_outputs: list[dict] = Field(default_factory=list)
    constraints: dict = Field(default_factory=dict)
    metadata: dict = Field(default_factory=dict)


class ToolCall(BaseModel):
    """A tool invocation proposed by the planner."""

    call_id: str = Field(default_factory=lambda: uuid4().hex[:12])
    tool: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    index: int = 0  # position in the planner's proposal


class ToolOutcome(BaseModel):
    call_id: str
    tool: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    status: OutcomeStatus
    stage: int = 0
    index: int = 0
    output: Any = None
    error: str | None = None
    experience_ids: list[str] = Field(default_factory=list)
    duration_ms: int = 0

    @property
    def completed(self) -> bool:
        return self.status == "ok"


class Citation(BaseModel):
    marker: int
    experience_id: str
    tool: str = ""
    snippet: str = ""


class AgentTurn(BaseModel):
    """The result of one conversational turn, as returned to callers."""

    session_id: str
    turn_number: int = 0
    message: str
    state: TurnState = "RECEIVED"
    plan: list[ToolCall] = Field(default_factory=list)
    tool_outcomes: list[ToolOutcome] = Field(default_factory=list)
    answer: str | None = None
    citations: list[Citation] = Field(default_factory=list)
    ungrounded_citations: list[str] = Field(default_factory=list)
    incomplete_analyses: list[str] = Field(default_factory=list)
    failure_reason: str | None = None
    total_cost: float = 0.0
    duration_ms: int = 0
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_row(cls, row: ConversationTurn) -> AgentTurn:
        outcomes = [ToolOutcome(**o) for o in row.tool_outcomes]
        return cls(
            session_id=row.conversation_id,
            turn_number=row.turn_number,
            message=row.message,
            state=row.state,  # type: ignore[arg-type]
            plan=[ToolCall(**c) for c in row.plan],
            tool_outcomes=outcomes,
            answer=row.answer,
            citations=[Citation(**c) for c in row.citations],
            ungrounded_citations=list(row.ungrounded_citations),
            incomplete_analyses=[o.tool for o in outcomes if not o.completed],
            failure_reason=row.failure_reason,
            total_cost=row.cost,
            duration_ms=row.duration_ms,
            created_at=row.created_at,
        )
