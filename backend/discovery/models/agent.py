"""Agent models.

Includes: AgentSpec, AgentStatus, AgentOutput.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, Field

from discovery.config import ModelTier


class AgentSpec(BaseModel):
    """Agent specification loaded from YAML files.

    Stored in backend/discovery/agents/specs/*.yaml.
    """

    id: str                         # e.g., "planner"
    name: str                       # e.g., "Discovery Planner"
    role: Literal["planning", "synthesis"]
    model_tier: ModelTier
    criticality: Literal["critical", "optional"] = "optional"

    system_prompt_file: str         # relative to agents/prompts/
    max_tokens: int = 1024
    max_attempts: int = Field(default=2, ge=1)  # whole-step retries in BaseAgent.execute
    tools: list[str] = Field(default_factory=list)  # empty = all registered tools

    failure_modes: list[str] = Field(default_factory=list)
    degradation_mode: str | None = None

    version: str = "0.1.0"


class AgentStatus(BaseModel):
    """Runtime status of an agent."""

    agent_id: str
    state: Literal["idle", "busy", "unavailable"] = "idle"
    consecutive_failures: int = 0
    total_calls: int = 0
    total_cost: float = 0.0


class AgentOutput(BaseModel):
    """Standardized output from any agent execution."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    agent_id: str

    output: Any = None
    output_type: str = ""
    summary: str = ""

    model_tier: ModelTier = "sonnet"
    model_version: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    cached_input_tokens: int = 0
    cost: float = 0.0
    duration_ms: int = 0

    error: str | None = None
    retry_count: int = 0

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_success(self) -> bool:
        return self.error is None
