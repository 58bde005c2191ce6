"""Agent Registry: holds the planner and synthesizer and tracks their health.

- Critical agents (synthesizer): a failure fails the turn
- Optional agents (planner): the orchestrator degrades (fallback plan)
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from discovery.models.agent import AgentSpec, AgentStatus

if TYPE_CHECKING:
    from discovery.agents.base import BaseAgent
    from discovery.agents.tools import ToolRegistry
    from discovery.llm.layer import LLMLayer

logger = logging.getLogger(__name__)

_UNAVAILABLE_AFTER = 3  # consecutive failures


class AgentRegistry:
    """Manages agent instances and their runtime state."""

    def __init__(self) -> None:
        self._agents: dict[str, BaseAgent] = {}

    def register(self, agent: BaseAgent) -> None:
        self._agents[agent.agent_id] = agent

    def get(self, agent_id: str) -> BaseAgent | None:
        return self._agents.get(agent_id)

    def get_or_raise(self, agent_id: str) -> BaseAgent:
        """Get agent by ID, raising if not found."""
        agent = self._agents.get(agent_id)
        if agent is None:
            raise KeyError(f"Agent not found: {agent_id}")
        return agent

    def list_agents(self) -> list[AgentSpec]:
        return [a.spec for a in self._agents.values()]

    def list_statuses(self) -> list[AgentStatus]:
        return [a.status for a in self._agents.values()]

    def is_available(self, agent_id: str) -> bool:
        """Registered and not failed ``_UNAVAILABLE_AFTER`` times in a row."""
        agent = self._agents.get(agent_id)
        if agent is None:
            return False
        return agent.status.state != "unavailable" and agent.status.consecutive_failures < _UNAVAILABLE_AFTER


def create_registry(llm: LLMLayer, tools: ToolRegistry) -> AgentRegistry:
    """Factory: create an AgentRegistry with the planner and synthesizer."""
    from discovery.agents.base import BaseAgent
    from discovery.agents.planner import PlannerAgent
    from discovery.agents.synthesizer import SynthesizerAgent

    registry = AgentRegistry()

    agent_defs: list[tuple[type[BaseAgent], str, dict]] = [
        (PlannerAgent, "planner", {"tools": tools}),
        (SynthesizerAgent, "synthesizer", {}),
    ]

    for agent_cls, spec_id, extra_kwargs in agent_defs:
        try:
            spec = BaseAgent.load_spec(spec_id)
            agent = agent_cls(spec=spec, llm=llm, **extra_kwargs)
            registry.register(agent)
            logger.info("Registered agent: %s", spec_id)
        except Exception as e:
            logger.error("Failed to register agent %s: %s", spec_id, e)

    return registry
