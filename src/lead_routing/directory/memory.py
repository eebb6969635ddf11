"""In-process agent directory, used for local runs and tests."""

from __future__ import annotations

from collections.abc import Iterable

from lead_routing.core.errors import CapacityExceeded, NotFound
from lead_routing.core.models import Agent, Geography, TerritoryType
from lead_routing.directory.base import AgentDirectory


class InMemoryAgentDirectory(AgentDirectory):
    """Holds agents in a dict and hands out deep copies as snapshots."""

    def __init__(self, agents: Iterable[Agent] = ()):
        self._agents: dict[str, Agent] = {a.id: a.model_copy(deep=True) for a in agents}

    def add(self, agent: Agent) -> None:
        self._agents[agent.id] = agent.model_copy(deep=True)

    def get(self, agent_id: str) -> Agent:
        agent = self._agents.get(agent_id)
        if agent is None:
            raise NotFound(f"Agent not found: {agent_id}")
        return agent.model_copy(deep=True)

    async def find_candidates(self, category: str, geography: Geography) -> list[Agent]:
        """Coarse pre-filter: any territory or expertise overlap with the lead.

        Precise checks (containment, radius, capacity, recency) belong to the
        eligibility filter.
        """
        results = []
        for agent in self._agents.values():
            territory = agent.territory
            geo = territory.geographic
            if (
                geography.country in geo.countries
                or (geo.radius is not None and geography.coordinates is not None)
                or (
                    territory.type in (TerritoryType.CATEGORY, TerritoryType.HYBRID)
                    and category in territory.categories
                )
                or category in agent.expertise.categories
            ):
                results.append(agent.model_copy(deep=True))
        return results

    async def get_agent(self, agent_id: str) -> Agent:
        return self.get(agent_id)

    async def record_acceptance(self, agent_id: str, capacity: int) -> None:
        agent = self._agents.get(agent_id)
        if agent is None:
            raise NotFound(f"Agent not found: {agent_id}")
        if agent.open_leads >= capacity:
            raise CapacityExceeded(
                f"Agent {agent_id} is at capacity ({agent.open_leads}/{capacity})"
            )
        agent.stats.accepted_leads += 1

    async def release_acceptance(self, agent_id: str) -> None:
        agent = self._agents.get(agent_id)
        if agent is None:
            raise NotFound(f"Agent not found: {agent_id}")
        agent.stats.accepted_leads = max(0, agent.stats.accepted_leads - 1)

    async def record_closure(self, agent_id: str, won: bool) -> None:
        agent = self._agents.get(agent_id)
        if agent is None:
            raise NotFound(f"Agent not found: {agent_id}")
        agent.stats.closed_deals += 1
