"""Abstract base class for the agent directory collaborator."""

from __future__ import annotations

from abc import ABC, abstractmethod

from lead_routing.core.models import Agent, Geography


class AgentDirectory(ABC):
    """Read-only source of candidate agents, plus the capacity counters.

    The snapshot returned by ``find_candidates`` may be stale; eligibility and
    scoring work on it as-is.
    """

    @abstractmethod
    async def find_candidates(self, category: str, geography: Geography) -> list[Agent]:
        """Return agents that may serve leads in this category/geography."""
        ...

    @abstractmethod
    async def get_agent(self, agent_id: str) -> Agent:
        """Fresh read of one agent. Raises NotFound if unknown."""
        ...

    @abstractmethod
    async def record_acceptance(self, agent_id: str, capacity: int) -> None:
        """Take one unit of the agent's capacity for an accepted offer.

        The check and the increment are one step: raises CapacityExceeded when
        the agent already holds ``capacity`` open leads.
        """
        ...

    @abstractmethod
    async def release_acceptance(self, agent_id: str) -> None:
        """Give back a unit taken by ``record_acceptance`` that was never used."""
        ...

    @abstractmethod
    async def record_closure(self, agent_id: str, won: bool) -> None:
        """Release one unit of capacity when the agent's lead closes."""
        ...

    async def close(self) -> None:
        """Clean up any resources (HTTP sessions, etc.)."""
        pass
