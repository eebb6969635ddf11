"""Agent directory adapters."""

from lead_routing.directory.base import AgentDirectory
from lead_routing.directory.remote import HttpAgentDirectory
from lead_routing.directory.memory import InMemoryAgentDirectory

__all__ = ["AgentDirectory", "HttpAgentDirectory", "InMemoryAgentDirectory"]
