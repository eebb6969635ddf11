"""Core modules: models, errors, database, config."""

from lead_routing.core.config import Settings
from lead_routing.core.models import (
    Agent,
    Assignment,
    Lead,
    LeadAssignmentState,
    LifecycleEvent,
)

__all__ = [
    "Settings",
    "Agent",
    "Assignment",
    "Lead",
    "LeadAssignmentState",
    "LifecycleEvent",
]
