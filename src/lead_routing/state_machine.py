"""Lead and assignment state machines with transition validation."""

from __future__ import annotations

import logging
from typing import Any

from lead_routing.core.errors import ConcurrentModification, InvalidTransition
from lead_routing.core.models import AssignmentStatus, Lead, LeadStatus

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Legal transition maps
# ---------------------------------------------------------------------------

LEAD_TRANSITIONS: dict[LeadStatus, set[LeadStatus]] = {
    LeadStatus.PENDING: {
        LeadStatus.ASSIGNED,
        LeadStatus.NEEDS_REVIEW,
        LeadStatus.CANCELLED,
    },
    LeadStatus.ASSIGNED: {
        LeadStatus.IN_PROGRESS,
        LeadStatus.NEEDS_REVIEW,
        LeadStatus.EXPIRED,
        LeadStatus.CANCELLED,
    },
    LeadStatus.IN_PROGRESS: {
        LeadStatus.CLOSED_WON,
        LeadStatus.CLOSED_LOST,
        LeadStatus.NEEDS_REVIEW,
        LeadStatus.CANCELLED,
    },
    # Re-entered manually by an operator
    LeadStatus.NEEDS_REVIEW: {
        LeadStatus.ASSIGNED,
        LeadStatus.EXPIRED,
        LeadStatus.CANCELLED,
    },
    LeadStatus.CLOSED_WON: set(),  # terminal
    LeadStatus.CLOSED_LOST: set(),  # terminal
    LeadStatus.EXPIRED: set(),  # terminal
    LeadStatus.CANCELLED: set(),  # terminal
}

LEAD_TERMINAL_STATES = {
    LeadStatus.CLOSED_WON,
    LeadStatus.CLOSED_LOST,
    LeadStatus.EXPIRED,
    LeadStatus.CANCELLED,
}

# Leads in these states no longer take offers
LEAD_CLOSED_TO_OFFERS = LEAD_TERMINAL_STATES | {LeadStatus.IN_PROGRESS}

ASSIGNMENT_TRANSITIONS: dict[AssignmentStatus, set[AssignmentStatus]] = {
    AssignmentStatus.OFFERED: {
        AssignmentStatus.ACCEPTED,
        AssignmentStatus.DECLINED,
        AssignmentStatus.EXPIRED,
        AssignmentStatus.SUPERSEDED,
    },
    AssignmentStatus.ACCEPTED: set(),  # terminal
    AssignmentStatus.DECLINED: set(),  # terminal
    AssignmentStatus.EXPIRED: set(),  # terminal
    AssignmentStatus.SUPERSEDED: set(),  # terminal
}


def validate_lead_transition(current: LeadStatus, target: LeadStatus) -> None:
    """Check if the lead transition is legal.

    Same-state is a no-op, except for terminal states, which never move.
    """
    if current in LEAD_TERMINAL_STATES:
        raise InvalidTransition(f"Lead is {current.value}, a terminal state")
    if current == target:
        return
    allowed = LEAD_TRANSITIONS.get(current, set())
    if target not in allowed:
        raise InvalidTransition(
            f"Illegal lead transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {sorted(s.value for s in allowed)}"
        )


def validate_assignment_transition(
    current: AssignmentStatus, target: AssignmentStatus
) -> None:
    """Check if the assignment transition is legal. Terminal states never move."""
    if target not in ASSIGNMENT_TRANSITIONS[current]:
        raise InvalidTransition(
            f"Illegal assignment transition: {current.value} -> {target.value}"
        )


class LeadStateMachine:
    """Applies validated, versioned lead status transitions."""

    def __init__(self, db: Any):
        self.db = db

    async def transition(
        self,
        lead: Lead,
        new_status: LeadStatus,
        **fields: Any,
    ) -> Lead:
        """Move ``lead`` to ``new_status`` with a version-checked write.

        Raises InvalidTransition for illegal moves and ConcurrentModification
        if the stored lead changed since ``lead`` was read.
        """
        validate_lead_transition(lead.status, new_status)
        if lead.status == new_status and not fields:
            return lead

        updated = await self.db.update_lead(
            lead.id, expected_version=lead.version, status=new_status, **fields
        )
        if updated is None:
            raise ConcurrentModification(
                f"Lead {lead.id} changed while moving to {new_status.value}"
            )
        if lead.status != new_status:
            logger.info(
                "Lead %s: %s -> %s", lead.id, lead.status.value, new_status.value
            )
        return updated
