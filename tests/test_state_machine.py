"""Tests for the lead and assignment state machines."""

from __future__ import annotations

import pytest

from lead_routing.core.errors import ConcurrentModification, InvalidTransition
from lead_routing.core.models import AssignmentStatus, LeadStatus
from lead_routing.state_machine import (
    ASSIGNMENT_TRANSITIONS,
    LEAD_CLOSED_TO_OFFERS,
    LEAD_TERMINAL_STATES,
    LEAD_TRANSITIONS,
    LeadStateMachine,
    validate_assignment_transition,
    validate_lead_transition,
)


# ---------------------------------------------------------------------------
# Transition validation (unit tests - no DB required)
# ---------------------------------------------------------------------------


class TestLeadTransitionRules:
    def test_pending_to_assigned(self):
        assert LeadStatus.ASSIGNED in LEAD_TRANSITIONS[LeadStatus.PENDING]

    def test_pending_to_needs_review(self):
        assert LeadStatus.NEEDS_REVIEW in LEAD_TRANSITIONS[LeadStatus.PENDING]

    def test_pending_cannot_jump_to_in_progress(self):
        assert LeadStatus.IN_PROGRESS not in LEAD_TRANSITIONS[LeadStatus.PENDING]

    def test_assigned_to_in_progress(self):
        assert LeadStatus.IN_PROGRESS in LEAD_TRANSITIONS[LeadStatus.ASSIGNED]

    def test_in_progress_to_closed(self):
        assert LeadStatus.CLOSED_WON in LEAD_TRANSITIONS[LeadStatus.IN_PROGRESS]
        assert LeadStatus.CLOSED_LOST in LEAD_TRANSITIONS[LeadStatus.IN_PROGRESS]

    def test_in_progress_cannot_go_back_to_assigned(self):
        assert LeadStatus.ASSIGNED not in LEAD_TRANSITIONS[LeadStatus.IN_PROGRESS]

    def test_needs_review_can_be_reassigned(self):
        assert LeadStatus.ASSIGNED in LEAD_TRANSITIONS[LeadStatus.NEEDS_REVIEW]


class TestTerminalStates:
    def test_terminal_states_have_no_exits(self):
        for status in LEAD_TERMINAL_STATES:
            assert LEAD_TRANSITIONS[status] == set()

    def test_in_progress_is_closed_to_offers_but_not_terminal(self):
        assert LeadStatus.IN_PROGRESS in LEAD_CLOSED_TO_OFFERS
        assert LeadStatus.IN_PROGRESS not in LEAD_TERMINAL_STATES

    def test_only_offered_assignments_move(self):
        for status, targets in ASSIGNMENT_TRANSITIONS.items():
            if status == AssignmentStatus.OFFERED:
                assert targets
            else:
                assert targets == set()


class TestValidation:
    def test_legal_transition_passes(self):
        validate_lead_transition(LeadStatus.ASSIGNED, LeadStatus.IN_PROGRESS)

    def test_same_state_is_noop(self):
        validate_lead_transition(LeadStatus.ASSIGNED, LeadStatus.ASSIGNED)

    def test_illegal_transition_raises(self):
        with pytest.raises(InvalidTransition, match="Illegal lead transition"):
            validate_lead_transition(LeadStatus.PENDING, LeadStatus.CLOSED_WON)

    @pytest.mark.parametrize("status", sorted(LEAD_TERMINAL_STATES, key=lambda s: s.value))
    def test_terminal_state_rejects_same_state(self, status):
        with pytest.raises(InvalidTransition, match="terminal"):
            validate_lead_transition(status, status)

    def test_terminal_state_rejects_exit(self):
        with pytest.raises(InvalidTransition, match="terminal"):
            validate_lead_transition(LeadStatus.CLOSED_LOST, LeadStatus.ASSIGNED)

    def test_assignment_offered_to_accepted(self):
        validate_assignment_transition(AssignmentStatus.OFFERED, AssignmentStatus.ACCEPTED)

    def test_accepted_cannot_be_declined(self):
        with pytest.raises(InvalidTransition):
            validate_assignment_transition(AssignmentStatus.ACCEPTED, AssignmentStatus.DECLINED)

    def test_expired_cannot_be_reoffered(self):
        with pytest.raises(InvalidTransition):
            validate_assignment_transition(AssignmentStatus.EXPIRED, AssignmentStatus.OFFERED)


# ---------------------------------------------------------------------------
# Versioned transitions (SQLite)
# ---------------------------------------------------------------------------


class TestLeadStateMachine:
    async def test_transition_bumps_version(self, db, make_lead):
        lead = await db.create_lead(make_lead())
        sm = LeadStateMachine(db)

        updated = await sm.transition(lead, LeadStatus.ASSIGNED)

        assert updated.status == LeadStatus.ASSIGNED
        assert updated.version == lead.version + 1

    async def test_extra_fields_are_written(self, db, make_lead):
        lead = await db.create_lead(make_lead())
        sm = LeadStateMachine(db)
        lead = await sm.transition(lead, LeadStatus.ASSIGNED)

        updated = await sm.transition(lead, LeadStatus.IN_PROGRESS, active_agent_id="agent-a")

        assert updated.active_agent_id == "agent-a"

    async def test_stale_version_raises(self, db, make_lead):
        lead = await db.create_lead(make_lead())
        sm = LeadStateMachine(db)
        await sm.transition(lead, LeadStatus.ASSIGNED)

        with pytest.raises(ConcurrentModification):
            await sm.transition(lead, LeadStatus.NEEDS_REVIEW)

    async def test_illegal_transition_leaves_row_untouched(self, db, make_lead):
        lead = await db.create_lead(make_lead())
        sm = LeadStateMachine(db)

        with pytest.raises(InvalidTransition):
            await sm.transition(lead, LeadStatus.CLOSED_WON)

        stored = await db.get_lead(lead.id)
        assert stored.status == LeadStatus.PENDING
        assert stored.version == lead.version

    async def test_terminal_lead_is_not_rewritten(self, db, make_lead):
        lead = await db.create_lead(make_lead())
        sm = LeadStateMachine(db)
        lead = await sm.transition(lead, LeadStatus.CANCELLED, failure_reason="buyer withdrew")

        with pytest.raises(InvalidTransition):
            await sm.transition(lead, LeadStatus.CANCELLED, failure_reason=None)

        stored = await db.get_lead(lead.id)
        assert stored.failure_reason == "buyer withdrew"
        assert stored.version == lead.version
