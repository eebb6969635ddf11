"""Assignment orchestrator - ranked offers, responses, expiry, and cascades.

Every transition for one lead runs under that lead's lock; different leads
never wait on each other. The versioned compare-and-set on the assignment row
decides which responder wins. Notifications go out after the lock is released
and never undo a committed transition.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from lead_routing.core.config import Settings
from lead_routing.core.errors import (
    CapacityExceeded,
    ConcurrentModification,
    ExpiredOffer,
    InvalidTransition,
    NotFound,
    RoutingError,
    StorageError,
)
from lead_routing.core.models import (
    Assignment,
    AssignmentRank,
    AssignmentStatus,
    EventType,
    Lead,
    LeadAssignmentState,
    LeadCandidate,
    LeadStatus,
    LeadUpdateResult,
    LifecycleEvent,
    OfferOutcome,
    OfferResult,
    ResponseAction,
    ResponseResult,
    ScoredAgent,
)
from lead_routing.directory.base import AgentDirectory
from lead_routing.eligibility import filter_eligible, remaining_capacity
from lead_routing.notifications import (
    DatabaseEventSink,
    EventSink,
    LoggingNotificationGateway,
    NotificationGateway,
)
from lead_routing.scoring import ScoringEngine
from lead_routing.state_machine import (
    LEAD_CLOSED_TO_OFFERS,
    LeadStateMachine,
    validate_lead_transition,
)
from lead_routing.timers import OfferTimers, RecoveryReport

logger = logging.getLogger(__name__)

# Domain errors are answers, not transient failures
_NOT_RETRIED = (
    NotFound,
    InvalidTransition,
    ConcurrentModification,
    ExpiredOffer,
    CapacityExceeded,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _Outbox:
    """Notifications and warnings collected while a lead lock is held."""

    notifications: list[tuple[str, EventType, dict[str, Any]]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def notify(self, agent_id: str, event_type: EventType, payload: dict[str, Any]) -> None:
        self.notifications.append((agent_id, event_type, payload))


class AssignmentOrchestrator:
    """Turns ranked agents into offers and drives every assignment transition."""

    def __init__(
        self,
        db: Any,
        directory: AgentDirectory,
        notifier: NotificationGateway | None = None,
        events: EventSink | None = None,
        timers: OfferTimers | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
        scoring: ScoringEngine | None = None,
    ):
        self.db = db
        self.directory = directory
        self.settings = settings or Settings()
        self.clock = clock or _now
        self.notifier = notifier or LoggingNotificationGateway()
        self.events = events or DatabaseEventSink(db)
        self.scoring = scoring or ScoringEngine(self.settings)
        self.leads = LeadStateMachine(db)
        self.timers = timers or OfferTimers(clock=self.clock)
        self.timers.set_handler(self.expire)
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    # -----------------------------------------------------------------------
    # Public operations
    # -----------------------------------------------------------------------

    async def create_lead(self, lead: Lead) -> OfferResult:
        """Store a new lead, then run eligibility, scoring, and the first offers."""
        now = self.clock()
        lead = lead.model_copy(
            update={
                "status": LeadStatus.PENDING,
                "active_agent_id": None,
                "failure_reason": None,
                "version": 0,
                "created_at": lead.created_at or now,
            }
        )
        stored = await self._retrying(lead.id, "store lead", self.db.create_lead, lead)
        if stored.status != LeadStatus.PENDING:
            raise InvalidTransition(f"Lead {stored.id} was already routed ({stored.status.value})")
        ranked = await self._rank(stored, stored.created_at)
        return await self.extend_offers(stored, ranked)

    async def extend_offers(
        self,
        lead: Lead,
        ranked: list[ScoredAgent],
        max_offers: int | None = None,
    ) -> OfferResult:
        """Offer the lead to the top not-yet-offered agents, up to ``max_offers``.

        An empty ranking (or nobody left to offer) moves the lead to
        ``needs_review`` and reports ``OfferOutcome.NO_ELIGIBLE_AGENTS``.
        """
        limit = max_offers if max_offers is not None else self.settings.max_offers_per_lead
        if limit < 1:
            raise ValueError("max_offers must be at least 1")

        outbox = _Outbox()
        async with self._lead_lock(lead.id):
            current = await self._load_lead(lead.id)
            if current.status in LEAD_CLOSED_TO_OFFERS:
                raise InvalidTransition(
                    f"Lead {current.id} is {current.status.value}; no further offers"
                )
            now = self.clock()

            offers: list[Assignment] = []
            if ranked:
                candidates = [
                    LeadCandidate(
                        lead_id=current.id,
                        agent_id=item.agent.id,
                        position=position,
                        score=item.score,
                        match_reasons=item.match_reasons,
                        remaining_capacity=item.remaining_capacity,
                    )
                    for position, item in enumerate(ranked)
                ]
                await self._retrying(
                    current.id, "store candidates", self.db.replace_candidates, current.id, candidates
                )
                offers = await self._offer_next(current, limit, now, outbox)

            if offers:
                current = await self.leads.transition(
                    current, LeadStatus.ASSIGNED, failure_reason=None
                )
                outcome = OfferOutcome.OFFERED
            else:
                current = await self._needs_review(current, "no eligible agents", outbox)
                outcome = OfferOutcome.NO_ELIGIBLE_AGENTS

        warnings = outbox.warnings + await self._dispatch(outbox)
        return OfferResult(
            lead_id=current.id,
            outcome=outcome,
            lead_status=current.status,
            offers=offers,
            warnings=warnings,
        )

    async def respond(
        self,
        assignment_id: str,
        action: ResponseAction | str,
        reason: str | None = None,
    ) -> ResponseResult:
        """Accept or decline an offer.

        Raises InvalidTransition if the offer was already answered,
        ConcurrentModification if another writer won the race (or another agent
        took the lead), ExpiredOffer if the response came after expiry, and
        CapacityExceeded if the agent already holds as many open leads as its
        tier allows. A refused accept is recorded as a decline and cascades.
        """
        action = ResponseAction(action)
        seen = await self._load_assignment(assignment_id)

        outbox = _Outbox()
        refusal: RoutingError | None = None
        async with self._lead_lock(seen.lead_id):
            current = await self._load_assignment(assignment_id)
            if current.version != seen.version:
                raise ConcurrentModification(
                    f"Assignment {assignment_id} was changed by another responder"
                )
            self._check_still_offered(current)
            lead = await self._load_lead(current.lead_id)
            now = self.clock()

            if now >= current.expires_at:
                result = await self._expire_locked(current, now, outbox)
                if result is None:
                    raise ConcurrentModification(
                        f"Assignment {assignment_id} was changed by another responder"
                    )
                refusal = ExpiredOffer(
                    f"Offer {assignment_id} expired at {current.expires_at.isoformat()}"
                )
            elif lead.status in LEAD_CLOSED_TO_OFFERS:
                withdrawn = await self._supersede(
                    current, now, outbox, "lead no longer available"
                )
                if withdrawn is None:
                    raise ConcurrentModification(
                        f"Assignment {assignment_id} was changed by another responder"
                    )
                result = ResponseResult(assignment=withdrawn, lead_status=lead.status)
                refusal = ConcurrentModification(
                    f"Offer {assignment_id} was withdrawn: lead {lead.id} is {lead.status.value}"
                )
            elif action is ResponseAction.ACCEPT:
                result, refusal = await self._accept_offer(current, reason, now, outbox)
            else:
                updated = await self._record_response(
                    current, AssignmentStatus.DECLINED, now, reason
                )
                result = await self._settle(updated, now, outbox)

        warnings = outbox.warnings + await self._dispatch(outbox)
        if refusal is not None:
            raise refusal
        result.warnings.extend(warnings)
        return result

    async def expire(self, assignment_id: str) -> ResponseResult:
        """Expire an overdue offer and cascade. No-op unless still offered and due."""
        seen = await self._load_assignment(assignment_id)

        outbox = _Outbox()
        async with self._lead_lock(seen.lead_id):
            current = await self._load_assignment(assignment_id)
            now = self.clock()
            if current.status is not AssignmentStatus.OFFERED or now < current.expires_at:
                lead = await self._load_lead(current.lead_id)
                return ResponseResult(
                    assignment=current, lead_status=lead.status, changed=False
                )

            result = await self._expire_locked(current, now, outbox)
            if result is None:
                current = await self._load_assignment(assignment_id)
                lead = await self._load_lead(current.lead_id)
                return ResponseResult(
                    assignment=current, lead_status=lead.status, changed=False
                )

        result.warnings.extend(outbox.warnings + await self._dispatch(outbox))
        return result

    async def get_assignment_state(self, lead_id: str) -> LeadAssignmentState:
        lead = await self._load_lead(lead_id)
        assignments = await self._retrying(
            None, "load assignments", self.db.get_assignments_for_lead, lead_id
        )
        return LeadAssignmentState(
            lead_id=lead.id,
            status=lead.status,
            active_agent_id=lead.active_agent_id,
            failure_reason=lead.failure_reason,
            assignments=assignments,
        )

    async def reopen_lead(self, lead_id: str) -> OfferResult:
        """Operator re-entry: re-run matching for a lead in ``needs_review``."""
        lead = await self._load_lead(lead_id)
        if lead.status != LeadStatus.NEEDS_REVIEW:
            raise InvalidTransition(
                f"Only needs_review leads can be reopened; lead {lead_id} is {lead.status.value}"
            )
        ranked = await self._rank(lead, self.clock())
        return await self.extend_offers(lead, ranked)

    async def close_lead(self, lead_id: str, won: bool) -> LeadUpdateResult:
        """Record the business outcome of an in-progress lead and free the agent.

        The lead stays closed if the directory cannot record the closure; the
        failure comes back as a warning.
        """
        target = LeadStatus.CLOSED_WON if won else LeadStatus.CLOSED_LOST
        async with self._lead_lock(lead_id):
            lead = await self._load_lead(lead_id)
            if lead.status != LeadStatus.IN_PROGRESS:
                raise InvalidTransition(
                    f"Lead {lead_id} is {lead.status.value}; only in_progress leads close"
                )
            lead = await self.leads.transition(lead, target)

        warnings: list[str] = []
        if lead.active_agent_id:
            warnings += await self._record_closure(lead.active_agent_id, won)
        return LeadUpdateResult(lead=lead, warnings=warnings)

    async def cancel_lead(self, lead_id: str, reason: str | None = None) -> LeadUpdateResult:
        """Cancel a lead, withdrawing every outstanding offer."""
        outbox = _Outbox()
        async with self._lead_lock(lead_id):
            lead = await self._load_lead(lead_id)
            validate_lead_transition(lead.status, LeadStatus.CANCELLED)
            was_in_progress = lead.status == LeadStatus.IN_PROGRESS
            lead = await self.leads.transition(
                lead, LeadStatus.CANCELLED, failure_reason=reason
            )

            now = self.clock()
            for assignment in await self._retrying(
                lead_id, "load assignments", self.db.get_assignments_for_lead, lead_id
            ):
                if assignment.status is AssignmentStatus.OFFERED:
                    await self._supersede(assignment, now, outbox, "lead cancelled")

        warnings = list(outbox.warnings)
        if was_in_progress and lead.active_agent_id:
            warnings += await self._record_closure(lead.active_agent_id, False)
        warnings += await self._dispatch(outbox)
        return LeadUpdateResult(lead=lead, warnings=warnings)

    async def recover(self) -> RecoveryReport:
        """Re-arm or expire outstanding offers after a restart."""
        return await self.timers.recover(self.db)

    async def shutdown(self) -> None:
        await self.timers.shutdown()

    # -----------------------------------------------------------------------
    # Transition internals (caller holds the lead lock)
    # -----------------------------------------------------------------------

    def _check_still_offered(self, assignment: Assignment) -> None:
        match assignment.status:
            case AssignmentStatus.OFFERED:
                return
            case AssignmentStatus.EXPIRED:
                raise ExpiredOffer(f"Offer {assignment.id} has expired")
            case AssignmentStatus.SUPERSEDED:
                raise ConcurrentModification(
                    f"Offer {assignment.id} was withdrawn: lead {assignment.lead_id} "
                    "is no longer available"
                )
            case AssignmentStatus.ACCEPTED | AssignmentStatus.DECLINED:
                raise InvalidTransition(
                    f"Offer {assignment.id} was already {assignment.status.value}"
                )

    async def _settle(
        self, assignment: Assignment, now: datetime, outbox: _Outbox
    ) -> ResponseResult:
        """Apply the consequences of an assignment reaching a terminal status."""
        lead = await self._load_lead(assignment.lead_id)
        cascade: list[Assignment] = []

        match assignment.status:
            case AssignmentStatus.ACCEPTED:
                lead = await self._accept(lead, assignment, now, outbox)
            case AssignmentStatus.DECLINED | AssignmentStatus.EXPIRED:
                event_type = (
                    EventType.OFFER_DECLINED
                    if assignment.status is AssignmentStatus.DECLINED
                    else EventType.OFFER_EXPIRED
                )
                payload = {"lead_id": lead.id, "reason": assignment.response_reason}
                await self._emit(event_type, lead.id, assignment, payload, outbox)
                outbox.notify(assignment.agent_id, event_type, {"assignment_id": assignment.id, **payload})
                lead, cascade = await self._cascade(lead, now, outbox)
            case AssignmentStatus.SUPERSEDED:
                await self._announce_withdrawal(assignment, outbox)
            case AssignmentStatus.OFFERED:
                raise AssertionError(f"Assignment {assignment.id} settled while still offered")

        return ResponseResult(
            assignment=assignment, lead_status=lead.status, cascade_offers=cascade
        )

    async def _accept_offer(
        self, assignment: Assignment, reason: str | None, now: datetime, outbox: _Outbox
    ) -> tuple[ResponseResult, CapacityExceeded | None]:
        """Reserve a unit of the agent's capacity, then commit the accept.

        A full agent turns the accept into a decline so the lead moves on.
        """
        agent = await self._retrying(
            None, "agent lookup", self.directory.get_agent, assignment.agent_id
        )
        capacity = self.settings.capacity_for(agent.tier)
        try:
            await self._retrying(
                None,
                "record acceptance",
                self.directory.record_acceptance,
                assignment.agent_id,
                capacity,
            )
        except CapacityExceeded as e:
            logger.warning(
                "Agent %s cannot take lead %s: %s", assignment.agent_id, assignment.lead_id, e
            )
            updated = await self._record_response(
                assignment, AssignmentStatus.DECLINED, now, "agent at capacity"
            )
            return await self._settle(updated, now, outbox), e

        try:
            updated = await self._record_response(
                assignment, AssignmentStatus.ACCEPTED, now, reason
            )
        except Exception:
            await self._release_acceptance(assignment.agent_id)
            raise
        return await self._settle(updated, now, outbox), None

    async def _record_response(
        self,
        assignment: Assignment,
        target: AssignmentStatus,
        now: datetime,
        reason: str | None,
    ) -> Assignment:
        updated = await self._retrying(
            assignment.lead_id,
            "record response",
            self.db.compare_and_set_assignment,
            assignment.id,
            assignment.version,
            target,
            responded_at=now,
            response_reason=reason,
        )
        if updated is None:
            raise ConcurrentModification(
                f"Assignment {assignment.id} was changed by another responder"
            )
        self.timers.cancel(updated.id)
        logger.info("Agent %s %s lead %s", updated.agent_id, target.value, updated.lead_id)
        return updated

    async def _accept(
        self, lead: Lead, assignment: Assignment, now: datetime, outbox: _Outbox
    ) -> Lead:
        lead = await self.leads.transition(
            lead, LeadStatus.IN_PROGRESS, active_agent_id=assignment.agent_id
        )

        # Withdraw siblings before writing any event
        withdrawn: list[Assignment] = []
        siblings = await self._retrying(
            None, "load assignments", self.db.get_assignments_for_lead, lead.id
        )
        for sibling in siblings:
            if sibling.id != assignment.id and sibling.status is AssignmentStatus.OFFERED:
                updated = await self._withdraw(sibling, "accepted by another agent")
                if updated is not None:
                    withdrawn.append(updated)

        payload = {"lead_id": lead.id, "score": assignment.score}
        await self._emit(EventType.OFFER_ACCEPTED, lead.id, assignment, payload, outbox)
        outbox.notify(
            assignment.agent_id,
            EventType.OFFER_ACCEPTED,
            {"assignment_id": assignment.id, **payload},
        )
        for sibling in withdrawn:
            await self._announce_withdrawal(sibling, outbox)
        return lead

    async def _withdraw(self, assignment: Assignment, reason: str) -> Assignment | None:
        updated = await self._retrying(
            None,
            "supersede offer",
            self.db.compare_and_set_assignment,
            assignment.id,
            assignment.version,
            AssignmentStatus.SUPERSEDED,
            response_reason=reason,
        )
        if updated is not None:
            self.timers.cancel(updated.id)
        return updated

    async def _announce_withdrawal(self, assignment: Assignment, outbox: _Outbox) -> None:
        payload = {"lead_id": assignment.lead_id, "reason": assignment.response_reason}
        await self._emit(
            EventType.OFFER_SUPERSEDED, assignment.lead_id, assignment, payload, outbox
        )
        outbox.notify(
            assignment.agent_id,
            EventType.OFFER_SUPERSEDED,
            {"assignment_id": assignment.id, **payload},
        )

    async def _supersede(
        self, assignment: Assignment, now: datetime, outbox: _Outbox, reason: str
    ) -> Assignment | None:
        updated = await self._withdraw(assignment, reason)
        if updated is not None:
            await self._announce_withdrawal(updated, outbox)
        return updated

    async def _expire_locked(
        self, assignment: Assignment, now: datetime, outbox: _Outbox
    ) -> ResponseResult | None:
        lead = await self._load_lead(assignment.lead_id)
        # An offer left over from a lead that was already taken is withdrawn,
        # not expired, so it cannot trigger a cascade.
        if lead.status in LEAD_CLOSED_TO_OFFERS:
            target, reason = AssignmentStatus.SUPERSEDED, "lead no longer available"
        else:
            target, reason = AssignmentStatus.EXPIRED, "offer expired"

        updated = await self._retrying(
            lead.id,
            "expire offer",
            self.db.compare_and_set_assignment,
            assignment.id,
            assignment.version,
            target,
            response_reason=reason,
        )
        if updated is None:
            return None
        self.timers.cancel(updated.id)
        logger.info(
            "Offer %s to agent %s for lead %s: %s",
            updated.id, updated.agent_id, lead.id, target.value,
        )
        return await self._settle(updated, now, outbox)

    async def _cascade(
        self, lead: Lead, now: datetime, outbox: _Outbox
    ) -> tuple[Lead, list[Assignment]]:
        """Offer the next-ranked agent after a decline or expiry."""
        if lead.status in LEAD_CLOSED_TO_OFFERS:
            return lead, []

        offers = await self._offer_next(lead, 1, now, outbox)
        if offers:
            if lead.status != LeadStatus.ASSIGNED:
                lead = await self.leads.transition(lead, LeadStatus.ASSIGNED, failure_reason=None)
            return lead, offers

        assignments = await self._retrying(
            lead.id, "load assignments", self.db.get_assignments_for_lead, lead.id
        )
        if not any(a.status is AssignmentStatus.OFFERED for a in assignments):
            lead = await self._needs_review(lead, "all offers declined or expired", outbox)
        return lead, []

    async def _offer_next(
        self, lead: Lead, count: int, now: datetime, outbox: _Outbox
    ) -> list[Assignment]:
        """Create up to ``count`` offers for ranked candidates not yet offered."""
        candidates = await self._retrying(
            lead.id, "load candidates", self.db.get_candidates, lead.id
        )
        assignments = await self._retrying(
            lead.id, "load assignments", self.db.get_assignments_for_lead, lead.id
        )
        already_offered = {a.agent_id for a in assignments}
        expires_at = now + timedelta(minutes=self.settings.offer_response_window_minutes)

        created: list[Assignment] = []
        for candidate in candidates:
            if len(created) >= count:
                break
            if candidate.agent_id in already_offered:
                continue
            if await self._spare_capacity(candidate, outbox) <= 0:
                logger.info(
                    "Skipping agent %s for lead %s: no capacity", candidate.agent_id, lead.id
                )
                continue

            assignment = Assignment(
                lead_id=lead.id,
                agent_id=candidate.agent_id,
                rank=AssignmentRank.for_position(candidate.position),
                score=candidate.score,
                match_reasons=candidate.match_reasons,
                offered_at=now,
                expires_at=expires_at,
            )
            stored = await self._retrying(
                lead.id, "create assignment", self.db.create_assignment, assignment
            )
            self.timers.schedule(stored.id, stored.expires_at)

            payload = self._offer_payload(lead, stored, now)
            await self._emit(EventType.OFFER_CREATED, lead.id, stored, payload, outbox)
            outbox.notify(stored.agent_id, EventType.OFFER_CREATED, payload)
            created.append(stored)
            logger.info(
                "Offered lead %s to agent %s (%s, score %.2f, expires %s)",
                lead.id, stored.agent_id, stored.rank.value, stored.score,
                stored.expires_at.isoformat(),
            )
        return created

    async def _spare_capacity(self, candidate: LeadCandidate, outbox: _Outbox) -> int:
        """Current free capacity of a ranked agent.

        Falls back to the ranking snapshot when the directory cannot be read;
        the accept still reserves capacity, so a stale figure only costs an offer.
        """
        try:
            agent = await self._retrying(
                None, "agent lookup", self.directory.get_agent, candidate.agent_id
            )
        except NotFound:
            return 0
        except RoutingError as e:
            outbox.warnings.append(
                f"Capacity lookup for agent {candidate.agent_id} failed, using ranking snapshot: {e}"
            )
            return candidate.remaining_capacity
        return remaining_capacity(agent, self.settings)

    async def _needs_review(self, lead: Lead, reason: str, outbox: _Outbox) -> Lead:
        if lead.status == LeadStatus.NEEDS_REVIEW:
            return lead
        lead = await self.leads.transition(lead, LeadStatus.NEEDS_REVIEW)
        logger.warning("Lead %s needs review: %s", lead.id, reason)
        await self._emit(EventType.LEAD_NEEDS_REVIEW, lead.id, None, {"reason": reason}, outbox)
        return lead

    # -----------------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------------

    def _lead_lock(self, lead_id: str) -> asyncio.Lock:
        lock = self._locks.get(lead_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[lead_id] = lock
        return lock

    async def _rank(self, lead: Lead, now: datetime) -> list[ScoredAgent]:
        agents = await self._retrying(
            lead.id,
            "agent directory lookup",
            self.directory.find_candidates,
            lead.category,
            lead.geography,
        )
        eligible = filter_eligible(lead, agents, self.settings, now)
        logger.info(
            "Lead %s: %d candidates, %d eligible", lead.id, len(agents), len(eligible)
        )
        return self.scoring.rank(eligible, lead, now)

    async def _load_lead(self, lead_id: str) -> Lead:
        lead = await self._retrying(None, "load lead", self.db.get_lead, lead_id)
        if lead is None:
            raise NotFound(f"Lead not found: {lead_id}")
        return lead

    async def _load_assignment(self, assignment_id: str) -> Assignment:
        assignment = await self._retrying(
            None, "load assignment", self.db.get_assignment, assignment_id
        )
        if assignment is None:
            raise NotFound(f"Assignment not found: {assignment_id}")
        return assignment

    def _offer_payload(self, lead: Lead, assignment: Assignment, now: datetime) -> dict[str, Any]:
        return {
            "lead_id": lead.id,
            "assignment_id": assignment.id,
            "category": lead.category,
            "urgency": lead.urgency.value,
            "estimated_value": lead.estimated_value,
            "currency": lead.currency,
            "city": lead.geography.city,
            "match_score": assignment.score,
            "match_reasons": assignment.match_reasons,
            "rank": assignment.rank.value,
            "offered_at": assignment.offered_at.isoformat(),
            "expires_at": assignment.expires_at.isoformat(),
            "time_remaining_seconds": int((assignment.expires_at - now).total_seconds()),
        }

    async def _emit(
        self,
        event_type: EventType,
        lead_id: str,
        assignment: Assignment | None,
        payload: dict[str, Any],
        outbox: _Outbox,
    ) -> None:
        """Append to the lifecycle log. A failed write is a warning, never a rollback."""
        event = LifecycleEvent(
            event_type=event_type,
            lead_id=lead_id,
            assignment_id=assignment.id if assignment else None,
            agent_id=assignment.agent_id if assignment else None,
            payload=payload,
            created_at=self.clock(),
        )
        try:
            await self._retrying(None, f"emit {event_type.value}", self.events.emit, event)
        except RoutingError as e:
            outbox.warnings.append(
                f"Lifecycle event {event_type.value} for lead {lead_id} not recorded: {e}"
            )

    async def _dispatch(self, outbox: _Outbox) -> list[str]:
        """Deliver collected notifications; failures come back as warnings."""

        async def _deliver(agent_id: str, event_type: EventType, payload: dict[str, Any]) -> str | None:
            try:
                await self.notifier.notify(agent_id, event_type, payload)
            except Exception as e:
                logger.warning(
                    "Notification %s to agent %s failed: %s", event_type.value, agent_id, e
                )
                return f"Notification {event_type.value} to agent {agent_id} failed: {e}"
            return None

        results = await asyncio.gather(
            *(_deliver(*item) for item in outbox.notifications)
        )
        outbox.notifications.clear()
        return [r for r in results if r]

    async def _record_closure(self, agent_id: str, won: bool) -> list[str]:
        try:
            await self._retrying(
                None, "record closure", self.directory.record_closure, agent_id, won
            )
        except RoutingError as e:
            logger.error("Closure update failed for agent %s: %s", agent_id, e)
            return [f"Closure update for agent {agent_id} failed: {e}"]
        return []

    async def _release_acceptance(self, agent_id: str) -> None:
        try:
            await self._retrying(
                None, "release acceptance", self.directory.release_acceptance, agent_id
            )
        except RoutingError as e:
            logger.error("Could not release capacity reserved for agent %s: %s", agent_id, e)

    async def _retrying(
        self, lead_id: str | None, label: str, fn: Callable[..., Any], *args: Any, **kwargs: Any
    ) -> Any:
        """Call a store/directory coroutine with bounded exponential backoff.

        On exhaustion the lead (if given) is parked in ``needs_review`` with
        the failure recorded, and the error is raised.
        """
        attempts = max(1, self.settings.retry_attempts)
        for attempt in range(1, attempts + 1):
            try:
                return await fn(*args, **kwargs)
            except _NOT_RETRIED:
                raise
            except Exception as exc:
                if attempt == attempts:
                    logger.exception("%s failed after %d attempts", label, attempts)
                    if lead_id is not None:
                        await self._fail_lead(lead_id, f"{label} failed: {exc}")
                    if isinstance(exc, RoutingError):
                        raise
                    raise StorageError(f"{label} failed after {attempts} attempts: {exc}") from exc
                delay = min(
                    self.settings.retry_backoff_seconds * 2 ** (attempt - 1),
                    self.settings.retry_backoff_max_seconds,
                )
                logger.warning(
                    "%s failed (attempt %d/%d), retrying in %.2fs: %s",
                    label, attempt, attempts, delay, exc,
                )
                await asyncio.sleep(delay)

    async def _fail_lead(self, lead_id: str, reason: str) -> None:
        try:
            lead = await self.db.get_lead(lead_id)
            # A taken or finished lead keeps its state; only routing leads are parked
            if lead is None or lead.status in LEAD_CLOSED_TO_OFFERS:
                return
            await self.db.update_lead(
                lead_id, status=LeadStatus.NEEDS_REVIEW, failure_reason=reason
            )
            await self.events.emit(
                LifecycleEvent(
                    event_type=EventType.LEAD_NEEDS_REVIEW,
                    lead_id=lead_id,
                    payload={"reason": reason},
                    created_at=self.clock(),
                )
            )
        except Exception:
            logger.exception("Could not park lead %s in needs_review", lead_id)
