"""Scoring engine - bounded 0-100 match score per (agent, lead).

Weighted sum of six sub-scores, each capped at 100 before weighting:

    expertise 0.25, territory 0.20, performance 0.20,
    availability 0.15, experience 0.10, response time 0.10

Response time is scored in steps, not continuously. Scores depend only on the
agent snapshot, the lead, and the ``now`` passed in (the lead's creation time
when routing), so identical inputs always give identical scores.
"""

from __future__ import annotations

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from pydantic import BaseModel

from lead_routing.core.config import Settings
from lead_routing.core.models import Agent, AgentTier, Exclusivity, Lead, ScoredAgent, TerritoryType
from lead_routing.eligibility import (
    category_territory_match,
    hours_since_activity,
    radius_match,
    remaining_capacity,
)

WEIGHTS: dict[str, float] = {
    "expertise": 0.25,
    "territory": 0.20,
    "performance": 0.20,
    "availability": 0.15,
    "experience": 0.10,
    "response_time": 0.10,
}

TIER_BONUS: dict[AgentTier, float] = {
    AgentTier.BRONZE: 0,
    AgentTier.SILVER: 5,
    AgentTier.GOLD: 10,
    AgentTier.PLATINUM: 15,
}

# (max average response minutes, score); slower than the last step scores 20
RESPONSE_TIME_STEPS: list[tuple[float, float]] = [
    (15, 100),
    (30, 80),
    (60, 60),
    (120, 40),
]
SLOWEST_RESPONSE_SCORE = 20.0
DEFAULT_RESPONSE_MINUTES = 60.0

PREMIUM_VALUE = 50_000
ENTERPRISE_VALUE = 100_000


def _cap(value: float) -> float:
    return min(max(value, 0.0), 100.0)


def _round2(value: float) -> float:
    return float(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


class ScoreBreakdown(BaseModel):
    expertise: float
    territory: float
    performance: float
    availability: float
    experience: float
    response_time: float
    total: float


class ScoringEngine:
    """Computes match scores, match reasons, and the ranked candidate list."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or Settings()

    # -----------------------------------------------------------------------
    # Sub-scores
    # -----------------------------------------------------------------------

    def expertise_score(self, agent: Agent, lead: Lead, now: datetime) -> float:
        score = 0.0
        expertise = agent.expertise
        if lead.category in expertise.categories:
            score += 40

        # High-value leads go to premium / enterprise specialists
        if lead.estimated_value > PREMIUM_VALUE and "premium" in expertise.specializations:
            score += 20
        if lead.estimated_value > ENTERPRISE_VALUE and "enterprise" in expertise.specializations:
            score += 30

        active_certs = [
            c for c in expertise.certifications
            if c.expires_at is None or c.expires_at > now
        ]
        score += min(len(active_certs) * 5, 30)
        return _cap(score)

    def territory_score(self, agent: Agent, lead: Lead) -> float:
        score = 0.0
        territory = agent.territory
        location = lead.geography

        if territory.type in (TerritoryType.GEOGRAPHIC, TerritoryType.HYBRID):
            geo = territory.geographic
            if location.country in geo.countries:
                score += 30
            if location.state and location.state in geo.states:
                score += 20
            if location.city and location.city in geo.cities:
                score += 25
            if radius_match(agent, lead, self.settings):
                score += 25

        if category_territory_match(agent, lead):
            score += 40

        if territory.exclusivity == Exclusivity.EXCLUSIVE:
            score += 15
        return _cap(score)

    def performance_score(self, agent: Agent) -> float:
        stats = agent.stats
        score = min(stats.conversion_rate * 0.4, 40)
        score += (stats.customer_satisfaction / 5) * 25
        score += (stats.rating / 5) * 20
        score += TIER_BONUS.get(agent.tier, 0)
        return _cap(score)

    def availability_score(self, agent: Agent, now: datetime) -> float:
        capacity = self.settings.capacity_for(agent.tier)
        available_pct = remaining_capacity(agent, self.settings) / capacity * 100

        hours = hours_since_activity(agent, now)
        if hours is not None and hours < 2:
            activity = 20
        elif hours is not None and hours < 8:
            activity = 15
        elif hours is not None and hours < 24:
            activity = 10
        else:
            activity = 5
        return _cap(available_pct * 0.8 + activity)

    def experience_score(self, agent: Agent, lead: Lead) -> float:
        score = min(agent.years_of_experience * 5, 40)

        keywords = [lead.category.lower()] + [
            k.lower() for k in self.settings.relevant_industry_keywords
        ]
        relevant_years = [
            exp.years for exp in agent.expertise.industry_experience
            if any(k in exp.industry.lower() for k in keywords)
        ]
        if relevant_years:
            score += min(max(relevant_years) * 3, 30)

        score += min(agent.stats.closed_deals * 0.5, 30)
        return _cap(score)

    def response_time_score(self, agent: Agent) -> float:
        minutes = agent.stats.average_response_minutes
        if minutes is None:
            minutes = DEFAULT_RESPONSE_MINUTES
        for threshold, score in RESPONSE_TIME_STEPS:
            if minutes <= threshold:
                return score
        return SLOWEST_RESPONSE_SCORE

    # -----------------------------------------------------------------------
    # Totals
    # -----------------------------------------------------------------------

    def breakdown(self, agent: Agent, lead: Lead, now: datetime) -> ScoreBreakdown:
        parts = {
            "expertise": self.expertise_score(agent, lead, now),
            "territory": self.territory_score(agent, lead),
            "performance": self.performance_score(agent),
            "availability": self.availability_score(agent, now),
            "experience": self.experience_score(agent, lead),
            "response_time": self.response_time_score(agent),
        }
        total = sum(parts[name] * weight for name, weight in WEIGHTS.items())
        return ScoreBreakdown(**parts, total=_round2(total))

    def score(self, agent: Agent, lead: Lead, now: datetime) -> float:
        return self.breakdown(agent, lead, now).total

    def match_reasons(self, agent: Agent, lead: Lead, now: datetime) -> list[str]:
        reasons = []
        if lead.category in agent.expertise.categories:
            reasons.append("Category expertise match")
        if lead.geography.country in agent.territory.geographic.countries:
            reasons.append("Geographic territory match")
        if radius_match(agent, lead, self.settings):
            reasons.append("Within service radius")
        if category_territory_match(agent, lead):
            reasons.append("Category territory match")
        if agent.tier in (AgentTier.GOLD, AgentTier.PLATINUM):
            reasons.append("High-performing agent")
        if agent.stats.conversion_rate > 50:
            reasons.append("High conversion rate")
        hours = hours_since_activity(agent, now)
        if hours is not None and hours < 2:
            reasons.append("Currently active")
        return reasons

    def rank(self, agents: list[Agent], lead: Lead, now: datetime) -> list[ScoredAgent]:
        """Score and order agents: score desc, then longer tenure, then agent id."""
        scored = [
            ScoredAgent(
                agent=agent,
                score=self.score(agent, lead, now),
                match_reasons=self.match_reasons(agent, lead, now),
                remaining_capacity=remaining_capacity(agent, self.settings),
            )
            for agent in agents
        ]

        def _key(item: ScoredAgent) -> tuple[float, float, str]:
            joined = item.agent.joined_at
            tenure_key = joined.timestamp() if joined is not None else float("inf")
            return (-item.score, tenure_key, item.agent.id)

        return sorted(scored, key=_key)
