"""Eligibility filter - which agents may receive an offer for a lead.

An agent is eligible when ALL of these hold:

1. Active, with identity and business verification (when required)
2. Territory match by any configured mode: geographic containment, radius
   (haversine distance), or category territory
3. Open-lead capacity remaining for its tier
4. Last activity within the recency window (default 48 hours)

No eligible agent is not an error: the caller decides the ``needs_review``
outcome. Everything here is pure.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta

from lead_routing.core.config import Settings
from lead_routing.core.models import (
    Agent,
    AgentStatus,
    Coordinates,
    Lead,
    TerritoryType,
    VerificationStatus,
)

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0


def haversine_km(a: Coordinates, b: Coordinates) -> float:
    """Great-circle distance between two points in kilometres."""
    d_lat = math.radians(b.lat - a.lat)
    d_lng = math.radians(b.lng - a.lng)
    h = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(a.lat)) * math.cos(math.radians(b.lat)) * math.sin(d_lng / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def geographic_containment(agent: Agent, lead: Lead) -> bool:
    """Lead location lies inside the agent's country and, where listed, state and city."""
    territory = agent.territory
    if territory.type not in (TerritoryType.GEOGRAPHIC, TerritoryType.HYBRID):
        return False
    geo = territory.geographic
    location = lead.geography
    if location.country not in geo.countries:
        return False
    if geo.states and location.state not in geo.states:
        return False
    if geo.cities and location.city not in geo.cities:
        return False
    return True


def radius_match(agent: Agent, lead: Lead, settings: Settings) -> bool:
    territory = agent.territory
    if territory.type not in (TerritoryType.GEOGRAPHIC, TerritoryType.HYBRID):
        return False
    radius = territory.geographic.radius
    coordinates = lead.geography.coordinates
    if radius is None or coordinates is None:
        return False
    limit = radius.distance_km if radius.distance_km is not None else settings.default_radius_km
    return haversine_km(radius.center, coordinates) <= limit


def category_territory_match(agent: Agent, lead: Lead) -> bool:
    territory = agent.territory
    return (
        territory.type in (TerritoryType.CATEGORY, TerritoryType.HYBRID)
        and lead.category in territory.categories
    )


def territory_match(agent: Agent, lead: Lead, settings: Settings) -> bool:
    return (
        geographic_containment(agent, lead)
        or radius_match(agent, lead, settings)
        or category_territory_match(agent, lead)
    )


def remaining_capacity(agent: Agent, settings: Settings) -> int:
    return max(0, settings.capacity_for(agent.tier) - agent.open_leads)


def hours_since_activity(agent: Agent, now: datetime) -> float | None:
    if agent.last_activity_at is None:
        return None
    return (now - agent.last_activity_at).total_seconds() / 3600


def check_eligibility(
    agent: Agent, lead: Lead, settings: Settings, now: datetime
) -> list[str]:
    """Return the reasons ``agent`` is ineligible for ``lead`` (empty = eligible)."""
    failures: list[str] = []

    if agent.status != AgentStatus.ACTIVE:
        failures.append(f"status is {agent.status.value}")
    if settings.require_verification and (
        agent.identity_verification != VerificationStatus.VERIFIED
        or agent.business_verification != VerificationStatus.VERIFIED
    ):
        failures.append("not verified")

    if not territory_match(agent, lead, settings):
        failures.append("no territory match")

    if remaining_capacity(agent, settings) <= 0:
        failures.append(
            f"at capacity ({agent.open_leads}/{settings.capacity_for(agent.tier)})"
        )

    if agent.last_activity_at is None:
        failures.append("no recorded activity")
    elif now - agent.last_activity_at > timedelta(hours=settings.activity_recency_hours):
        failures.append(f"inactive for more than {settings.activity_recency_hours}h")

    return failures


def filter_eligible(
    lead: Lead,
    agents: list[Agent],
    settings: Settings | None = None,
    now: datetime | None = None,
) -> list[Agent]:
    """Narrow ``agents`` to those allowed to receive an offer for ``lead``."""
    s = settings or Settings()
    reference = now or lead.created_at
    if reference is None:
        raise ValueError("filter_eligible needs `now` when the lead has no created_at")

    eligible = []
    for agent in agents:
        failures = check_eligibility(agent, lead, s, reference)
        if failures:
            logger.debug("Agent %s ineligible for lead %s: %s", agent.id, lead.id, "; ".join(failures))
            continue
        eligible.append(agent)
    return eligible
