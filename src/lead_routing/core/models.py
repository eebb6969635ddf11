"""Pydantic models for the lead routing engine."""

from __future__ import annotations

import enum
import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, model_validator


def _new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class LeadStatus(str, enum.Enum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    NEEDS_REVIEW = "needs_review"
    CLOSED_WON = "closed_won"
    CLOSED_LOST = "closed_lost"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class Urgency(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class AssignmentStatus(str, enum.Enum):
    OFFERED = "offered"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"
    SUPERSEDED = "superseded"


class AssignmentRank(str, enum.Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"
    BACKUP = "backup"

    @classmethod
    def for_position(cls, position: int) -> AssignmentRank:
        if position == 0:
            return cls.PRIMARY
        if position == 1:
            return cls.SECONDARY
        return cls.BACKUP


class AgentTier(str, enum.Enum):
    BRONZE = "bronze"
    SILVER = "silver"
    GOLD = "gold"
    PLATINUM = "platinum"


class AgentStatus(str, enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class VerificationStatus(str, enum.Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


class Connectivity(str, enum.Enum):
    ONLINE = "online"
    AWAY = "away"
    OFFLINE = "offline"


class TerritoryType(str, enum.Enum):
    GEOGRAPHIC = "geographic"
    CATEGORY = "category"
    HYBRID = "hybrid"


class Exclusivity(str, enum.Enum):
    EXCLUSIVE = "exclusive"
    SHARED = "shared"


class ResponseAction(str, enum.Enum):
    ACCEPT = "accept"
    DECLINE = "decline"


class EventType(str, enum.Enum):
    OFFER_CREATED = "offer-created"
    OFFER_ACCEPTED = "offer-accepted"
    OFFER_DECLINED = "offer-declined"
    OFFER_EXPIRED = "offer-expired"
    OFFER_SUPERSEDED = "offer-superseded"
    LEAD_NEEDS_REVIEW = "lead-needs-review"


class OfferOutcome(str, enum.Enum):
    OFFERED = "offered"
    NO_ELIGIBLE_AGENTS = "no_eligible_agents"


# ---------------------------------------------------------------------------
# Lead
# ---------------------------------------------------------------------------

class Coordinates(BaseModel):
    lat: float
    lng: float


class Geography(BaseModel):
    country: str
    state: str | None = None
    city: str | None = None
    coordinates: Coordinates | None = None


class Lead(BaseModel):
    id: str = Field(default_factory=_new_id)
    category: str
    geography: Geography
    estimated_value: float = 0.0
    currency: str = "USD"
    urgency: Urgency = Urgency.MEDIUM
    specifications: list[str] = Field(default_factory=list)
    status: LeadStatus = LeadStatus.PENDING
    active_agent_id: str | None = None
    failure_reason: str | None = None
    version: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None


# ---------------------------------------------------------------------------
# Agent (snapshot from the directory)
# ---------------------------------------------------------------------------

class RadiusTerritory(BaseModel):
    center: Coordinates
    distance_km: float | None = None  # falls back to Settings.default_radius_km


class GeographicTerritory(BaseModel):
    countries: list[str] = Field(default_factory=list)
    states: list[str] = Field(default_factory=list)
    cities: list[str] = Field(default_factory=list)
    radius: RadiusTerritory | None = None


class Territory(BaseModel):
    type: TerritoryType = TerritoryType.GEOGRAPHIC
    geographic: GeographicTerritory = Field(default_factory=GeographicTerritory)
    categories: list[str] = Field(default_factory=list)
    exclusivity: Exclusivity = Exclusivity.SHARED


class Certification(BaseModel):
    name: str
    expires_at: datetime | None = None


class IndustryExperience(BaseModel):
    industry: str
    years: float = 0.0


class Expertise(BaseModel):
    categories: list[str] = Field(default_factory=list)
    specializations: list[str] = Field(default_factory=list)
    certifications: list[Certification] = Field(default_factory=list)
    industry_experience: list[IndustryExperience] = Field(default_factory=list)


class AgentStats(BaseModel):
    conversion_rate: float = 0.0  # percent, 0-100
    customer_satisfaction: float = 0.0  # 0-5
    rating: float = 0.0  # 0-5
    average_response_minutes: float | None = None
    accepted_leads: int = 0
    closed_deals: int = 0


class Agent(BaseModel):
    id: str
    name: str = ""
    status: AgentStatus = AgentStatus.ACTIVE
    identity_verification: VerificationStatus = VerificationStatus.VERIFIED
    business_verification: VerificationStatus = VerificationStatus.VERIFIED
    tier: AgentTier = AgentTier.BRONZE
    territory: Territory = Field(default_factory=Territory)
    expertise: Expertise = Field(default_factory=Expertise)
    stats: AgentStats = Field(default_factory=AgentStats)
    years_of_experience: float = 0.0
    joined_at: datetime | None = None
    last_activity_at: datetime | None = None
    connectivity: Connectivity = Connectivity.OFFLINE

    @property
    def open_leads(self) -> int:
        """Accepted leads not yet closed."""
        return max(0, self.stats.accepted_leads - self.stats.closed_deals)


class ScoredAgent(BaseModel):
    agent: Agent
    score: float
    match_reasons: list[str] = Field(default_factory=list)
    remaining_capacity: int = 0


class LeadCandidate(BaseModel):
    """A ranked, eligible agent remembered per lead for cascade offers."""

    lead_id: str
    agent_id: str
    position: int
    score: float
    match_reasons: list[str] = Field(default_factory=list)
    remaining_capacity: int = 0


# ---------------------------------------------------------------------------
# Assignment
# ---------------------------------------------------------------------------

class Assignment(BaseModel):
    id: str = Field(default_factory=_new_id)
    lead_id: str
    agent_id: str
    rank: AssignmentRank = AssignmentRank.PRIMARY
    score: float = 0.0
    match_reasons: list[str] = Field(default_factory=list)
    status: AssignmentStatus = AssignmentStatus.OFFERED
    offered_at: datetime
    expires_at: datetime
    responded_at: datetime | None = None
    response_reason: str | None = None
    version: int = 0

    @model_validator(mode="after")
    def _expiry_after_offer(self) -> Assignment:
        if self.expires_at <= self.offered_at:
            raise ValueError("expires_at must be later than offered_at")
        return self


class LifecycleEvent(BaseModel):
    id: str = Field(default_factory=_new_id)
    event_type: EventType
    lead_id: str
    assignment_id: str | None = None
    agent_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None


# ---------------------------------------------------------------------------
# Operation results and read models
# ---------------------------------------------------------------------------

class OfferResult(BaseModel):
    lead_id: str
    outcome: OfferOutcome
    lead_status: LeadStatus
    offers: list[Assignment] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class ResponseResult(BaseModel):
    assignment: Assignment
    lead_status: LeadStatus
    changed: bool = True
    cascade_offers: list[Assignment] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class LeadAssignmentState(BaseModel):
    """Read model returned by get_assignment_state."""

    lead_id: str
    status: LeadStatus
    active_agent_id: str | None = None
    failure_reason: str | None = None
    assignments: list[Assignment] = Field(default_factory=list)


class LeadUpdateResult(BaseModel):
    """Outcome of closing or cancelling a lead."""

    lead: Lead
    warnings: list[str] = Field(default_factory=list)
