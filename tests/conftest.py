"""Shared test fixtures."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from lead_routing.core.config import Settings
from lead_routing.core.database import Database
from lead_routing.core.models import (
    Agent,
    AgentStats,
    AgentTier,
    Expertise,
    GeographicTerritory,
    Geography,
    Lead,
    Territory,
    TerritoryType,
)
from lead_routing.directory.memory import InMemoryAgentDirectory
from lead_routing.notifications import NotificationGateway
from lead_routing.orchestrator import AssignmentOrchestrator

T0 = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock; call it to read the current time."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingGateway(NotificationGateway):
    def __init__(self):
        self.sent: list[tuple] = []

    async def notify(self, agent_id, event_type, payload) -> None:
        self.sent.append((agent_id, event_type, payload))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        use_sqlite=True,
        sqlite_path=":memory:",
        retry_backoff_seconds=0,
        retry_backoff_max_seconds=0,
    )


@pytest.fixture
def make_lead():
    """Factory fixture for creating test leads."""

    def _make(
        category: str = "Produce",
        country: str = "US",
        state: str | None = "CA",
        city: str | None = "Fresno",
        **kwargs,
    ) -> Lead:
        return Lead(
            category=category,
            geography=Geography(
                country=country,
                state=state,
                city=city,
                coordinates=kwargs.pop("coordinates", None),
            ),
            **kwargs,
        )

    return _make


@pytest.fixture
def make_agent():
    """Factory fixture for creating eligible-by-default test agents."""

    def _make(
        agent_id: str = "agent-a",
        tier: AgentTier = AgentTier.BRONZE,
        countries: list[str] | None = None,
        categories: list[str] | None = None,
        **kwargs,
    ) -> Agent:
        territory = kwargs.pop(
            "territory",
            Territory(
                type=TerritoryType.GEOGRAPHIC,
                geographic=GeographicTerritory(countries=countries or ["US"]),
            ),
        )
        return Agent(
            id=agent_id,
            name=kwargs.pop("name", agent_id.title()),
            tier=tier,
            territory=territory,
            expertise=kwargs.pop(
                "expertise", Expertise(categories=categories if categories is not None else ["Produce"])
            ),
            stats=kwargs.pop("stats", AgentStats()),
            last_activity_at=kwargs.pop("last_activity_at", T0 - timedelta(hours=1)),
            joined_at=kwargs.pop("joined_at", datetime(2023, 1, 1, tzinfo=timezone.utc)),
            **kwargs,
        )

    return _make


@pytest.fixture
async def db(settings):
    database = Database(settings)
    await database.connect()
    yield database
    await database.close()


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def directory():
    return InMemoryAgentDirectory()


@pytest.fixture
async def orchestrator(db, directory, gateway, settings, clock):
    orch = AssignmentOrchestrator(
        db, directory, notifier=gateway, settings=settings, clock=clock
    )
    yield orch
    await orch.shutdown()
