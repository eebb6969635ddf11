"""Tests for the scoring engine - sub-scores, totals, reasons, and ranking."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from conftest import T0
from lead_routing.core.models import (
    AgentStats,
    AgentTier,
    Certification,
    Exclusivity,
    Expertise,
    GeographicTerritory,
    IndustryExperience,
    Territory,
    TerritoryType,
)
from lead_routing.scoring import ScoringEngine


@pytest.fixture
def engine():
    return ScoringEngine()


@pytest.fixture
def gold_agent(make_agent):
    return make_agent(
        "agent-gold",
        tier=AgentTier.GOLD,
        territory=Territory(
            geographic=GeographicTerritory(countries=["US"], states=["CA"]),
            exclusivity=Exclusivity.SHARED,
        ),
        expertise=Expertise(
            categories=["Produce"],
            specializations=["premium", "enterprise"],
            certifications=[
                Certification(name="GAP"),
                Certification(name="Organic", expires_at=T0 - timedelta(days=1)),
            ],
            industry_experience=[IndustryExperience(industry="Fresh Produce Distribution", years=5)],
        ),
        stats=AgentStats(
            conversion_rate=60,
            customer_satisfaction=4.5,
            rating=4.0,
            average_response_minutes=20,
            accepted_leads=3,
            closed_deals=1,
        ),
        years_of_experience=4,
        last_activity_at=T0 - timedelta(hours=1),
    )


class TestWorkedExample:
    def test_sub_scores(self, engine, gold_agent, make_lead):
        lead = make_lead(estimated_value=120_000)
        b = engine.breakdown(gold_agent, lead, T0)
        assert b.expertise == 95
        assert b.territory == 50
        assert b.performance == pytest.approx(72.5)
        assert b.availability == pytest.approx(80)
        assert b.experience == pytest.approx(35.5)
        assert b.response_time == 80

    def test_total(self, engine, gold_agent, make_lead):
        lead = make_lead(estimated_value=120_000)
        assert engine.score(gold_agent, lead, T0) == 71.8


class TestSubScores:
    def test_expertise_capped_at_100(self, engine, make_agent, make_lead):
        agent = make_agent(
            expertise=Expertise(
                categories=["Produce"],
                specializations=["premium", "enterprise"],
                certifications=[Certification(name=f"c{i}") for i in range(10)],
            )
        )
        assert engine.expertise_score(agent, make_lead(estimated_value=200_000), T0) == 100

    def test_premium_needs_value_above_threshold(self, engine, make_agent, make_lead):
        agent = make_agent(expertise=Expertise(specializations=["premium"]))
        assert engine.expertise_score(agent, make_lead(estimated_value=50_000), T0) == 0
        assert engine.expertise_score(agent, make_lead(estimated_value=50_001), T0) == 20

    def test_exclusive_territory_bonus(self, engine, make_agent, make_lead):
        shared = make_agent()
        exclusive = make_agent(
            territory=Territory(
                geographic=GeographicTerritory(countries=["US"]),
                exclusivity=Exclusivity.EXCLUSIVE,
            )
        )
        lead = make_lead()
        assert engine.territory_score(exclusive, lead) - engine.territory_score(shared, lead) == 15

    def test_hybrid_territory_adds_category(self, engine, make_agent, make_lead):
        agent = make_agent(
            territory=Territory(
                type=TerritoryType.HYBRID,
                geographic=GeographicTerritory(countries=["US"], states=["CA"], cities=["Fresno"]),
                categories=["Produce"],
            )
        )
        # 30 + 20 + 25 + 40, capped
        assert engine.territory_score(agent, make_lead()) == 100

    def test_conversion_rate_capped(self, engine, make_agent):
        agent = make_agent(stats=AgentStats(conversion_rate=250))
        assert engine.performance_score(agent) == 40

    @pytest.mark.parametrize(
        "minutes,expected",
        [(10, 100), (15, 100), (16, 80), (45, 60), (90, 40), (121, 20), (None, 60)],
    )
    def test_response_time_steps(self, engine, make_agent, minutes, expected):
        agent = make_agent(stats=AgentStats(average_response_minutes=minutes))
        assert engine.response_time_score(agent) == expected

    @pytest.mark.parametrize(
        "hours_ago,activity",
        [(1, 20), (5, 15), (12, 10), (30, 5)],
    )
    def test_availability_activity_buckets(self, engine, make_agent, hours_ago, activity):
        agent = make_agent(last_activity_at=T0 - timedelta(hours=hours_ago))
        # Bronze with no open leads: 100% available -> 80 points
        assert engine.availability_score(agent, T0) == 80 + activity

    def test_experience_counts_agriculture_for_any_category(self, engine, make_agent, make_lead):
        agent = make_agent(
            expertise=Expertise(
                industry_experience=[IndustryExperience(industry="Agriculture", years=4)]
            )
        )
        assert engine.experience_score(agent, make_lead(category="Machinery")) == 12

    def test_experience_ignores_unrelated_industry(self, engine, make_agent, make_lead):
        agent = make_agent(
            expertise=Expertise(
                industry_experience=[IndustryExperience(industry="Software", years=10)]
            )
        )
        assert engine.experience_score(agent, make_lead()) == 0


class TestScoreBounds:
    def test_score_within_bounds(self, engine, make_agent, make_lead):
        agents = [
            make_agent("a", stats=AgentStats()),
            make_agent("b", tier=AgentTier.PLATINUM, stats=AgentStats(conversion_rate=100, rating=5,
                       customer_satisfaction=5, average_response_minutes=1, closed_deals=500),
                       years_of_experience=40),
        ]
        for agent in agents:
            assert 0 <= engine.score(agent, make_lead(), T0) <= 100

    def test_deterministic(self, engine, gold_agent, make_lead):
        lead = make_lead(estimated_value=75_000)
        assert engine.score(gold_agent, lead, T0) == engine.score(gold_agent, lead, T0)


class TestMatchReasons:
    def test_reasons_for_strong_agent(self, engine, gold_agent, make_lead):
        reasons = engine.match_reasons(gold_agent, make_lead(), T0)
        assert "Category expertise match" in reasons
        assert "Geographic territory match" in reasons
        assert "High-performing agent" in reasons
        assert "High conversion rate" in reasons
        assert "Currently active" in reasons

    def test_no_reasons_for_bare_agent(self, engine, make_agent, make_lead):
        agent = make_agent(countries=["MX"], categories=[], last_activity_at=T0 - timedelta(hours=5))
        assert engine.match_reasons(agent, make_lead(), T0) == []


class TestRank:
    def test_orders_by_score(self, engine, gold_agent, make_agent, make_lead):
        weak = make_agent("agent-weak")
        ranked = engine.rank([weak, gold_agent], make_lead(), T0)
        assert [r.agent.id for r in ranked] == ["agent-gold", "agent-weak"]
        assert ranked[0].score > ranked[1].score

    def test_ties_go_to_longer_tenure(self, engine, make_agent, make_lead):
        newer = make_agent("agent-a", joined_at=datetime(2024, 6, 1, tzinfo=timezone.utc))
        older = make_agent("agent-b", joined_at=datetime(2020, 6, 1, tzinfo=timezone.utc))
        ranked = engine.rank([newer, older], make_lead(), T0)
        assert [r.agent.id for r in ranked] == ["agent-b", "agent-a"]

    def test_full_ties_go_to_agent_id(self, engine, make_agent, make_lead):
        ranked = engine.rank([make_agent("agent-z"), make_agent("agent-m")], make_lead(), T0)
        assert [r.agent.id for r in ranked] == ["agent-m", "agent-z"]

    def test_carries_capacity_and_reasons(self, engine, gold_agent, make_lead):
        [item] = engine.rank([gold_agent], make_lead(), T0)
        assert item.remaining_capacity == 6
        assert item.match_reasons
