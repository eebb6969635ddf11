"""Tests for the routing worker's expiry sweep."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from lead_routing.core.config import Settings
from lead_routing.core.models import Assignment, LeadStatus
from lead_routing.directory import InMemoryAgentDirectory
from lead_routing.notifications import LoggingNotificationGateway
from lead_routing.worker import LeadRoutingWorker


@pytest.fixture
async def worker():
    w = LeadRoutingWorker(Settings(use_sqlite=True, sqlite_path=":memory:"))
    await w.db.connect()
    yield w
    await w.stop()


class TestWorkerSetup:
    def test_defaults_without_collaborator_urls(self):
        w = LeadRoutingWorker(Settings(use_sqlite=True, sqlite_path=":memory:"))
        assert isinstance(w.directory, InMemoryAgentDirectory)
        assert isinstance(w.notifier, LoggingNotificationGateway)


class TestSweep:
    async def test_sweep_expires_overdue_offers(self, worker, make_lead):
        now = datetime.now(timezone.utc)
        lead = await worker.db.create_lead(make_lead(created_at=now - timedelta(hours=2)))
        await worker.db.update_lead(lead.id, status=LeadStatus.ASSIGNED)
        await worker.db.create_assignment(
            Assignment(
                lead_id=lead.id,
                agent_id="agent-a",
                offered_at=now - timedelta(hours=2),
                expires_at=now - timedelta(hours=1),
            )
        )

        assert await worker._sweep_once() == 1
        assert await worker._sweep_once() == 0

        stored = await worker.db.get_lead(lead.id)
        assert stored.status == LeadStatus.NEEDS_REVIEW

    async def test_sweep_leaves_pending_offers(self, worker, make_lead):
        now = datetime.now(timezone.utc)
        lead = await worker.db.create_lead(make_lead(created_at=now))
        await worker.db.update_lead(lead.id, status=LeadStatus.ASSIGNED)
        await worker.db.create_assignment(
            Assignment(
                lead_id=lead.id,
                agent_id="agent-a",
                offered_at=now,
                expires_at=now + timedelta(hours=1),
            )
        )

        assert await worker._sweep_once() == 0


class TestShutdown:
    async def test_stop_closes_resources_once(self, worker):
        closes = []
        close_db = worker.db.close

        async def counting_close():
            closes.append(True)
            await close_db()

        worker.db.close = counting_close
        await worker.stop()
        await worker.stop()

        assert closes == [True]

    async def test_request_stop_ends_sweep_loop(self):
        w = LeadRoutingWorker(
            Settings(use_sqlite=True, sqlite_path=":memory:", expiry_sweep_interval=3600)
        )
        task = asyncio.create_task(w.start())
        await asyncio.sleep(0.05)

        w.request_stop()
        await asyncio.wait_for(task, timeout=1)
        # The loop is done before the store is closed
        assert await w._sweep_once() == 0
        await w.stop()

    async def test_stop_requested_before_start(self):
        w = LeadRoutingWorker(Settings(use_sqlite=True, sqlite_path=":memory:"))
        w.request_stop()

        await asyncio.wait_for(w.start(), timeout=1)
        await w.stop()
