"""Tests for offer expiry timers - schedule, cancel, fire, and recovery."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from conftest import T0, FakeClock
from lead_routing.core.models import Assignment
from lead_routing.timers import OfferTimers


class Recorder:
    def __init__(self):
        self.calls: list[str] = []
        self.fired = asyncio.Event()

    async def __call__(self, assignment_id: str) -> None:
        self.calls.append(assignment_id)
        self.fired.set()


@pytest.fixture
async def timers():
    t = OfferTimers(clock=FakeClock())
    yield t
    await t.shutdown()


class TestSchedule:
    async def test_requires_handler(self, timers):
        with pytest.raises(RuntimeError):
            timers.schedule("a1", T0 + timedelta(minutes=5))

    async def test_overdue_timer_fires_immediately(self, timers):
        recorder = Recorder()
        timers.set_handler(recorder)

        timers.schedule("a1", T0 - timedelta(seconds=1))
        await asyncio.wait_for(recorder.fired.wait(), timeout=1)

        assert recorder.calls == ["a1"]
        assert "a1" not in timers

    async def test_future_timer_is_pending(self, timers):
        recorder = Recorder()
        timers.set_handler(recorder)

        timers.schedule("a1", T0 + timedelta(minutes=60))
        await asyncio.sleep(0)

        assert "a1" in timers
        assert recorder.calls == []

    async def test_reschedule_replaces_previous_timer(self, timers):
        recorder = Recorder()
        timers.set_handler(recorder)

        first = timers.schedule("a1", T0 + timedelta(minutes=60))
        timers.schedule("a1", T0 - timedelta(seconds=1))
        await asyncio.wait_for(recorder.fired.wait(), timeout=1)

        assert first.cancelled
        assert recorder.calls == ["a1"]

    async def test_waits_for_injected_clock(self):
        clock = FakeClock()
        timers = OfferTimers(clock=clock, poll_interval=0.01)
        recorder = Recorder()
        timers.set_handler(recorder)

        timers.schedule("a1", T0 + timedelta(milliseconds=50))
        # Real time passes, the injected clock does not
        await asyncio.sleep(0.15)
        assert recorder.calls == []
        assert "a1" in timers

        clock.advance(seconds=1)
        await asyncio.wait_for(recorder.fired.wait(), timeout=1)
        await timers.shutdown()

        assert recorder.calls == ["a1"]


class TestCancel:
    async def test_cancelled_timer_never_fires(self, timers):
        recorder = Recorder()
        timers.set_handler(recorder)

        timers.schedule("a1", T0 - timedelta(seconds=1))
        assert timers.cancel("a1") is True
        await asyncio.sleep(0.01)

        assert recorder.calls == []
        assert len(timers) == 0

    async def test_cancel_unknown_returns_false(self, timers):
        assert timers.cancel("missing") is False

    async def test_handler_errors_are_contained(self, timers):
        fired = asyncio.Event()

        async def boom(assignment_id: str) -> None:
            fired.set()
            raise RuntimeError("store down")

        timers.set_handler(boom)
        token = timers.schedule("a1", T0 - timedelta(seconds=1))
        await asyncio.wait_for(fired.wait(), timeout=1)
        await asyncio.wait_for(token.task, timeout=1)

        assert token.task.exception() is None


class FakeStore:
    def __init__(self, assignments: list[Assignment]):
        self.assignments = assignments

    async def get_offered_assignments(self) -> list[Assignment]:
        return list(self.assignments)


class TestRecover:
    async def test_reschedules_future_and_expires_overdue(self, timers):
        recorder = Recorder()
        timers.set_handler(recorder)
        overdue = Assignment(
            lead_id="l1", agent_id="a", offered_at=T0 - timedelta(hours=2),
            expires_at=T0 - timedelta(hours=1),
        )
        pending = Assignment(
            lead_id="l1", agent_id="b", offered_at=T0 - timedelta(minutes=10),
            expires_at=T0 + timedelta(minutes=50),
        )

        report = await timers.recover(FakeStore([overdue, pending]))

        assert report.expired == [overdue.id]
        assert report.rescheduled == [pending.id]
        assert recorder.calls == [overdue.id]
        assert pending.id in timers

    async def test_shutdown_clears_timers(self, timers):
        timers.set_handler(Recorder())
        timers.schedule("a1", T0 + timedelta(minutes=5))
        timers.schedule("a2", T0 + timedelta(minutes=5))

        await timers.shutdown()

        assert len(timers) == 0
