"""Offer timers - one-shot expiry checks keyed by assignment id.

Each scheduled offer gets a small cancellation token; the asyncio task that
sleeps until ``expires_at`` checks the token before calling the expiry
handler. A timer that fires after its assignment was resolved is harmless:
the handler treats a non-offered assignment as a no-op.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

ExpiryHandler = Callable[[str], Awaitable[Any]]


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TimerToken:
    """Cancellation token for one scheduled offer expiry."""

    assignment_id: str
    expires_at: datetime
    cancelled: bool = False
    task: asyncio.Task | None = field(default=None, repr=False)

    def cancel(self) -> None:
        self.cancelled = True
        if self.task is not None and not self.task.done():
            self.task.cancel()


class RecoveryReport(BaseModel):
    rescheduled: list[str] = Field(default_factory=list)
    expired: list[str] = Field(default_factory=list)


class OfferTimers:
    """Schedules, cancels, and recovers per-assignment expiry timers."""

    def __init__(
        self,
        handler: ExpiryHandler | None = None,
        clock: Callable[[], datetime] | None = None,
        poll_interval: float = 30.0,
    ):
        self._handler = handler
        self.clock = clock or _now
        self.poll_interval = poll_interval
        self._tokens: dict[str, TimerToken] = {}

    def set_handler(self, handler: ExpiryHandler) -> None:
        self._handler = handler

    def __contains__(self, assignment_id: str) -> bool:
        return assignment_id in self._tokens

    def __len__(self) -> int:
        return len(self._tokens)

    def schedule(self, assignment_id: str, expires_at: datetime) -> TimerToken:
        """Schedule an expiry check, replacing any timer for the same assignment."""
        if self._handler is None:
            raise RuntimeError("OfferTimers has no expiry handler. Call set_handler() first.")
        self.cancel(assignment_id)

        token = TimerToken(assignment_id=assignment_id, expires_at=expires_at)
        token.task = asyncio.create_task(
            self._run(token), name=f"offer-expiry:{assignment_id}"
        )
        self._tokens[assignment_id] = token
        logger.debug("Scheduled expiry for assignment %s at %s", assignment_id, expires_at)
        return token

    def cancel(self, assignment_id: str) -> bool:
        """Cancel the timer for an assignment. Returns False if none was pending."""
        token = self._tokens.pop(assignment_id, None)
        if token is None:
            return False
        token.cancel()
        return True

    async def _run(self, token: TimerToken) -> None:
        # The loop clock and the injected clock can drift apart; keep sleeping
        # until the injected clock says the offer is due.
        while (delay := (token.expires_at - self.clock()).total_seconds()) > 0:
            await asyncio.sleep(min(delay, self.poll_interval))
        if token.cancelled:
            return

        # Fired: forget the token only if it is still the current one
        if self._tokens.get(token.assignment_id) is token:
            del self._tokens[token.assignment_id]

        try:
            await self._handler(token.assignment_id)
        except Exception:
            logger.exception("Expiry handler failed for assignment %s", token.assignment_id)

    async def recover(self, db: Any) -> RecoveryReport:
        """Re-arm timers for every offered assignment after a restart.

        Overdue offers are expired immediately, so no offer outlives its expiry
        silently.
        """
        if self._handler is None:
            raise RuntimeError("OfferTimers has no expiry handler. Call set_handler() first.")

        report = RecoveryReport()
        now = self.clock()
        for assignment in await db.get_offered_assignments():
            if assignment.expires_at <= now:
                await self._handler(assignment.id)
                report.expired.append(assignment.id)
            else:
                self.schedule(assignment.id, assignment.expires_at)
                report.rescheduled.append(assignment.id)

        logger.info(
            "Timer recovery: %d rescheduled, %d expired on startup",
            len(report.rescheduled),
            len(report.expired),
        )
        return report

    async def shutdown(self) -> None:
        """Cancel all pending timers and wait for their tasks to finish."""
        tokens = list(self._tokens.values())
        self._tokens.clear()
        for token in tokens:
            token.cancel()
        tasks = [t.task for t in tokens if t.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
