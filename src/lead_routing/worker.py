"""Routing worker - owns offer timers and sweeps overdue offers.

On start it re-arms a timer for every assignment still in ``offered`` (and
expires the ones already overdue), then polls every N seconds for offers whose
timer was lost, e.g. because another process created them.

Usage:
    lead-routing-worker                 # via pyproject.toml entrypoint
    python -m lead_routing.worker       # direct
"""

from __future__ import annotations

import asyncio
import logging
import signal

from lead_routing.core.config import Settings
from lead_routing.core.db_factory import create_database
from lead_routing.directory import AgentDirectory, HttpAgentDirectory, InMemoryAgentDirectory
from lead_routing.notifications import (
    LoggingNotificationGateway,
    NotificationGateway,
    WebhookNotificationGateway,
)
from lead_routing.orchestrator import AssignmentOrchestrator

logger = logging.getLogger(__name__)


class LeadRoutingWorker:
    """Recovers offer timers on startup and runs the expiry sweep."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or Settings()
        self._running = False
        self._closed = False
        self._stop_requested = asyncio.Event()

        self.db = create_database(self.settings)

        directory: AgentDirectory
        if self.settings.agent_directory_url:
            directory = HttpAgentDirectory(self.settings)
        else:
            logger.warning("AGENT_DIRECTORY_URL not set; using an empty in-memory directory")
            directory = InMemoryAgentDirectory([])

        notifier: NotificationGateway
        if self.settings.notification_webhook_url:
            notifier = WebhookNotificationGateway(self.settings)
        else:
            notifier = LoggingNotificationGateway()

        self.directory = directory
        self.notifier = notifier
        self.orchestrator = AssignmentOrchestrator(
            self.db, directory, notifier=notifier, settings=self.settings
        )

    async def start(self) -> None:
        """Connect, recover timers, then sweep until stopped."""
        logger.info("Connecting to %s", "SQLite" if self.settings.use_sqlite else "PostgreSQL")
        await self.db.connect()

        report = await self.orchestrator.recover()
        logger.info(
            "Recovered offers: %d timers re-armed, %d expired",
            len(report.rescheduled),
            len(report.expired),
        )

        self._running = not self._stop_requested.is_set()
        logger.info("Routing worker started, sweeping every %ds", self.settings.expiry_sweep_interval)

        while self._running:
            try:
                await self._sweep_once()
            except Exception:
                logger.exception("Expiry sweep error")
            try:
                await asyncio.wait_for(
                    self._stop_requested.wait(), timeout=self.settings.expiry_sweep_interval
                )
            except asyncio.TimeoutError:
                pass
        logger.info("Sweep loop finished")

    def request_stop(self) -> None:
        """Ask the sweep loop to finish; start() returns after the current sweep."""
        self._running = False
        self._stop_requested.set()

    async def stop(self) -> None:
        """Graceful shutdown. Safe to call more than once."""
        self.request_stop()
        if self._closed:
            return
        self._closed = True
        await self.orchestrator.shutdown()
        await self.directory.close()
        await self.notifier.close()
        await self.db.close()
        logger.info("Routing worker stopped")

    async def _sweep_once(self) -> int:
        """Expire every overdue offer. Returns the number actually expired."""
        overdue = await self.db.get_overdue_assignments(self.orchestrator.clock())
        expired = 0
        for assignment in overdue:
            try:
                result = await self.orchestrator.expire(assignment.id)
            except Exception:
                logger.exception("Failed to expire assignment %s", assignment.id)
                continue
            if result.changed:
                expired += 1
        if expired:
            logger.info("Sweep expired %d offers", expired)
        return expired


async def _run() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    worker = LeadRoutingWorker()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, worker.request_stop)
        except NotImplementedError:
            pass  # Windows

    try:
        await worker.start()
    finally:
        await worker.stop()


def main() -> None:
    asyncio.run(_run())


if __name__ == "__main__":
    main()
