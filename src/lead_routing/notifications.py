"""Notification gateway and lifecycle event sinks.

The engine hands a structured event payload to a gateway; rendering and
channel fallback (push, SMS, chat) belong to the external dispatcher.
Delivery is best-effort: a failure never rolls back the state transition
that produced it.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

import httpx

from lead_routing.core.config import Settings
from lead_routing.core.errors import NotificationDeliveryFailure
from lead_routing.core.models import EventType, LifecycleEvent

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Notification gateway
# ---------------------------------------------------------------------------

class NotificationGateway(ABC):
    """Delivers offer/acceptance/expiry events to agents."""

    @abstractmethod
    async def notify(self, agent_id: str, event_type: EventType, payload: dict[str, Any]) -> None:
        """Deliver one event. Raises NotificationDeliveryFailure on failure."""
        ...

    async def close(self) -> None:
        pass


class LoggingNotificationGateway(NotificationGateway):
    """Writes notifications to the log instead of delivering them."""

    async def notify(self, agent_id: str, event_type: EventType, payload: dict[str, Any]) -> None:
        logger.info("Notify agent %s: %s %s", agent_id, event_type.value, payload)


class WebhookNotificationGateway(NotificationGateway):
    """POSTs events as JSON to the channel dispatcher's webhook."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.webhook_url = settings.notification_webhook_url
        self.api_key = settings.notification_api_key
        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Content-Type": "application/json"}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self._client = httpx.AsyncClient(headers=headers, timeout=self.settings.http_timeout)
        return self._client

    async def notify(self, agent_id: str, event_type: EventType, payload: dict[str, Any]) -> None:
        if not self.webhook_url:
            raise NotificationDeliveryFailure("Notification webhook URL not configured")

        body = {"agent_id": agent_id, "event_type": event_type.value, "payload": payload}
        try:
            resp = await self.client.post(self.webhook_url, json=body)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise NotificationDeliveryFailure(
                f"Notification webhook error: {e.response.status_code}"
            ) from e
        except httpx.RequestError as e:
            raise NotificationDeliveryFailure(f"Notification webhook connection error: {e}") from e

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


# ---------------------------------------------------------------------------
# Lifecycle events (audit / activity log)
# ---------------------------------------------------------------------------

class EventSink(ABC):
    """Receives lifecycle events for the audit/activity log."""

    @abstractmethod
    async def emit(self, event: LifecycleEvent) -> None:
        ...


class DatabaseEventSink(EventSink):
    """Persists lifecycle events in the store's lifecycle_events table."""

    def __init__(self, db: Any):
        self.db = db

    async def emit(self, event: LifecycleEvent) -> None:
        await self.db.insert_event(event)
