"""Agent directory adapter for the remote agent service."""

from __future__ import annotations

import httpx

from lead_routing.core.config import Settings
from lead_routing.core.errors import CapacityExceeded, DirectoryUnavailable, NotFound
from lead_routing.core.models import Agent, Geography
from lead_routing.directory.base import AgentDirectory


class HttpAgentDirectory(AgentDirectory):
    """Agent directory reached over HTTP (JSON)."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.api_url = settings.agent_directory_url.rstrip("/")
        self.api_key = settings.agent_directory_api_key
        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Content-Type": "application/json"}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self._client = httpx.AsyncClient(
                base_url=self.api_url,
                headers=headers,
                timeout=self.settings.http_timeout,
            )
        return self._client

    async def find_candidates(self, category: str, geography: Geography) -> list[Agent]:
        params: dict = {"category": category, "country": geography.country}
        if geography.state:
            params["state"] = geography.state
        if geography.city:
            params["city"] = geography.city
        if geography.coordinates:
            params["lat"] = geography.coordinates.lat
            params["lng"] = geography.coordinates.lng

        try:
            resp = await self.client.get("/agents/candidates", params=params)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as e:
            raise DirectoryUnavailable(
                f"Agent directory error: {e.response.status_code}"
            ) from e
        except httpx.RequestError as e:
            raise DirectoryUnavailable(f"Agent directory connection error: {e}") from e

        items = data.get("agents", data) if isinstance(data, dict) else data
        return [Agent.model_validate(item) for item in items]

    async def get_agent(self, agent_id: str) -> Agent:
        try:
            resp = await self.client.get(f"/agents/{agent_id}")
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                raise NotFound(f"Agent not found: {agent_id}") from e
            raise DirectoryUnavailable(
                f"Agent directory error: {e.response.status_code}"
            ) from e
        except httpx.RequestError as e:
            raise DirectoryUnavailable(f"Agent directory connection error: {e}") from e
        return Agent.model_validate(resp.json())

    async def record_acceptance(self, agent_id: str, capacity: int) -> None:
        await self._post(f"/agents/{agent_id}/acceptances", {"capacity": capacity})

    async def release_acceptance(self, agent_id: str) -> None:
        await self._post(f"/agents/{agent_id}/releases", {})

    async def record_closure(self, agent_id: str, won: bool) -> None:
        await self._post(f"/agents/{agent_id}/closures", {"won": won})

    async def _post(self, path: str, payload: dict) -> None:
        try:
            resp = await self.client.post(path, json=payload)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                raise NotFound(f"Agent not found: {path}") from e
            if e.response.status_code == 409:
                raise CapacityExceeded(f"Agent at capacity: {path}") from e
            raise DirectoryUnavailable(
                f"Agent directory error: {e.response.status_code}"
            ) from e
        except httpx.RequestError as e:
            raise DirectoryUnavailable(f"Agent directory connection error: {e}") from e

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
