"""HTTP transport for agents hosted in another process."""

from __future__ import annotations

import logging
import time
from typing import Optional

import httpx

from .protocol import AgentRequest, AgentResponse, HealthProbe

logger = logging.getLogger(__name__)


class RemoteAgent:
    """Forwards requests to an agent exposed at ``{endpoint}/agents/{name}``.

    Transport failures, non-2xx statuses and unparsable bodies are raised so
    that the communication layer retries them and counts them against the
    breaker. A well-formed decline from the remote side comes back as a
    regular response.
    """

    def __init__(
        self,
        name: str,
        endpoint: str,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 5.0,
    ) -> None:
        self.name = name
        self.endpoint = endpoint.rstrip("/")
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._client_owner = http_client is None

    @property
    def url(self) -> str:
        return f"{self.endpoint}/agents/{self.name}"

    async def handle(self, request: AgentRequest) -> AgentResponse:
        response = await self._client.post(self.url, json=request.to_dict())
        response.raise_for_status()
        return AgentResponse.from_dict(response.json())

    async def health_check(self) -> HealthProbe:
        started = time.perf_counter()
        try:
            response = await self._client.get(f"{self.url}/health")
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("remote agent %s health probe failed: %s", self.name, exc)
            return HealthProbe(healthy=False, latency_ms=(time.perf_counter() - started) * 1000)
        payload = response.json()
        return HealthProbe(
            healthy=bool(payload.get("healthy", True)),
            latency_ms=(time.perf_counter() - started) * 1000,
        )

    async def close(self) -> None:
        if self._client_owner:
            await self._client.aclose()


__all__ = ["RemoteAgent"]
