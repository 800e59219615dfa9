"""
HTTP client for model backend services.

Backends are addressed by service name over the cluster's overlay network:

    <scheme>://<service name>:<port>/health
    <scheme>://<service name>:<port>/v1/completions
    <scheme>://<service name>:<port>/v1/chat/completions
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

import aiohttp

from swarm_gateway.errors import BackendUnavailableError

logger = logging.getLogger(__name__)


class BackendClient:
    """
    Health checks and request forwarding over one shared aiohttp session.

    Example:
        backend = BackendClient(port=8000)
        if await backend.check_health("transformers-js-phi-3-5"):
            result = await backend.complete("transformers-js-phi-3-5", {"prompt": "Hi"})
        await backend.close()
    """

    def __init__(
        self,
        scheme: str = "http",
        port: int = 8000,
        request_timeout: float = 120.0,
        health_timeout: float = 2.0,
    ):
        self.scheme = scheme
        self.port = port
        self.request_timeout = request_timeout
        self.health_timeout = health_timeout
        self._session: Optional[aiohttp.ClientSession] = None

    def base_url(self, service_name: str) -> str:
        return f"{self.scheme}://{service_name}:{self.port}"

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def check_health(self, service_name: str) -> bool:
        """True if the backend answers ``GET /health`` with 200."""
        session = await self._get_session()
        try:
            async with session.get(
                f"{self.base_url(service_name)}/health",
                timeout=aiohttp.ClientTimeout(total=self.health_timeout),
            ) as response:
                return response.status == 200
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.debug(f"[Gateway] Health check of {service_name} failed: {e}")
            return False

    async def complete(self, service_name: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._post(service_name, "/v1/completions", payload)

    async def chat_complete(self, service_name: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._post(service_name, "/v1/chat/completions", payload)

    async def _post(self, service_name: str, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        session = await self._get_session()
        url = f"{self.base_url(service_name)}{path}"
        try:
            async with session.post(
                url,
                json=payload,
                timeout=aiohttp.ClientTimeout(total=self.request_timeout),
            ) as response:
                if response.status >= 400:
                    body = await response.text()
                    raise BackendUnavailableError(
                        f"Backend {service_name} returned {response.status}",
                        details={"status": response.status, "body": body[:500]},
                    )
                return await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise BackendUnavailableError(f"Backend {service_name} request failed: {e}")

    async def close(self) -> None:
        """Close the session."""
        if self._session:
            await self._session.close()
            self._session = None
