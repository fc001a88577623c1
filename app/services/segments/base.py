"""
Upstream Service Base

Shared request plumbing for the HTTP collaborators of the segment editor
(field catalog, rule store, compute engine, reference lookup).
"""

import logging
from typing import Any, Optional

import httpx

from app.config import Settings, get_settings
from app.middleware.correlation import tracing_headers

logger = logging.getLogger(__name__)


class UpstreamService:
    """Base for services that talk to an upstream API over a shared AsyncClient."""

    service_name = "upstream"

    def __init__(self, http_client: httpx.AsyncClient, settings: Optional[Settings] = None):
        self.http_client = http_client
        self.settings = settings or get_settings()

    def _headers(self) -> dict:
        headers = {"Accept": "application/json"}
        if self.settings.UPSTREAM_API_TOKEN:
            headers["Authorization"] = f"Bearer {self.settings.UPSTREAM_API_TOKEN}"
        headers.update(tracing_headers())
        return headers

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send a request; transport errors propagate as httpx.HTTPError."""
        logger.debug(f"{self.service_name} {method} {url}")
        return await self.http_client.request(
            method,
            url,
            headers=self._headers(),
            timeout=self.settings.UPSTREAM_TIMEOUT_SECONDS,
            **kwargs,
        )

    @staticmethod
    def _unwrap(payload: Any) -> Any:
        """Strip the ``{success, data}`` envelope used by the dashboard APIs."""
        if isinstance(payload, dict) and isinstance(payload.get("data"), (dict, list)):
            return payload["data"]
        return payload
