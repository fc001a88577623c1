"""
Reference Resolver

Display names for the segments and QuickLists a criteria tree points at.
Labels only: a missing name never makes a tree invalid.
"""

import logging
from typing import Any, Optional, Union

import httpx

from app.exceptions import ExternalServiceError
from app.services.segments.base import UpstreamService

logger = logging.getLogger(__name__)


class ReferenceResolver(UpstreamService):
    service_name = "references"

    async def _fetch_name(self, url: str, label: str) -> Optional[str]:
        try:
            response = await self._request("GET", url)
        except httpx.HTTPError as e:
            logger.error(f"{label} lookup failed: {e}", extra={"url": url})
            raise ExternalServiceError(label, f"lookup failed: {e}") from e

        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            logger.error(f"{label} lookup returned an error status", extra={"url": url, "status_code": response.status_code})
            raise ExternalServiceError(label, f"HTTP {response.status_code}", upstream_status=response.status_code)

        payload: Any = self._unwrap(response.json())
        if isinstance(payload, dict):
            name = payload.get("name") or payload.get("segment_name") or payload.get("list_name")
            return str(name) if name else None
        return None

    async def segment_name(self, segment_id: Union[int, str]) -> Optional[str]:
        return await self._fetch_name(f"{self.settings.SEGMENTS_API_URL}/{segment_id}", "Segment")

    async def quicklist_name(self, list_id: Union[int, str]) -> Optional[str]:
        return await self._fetch_name(f"{self.settings.QUICKLISTS_API_URL}/{list_id}", "QuickList")
