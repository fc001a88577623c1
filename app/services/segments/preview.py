"""
Preview Client

Asks the compute engine for an estimated audience size for a criteria tree.
Trees are re-validated before anything is sent; an empty tree is answered
locally with zero.
"""

import logging
from typing import Any, List, Optional, Union

import httpx

from app.exceptions import ComputeEngineUnavailable, CriteriaValidationFailed
from app.schemas.segment import CriteriaTree, PreviewCondition, PreviewResult, condition_value, reference_key
from app.services.segments.base import UpstreamService
from app.services.segments.catalog import FieldRegistry
from app.services.segments.validator import validate

logger = logging.getLogger(__name__)


def build_preview_conditions(tree: CriteriaTree) -> List[PreviewCondition]:
    return [
        PreviewCondition(
            field=reference_key(condition),
            operator=condition.operator_symbol.value,
            value=condition_value(condition),
        )
        for _, _, condition in tree.iter_conditions()
    ]


def _read_count(payload: Any) -> int:
    if isinstance(payload, dict):
        if "count" in payload:
            return int(payload["count"])
        data = payload.get("data")
        if isinstance(data, dict) and "count" in data:
            return int(data["count"])
    raise ValueError("response has no count")


class PreviewClient(UpstreamService):
    """Count estimates from the compute engine."""

    service_name = "compute-engine"

    async def preview(
        self,
        tree: CriteriaTree,
        registry: FieldRegistry,
        *,
        segment_id: Optional[Union[int, str]] = None,
    ) -> PreviewResult:
        result = validate(tree, registry, segment_id=segment_id)
        if not result.valid:
            raise CriteriaValidationFailed(result)

        conditions = build_preview_conditions(tree)
        if not conditions:
            return PreviewResult(estimated_count=0, conditions_sent=0)

        url = self.settings.PREVIEW_URL
        body = {"conditions": [c.model_dump() for c in conditions]}
        try:
            response = await self._request("POST", url, json=body)
        except httpx.HTTPError as e:
            logger.error(f"Preview request failed: {e}", extra={"url": url})
            raise ComputeEngineUnavailable(f"request failed: {e}") from e

        if response.status_code >= 400:
            logger.error(
                "Compute engine returned an error status",
                extra={"url": url, "status_code": response.status_code},
            )
            raise ComputeEngineUnavailable(f"HTTP {response.status_code}", upstream_status=response.status_code)

        try:
            count = _read_count(response.json())
        except (ValueError, TypeError) as e:
            logger.error(f"Compute engine response unreadable: {e}", extra={"url": url})
            raise ComputeEngineUnavailable(f"unreadable response: {e}") from e

        logger.info("Preview count computed", extra={"conditions": len(conditions), "count": count})
        return PreviewResult(estimated_count=count, conditions_sent=len(conditions))
