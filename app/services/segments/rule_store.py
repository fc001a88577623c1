"""
Segment Rule Store

Client for the rule persistence API. Rules are stored one per condition
under ``{SEGMENTS_API_URL}/{segment_id}/rules``.

Replacing a segment's rules is list -> delete all -> create in order, since
the API has no transactional replace. The whole sequence is retried with
exponential backoff (a delete that answers 404 already succeeded), and a
sequence that never completes surfaces as PartialPersistenceFailure. When
the backend supports it (SEGMENT_RULES_ATOMIC_REPLACE) a single PUT is used
instead.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

import httpx
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from app.config import Settings
from app.exceptions import NotFoundError, PartialPersistenceFailure, RuleStoreError
from app.schemas.segment import CriteriaTree, RuleRecord
from app.services.segments.base import UpstreamService
from app.services.segments.catalog import FieldRegistry
from app.services.segments.compiler import decompile, records_from_payloads

logger = logging.getLogger(__name__)

SegmentId = Union[int, str]


def _is_retryable(exc: BaseException) -> bool:
    """Transport errors, 5xx and 429 are worth another attempt; other 4xx are not."""
    if not isinstance(exc, RuleStoreError):
        return False
    status = exc.upstream_status
    return status is None or status >= 500 or status == 429


@dataclass
class ReplaceProgress:
    expected: int
    deleted: int = 0
    created: int = 0

    def reset(self) -> None:
        self.deleted = 0
        self.created = 0


class SegmentRuleStore(UpstreamService):
    """Rule CRUD plus the replace-all flow for one segment at a time."""

    service_name = "rule-store"

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        settings: Optional[Settings] = None,
        retry_wait: Any = None,
    ):
        super().__init__(http_client, settings)
        self.retry_wait = retry_wait if retry_wait is not None else wait_exponential(multiplier=0.5, min=0.5, max=8)

    def _rules_url(self, segment_id: SegmentId) -> str:
        return f"{self.settings.SEGMENTS_API_URL}/{segment_id}/rules"

    async def _call(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"Rule store request failed: {e}", extra={"method": method, "url": url})
            raise RuleStoreError(f"{method} {url} failed: {e}") from e

    @staticmethod
    def _raise_for_status(response: httpx.Response, action: str) -> None:
        if response.status_code >= 400:
            logger.error(
                f"Rule store {action} failed",
                extra={"status_code": response.status_code, "url": str(response.request.url)},
            )
            raise RuleStoreError(f"{action} returned HTTP {response.status_code}", upstream_status=response.status_code)

    # ----- CRUD -----

    async def list_raw_rules(self, segment_id: SegmentId) -> List[Dict[str, Any]]:
        response = await self._call("GET", self._rules_url(segment_id))
        if response.status_code == 404:
            raise NotFoundError("Segment", str(segment_id))
        self._raise_for_status(response, "list rules")

        payload = self._unwrap(response.json())
        if isinstance(payload, dict):
            payload = payload.get("rules", [])
        if not isinstance(payload, list):
            raise RuleStoreError("list rules returned an unexpected payload")
        return payload

    async def list_rules(self, segment_id: SegmentId) -> List[RuleRecord]:
        return records_from_payloads(await self.list_raw_rules(segment_id))

    async def create_rule(self, segment_id: SegmentId, record: RuleRecord) -> Dict[str, Any]:
        response = await self._call("POST", self._rules_url(segment_id), json=record.to_payload())
        self._raise_for_status(response, "create rule")
        if not response.content:
            return {}
        return self._unwrap(response.json())

    async def delete_rule(self, segment_id: SegmentId, rule_id: Union[int, str]) -> None:
        """Delete one rule. A 404 means it is already gone."""
        response = await self._call("DELETE", f"{self._rules_url(segment_id)}/{rule_id}")
        if response.status_code == 404:
            logger.debug("Rule already deleted", extra={"segment_id": segment_id, "rule_id": rule_id})
            return
        self._raise_for_status(response, "delete rule")

    # ----- Replace -----

    async def _replace_once(self, segment_id: SegmentId, records: List[RuleRecord], progress: ReplaceProgress) -> None:
        progress.reset()
        existing = await self.list_raw_rules(segment_id)
        for rule in existing:
            rule_id = rule.get("id") if isinstance(rule, dict) else None
            if rule_id is None:
                continue
            await self.delete_rule(segment_id, rule_id)
            progress.deleted += 1
        for record in sorted(records, key=lambda r: r.order):
            await self.create_rule(segment_id, record)
            progress.created += 1

    async def _replace_atomic(self, segment_id: SegmentId, records: List[RuleRecord]) -> None:
        body = {"rules": [r.to_payload() for r in sorted(records, key=lambda r: r.order)]}
        response = await self._call("PUT", self._rules_url(segment_id), json=body)
        if response.status_code == 404:
            raise NotFoundError("Segment", str(segment_id))
        self._raise_for_status(response, "replace rules")

    async def replace_rules(self, segment_id: SegmentId, records: List[RuleRecord]) -> None:
        """
        Make ``records`` the complete rule set of the segment.

        Raises PartialPersistenceFailure when the delete/create sequence
        cannot be completed within SEGMENT_RULES_REPLACE_ATTEMPTS attempts.
        """
        attempts = self.settings.SEGMENT_RULES_REPLACE_ATTEMPTS
        progress = ReplaceProgress(expected=len(records))

        @retry(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(attempts),
            wait=self.retry_wait,
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async def run() -> None:
            if self.settings.SEGMENT_RULES_ATOMIC_REPLACE:
                await self._replace_atomic(segment_id, records)
                progress.created = len(records)
            else:
                await self._replace_once(segment_id, records, progress)

        try:
            await run()
        except RuleStoreError as e:
            logger.error(
                "Replacing segment rules did not complete",
                extra={
                    "segment_id": segment_id,
                    "rules_deleted": progress.deleted,
                    "rules_created": progress.created,
                    "rules_expected": progress.expected,
                },
            )
            raise PartialPersistenceFailure(
                segment_id=segment_id,
                deleted=progress.deleted,
                created=progress.created,
                expected=progress.expected,
                reason=e.detail,
            ) from e

        logger.info(
            "Segment rules replaced",
            extra={"segment_id": segment_id, "rules_deleted": progress.deleted, "rules_created": progress.created},
        )

    async def load_tree(
        self,
        segment_id: SegmentId,
        registry: Optional[FieldRegistry] = None,
        *,
        strict: bool = False,
    ) -> CriteriaTree:
        records = await self.list_rules(segment_id)
        return decompile(
            records,
            registry,
            strict=strict,
            max_order_gap=self.settings.SEGMENT_RULE_ORDER_GAP_TOLERANCE,
        )
