"""
Field Catalog Adapter

Loads the segmentation field catalog (categories -> fields -> operators)
from the catalog service and exposes it as a FieldRegistry for the
validator, compiler and preview client.

The editor must stay usable when the catalog is down: load_registry()
falls back to the built-in customer_profile field set and flags the
registry as degraded.
"""

import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from cachetools import TTLCache
import httpx
from pydantic import ValidationError as PydanticValidationError

from app.exceptions import CatalogUnavailable
from app.schemas.segment import (
    OPERATOR_LABELS,
    Category,
    FieldDescriptor,
    OperatorDescriptor,
    OperatorSymbol,
    UiHints,
    ValueType,
    try_normalize_operator,
    value_type_for,
)
from app.services.segments.base import UpstreamService

logger = logging.getLogger(__name__)


# ========================
# Built-in fallback fields
# ========================

FALLBACK_FIELDS: List[Tuple[str, str, ValueType, List[str]]] = [
    ("customer_profile.device_category", "Device Category", ValueType.STRING, ["equals", "not_equals", "in", "not_in"]),
    ("customer_profile.age", "Age", ValueType.NUMBER, ["equals", "not_equals", "greater_than", "less_than"]),
    ("customer_profile.gender", "Gender", ValueType.STRING, ["equals", "not_equals"]),
    ("customer_profile.location", "Location", ValueType.STRING, ["equals", "not_equals", "contains", "not_contains"]),
    ("customer_profile.subscription_status", "Subscription Status", ValueType.STRING, ["equals", "not_equals", "in", "not_in"]),
    ("customer_profile.total_spent", "Total Spent", ValueType.NUMBER, ["equals", "not_equals", "greater_than", "less_than"]),
    ("customer_profile.last_activity", "Last Activity", ValueType.STRING, ["equals", "not_equals", "greater_than", "less_than"]),
]


def _fallback_categories() -> List[Category]:
    fields = []
    for field_value, label, value_type, operators in FALLBACK_FIELDS:
        descriptors = [
            OperatorDescriptor(id=alias, symbol=alias, label=OPERATOR_LABELS[try_normalize_operator(alias)])
            for alias in operators
        ]
        fields.append(FieldDescriptor(
            id=field_value,
            field_value=field_value,
            display_name=label,
            value_type=value_type,
            allowed_operators=descriptors,
        ))
    return [Category(id="customer_profile", name="Customer Profile", value="customer_profile", fields=fields)]


# ========================
# Registry
# ========================


class FieldRegistry:
    """Lookup over a loaded catalog. Read-only once built."""

    def __init__(
        self,
        categories: List[Category],
        source: str = "catalog",
        degraded: bool = False,
        loaded_at: Optional[datetime] = None,
    ):
        self.categories = sorted(categories, key=lambda c: c.display_order)
        self.source = source
        self.degraded = degraded
        self.loaded_at = loaded_at or datetime.utcnow()
        self._by_value: Dict[str, FieldDescriptor] = {}
        self._by_id: Dict[Union[int, str], FieldDescriptor] = {}
        for category in self.categories:
            for field in category.fields:
                # First definition wins when a field appears in several categories
                self._by_value.setdefault(field.field_value, field)
                if field.id is not None:
                    self._by_id.setdefault(field.id, field)

    @classmethod
    def fallback(cls) -> "FieldRegistry":
        return cls(_fallback_categories(), source="fallback", degraded=True)

    def resolve_field(self, field_value: Optional[str]) -> Optional[FieldDescriptor]:
        if not field_value:
            return None
        return self._by_value.get(field_value)

    def get_field_by_id(self, field_id: Union[int, str]) -> Optional[FieldDescriptor]:
        field = self._by_id.get(field_id)
        if field is None and isinstance(field_id, str) and field_id.isdigit():
            field = self._by_id.get(int(field_id))
        return field

    def operators_for(self, field_value: str) -> List[OperatorSymbol]:
        field = self.resolve_field(field_value)
        return field.allowed_symbols if field else []

    def __contains__(self, field_value: str) -> bool:
        return field_value in self._by_value

    def __len__(self) -> int:
        return len(self._by_value)


# ========================
# Catalog parsing
# ========================


def _parse_operator(raw: Dict[str, Any], field_value: str) -> Optional[OperatorDescriptor]:
    symbol = try_normalize_operator(raw.get("symbol") or raw.get("name") or raw.get("operator"))
    if symbol is None:
        logger.warning(
            "Dropping catalog operator with unknown symbol",
            extra={"field": field_value, "operator": raw.get("symbol")},
        )
        return None
    return OperatorDescriptor(
        id=raw.get("id"),
        symbol=symbol,
        label=raw.get("label") or OPERATOR_LABELS[symbol],
        requires_value=raw.get("requires_value", True),
        requires_two_values=raw.get("requires_two_values", False),
    )


def _parse_field(raw: Dict[str, Any]) -> Optional[FieldDescriptor]:
    field_value = raw.get("field_value") or raw.get("key")
    if not field_value:
        logger.warning("Dropping catalog field without field_value", extra={"field_id": raw.get("id")})
        return None

    operators = []
    for raw_op in raw.get("operators") or []:
        if isinstance(raw_op, str):
            raw_op = {"symbol": raw_op}
        descriptor = _parse_operator(raw_op, field_value)
        if descriptor is not None:
            operators.append(descriptor)
    if not operators:
        logger.warning("Dropping catalog field with no usable operators", extra={"field": field_value})
        return None

    validation = raw.get("validation") or {}
    ui = raw.get("ui") or {}
    default_operator = raw.get("default_operator")
    if isinstance(default_operator, dict):
        default_operator = default_operator.get("id")

    return FieldDescriptor(
        id=raw.get("id"),
        field_value=field_value,
        display_name=raw.get("field_name") or raw.get("label") or field_value,
        value_type=value_type_for(raw.get("field_type") or raw.get("type")),
        allowed_operators=operators,
        ui_hints=UiHints(
            distinct_values=validation.get("distinct_values"),
            range_min=validation.get("range_min"),
            range_max=validation.get("range_max"),
            is_multi_select=bool(ui.get("is_multi_select", False)),
            component_type=ui.get("component_type"),
        ),
        default_operator_id=default_operator,
        description=raw.get("description") or "",
        source_table=raw.get("source_table"),
    )


def _parse_category(raw: Dict[str, Any]) -> Category:
    fields = []
    for raw_field in raw.get("fields") or []:
        try:
            field = _parse_field(raw_field)
        except PydanticValidationError as e:
            logger.warning(
                "Dropping invalid catalog field",
                extra={"field": raw_field.get("field_value"), "error": str(e)},
            )
            continue
        if field is not None:
            fields.append(field)
    return Category(
        id=raw.get("id"),
        name=raw.get("name") or raw.get("value") or "Uncategorized",
        value=raw.get("value"),
        description=raw.get("description") or "",
        parent_category_id=raw.get("parent_category_id"),
        display_order=raw.get("display_order") or 0,
        fields=fields,
    )


def parse_catalog(payload: Any) -> List[Category]:
    """
    Parse a catalog response.

    Accepts ``{success, data: [{field_selector_config: [...]}]}`` or a bare
    list of categories. Raises ValueError when the shape is unrecognised.
    """
    if isinstance(payload, dict):
        if payload.get("success") is False:
            raise ValueError(payload.get("message") or payload.get("error") or "catalog reported failure")
        payload = payload.get("data")

    if not isinstance(payload, list):
        raise ValueError("catalog payload is not a list")

    raw_categories: List[Dict[str, Any]] = []
    for entry in payload:
        if not isinstance(entry, dict):
            raise ValueError("catalog entry is not an object")
        if "field_selector_config" in entry:
            raw_categories.extend(entry.get("field_selector_config") or [])
        else:
            raw_categories.append(entry)
    if any(not isinstance(rc, dict) for rc in raw_categories):
        raise ValueError("catalog category is not an object")

    try:
        return [_parse_category(rc) for rc in raw_categories]
    except (PydanticValidationError, AttributeError, TypeError) as e:
        raise ValueError(f"invalid catalog entry: {e}") from e


class FieldCatalogAdapter(UpstreamService):
    """Reads the segmentation field catalog from the catalog service."""

    service_name = "catalog"

    async def load_catalog(self) -> List[Category]:
        url = self.settings.CATALOG_URL
        try:
            response = await self._request("GET", url)
        except httpx.HTTPError as e:
            logger.error(f"Catalog request failed: {e}", extra={"url": url})
            raise CatalogUnavailable(f"request failed: {e}") from e

        if response.status_code >= 400:
            logger.error(
                "Catalog returned an error status",
                extra={"url": url, "status_code": response.status_code},
            )
            raise CatalogUnavailable(f"HTTP {response.status_code}", upstream_status=response.status_code)

        try:
            categories = parse_catalog(response.json())
        except ValueError as e:
            logger.error(f"Catalog payload unreadable: {e}", extra={"url": url})
            raise CatalogUnavailable(f"unreadable payload: {e}") from e

        logger.info(
            "Field catalog loaded",
            extra={"categories": len(categories), "fields": sum(len(c.fields) for c in categories)},
        )
        return categories

    async def load_registry(self) -> FieldRegistry:
        """Catalog registry, or the built-in fallback when the catalog is unavailable."""
        try:
            return FieldRegistry(await self.load_catalog(), source="catalog")
        except CatalogUnavailable as e:
            logger.warning(f"Using built-in fallback field catalog: {e.detail}")
            return FieldRegistry.fallback()


# ========================
# Per-session cache
# ========================


class CatalogSessionStore:
    """
    One registry per editing session, keyed by the client correlation id.

    Backed by a TTLCache: entries expire after ``ttl_seconds`` and the least
    recently used session is evicted once ``max_entries`` is reached.
    Degraded (fallback) registries are never cached so the next request
    retries the catalog.
    """

    def __init__(
        self,
        ttl_seconds: int,
        max_entries: int,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._registries: TTLCache = TTLCache(maxsize=max_entries, ttl=ttl_seconds, timer=clock)

    async def get_registry(
        self,
        session_key: str,
        adapter: FieldCatalogAdapter,
        refresh: bool = False,
    ) -> FieldRegistry:
        if not refresh:
            cached = self._registries.get(session_key)
            if cached is not None:
                return cached

        registry = await adapter.load_registry()
        if registry.degraded:
            self._registries.pop(session_key, None)
        else:
            self._registries[session_key] = registry
        return registry

    def keys(self) -> List[str]:
        self._registries.expire()
        return list(self._registries.keys())

    def __len__(self) -> int:
        self._registries.expire()
        return len(self._registries)
