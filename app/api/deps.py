"""
FastAPI Dependencies

Provides dependency injection for the shared upstream HTTP client, the
segment criteria services and the per-session field registry.

The AsyncClient and the catalog session store are created once in the app
lifespan and live on ``app.state``.
"""

from typing import Annotated
import logging

import httpx
from fastapi import Depends, Query, Request

from app.config import Settings, get_settings
from app.middleware import editing_session_key
from app.services.segments import (
    CatalogSessionStore,
    FieldCatalogAdapter,
    FieldRegistry,
    PreviewClient,
    ReferenceResolver,
    SegmentRuleStore,
)

logger = logging.getLogger(__name__)


SettingsDep = Annotated[Settings, Depends(get_settings)]


def get_http_client(request: Request) -> httpx.AsyncClient:
    """Shared upstream client created in the lifespan."""
    return request.app.state.http_client


HttpClient = Annotated[httpx.AsyncClient, Depends(get_http_client)]


def get_catalog_sessions(request: Request) -> CatalogSessionStore:
    return request.app.state.catalog_sessions


def get_catalog_adapter(http_client: HttpClient, settings: SettingsDep) -> FieldCatalogAdapter:
    return FieldCatalogAdapter(http_client, settings)


def get_preview_client(http_client: HttpClient, settings: SettingsDep) -> PreviewClient:
    return PreviewClient(http_client, settings)


def get_rule_store(http_client: HttpClient, settings: SettingsDep) -> SegmentRuleStore:
    return SegmentRuleStore(http_client, settings)


def get_reference_resolver(http_client: HttpClient, settings: SettingsDep) -> ReferenceResolver:
    return ReferenceResolver(http_client, settings)


async def get_field_registry(
    request: Request,
    sessions: Annotated[CatalogSessionStore, Depends(get_catalog_sessions)],
    adapter: Annotated[FieldCatalogAdapter, Depends(get_catalog_adapter)],
    refresh: bool = Query(False, description="Reload the catalog for this editing session"),
) -> FieldRegistry:
    """
    Field registry for the caller's editing session.

    Requests outside an editing session load the catalog without caching it.
    """
    session_key = editing_session_key(request)
    if not session_key:
        return await adapter.load_registry()
    return await sessions.get_registry(session_key, adapter, refresh=refresh)


Registry = Annotated[FieldRegistry, Depends(get_field_registry)]
Previewer = Annotated[PreviewClient, Depends(get_preview_client)]
RuleStore = Annotated[SegmentRuleStore, Depends(get_rule_store)]
References = Annotated[ReferenceResolver, Depends(get_reference_resolver)]
