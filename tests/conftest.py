import json
import re
from typing import Dict, List, Optional

import httpx
import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from tenacity import wait_none

from app.main import app
from app.api.deps import get_rule_store
from app.config import Settings, get_settings
from app.services.segments import CatalogSessionStore, FieldRegistry, SegmentRuleStore
from app.services.segments.catalog import parse_catalog

from tests.factories import catalog_payload

UPSTREAM = "http://upstream.test"

RULES_PATH = re.compile(r"^/segments/(?P<segment_id>[^/]+)/rules$")
RULE_PATH = re.compile(r"^/segments/(?P<segment_id>[^/]+)/rules/(?P<rule_id>[^/]+)$")
SEGMENT_PATH = re.compile(r"^/segments/(?P<segment_id>[^/]+)$")
QUICKLIST_PATH = re.compile(r"^/quicklists/(?P<list_id>[^/]+)$")


class FakeUpstream:
    """
    In-memory stand-in for the catalog, rule store, compute engine and
    reference APIs, served through httpx.MockTransport.

    Failures are injected per method with ``fail(method, *statuses)``;
    a status of 0 raises a transport error and a status below 400 lets
    that request through untouched.
    """

    def __init__(self):
        self.catalog = catalog_payload()
        self.catalog_status = 200
        self.preview_count = 42
        self.preview_status = 200
        self.rules: Dict[str, List[dict]] = {}
        self.segments = {"7": "High Value Customers", "8": "Lapsed"}
        self.quicklists = {"3": "VIP Upload"}
        self.requests: List[httpx.Request] = []
        self.failures: Dict[str, List[int]] = {}
        self._next_rule_id = 1000

    def fail(self, method: str, *statuses: int) -> None:
        self.failures.setdefault(method, []).extend(statuses)

    def calls(self, method: str, path_prefix: str = "") -> List[httpx.Request]:
        return [
            r for r in self.requests
            if r.method == method and r.url.path.startswith(path_prefix)
        ]

    def seed_rules(self, segment_id, payloads: List[dict]) -> None:
        stored = []
        for payload in payloads:
            stored.append({"id": self._new_rule_id(), **payload})
        self.rules[str(segment_id)] = stored

    def _new_rule_id(self) -> int:
        self._next_rule_id += 1
        return self._next_rule_id

    def _injected(self, request: httpx.Request) -> Optional[httpx.Response]:
        queue = self.failures.get(request.method)
        if not queue:
            return None
        status = queue.pop(0)
        if status == 0:
            raise httpx.ConnectError("connection refused", request=request)
        if status < 400:
            return None
        return httpx.Response(status, json={"success": False, "error": "injected"})

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == "/catalog":
            if self.catalog_status == 0:
                raise httpx.ConnectError("catalog down", request=request)
            return httpx.Response(self.catalog_status, json=self.catalog)

        if path == "/preview":
            if self.preview_status == 0:
                raise httpx.ConnectError("engine down", request=request)
            if self.preview_status >= 400:
                return httpx.Response(self.preview_status, json={"error": "boom"})
            return httpx.Response(200, json={"success": True, "data": {"count": self.preview_count}})

        injected = self._injected(request)
        if injected is not None:
            return injected

        match = RULES_PATH.match(path)
        if match:
            segment_id = match["segment_id"]
            if segment_id not in self.rules and segment_id not in self.segments:
                return httpx.Response(404, json={"detail": "segment not found"})
            if request.method == "GET":
                return httpx.Response(200, json={"success": True, "data": self.rules.get(segment_id, [])})
            if request.method == "POST":
                body = json.loads(request.content)
                rule = {"id": self._new_rule_id(), **body}
                self.rules.setdefault(segment_id, []).append(rule)
                return httpx.Response(201, json=rule)
            if request.method == "PUT":
                body = json.loads(request.content)
                self.rules[segment_id] = [{"id": self._new_rule_id(), **r} for r in body["rules"]]
                return httpx.Response(200, json={"success": True})

        match = RULE_PATH.match(path)
        if match and request.method == "DELETE":
            rules = self.rules.get(match["segment_id"], [])
            remaining = [r for r in rules if str(r["id"]) != match["rule_id"]]
            if len(remaining) == len(rules):
                return httpx.Response(404, json={"detail": "rule not found"})
            self.rules[match["segment_id"]] = remaining
            return httpx.Response(204)

        match = SEGMENT_PATH.match(path)
        if match and match["segment_id"] in self.segments:
            return httpx.Response(200, json={"success": True, "data": {
                "id": match["segment_id"], "name": self.segments[match["segment_id"]],
            }})

        match = QUICKLIST_PATH.match(path)
        if match and match["list_id"] in self.quicklists:
            return httpx.Response(200, json={"id": match["list_id"], "name": self.quicklists[match["list_id"]]})

        return httpx.Response(404, json={"detail": "not found"})


@pytest.fixture
def test_settings() -> Settings:
    """Settings pointing every upstream at the fake."""
    return Settings(
        SEGMENTS_API_URL=f"{UPSTREAM}/segments",
        CATALOG_URL=f"{UPSTREAM}/catalog",
        PREVIEW_URL=f"{UPSTREAM}/preview",
        QUICKLISTS_API_URL=f"{UPSTREAM}/quicklists",
        UPSTREAM_API_TOKEN="test-token",
        ENVIRONMENT="development",
    )


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest_asyncio.fixture
async def http_client(upstream: FakeUpstream):
    """AsyncClient whose requests are answered by the fake upstream."""
    async with httpx.AsyncClient(transport=httpx.MockTransport(upstream.handler)) as client:
        yield client


@pytest.fixture
def registry() -> FieldRegistry:
    """Registry built from the canned catalog payload."""
    return FieldRegistry(parse_catalog(catalog_payload()), source="catalog")


@pytest.fixture
def rule_store(http_client: httpx.AsyncClient, test_settings: Settings) -> SegmentRuleStore:
    return SegmentRuleStore(http_client, test_settings, retry_wait=wait_none())


@pytest_asyncio.fixture
async def client(http_client: httpx.AsyncClient, test_settings: Settings):
    """Create test client wired to the fake upstream."""
    app.state.http_client = http_client
    app.state.catalog_sessions = CatalogSessionStore(ttl_seconds=60, max_entries=8)
    app.dependency_overrides[get_settings] = lambda: test_settings
    app.dependency_overrides[get_rule_store] = lambda: SegmentRuleStore(
        http_client, test_settings, retry_wait=wait_none()
    )

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
