"""
Tests for the correlation middleware.

Tests tracing id propagation to upstream calls, the editing session key
that scopes the catalog cache, and the log filter.
"""

import logging

import pytest
from httpx import AsyncClient

from app.middleware import CorrelationLogFilter, tracing_headers
from app.middleware.correlation import correlation_id_ctx, request_id_ctx

CATALOG = "/api/v2/segment-criteria/catalog"


class TestTracingHeaders:
    @pytest.mark.asyncio
    async def test_ids_forwarded_to_upstream(self, client: AsyncClient, upstream):
        await client.get(CATALOG, headers={"X-Correlation-ID": "editor-7", "X-Request-ID": "req-1"})

        sent = upstream.calls("GET", "/catalog")[0]
        assert sent.headers["X-Correlation-ID"] == "editor-7"
        assert sent.headers["X-Request-ID"] == "req-1"

    @pytest.mark.asyncio
    async def test_generated_ids_echoed(self, client: AsyncClient):
        response = await client.get(CATALOG)

        assert len(response.headers["X-Correlation-ID"]) == 12
        assert len(response.headers["X-Request-ID"]) == 12

    def test_empty_context_sends_nothing(self):
        correlation_id_ctx.set("")
        request_id_ctx.set("")
        assert tracing_headers() == {}


class TestEditingSession:
    @pytest.mark.asyncio
    async def test_session_header_reuses_catalog(self, client: AsyncClient, upstream):
        for _ in range(2):
            await client.get(CATALOG, headers={"X-Correlation-ID": "editor-7"})

        assert len(upstream.calls("GET", "/catalog")) == 1

    @pytest.mark.asyncio
    async def test_generated_id_is_not_a_session(self, client: AsyncClient, upstream):
        for _ in range(2):
            response = await client.get(CATALOG)
            assert response.headers["X-Correlation-ID"]

        assert len(upstream.calls("GET", "/catalog")) == 2

    @pytest.mark.asyncio
    async def test_blank_header_is_not_a_session(self, client: AsyncClient, upstream):
        for _ in range(2):
            await client.get(CATALOG, headers={"X-Correlation-ID": "   "})

        assert len(upstream.calls("GET", "/catalog")) == 2

    @pytest.mark.asyncio
    async def test_sessions_are_isolated(self, client: AsyncClient, upstream):
        await client.get(CATALOG, headers={"X-Correlation-ID": "editor-7"})
        await client.get(CATALOG, headers={"X-Correlation-ID": "editor-8"})

        assert len(upstream.calls("GET", "/catalog")) == 2


class TestLogFilter:
    def test_injects_current_ids(self):
        correlation_id_ctx.set("editor-7")
        request_id_ctx.set("req-1")
        record = logging.LogRecord("app", logging.INFO, __file__, 1, "msg", None, None)

        assert CorrelationLogFilter().filter(record) is True
        assert record.correlation_id == "editor-7"
        assert record.request_id == "req-1"

    def test_outside_a_request(self):
        correlation_id_ctx.set("")
        request_id_ctx.set("")
        record = logging.LogRecord("app", logging.INFO, __file__, 1, "msg", None, None)

        CorrelationLogFilter().filter(record)

        assert record.correlation_id == "unknown"
        assert record.request_id == "unknown"
