"""
Tests for Segment Criteria API

Tests the editor endpoints end to end against the fake upstream: catalog,
validate, compile, decompile, preview, persisted criteria and reference
names.
"""

import pytest
from httpx import AsyncClient

from app.services.segments import compile_tree

from tests.factories import (
    ConditionGroupFactory,
    CountryConditionFactory,
    ProfileConditionFactory,
    SegmentGroupFactory,
    SegmentReferenceFactory,
    build_tree,
)

BASE = "/api/v2/segment-criteria"
SESSION = {"X-Correlation-ID": "editor-session-1"}


def _tree_json(*groups):
    return build_tree(*groups).model_dump(mode="json")


def _valid_tree_json():
    return _tree_json(
        ConditionGroupFactory(conditions=[
            ProfileConditionFactory(operator_symbol=">", value=50),
            CountryConditionFactory(value=["US"]),
        ]),
        SegmentGroupFactory(conditions=[SegmentReferenceFactory(referenced_segment_id=8)]),
    )


# ============================================
# Catalog
# ============================================


class TestCatalogEndpoint:
    @pytest.mark.asyncio
    async def test_get_catalog(self, client: AsyncClient):
        response = await client.get(f"{BASE}/catalog", headers=SESSION)

        assert response.status_code == 200
        data = response.json()
        assert data["source"] == "catalog"
        assert data["degraded"] is False
        assert [c["name"] for c in data["categories"]] == ["Profile", "Engagement"]

    @pytest.mark.asyncio
    async def test_catalog_cached_per_session(self, client: AsyncClient, upstream):
        await client.get(f"{BASE}/catalog", headers=SESSION)
        await client.get(f"{BASE}/catalog", headers=SESSION)
        assert len(upstream.calls("GET", "/catalog")) == 1

        await client.get(f"{BASE}/catalog", headers=SESSION, params={"refresh": "true"})
        assert len(upstream.calls("GET", "/catalog")) == 2

    @pytest.mark.asyncio
    async def test_catalog_degrades_to_fallback(self, client: AsyncClient, upstream):
        upstream.catalog_status = 0

        response = await client.get(f"{BASE}/catalog")

        assert response.status_code == 200
        data = response.json()
        assert data["degraded"] is True
        assert data["source"] == "fallback"
        fields = [f["field_value"] for c in data["categories"] for f in c["fields"]]
        assert "customer_profile.total_spent" in fields

    @pytest.mark.asyncio
    async def test_correlation_headers_returned(self, client: AsyncClient):
        response = await client.get(f"{BASE}/catalog", headers=SESSION)
        assert response.headers["X-Correlation-ID"] == "editor-session-1"
        assert response.headers["X-Request-ID"]


# ============================================
# Validate / Compile / Decompile
# ============================================


class TestValidateEndpoint:
    @pytest.mark.asyncio
    async def test_valid_tree(self, client: AsyncClient):
        response = await client.post(f"{BASE}/validate", json={"tree": _valid_tree_json()})

        assert response.status_code == 200
        assert response.json() == {"valid": True, "errors": []}

    @pytest.mark.asyncio
    async def test_invalid_tree_lists_every_error(self, client: AsyncClient):
        tree = _tree_json(
            ConditionGroupFactory(conditions=[ProfileConditionFactory(field_value="tenure_months")]),
            ConditionGroupFactory(conditions=[]),
        )

        response = await client.post(f"{BASE}/validate", json={"tree": tree})

        assert response.status_code == 200
        data = response.json()
        assert data["valid"] is False
        assert [e["code"] for e in data["errors"]] == ["UnknownField", "EmptyGroup"]
        assert data["errors"][0]["message"] == "UnknownField: tenure_months"

    @pytest.mark.asyncio
    async def test_draft_may_be_empty(self, client: AsyncClient):
        response = await client.post(f"{BASE}/validate", json={"tree": {"groups": []}})
        assert response.json()["valid"] is True

    @pytest.mark.asyncio
    async def test_unknown_operator_is_request_error(self, client: AsyncClient):
        tree = _valid_tree_json()
        tree["groups"][0]["conditions"][0]["operator_symbol"] = "between"

        response = await client.post(f"{BASE}/validate", json={"tree": tree})

        assert response.status_code == 422
        assert response.headers["content-type"].startswith("application/problem+json")
        assert response.json()["code"] == "VAL_001"

    @pytest.mark.asyncio
    async def test_huge_integer_value(self, client: AsyncClient):
        tree = _tree_json(ConditionGroupFactory(conditions=[ProfileConditionFactory(value=10 ** 400)]))

        response = await client.post(f"{BASE}/validate", json={"tree": tree})

        assert response.status_code == 200
        assert response.json()["valid"] is True


class TestCompileEndpoint:
    @pytest.mark.asyncio
    async def test_compile(self, client: AsyncClient):
        response = await client.post(f"{BASE}/compile", json={"tree": _valid_tree_json()})

        assert response.status_code == 200
        data = response.json()
        assert [r["order"] for r in data["rules"]] == [1, 2, 3]
        assert data["payloads"][2] == {
            "rule_json": {
                "field": "segment:8",
                "operator": "IN",
                "value": 8,
                "type": "number",
                "group_operator": "AND",
            },
            "rule_order": 3,
        }

    @pytest.mark.asyncio
    async def test_invalid_tree_is_422_problem(self, client: AsyncClient):
        tree = _tree_json(ConditionGroupFactory(conditions=[
            ProfileConditionFactory(field_value="tenure_months", operator_symbol=">=", value=6),
        ]))

        response = await client.post(f"{BASE}/compile", json={"tree": tree})

        assert response.status_code == 422
        problem = response.json()
        assert problem["code"] == "VAL_005"
        assert problem["errors"][0]["message"] == "UnknownField: tenure_months"

    @pytest.mark.asyncio
    async def test_empty_tree_cannot_be_submitted(self, client: AsyncClient):
        response = await client.post(f"{BASE}/compile", json={"tree": {"groups": []}})

        assert response.status_code == 422
        assert response.json()["errors"][0]["code"] == "EmptyCriteria"

    @pytest.mark.asyncio
    async def test_self_reference_rejected(self, client: AsyncClient):
        tree = _tree_json(SegmentGroupFactory(conditions=[SegmentReferenceFactory(referenced_segment_id=8)]))

        response = await client.post(f"{BASE}/compile", json={"tree": tree, "segment_id": 8})

        assert response.status_code == 422
        assert response.json()["errors"][0]["code"] == "SelfReferentialSegment"


class TestDecompileEndpoint:
    @pytest.mark.asyncio
    async def test_decompile_marks_unknown_fields(self, client: AsyncClient):
        rules = [
            {"id": 1, "rule_json": {"field": "customer_profile.total_spent", "operator": ">", "value": 5, "type": "number", "group_operator": "AND"}, "rule_order": 1},
            {"id": 2, "rule_json": {"field": "customer_profile.tenure_months", "operator": ">=", "value": 6, "type": "number", "group_operator": "AND"}, "rule_order": 2},
        ]

        response = await client.post(f"{BASE}/decompile", json={"rules": rules})

        assert response.status_code == 200
        data = response.json()
        conditions = data["tree"]["groups"][0]["conditions"]
        assert len(conditions) == 2
        assert conditions[1]["unresolved_field"] is True
        assert data["unresolved_condition_ids"] == [conditions[1]["id"]]

    @pytest.mark.asyncio
    async def test_decompile_foreign_types_and_operators(self, client: AsyncClient):
        rules = [
            {"id": 1, "rule_json": {"field": "customer_profile.total_spent", "operator": ">", "value": 5, "type": "integer"}, "rule_order": 1},
            {"id": 2, "rule_json": {"field": "customer_profile.country", "operator": "=", "value": "US", "type": "text"}, "rule_order": 2},
            {"id": 3, "rule_json": {"field": "customer_profile.total_spent", "operator": "between", "value": [1, 9], "type": "date"}, "rule_order": 3},
        ]

        response = await client.post(f"{BASE}/decompile", json={"rules": rules})

        assert response.status_code == 200
        data = response.json()
        conditions = data["tree"]["groups"][0]["conditions"]
        assert len(conditions) == 3
        assert conditions[2]["unresolved_operator"] == "between"
        assert data["unresolved_condition_ids"] == [conditions[2]["id"]]

    @pytest.mark.asyncio
    async def test_decompile_strict_is_422(self, client: AsyncClient):
        rules = [{"rule_json": {"field": "nope", "operator": "=", "value": 1}, "rule_order": 1}]

        response = await client.post(f"{BASE}/decompile", json={"rules": rules, "strict": True})

        assert response.status_code == 422
        assert response.json()["code"] == "VAL_006"

    @pytest.mark.asyncio
    async def test_duplicate_orders_are_422(self, client: AsyncClient):
        rule = {"rule_json": {"field": "customer_profile.total_spent", "operator": ">", "value": 1}, "rule_order": 1}

        response = await client.post(f"{BASE}/decompile", json={"rules": [rule, rule]})

        assert response.status_code == 422
        assert response.json()["errors"][0]["problem"] == "duplicate_order"


# ============================================
# Preview
# ============================================


class TestPreviewEndpoint:
    @pytest.mark.asyncio
    async def test_preview_count(self, client: AsyncClient, upstream):
        upstream.preview_count = 321

        response = await client.post(f"{BASE}/preview", json={"tree": _valid_tree_json()})

        assert response.status_code == 200
        assert response.json() == {"estimated_count": 321}

    @pytest.mark.asyncio
    async def test_empty_tree_preview_is_zero(self, client: AsyncClient, upstream):
        response = await client.post(f"{BASE}/preview", json={"tree": {"groups": []}})

        assert response.json() == {"estimated_count": 0}
        assert upstream.calls("POST", "/preview") == []

    @pytest.mark.asyncio
    async def test_engine_failure_is_502(self, client: AsyncClient, upstream):
        upstream.preview_status = 503

        response = await client.post(f"{BASE}/preview", json={"tree": _valid_tree_json()})

        assert response.status_code == 502
        assert response.json()["code"] == "EXT_011"


# ============================================
# Persisted criteria
# ============================================


class TestSegmentCriteriaEndpoints:
    @pytest.mark.asyncio
    async def test_save_and_load(self, client: AsyncClient, upstream):
        response = await client.put(f"{BASE}/segments/7/criteria", json={"tree": _valid_tree_json()})

        assert response.status_code == 200
        assert response.json() == {"segment_id": "7", "rule_count": 3, "group_boundaries_persisted": False}
        assert [r["rule_order"] for r in upstream.rules["7"]] == [1, 2, 3]

        response = await client.get(f"{BASE}/segments/7/criteria")

        assert response.status_code == 200
        groups = response.json()["tree"]["groups"]
        assert [g["group_type"] for g in groups] == ["rule", "segments"]
        assert groups[0]["inter_group_operator_to_next"] == "UNSPECIFIED"

    @pytest.mark.asyncio
    async def test_save_invalid_tree_touches_nothing(self, client: AsyncClient, upstream):
        upstream.seed_rules(7, [r.to_payload() for r in compile_tree(build_tree(ConditionGroupFactory()))])
        tree = _tree_json(SegmentGroupFactory(conditions=[SegmentReferenceFactory(referenced_segment_id=7)]))

        response = await client.put(f"{BASE}/segments/7/criteria", json={"tree": tree})

        assert response.status_code == 422
        assert response.json()["errors"][0]["code"] == "SelfReferentialSegment"
        assert upstream.calls("DELETE") == []
        assert upstream.calls("POST", "/segments") == []

    @pytest.mark.asyncio
    async def test_save_partial_failure_is_503(self, client: AsyncClient, upstream, test_settings):
        upstream.fail("POST", *([503] * test_settings.SEGMENT_RULES_REPLACE_ATTEMPTS))

        response = await client.put(f"{BASE}/segments/7/criteria", json={"tree": _valid_tree_json()})

        assert response.status_code == 503
        problem = response.json()
        assert problem["code"] == "EXT_013"
        assert problem["errors"][0]["expected"] == 3

    @pytest.mark.asyncio
    async def test_load_unknown_segment_is_404(self, client: AsyncClient):
        response = await client.get(f"{BASE}/segments/999/criteria")

        assert response.status_code == 404
        assert response.json()["code"] == "RES_001"


# ============================================
# References
# ============================================


class TestReferenceEndpoint:
    @pytest.mark.asyncio
    async def test_segment_reference_name(self, client: AsyncClient):
        response = await client.get(f"{BASE}/references/segment/7")

        assert response.status_code == 200
        assert response.json() == {"kind": "segment", "id": "7", "name": "High Value Customers"}

    @pytest.mark.asyncio
    async def test_quicklist_reference_name(self, client: AsyncClient):
        response = await client.get(f"{BASE}/references/quicklist/3")
        assert response.json()["name"] == "VIP Upload"

    @pytest.mark.asyncio
    async def test_missing_reference_is_404(self, client: AsyncClient):
        response = await client.get(f"{BASE}/references/quicklist/999")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_unknown_kind_is_422(self, client: AsyncClient):
        response = await client.get(f"{BASE}/references/campaign/1")
        assert response.status_code == 422


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, client: AsyncClient):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_unknown_route_is_problem(self, client: AsyncClient):
        response = await client.get(f"{BASE}/nope")

        assert response.status_code == 404
        assert response.json()["code"] == "RES_001"
