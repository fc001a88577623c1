"""
Segment criteria test factories.

Generates condition/group payloads in the editor's shape plus a catalog
response in the catalog service's shape.
"""

import copy

import factory
from faker import Faker

from app.schemas.segment import CriteriaTree

fake = Faker()


def _op(op_id, symbol, label=""):
    return {
        "id": op_id,
        "symbol": symbol,
        "label": label,
        "requires_value": True,
        "requires_two_values": False,
    }


EQ = _op(1, "=", "Equals")
NEQ = _op(2, "!=", "Not Equals")
GT = _op(3, ">", "Greater Than")
LT = _op(4, "<", "Less Than")
GTE = _op(5, ">=")
LTE = _op(6, "<=")
IN = _op(7, "IN", "In")
NOT_IN = _op(8, "NOT IN", "Not In")
LIKE = _op(9, "LIKE", "Contains")
NOT_LIKE = _op(10, "NOT LIKE", "Does Not Contain")


PROFILE_FIELDS = [
    {
        "id": 1,
        "field_name": "Total Spent",
        "field_value": "customer_profile.total_spent",
        "description": "Lifetime spend",
        "field_type": "numeric",
        "source_table": "customer_profile",
        "validation": {"range_min": 0, "range_max": 100000},
        "ui": {"component_type": "number_input", "is_multi_select": False},
        "operators": [EQ, NEQ, GT, LT, GTE, LTE],
        "default_operator": 3,
    },
    {
        "id": 2,
        "field_name": "Country",
        "field_value": "customer_profile.country",
        "field_type": "text",
        "source_table": "customer_profile",
        "validation": {"distinct_values": ["US", "CA", "GB"]},
        "ui": {"component_type": "select", "is_multi_select": True},
        "operators": [EQ, NEQ, IN, NOT_IN, LIKE, NOT_LIKE],
    },
    {
        "id": 3,
        "field_name": "Subscribed",
        "field_value": "customer_profile.is_subscribed",
        "field_type": "boolean",
        "operators": [EQ, NEQ],
    },
]

ENGAGEMENT_FIELDS = [
    {
        "id": 4,
        "field_name": "Tags",
        "field_value": "customer_profile.tags",
        "field_type": "array",
        "operators": [IN, NOT_IN],
    },
    {
        "id": 5,
        "field_name": "Signup Date",
        "field_value": "customer_profile.signup_date",
        "field_type": "date",
        "operators": [EQ, GT, LT],
    },
]


def catalog_categories():
    return [
        {
            "id": 11,
            "name": "Engagement",
            "value": "engagement",
            "display_order": 2,
            "fields": copy.deepcopy(ENGAGEMENT_FIELDS),
        },
        {
            "id": 10,
            "name": "Profile",
            "value": "profile",
            "display_order": 1,
            "fields": copy.deepcopy(PROFILE_FIELDS),
        },
    ]


def catalog_payload():
    """Catalog service response envelope."""
    return {
        "success": True,
        "data": [{"field_selector_config": catalog_categories()}],
        "source": "database",
    }


class ProfileConditionFactory(factory.Factory):
    """
    Profile attribute condition on a numeric field.

    Usage:
        condition = ProfileConditionFactory()
        condition = ProfileConditionFactory(operator_symbol="<", value=10)
    """

    class Meta:
        model = dict

    id = factory.LazyFunction(lambda: fake.bothify("c-????####"))
    condition_kind = "profile_attribute"
    field_value = "customer_profile.total_spent"
    operator_symbol = ">"
    value = factory.LazyFunction(lambda: fake.random_int(min=10, max=5000))


class CountryConditionFactory(ProfileConditionFactory):
    """IN condition on a string field."""

    field_value = "customer_profile.country"
    operator_symbol = "IN"
    value = factory.LazyFunction(lambda: [fake.country_code() for _ in range(2)])


class SegmentReferenceFactory(factory.Factory):
    class Meta:
        model = dict

    id = factory.LazyFunction(lambda: fake.bothify("s-????####"))
    condition_kind = "segment_reference"
    operator_symbol = "IN"
    referenced_segment_id = factory.Sequence(lambda n: n + 100)


class ListReferenceFactory(factory.Factory):
    class Meta:
        model = dict

    id = factory.LazyFunction(lambda: fake.bothify("l-????####"))
    condition_kind = "list_reference"
    operator_symbol = "IN"
    referenced_list_id = factory.Sequence(lambda n: n + 500)


class ConditionGroupFactory(factory.Factory):
    """
    Rule group with one profile condition.

    Usage:
        group = ConditionGroupFactory(intra_group_operator="OR")
        group = ConditionGroupFactory(conditions=[CountryConditionFactory()])
    """

    class Meta:
        model = dict

    id = factory.LazyFunction(lambda: fake.bothify("g-????####"))
    group_type = "rule"
    intra_group_operator = "AND"
    conditions = factory.LazyFunction(lambda: [ProfileConditionFactory()])
    inter_group_operator_to_next = None


class SegmentGroupFactory(ConditionGroupFactory):
    group_type = "segments"
    conditions = factory.LazyFunction(lambda: [SegmentReferenceFactory()])


class ListGroupFactory(ConditionGroupFactory):
    group_type = "list"
    conditions = factory.LazyFunction(lambda: [ListReferenceFactory()])


def build_tree(*groups, join="AND") -> CriteriaTree:
    """Tree from group payloads; non-last groups without a join get ``join``."""
    groups = [dict(g) for g in groups]
    for group in groups[:-1]:
        if group.get("inter_group_operator_to_next") is None:
            group["inter_group_operator_to_next"] = join
    if groups:
        groups[-1]["inter_group_operator_to_next"] = None
    return CriteriaTree.model_validate({"groups": groups})
