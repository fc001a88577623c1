"""
Test factories for generating realistic test data.

Uses factory_boy for declarative test data generation.
"""

from .criteria import (
    ProfileConditionFactory,
    CountryConditionFactory,
    SegmentReferenceFactory,
    ListReferenceFactory,
    ConditionGroupFactory,
    SegmentGroupFactory,
    ListGroupFactory,
    build_tree,
    catalog_payload,
    catalog_categories,
)

__all__ = [
    "ProfileConditionFactory",
    "CountryConditionFactory",
    "SegmentReferenceFactory",
    "ListReferenceFactory",
    "ConditionGroupFactory",
    "SegmentGroupFactory",
    "ListGroupFactory",
    "build_tree",
    "catalog_payload",
    "catalog_categories",
]
