"""
Segment Criteria Services

Field catalog, rule compilation, validation, preview and rule persistence
for the segment editor.
"""

from app.services.segments.catalog import CatalogSessionStore, FieldCatalogAdapter, FieldRegistry
from app.services.segments.compiler import compile_tree, decompile, records_from_payloads, to_payloads
from app.services.segments.validator import validate
from app.services.segments.preview import PreviewClient
from app.services.segments.rule_store import SegmentRuleStore
from app.services.segments.references import ReferenceResolver

__all__ = [
    "CatalogSessionStore",
    "FieldCatalogAdapter",
    "FieldRegistry",
    "compile_tree",
    "decompile",
    "records_from_payloads",
    "to_payloads",
    "validate",
    "PreviewClient",
    "SegmentRuleStore",
    "ReferenceResolver",
]
