# Services module
from app.services.segments import (
    CatalogSessionStore,
    FieldCatalogAdapter,
    FieldRegistry,
    PreviewClient,
    ReferenceResolver,
    SegmentRuleStore,
)

__all__ = [
    # Segment criteria services
    "CatalogSessionStore",
    "FieldCatalogAdapter",
    "FieldRegistry",
    "PreviewClient",
    "ReferenceResolver",
    "SegmentRuleStore",
]
