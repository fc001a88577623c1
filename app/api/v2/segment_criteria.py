"""
Segment Criteria API Endpoints

Provides the segment editor's backend:
- Field catalog for the current editing session
- Validation, compilation and decompilation of criteria trees
- Audience size preview
- Loading and saving a segment's persisted rules
- Display names for referenced segments and QuickLists
"""

from typing import Literal
import logging

from fastapi import APIRouter, Query

from app.api.deps import Previewer, References, Registry, RuleStore, SettingsDep
from app.exceptions import CriteriaValidationFailed, NotFoundError
from app.schemas.segment import (
    CatalogResponse,
    CompileResponse,
    CriteriaRequest,
    DecompileRequest,
    DecompileResponse,
    PreviewResponse,
    ReferenceResponse,
    SaveCriteriaRequest,
    SaveCriteriaResponse,
    ValidationResult,
)
from app.services.segments import compile_tree, decompile, records_from_payloads, to_payloads, validate

logger = logging.getLogger(__name__)

router = APIRouter()


def _decompile_response(tree, registry) -> DecompileResponse:
    return DecompileResponse(
        tree=tree,
        unresolved_condition_ids=[c.id for c in tree.unresolved_conditions()],
        degraded_catalog=registry.degraded,
    )


# ============ Catalog ============

@router.get("/catalog", response_model=CatalogResponse)
async def get_catalog(registry: Registry):
    """Field catalog for this editing session; pass ?refresh=true when the editor re-opens."""
    return CatalogResponse(
        categories=registry.categories,
        source=registry.source,
        degraded=registry.degraded,
        loaded_at=registry.loaded_at.isoformat() + "Z",
    )


# ============ Validate / Compile ============

@router.post("/validate", response_model=ValidationResult)
async def validate_criteria(data: CriteriaRequest, registry: Registry):
    """Validate a draft tree. Always 200; the result lists every problem."""
    return validate(data.tree, registry, segment_id=data.segment_id)


@router.post("/compile", response_model=CompileResponse)
async def compile_criteria(data: CriteriaRequest, registry: Registry, settings: SettingsDep):
    """Compile a tree for submission. Invalid trees answer 422 with every error."""
    result = validate(data.tree, registry, segment_id=data.segment_id, require_conditions=True)
    if not result.valid:
        raise CriteriaValidationFailed(result)

    records = compile_tree(
        data.tree,
        registry,
        include_group_boundaries=settings.SEGMENT_RULES_PERSIST_GROUP_BOUNDARIES,
    )
    return CompileResponse(rules=records, payloads=to_payloads(records))


@router.post("/decompile", response_model=DecompileResponse)
async def decompile_rules(data: DecompileRequest, registry: Registry, settings: SettingsDep):
    """Rebuild a tree from stored rules; unknown fields come back marked."""
    records = records_from_payloads(data.rules)
    tree = decompile(
        records,
        registry,
        strict=data.strict,
        max_order_gap=settings.SEGMENT_RULE_ORDER_GAP_TOLERANCE,
    )
    return _decompile_response(tree, registry)


# ============ Preview ============

@router.post("/preview", response_model=PreviewResponse)
async def preview_criteria(data: CriteriaRequest, registry: Registry, previewer: Previewer):
    """Estimated audience size. Empty trees return 0 without calling the engine."""
    result = await previewer.preview(data.tree, registry, segment_id=data.segment_id)
    return PreviewResponse(estimated_count=result.estimated_count)


# ============ Persisted criteria ============

@router.get("/segments/{segment_id}/criteria", response_model=DecompileResponse)
async def get_segment_criteria(
    segment_id: str,
    registry: Registry,
    rule_store: RuleStore,
    strict: bool = Query(False),
):
    """Load a segment's stored rules as a criteria tree."""
    tree = await rule_store.load_tree(segment_id, registry, strict=strict)
    return _decompile_response(tree, registry)


@router.put("/segments/{segment_id}/criteria", response_model=SaveCriteriaResponse)
async def save_segment_criteria(
    segment_id: str,
    data: SaveCriteriaRequest,
    registry: Registry,
    rule_store: RuleStore,
    settings: SettingsDep,
):
    """Validate, compile and replace a segment's rules in one go."""
    result = validate(data.tree, registry, segment_id=segment_id, require_conditions=True)
    if not result.valid:
        raise CriteriaValidationFailed(result)

    records = compile_tree(
        data.tree,
        registry,
        include_group_boundaries=settings.SEGMENT_RULES_PERSIST_GROUP_BOUNDARIES,
    )
    await rule_store.replace_rules(segment_id, records)

    logger.info("Segment criteria saved", extra={"segment_id": segment_id, "rule_count": len(records)})
    return SaveCriteriaResponse(
        segment_id=segment_id,
        rule_count=len(records),
        group_boundaries_persisted=settings.SEGMENT_RULES_PERSIST_GROUP_BOUNDARIES,
    )


# ============ References ============

@router.get("/references/{kind}/{reference_id}", response_model=ReferenceResponse)
async def get_reference_name(
    kind: Literal["segment", "quicklist"],
    reference_id: str,
    references: References,
):
    """Display name of a referenced segment or QuickList."""
    if kind == "segment":
        name = await references.segment_name(reference_id)
    else:
        name = await references.quicklist_name(reference_id)

    if name is None:
        raise NotFoundError("Segment" if kind == "segment" else "QuickList", reference_id)
    return ReferenceResponse(kind=kind, id=reference_id, name=name)
