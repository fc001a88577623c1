"""
Rule Compiler

Flattens a criteria tree into the ordered rule records the persistence API
stores (one per condition), and rebuilds a tree from stored records.

compile_tree() is pure and deterministic. decompile() is lossy when the
stored rules carry no group boundaries: groups are re-derived by folding
consecutive records with the same group operator and condition kind, and
the joins between them come back as UNSPECIFIED (evaluated as AND).
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from app.exceptions import MalformedRuleSet
from app.schemas.segment import (
    GROUP_TYPE_FOR_KIND,
    LIST_OPERATORS,
    QUICKLIST_KEY_PREFIX,
    SEGMENT_KEY_PREFIX,
    ConditionGroup,
    ConditionKind,
    CriteriaTree,
    GroupJoin,
    ListReferenceCondition,
    LogicalOperator,
    ProfileAttributeCondition,
    RuleRecord,
    SegmentReferenceCondition,
    ValueType,
    condition_value,
    infer_value_type,
    reference_key,
)
from app.services.segments.catalog import FieldRegistry

logger = logging.getLogger(__name__)


# ========================
# Compile
# ========================


def _reference_value_type(referenced_id: Any) -> ValueType:
    if isinstance(referenced_id, int) and not isinstance(referenced_id, bool):
        return ValueType.NUMBER
    return ValueType.STRING


def _record_value_type(condition: Any, registry: Optional[FieldRegistry]) -> ValueType:
    if condition.condition_kind != ConditionKind.PROFILE_ATTRIBUTE:
        return _reference_value_type(condition_value(condition))
    if condition.operator_symbol in LIST_OPERATORS:
        return ValueType.ARRAY
    field = registry.resolve_field(condition.field_value) if registry else None
    if field is not None:
        return field.value_type
    return infer_value_type(condition.value)


def compile_tree(
    tree: CriteriaTree,
    registry: Optional[FieldRegistry] = None,
    *,
    include_group_boundaries: bool = False,
) -> List[RuleRecord]:
    """
    Flatten ``tree`` into rule records.

    Groups in order, conditions in order; ``order`` runs 1..N without gaps.
    With ``include_group_boundaries`` every record also carries its group
    index and the group's trailing join so decompile() can rebuild the
    tree exactly.
    """
    records: List[RuleRecord] = []
    order = 1
    last_index = len(tree.groups) - 1
    for group_index, group in enumerate(tree.groups):
        join = group.inter_group_operator_to_next if group_index < last_index else None
        for condition in group.conditions:
            record = RuleRecord(
                field_or_reference_key=reference_key(condition),
                operator_symbol=condition.operator_symbol,
                value=condition_value(condition),
                value_type=_record_value_type(condition, registry),
                group_operator=group.intra_group_operator,
                order=order,
            )
            if include_group_boundaries:
                record.group_index = group_index
                record.inter_group_operator = join
            records.append(record)
            order += 1
    return records


def to_payloads(records: Iterable[RuleRecord]) -> List[Dict[str, Any]]:
    return [r.to_payload() for r in records]


# ========================
# Decompile
# ========================


def _parse_reference_id(raw: str) -> Union[int, str]:
    return int(raw) if raw.isdigit() else raw


def _condition_from_record(record: RuleRecord, registry: Optional[FieldRegistry]) -> Any:
    key = record.field_or_reference_key
    # Unreadable operators keep the kind's default symbol and are marked
    if record.operator_symbol is None:
        operator: Dict[str, Any] = {"unresolved_operator": record.raw_operator}
    else:
        operator = {"operator_symbol": record.operator_symbol}

    if key.startswith(SEGMENT_KEY_PREFIX):
        ref = record.value if record.value is not None else _parse_reference_id(key[len(SEGMENT_KEY_PREFIX):])
        return SegmentReferenceCondition(referenced_segment_id=ref, **operator)
    if key.startswith(QUICKLIST_KEY_PREFIX):
        ref = record.value if record.value is not None else _parse_reference_id(key[len(QUICKLIST_KEY_PREFIX):])
        return ListReferenceCondition(referenced_list_id=ref, **operator)

    unresolved = registry is not None and registry.resolve_field(key) is None
    return ProfileAttributeCondition(
        field_value=key,
        value=record.value,
        unresolved_field=unresolved,
        **operator,
    )


def _check_ordering(records: List[RuleRecord], max_order_gap: int) -> None:
    problems: List[Dict[str, Any]] = []
    previous: Optional[int] = None
    for record in records:
        if record.order < 1:
            problems.append({"problem": "non_positive_order", "order": record.order, "rule_id": record.rule_id})
        if previous is not None:
            if record.order == previous:
                problems.append({"problem": "duplicate_order", "order": record.order, "rule_id": record.rule_id})
            elif record.order - previous - 1 > max_order_gap:
                problems.append({
                    "problem": "order_gap",
                    "after": previous,
                    "order": record.order,
                    "rule_id": record.rule_id,
                })
        previous = record.order
    if records and records[0].order > 1 + max_order_gap:
        problems.append({"problem": "order_gap", "after": 0, "order": records[0].order, "rule_id": records[0].rule_id})

    if problems:
        raise MalformedRuleSet(
            detail=f"Stored rule ordering is corrupt ({len(problems)} problem(s))",
            problems=problems,
        )


def _group_by_index(records: List[RuleRecord], registry: Optional[FieldRegistry]) -> List[ConditionGroup]:
    groups: Dict[int, ConditionGroup] = {}
    for record in records:
        condition = _condition_from_record(record, registry)
        group = groups.get(record.group_index)
        if group is None:
            group = ConditionGroup(
                group_type=GROUP_TYPE_FOR_KIND[condition.kind],
                intra_group_operator=record.group_operator,
                inter_group_operator_to_next=record.inter_group_operator,
            )
            groups[record.group_index] = group
        group.conditions.append(condition)

    ordered = [groups[i] for i in sorted(groups)]
    for index, group in enumerate(ordered):
        if index == len(ordered) - 1:
            group.inter_group_operator_to_next = None
        elif group.inter_group_operator_to_next is None:
            group.inter_group_operator_to_next = GroupJoin.UNSPECIFIED
    return ordered


def _group_by_folding(records: List[RuleRecord], registry: Optional[FieldRegistry]) -> List[ConditionGroup]:
    groups: List[ConditionGroup] = []
    current_kind: Optional[ConditionKind] = None
    current_operator: Optional[LogicalOperator] = None
    for record in records:
        condition = _condition_from_record(record, registry)
        if not groups or condition.kind != current_kind or record.group_operator != current_operator:
            if groups:
                groups[-1].inter_group_operator_to_next = GroupJoin.UNSPECIFIED
            groups.append(ConditionGroup(
                group_type=GROUP_TYPE_FOR_KIND[condition.kind],
                intra_group_operator=record.group_operator,
            ))
            current_kind = condition.kind
            current_operator = record.group_operator
        groups[-1].conditions.append(condition)
    return groups


def decompile(
    rules: Iterable[RuleRecord],
    registry: Optional[FieldRegistry] = None,
    *,
    strict: bool = False,
    max_order_gap: int = 0,
) -> CriteriaTree:
    """
    Rebuild a criteria tree from stored rule records.

    Raises MalformedRuleSet when orders repeat, are not positive, or skip
    more than ``max_order_gap`` positions. Fields missing from ``registry``
    are kept and marked ``unresolved_field``; with ``strict`` that raises
    MalformedRuleSet carrying the rebuilt tree instead.
    """
    records = sorted(rules, key=lambda r: r.order)
    if not records:
        return CriteriaTree()

    _check_ordering(records, max_order_gap)

    if all(r.group_index is not None for r in records):
        groups = _group_by_index(records, registry)
    else:
        groups = _group_by_folding(records, registry)

    tree = CriteriaTree(groups=groups)

    unresolved = tree.unresolved_conditions()
    if unresolved:
        fields = [
            c.field_value for c in unresolved
            if c.condition_kind == ConditionKind.PROFILE_ATTRIBUTE and c.unresolved_field
        ]
        operators = [c.unresolved_operator for c in unresolved if c.unresolved_operator is not None]
        logger.warning(
            "Decompiled rules reference unknown fields or operators",
            extra={"fields": fields, "operators": operators},
        )
        if strict:
            problems = [{"problem": "unknown_field", "field": f} for f in fields]
            problems.extend({"problem": "unknown_operator", "operator": o} for o in operators)
            raise MalformedRuleSet(
                detail=f"Stored rules hold {len(unresolved)} condition(s) with an unknown field or operator",
                problems=problems,
                tree=tree,
            )
    return tree


def records_from_payloads(payloads: Iterable[Dict[str, Any]]) -> List[RuleRecord]:
    """Parse store-shaped rules; unreadable entries raise MalformedRuleSet."""
    records: List[RuleRecord] = []
    problems: List[Dict[str, Any]] = []
    for index, payload in enumerate(payloads):
        try:
            records.append(RuleRecord.from_payload(payload))
        except (ValueError, TypeError, AttributeError, PydanticValidationError) as e:
            problems.append({
                "problem": "unreadable_rule",
                "index": index,
                "rule_id": payload.get("id") if isinstance(payload, dict) else None,
                "error": str(e),
            })
    if problems:
        raise MalformedRuleSet(detail=f"{len(problems)} stored rule(s) could not be read", problems=problems)
    return records
