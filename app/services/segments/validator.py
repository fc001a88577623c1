"""
Criteria Validator

Checks a criteria tree against the field catalog and returns every problem
found in one pass. Validation failures are data (CriteriaError), never
exceptions; callers decide whether an invalid tree blocks an operation.
"""

from typing import Any, List, Optional, Union

from app.schemas.segment import (
    GROUP_TYPE_FOR_KIND,
    LIST_OPERATORS,
    REFERENCE_OPERATORS,
    ConditionGroup,
    ConditionKind,
    CriteriaError,
    CriteriaTree,
    FieldDescriptor,
    ValidationErrorCode,
    ValidationResult,
    ValueType,
    is_boolean_like,
    is_number_like,
)
from app.services.segments.catalog import FieldRegistry


def _matches_base_type(value: Any, value_type: ValueType) -> bool:
    if value_type == ValueType.NUMBER:
        return is_number_like(value)
    if value_type == ValueType.BOOLEAN:
        return is_boolean_like(value)
    if value_type == ValueType.ARRAY:
        return isinstance(value, list)
    # Strings accept any scalar; the engine compares textually
    return isinstance(value, (str, int, float)) and not isinstance(value, bool)


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


class CriteriaValidator:
    """Collects CriteriaErrors for one tree."""

    def __init__(self, registry: FieldRegistry, segment_id: Optional[Union[int, str]] = None):
        self.registry = registry
        self.segment_id = segment_id
        self.errors: List[CriteriaError] = []

    def _error(
        self,
        code: ValidationErrorCode,
        detail: str,
        group: ConditionGroup,
        group_index: int,
        condition: Any = None,
        field: Optional[str] = None,
    ) -> None:
        self.errors.append(CriteriaError(
            code=code,
            message=f"{code.value}: {detail}",
            group_id=group.id,
            group_index=group_index,
            condition_id=condition.id if condition is not None else None,
            field=field,
        ))

    def validate(self, tree: CriteriaTree, require_conditions: bool = False) -> ValidationResult:
        if require_conditions and tree.condition_count == 0:
            self.errors.append(CriteriaError(
                code=ValidationErrorCode.EMPTY_CRITERIA,
                message=f"{ValidationErrorCode.EMPTY_CRITERIA.value}: at least one condition is required",
            ))

        last_index = len(tree.groups) - 1
        for group_index, group in enumerate(tree.groups):
            if not group.conditions:
                self._error(
                    ValidationErrorCode.EMPTY_GROUP,
                    f"group {group_index + 1} has no conditions",
                    group,
                    group_index,
                )
            if group_index < last_index and group.inter_group_operator_to_next is None:
                self._error(
                    ValidationErrorCode.MISSING_GROUP_JOIN,
                    f"group {group_index + 1} has no operator joining it to group {group_index + 2}",
                    group,
                    group_index,
                )
            for condition in group.conditions:
                self._check_condition(group, group_index, condition)

        return ValidationResult.from_errors(self.errors)

    def _check_condition(self, group: ConditionGroup, group_index: int, condition: Any) -> None:
        kind = condition.kind
        if GROUP_TYPE_FOR_KIND[kind] != group.group_type:
            self._error(
                ValidationErrorCode.CONDITION_KIND_MISMATCH,
                f"{kind.value} condition in a '{group.group_type.value}' group",
                group,
                group_index,
                condition,
            )

        if kind == ConditionKind.PROFILE_ATTRIBUTE:
            self._check_profile_condition(group, group_index, condition)
        else:
            self._check_reference_condition(group, group_index, condition)

    def _unsupported_operator(
        self,
        group: ConditionGroup,
        group_index: int,
        condition: Any,
        field: Optional[str] = None,
    ) -> None:
        """Stored rules can carry operators this editor cannot express."""
        self._error(
            ValidationErrorCode.OPERATOR_NOT_ALLOWED,
            f"{condition.unresolved_operator} is not a supported operator",
            group,
            group_index,
            condition,
            field=field,
        )

    def _check_reference_condition(self, group: ConditionGroup, group_index: int, condition: Any) -> None:
        is_segment = condition.kind == ConditionKind.SEGMENT_REFERENCE
        referenced = condition.referenced_segment_id if is_segment else condition.referenced_list_id
        label = "segment" if is_segment else "list"

        if condition.unresolved_operator is not None:
            self._unsupported_operator(group, group_index, condition)
        elif condition.operator_symbol not in REFERENCE_OPERATORS:
            self._error(
                ValidationErrorCode.OPERATOR_NOT_ALLOWED,
                f"{label} references only support IN / NOT IN, got {condition.operator_symbol.value}",
                group,
                group_index,
                condition,
            )

        if _is_blank(referenced):
            self._error(
                ValidationErrorCode.MISSING_REFERENCE,
                f"no {label} selected",
                group,
                group_index,
                condition,
            )
            return

        if is_segment and self.segment_id is not None and str(referenced) == str(self.segment_id):
            self._error(
                ValidationErrorCode.SELF_REFERENTIAL_SEGMENT,
                f"segment {referenced} cannot reference itself",
                group,
                group_index,
                condition,
            )

    def _check_profile_condition(self, group: ConditionGroup, group_index: int, condition: Any) -> None:
        field_value = condition.field_value
        field = self.registry.resolve_field(field_value)
        if field is None:
            self._error(
                ValidationErrorCode.UNKNOWN_FIELD,
                field_value or "<empty>",
                group,
                group_index,
                condition,
                field=field_value,
            )
            return

        if condition.unresolved_operator is not None:
            self._unsupported_operator(group, group_index, condition, field=field_value)
            return

        operator = condition.operator_symbol
        if not field.allows(operator):
            allowed = ", ".join(s.value for s in field.allowed_symbols)
            self._error(
                ValidationErrorCode.OPERATOR_NOT_ALLOWED,
                f"{operator.value} is not allowed for {field_value} (allowed: {allowed})",
                group,
                group_index,
                condition,
                field=field_value,
            )

        self._check_value(group, group_index, condition, field)

    def _check_value(self, group: ConditionGroup, group_index: int, condition: Any, field: FieldDescriptor) -> None:
        value = condition.value
        field_value = field.field_value

        if condition.operator_symbol in LIST_OPERATORS:
            if not isinstance(value, list):
                self._error(
                    ValidationErrorCode.EXPECTED_ARRAY_VALUE,
                    f"{condition.operator_symbol.value} on {field_value} needs a list of values",
                    group,
                    group_index,
                    condition,
                    field=field_value,
                )
                return
            if not value:
                self._error(
                    ValidationErrorCode.EXPECTED_ARRAY_VALUE,
                    f"{condition.operator_symbol.value} on {field_value} needs at least one value",
                    group,
                    group_index,
                    condition,
                    field=field_value,
                )
                return
            # Array fields hold lists of scalars, so IN compares element-wise
            base_type = ValueType.STRING if field.value_type == ValueType.ARRAY else field.value_type
            bad = [item for item in value if not _matches_base_type(item, base_type)]
            if bad:
                self._error(
                    ValidationErrorCode.TYPE_MISMATCH,
                    f"{field_value} expects {base_type.value} values, got {bad!r}",
                    group,
                    group_index,
                    condition,
                    field=field_value,
                )
            return

        if value is None:
            self._error(
                ValidationErrorCode.TYPE_MISMATCH,
                f"{field_value} requires a value",
                group,
                group_index,
                condition,
                field=field_value,
            )
            return

        if not _matches_base_type(value, field.value_type):
            self._error(
                ValidationErrorCode.TYPE_MISMATCH,
                f"{field_value} expects a {field.value_type.value} value, got {value!r}",
                group,
                group_index,
                condition,
                field=field_value,
            )


def validate(
    tree: CriteriaTree,
    registry: FieldRegistry,
    *,
    segment_id: Optional[Union[int, str]] = None,
    require_conditions: bool = False,
) -> ValidationResult:
    """
    Validate ``tree`` against ``registry``.

    Never raises. ``segment_id`` is the segment being edited and enables the
    self-reference check. ``require_conditions`` rejects a tree with no
    conditions at all (submission only; drafts may be empty).
    """
    return CriteriaValidator(registry, segment_id=segment_id).validate(tree, require_conditions=require_conditions)
