from app.schemas.segment import (
    Category,
    ConditionGroup,
    CriteriaError,
    CriteriaTree,
    FieldDescriptor,
    ListReferenceCondition,
    OperatorDescriptor,
    OperatorSymbol,
    ProfileAttributeCondition,
    RuleRecord,
    SegmentReferenceCondition,
    ValidationResult,
)

__all__ = [
    "Category",
    "ConditionGroup",
    "CriteriaError",
    "CriteriaTree",
    "FieldDescriptor",
    "ListReferenceCondition",
    "OperatorDescriptor",
    "OperatorSymbol",
    "ProfileAttributeCondition",
    "RuleRecord",
    "SegmentReferenceCondition",
    "ValidationResult",
]
